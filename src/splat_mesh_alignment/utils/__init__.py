"""
Utility Functions Module

This module provides common utility functions used across the project.
- Logging setup
- Typed YAML configuration
- Caller-side point sampling
"""

from .logging import setup_logger, set_package_log_level
from .config import AppConfig, AlignmentICPConfig, SamplingConfig, load_config
from .sampling import subsample_stride

__all__ = [
    "setup_logger",
    "set_package_log_level",
    "AppConfig",
    "AlignmentICPConfig",
    "SamplingConfig",
    "load_config",
    "subsample_stride",
]
