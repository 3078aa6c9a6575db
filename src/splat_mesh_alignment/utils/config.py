"""
Configuration management for splat-mesh-alignment.

Provides a typed pydantic model and YAML loader with sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Literal, Any, Dict

from pydantic import BaseModel, Field, ValidationError
import yaml


# -----------------------
# Typed config structures
# -----------------------


class AlignmentICPConfig(BaseModel):
    max_iterations: int = Field(default=50, ge=1)
    tolerance: float = Field(
        default=1e-6,
        description="Convergence tolerance on the change in trimmed mean squared error",
    )
    inlier_fraction: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Fraction of closest correspondences kept each iteration (trimmed ICP)",
    )
    min_points: int = Field(
        default=10,
        ge=1,
        description="Minimum number of points required in each input set",
    )
    min_correspondences: int = Field(
        default=10,
        ge=1,
        description="Minimum number of correspondences per iteration; also the floor for trimming",
    )
    power_iterations: int = Field(
        default=50,
        ge=1,
        description="Power-iteration steps for the quaternion eigenvector",
    )
    n_jobs: int = Field(
        default=1,
        description="Workers for nearest-neighbor queries (1 = serial, -1 = all cores)",
    )


class SamplingConfig(BaseModel):
    max_source_points: int = Field(
        default=3000,
        ge=1,
        description="Stride-subsampling cap for the dense (splat) point sample",
    )
    max_target_points: int = Field(
        default=8000,
        ge=1,
        description="Stride-subsampling cap for the mesh vertices",
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    file: Optional[str] = Field(default=None)


class AppConfig(BaseModel):
    alignment: AlignmentICPConfig = Field(default_factory=AlignmentICPConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# -----------------------
# Loader
# -----------------------


def _project_root() -> Path:
    """
    Resolve the repository root directory.

    File is at: repo_root/src/splat_mesh_alignment/utils/config.py
    parents sequence:
      0 -> .../src/splat_mesh_alignment/utils
      1 -> .../src/splat_mesh_alignment
      2 -> .../src
      3 -> repo_root
    """
    return Path(__file__).resolve().parents[3]


def load_config(path: Optional[str | Path] = None, *, allow_missing: bool = True) -> AppConfig:
    """
    Load configuration from YAML into a typed AppConfig.

    Search order when path is None:
    1) repo_root/config/default.yaml
    2) if missing and allow_missing=True: return default AppConfig()

    Args:
        path: Explicit YAML file path.
        allow_missing: If True, returns defaults when file missing; otherwise raises.

    Returns:
        AppConfig instance
    """
    cfg_path: Path
    if path is None:
        cfg_path = _project_root() / "config" / "default.yaml"
    else:
        cfg_path = Path(path)

    if not cfg_path.exists():
        if allow_missing:
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    with cfg_path.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        # Re-raise with context to help users fix the YAML
        raise ValueError(f"Invalid configuration in {cfg_path}: {e}") from e
