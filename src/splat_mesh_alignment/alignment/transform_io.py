"""
Transform file utilities

Save and load 4x4 alignment matrices as plain text so a result can be
inspected or re-applied outside of Python.
"""

from pathlib import Path
from typing import Union

import numpy as np

from ..utils.logging import setup_logger

logger = setup_logger(__name__)


def save_transform_matrix(transform: np.ndarray, output_file: Union[str, Path]) -> None:
    """Save a transformation matrix to a text file.

    Args:
        transform: 4x4 transformation matrix
        output_file: Path to output file
    """
    transform = np.asarray(transform, dtype=np.float64)
    if transform.shape != (4, 4):
        raise ValueError(f"Transform must be 4x4 matrix, got {transform.shape}")
    output_path = Path(output_file)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(output_path, transform, fmt='%.18e', header='4x4 transformation matrix')
    logger.info(f"Saved transformation matrix to {output_path}")


def load_transform_matrix(input_file: Union[str, Path]) -> np.ndarray:
    """Load a transformation matrix from a text file.

    Args:
        input_file: Path to input file

    Returns:
        4x4 transformation matrix
    """
    transform = np.loadtxt(input_file)
    if transform.shape != (4, 4):
        raise ValueError(f"Expected 4x4 matrix, got shape {transform.shape}")
    logger.info(f"Loaded transformation matrix from {input_file}")
    return transform
