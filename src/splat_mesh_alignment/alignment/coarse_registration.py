"""
Coarse Registration Methods

Provides the pre-alignment that initializes ICP and the landmark-based
similarity transform.

The pre-alignment moves the source centroid onto the target centroid and
rescales the source so both clouds have the same RMS spread. It returns a
4x4 transform together with the uniform scale factor applied to the source.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from .kdtree import PointsLike, points_to_array
from .rotation import solve_rotation
from .transform_composer import scale_matrix, translation_matrix
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

# Spreads at or below this are treated as a single point; scale falls back to 1.0
SPREAD_EPSILON = 1e-10

# Few-point landmark sets have small eigenvalue gaps; the 4x4 iteration is cheap
LANDMARK_POWER_ITERATIONS = 500


def compute_centroid(points: PointsLike) -> np.ndarray:
    """Arithmetic mean per axis of an (N, 3) array or Point3 sequence."""
    pts = points_to_array(points)
    if len(pts) == 0:
        raise ValueError("Cannot compute centroid from empty point cloud")
    return np.mean(pts, axis=0)


def rms_spread(points: PointsLike, centroid: np.ndarray | None = None) -> float:
    """Root-mean-square distance of the points to their centroid."""
    pts = points_to_array(points)
    if len(pts) == 0:
        raise ValueError("Cannot compute spread of empty point cloud")
    if centroid is None:
        centroid = compute_centroid(pts)
    d = pts - centroid
    return float(np.sqrt(np.mean(np.sum(d * d, axis=1))))


def compute_initial_transform(source: PointsLike, target: PointsLike) -> Tuple[np.ndarray, float]:
    """
    Centroid and scale pre-alignment of source -> target.

    Args:
        source: Nx3 array or Point3 sequence (the set that moves)
        target: Mx3 array or Point3 sequence

    Returns:
        Tuple of (4x4 transform matrix, scale factor applied to the source)

    Raises:
        ValueError: If either set is empty.
    """
    src = points_to_array(source)
    dst = points_to_array(target)
    c_src = compute_centroid(src)
    c_dst = compute_centroid(dst)
    src_rms = rms_spread(src, c_src)
    dst_rms = rms_spread(dst, c_dst)

    if src_rms > SPREAD_EPSILON:
        scale = dst_rms / src_rms
    else:
        logger.warning(
            "Source spread %.3e is below %.0e; keeping scale factor 1.0.",
            src_rms,
            SPREAD_EPSILON,
        )
        scale = 1.0

    # Applied right to left: source centroid to origin, scale, move to target centroid
    T = translation_matrix(c_dst) @ scale_matrix(scale) @ translation_matrix(-c_src)
    logger.debug(
        "Pre-alignment: source RMS %.6f, target RMS %.6f, scale %.6f",
        src_rms,
        dst_rms,
        scale,
    )
    return T, float(scale)

def estimate_similarity_transform(source: PointsLike, target: PointsLike) -> np.ndarray:
    """
    Similarity transform (rotation, uniform scale, translation) from paired points.

    Used for landmark alignment where the user picks a handful of matching
    points (typically three) on both objects.

    Args:
        source: Source landmarks (N x 3), N >= 1.
        target: Target landmarks in the same order.

    Returns:
        4x4 matrix M = T * S * R mapping source landmarks onto target landmarks.
    """
    src = points_to_array(source)
    dst = points_to_array(target)
    if len(src) == 0 or len(src) != len(dst):
        raise ValueError(
            f"Landmark sets must be non-empty and of equal length (got {len(src)} and {len(dst)})"
        )

    c_src = compute_centroid(src)
    c_dst = compute_centroid(dst)
    R = solve_rotation(src, dst, c_src, c_dst, iterations=LANDMARK_POWER_ITERATIONS, shifted=True)

    src_spread_sq = float(np.sum((src - c_src) ** 2))
    dst_spread_sq = float(np.sum((dst - c_dst) ** 2))
    scale = 1.0
    if src_spread_sq > SPREAD_EPSILON:
        scale = float(np.sqrt(dst_spread_sq / src_spread_sq))

    t = c_dst - scale * (R @ c_src)

    M = np.eye(4)
    M[:3, :3] = scale * R
    M[:3, 3] = t
    return M
