"""
Optimal Rotation (Horn's Method)

Closed-form rotation between paired point sets. The cross-covariance of the
centered sets is folded into a symmetric 4x4 matrix whose dominant
eigenvector is the unit quaternion of the best rotation. The eigenvector is
found by power iteration rather than a full eigendecomposition.

All functions are pure and operate on numpy arrays.
"""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

from .kdtree import Point3, points_to_array

ArrayLike = Union[np.ndarray, Sequence[Point3], Sequence[float]]

# Below this norm the power-iteration iterate is treated as zero
QUATERNION_NORM_EPSILON = 1e-10


def _as_vector(point) -> np.ndarray:
    return np.asarray([point[0], point[1], point[2]], dtype=np.float64)


def cross_covariance(
    sources: ArrayLike,
    targets: ArrayLike,
    source_centroid: ArrayLike,
    target_centroid: ArrayLike,
) -> np.ndarray:
    """
    Cross-covariance H = sum_i (s_i - cs) (t_i - ct)^T.

    Args:
        sources: Source points (N x 3) or sequence of Point3.
        targets: Paired target points (N x 3) or sequence of Point3.
        source_centroid: Centroid subtracted from the sources.
        target_centroid: Centroid subtracted from the targets.

    Returns:
        3x3 matrix with H[i, j] = sum(s_i * t_j).
    """
    src = points_to_array(sources) - _as_vector(source_centroid)
    dst = points_to_array(targets) - _as_vector(target_centroid)
    return src.T @ dst


def horn_matrix(h: np.ndarray) -> np.ndarray:
    """Build Horn's symmetric 4x4 matrix N from a 3x3 cross-covariance."""
    sxx, sxy, sxz = h[0]
    syx, syy, syz = h[1]
    szx, szy, szz = h[2]

    return np.array(
        [
            [sxx + syy + szz, syz - szy, szx - sxz, sxy - syx],
            [syz - szy, sxx - syy - szz, sxy + syx, szx + sxz],
            [szx - sxz, sxy + syx, -sxx + syy - szz, syz + szy],
            [sxy - syx, szx + sxz, syz + szy, -sxx - syy + szz],
        ],
        dtype=np.float64,
    )


def dominant_quaternion(
    n: np.ndarray,
    iterations: int = 50,
    tolerance: float = 1e-10,
    shift: float = 0.0,
) -> np.ndarray:
    """
    Dominant eigenvector of ``n`` by power iteration.

    Starts from the identity quaternion (1, 0, 0, 0) and renormalizes after
    every multiplication. If the product collapses (norm < 1e-10) the last
    unit iterate is kept.

    Plain power iteration converges to the eigenvalue of largest magnitude.
    A positive ``shift`` iterates on ``n + shift * I`` instead; with a shift
    at least the magnitude of the most negative eigenvalue the iteration converges
    to the largest algebraic eigenvalue, which planar point sets need (their
    spectrum is symmetric about zero).

    Args:
        n: Symmetric 4x4 matrix.
        iterations: Number of multiplications to run.
        tolerance: Optional early exit once the iterate moves less than this
            (max abs component change). 0 runs all iterations.
        shift: Diagonal shift applied before iterating.

    Returns:
        Unit quaternion (w, x, y, z).
    """
    if shift:
        n = n + shift * np.eye(4)
    q = np.array([1.0, 0.0, 0.0, 0.0])
    for _ in range(iterations):
        new_q = n @ q
        norm = float(np.sqrt(new_q @ new_q))
        if norm < QUATERNION_NORM_EPSILON:
            break
        new_q /= norm
        if tolerance > 0.0 and float(np.max(np.abs(new_q - q))) < tolerance:
            q = new_q
            break
        q = new_q
    return q


def quaternion_to_matrix(q: Sequence[float]) -> np.ndarray:
    """Convert a unit quaternion (w, x, y, z) to a 3x3 rotation matrix."""
    qw, qx, qy, qz = (float(v) for v in q)
    return np.array(
        [
            [1 - 2 * qy * qy - 2 * qz * qz, 2 * qx * qy - 2 * qz * qw, 2 * qx * qz + 2 * qy * qw],
            [2 * qx * qy + 2 * qz * qw, 1 - 2 * qx * qx - 2 * qz * qz, 2 * qy * qz - 2 * qx * qw],
            [2 * qx * qz - 2 * qy * qw, 2 * qy * qz + 2 * qx * qw, 1 - 2 * qx * qx - 2 * qy * qy],
        ],
        dtype=np.float64,
    )


def matrix_to_quaternion(r: np.ndarray) -> np.ndarray:
    """
    Convert a 3x3 rotation matrix to a unit quaternion (w, x, y, z).

    Uses the trace branch when it is positive and otherwise the branch of the
    largest diagonal element, which keeps the square root well conditioned.
    The returned quaternion has w >= 0.
    """
    m00, m01, m02 = r[0]
    m10, m11, m12 = r[1]
    m20, m21, m22 = r[2]
    trace = m00 + m11 + m22

    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        q = np.array([0.25 / s, (m21 - m12) * s, (m02 - m20) * s, (m10 - m01) * s])
    elif m00 > m11 and m00 > m22:
        s = 2.0 * np.sqrt(1.0 + m00 - m11 - m22)
        q = np.array([(m21 - m12) / s, 0.25 * s, (m01 + m10) / s, (m02 + m20) / s])
    elif m11 > m22:
        s = 2.0 * np.sqrt(1.0 + m11 - m00 - m22)
        q = np.array([(m02 - m20) / s, (m01 + m10) / s, 0.25 * s, (m12 + m21) / s])
    else:
        s = 2.0 * np.sqrt(1.0 + m22 - m00 - m11)
        q = np.array([(m10 - m01) / s, (m02 + m20) / s, (m12 + m21) / s, 0.25 * s])

    q = q / np.linalg.norm(q)
    if q[0] < 0:
        q = -q
    return q


def solve_rotation(
    sources: ArrayLike,
    targets: ArrayLike,
    source_centroid: ArrayLike,
    target_centroid: ArrayLike,
    iterations: int = 50,
    shifted: bool = False,
) -> np.ndarray:
    """
    Optimal rotation taking centered sources onto centered targets.

    Args:
        sources: Source points (N x 3) or sequence of Point3.
        targets: Paired target points, same length as ``sources``.
        source_centroid: Centroid of the sources.
        target_centroid: Centroid of the targets.
        iterations: Power-iteration steps.
        shifted: Shift Horn's matrix by the nuclear norm of H (an upper bound
            on its eigenvalue magnitudes) so that iteration picks the largest
            algebraic eigenvalue. Needed for planar inputs such as three landmarks.

    Returns:
        3x3 rotation matrix R such that R @ (s - cs) ~ (t - ct).
        Identity when the covariance is degenerate.

    Raises:
        ValueError: If the point sets are empty or differ in length.
    """
    src = points_to_array(sources)
    dst = points_to_array(targets)
    if len(src) == 0 or len(src) != len(dst):
        raise ValueError(
            f"solve_rotation needs equal, non-empty point sets (got {len(src)} and {len(dst)})"
        )

    h = cross_covariance(src, dst, source_centroid, target_centroid)
    shift = float(np.linalg.norm(h, ord="nuc")) if shifted else 0.0
    q = dominant_quaternion(horn_matrix(h), iterations=iterations, shift=shift)
    return quaternion_to_matrix(q)
