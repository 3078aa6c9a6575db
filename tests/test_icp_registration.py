"""
Tests for fine registration (trimmed ICP) implementation.

These tests focus on correctness of the recovered transform, the scale
factor from pre-alignment, convergence behavior and error reporting on
synthetic data.
"""

from pathlib import Path
import sys

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

# Ensure src is importable
sys.path.append(str(Path(__file__).parent.parent / "src"))

from splat_mesh_alignment.alignment.exceptions import (
    AlignmentError,
    InsufficientCorrespondencesError,
    InsufficientPointsError,
)
from splat_mesh_alignment.alignment.fine_registration import (
    Correspondence,
    ICPRegistration,
    TerminationReason,
    align,
)
from splat_mesh_alignment.alignment.kdtree import Point3
from splat_mesh_alignment.utils.config import AlignmentICPConfig


def _make_random_cloud(n: int = 400, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    # Anisotropic spread to avoid symmetric solutions
    base = rng.normal(size=(n, 3)) * np.array([3.0, 2.0, 1.5])
    base += np.array([10.0, -5.0, 2.0])
    return base.astype(float)


def _apply_similarity(points: np.ndarray, R: np.ndarray, t: np.ndarray, s: float = 1.0) -> np.ndarray:
    return s * (points @ R.T) + t


def _rotation_angle(R: np.ndarray) -> float:
    cos_theta = np.clip((np.trace(R) - 1.0) * 0.5, -1.0, 1.0)
    return float(np.arccos(cos_theta))


def _cloud_scale(points: np.ndarray) -> float:
    return float(np.sqrt(np.mean(np.sum((points - points.mean(axis=0)) ** 2, axis=1))))


def _small_rotation(deg: float = 5.0) -> np.ndarray:
    axis = np.array([0.2, 0.3, 1.0])
    return Rotation.from_rotvec(np.deg2rad(deg) * axis / np.linalg.norm(axis)).as_matrix()


def _quarter_turn_about_y_error(M: np.ndarray) -> float:
    """Angle between rotation M and the closest rotation about Y by a multiple of 90 deg."""
    quarter_turns = [Rotation.from_euler("y", 90.0 * k, degrees=True).as_matrix() for k in range(4)]
    return min(_rotation_angle(Q.T @ M) for Q in quarter_turns)


def _nn_rmse(A: np.ndarray, B: np.ndarray) -> float:
    from sklearn.neighbors import NearestNeighbors  # type: ignore
    nbrs = NearestNeighbors(n_neighbors=1).fit(B)
    d, _ = nbrs.kneighbors(A)
    return float(np.sqrt(np.mean(d ** 2)))


def _make_cube_edges() -> np.ndarray:
    """100 points on the corners and edges of the unit cube."""
    corners = np.array([[x, y, z] for x in (0.0, 1.0) for y in (0.0, 1.0) for z in (0.0, 1.0)])
    edges = [
        (a, b)
        for i, a in enumerate(corners)
        for b in corners[i + 1:]
        if np.sum(np.abs(a - b)) == 1.0
    ]
    rng = np.random.default_rng(11)
    samples = [corners]
    # 92 edge points spread over the 12 edges (8 on each, 7 on four of them)
    for k, (a, b) in enumerate(edges):
        n_edge = 8 if k < 8 else 7
        t = np.sort(rng.uniform(0.05, 0.95, size=n_edge))
        samples.append(a + t[:, None] * (b - a))
    pts = np.vstack(samples)
    assert pts.shape == (100, 3)
    return pts


def test_icp_recovers_known_transform():
    """ICP should recover a known rigid transform."""
    src = _make_random_cloud(n=400, seed=1)
    R = _small_rotation(5.0)
    t = np.array([1.5, -0.7, 0.3])
    tgt = _apply_similarity(src, R, t)

    icp = ICPRegistration(tolerance=1e-10)
    result = icp.align(src, tgt)

    T = result.transform
    assert result.scale_factor == pytest.approx(1.0, rel=1e-9)
    assert _rotation_angle(T[:3, :3].T @ R) < 0.01
    assert np.linalg.norm(T[:3, 3] - t) < 1e-3 * _cloud_scale(src)
    assert result.final_mean_squared_error < 1e-8


def test_icp_recovers_scale():
    """Scale factor from pre-alignment equals the true relative scale."""
    src = _make_random_cloud(n=300, seed=2)
    R = _small_rotation(4.0)
    t = np.array([-3.0, 2.0, 1.0])
    tgt = _apply_similarity(src, R, t, s=2.5)

    result = align(src, tgt)

    assert result.scale_factor == pytest.approx(2.5, rel=0.01)
    aligned = result.apply(src)
    assert np.sqrt(np.mean(np.sum((aligned - tgt) ** 2, axis=1))) < 0.05 * _cloud_scale(tgt)


def test_mse_history_is_non_increasing():
    src = _make_random_cloud(n=300, seed=3)
    tgt = _apply_similarity(src, _small_rotation(6.0), np.array([0.4, 0.2, -0.1]))

    result = ICPRegistration(tolerance=1e-10).align(src, tgt)

    history = result.mse_history
    assert len(history) == result.iterations_run
    for prev, cur in zip(history[:-1], history[1:]):
        assert cur <= prev + 1e-9 + 1e-6 * prev
    assert result.final_mean_squared_error == history[-1]


def test_outlier_points_do_not_break_alignment():
    """Jittered points in 15% of the source are absorbed by trimming."""
    clean = _make_random_cloud(n=400, seed=4)
    R = _small_rotation(4.0)
    t = np.array([0.8, -0.4, 0.2])
    tgt = _apply_similarity(clean, R, t)

    rng = np.random.default_rng(5)
    src = clean.copy()
    noisy = rng.choice(len(src), size=60, replace=False)
    src[noisy] += rng.normal(scale=0.3, size=(60, 3))

    result = align(src, tgt)

    T = result.transform
    assert result.termination in (TerminationReason.CONVERGED, TerminationReason.MAX_ITERATIONS)
    assert _rotation_angle(T[:3, :3] / result.scale_factor @ R.T) < 0.02
    inlier_mask = np.ones(len(src), dtype=bool)
    inlier_mask[noisy] = False
    residual = result.apply(clean[inlier_mask]) - tgt[inlier_mask]
    assert np.sqrt(np.mean(np.sum(residual ** 2, axis=1))) < 0.05


def test_cube_scaled_rotated_translated():
    """Unit cube edges vs. the same cube scaled 2x, rotated 45 deg about Y, moved to x=5."""
    src = _make_cube_edges()
    R = Rotation.from_euler("y", 45.0, degrees=True).as_matrix()
    tgt = _apply_similarity(src, R, np.array([5.0, 0.0, 0.0]), s=2.0)

    result = align(src, tgt)

    assert result.iterations_run <= 50
    assert result.scale_factor == pytest.approx(2.0, rel=1e-9)
    linear = result.transform[:3, :3] / result.scale_factor
    np.testing.assert_allclose(linear @ linear.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(linear) == pytest.approx(1.0)
    assert result.final_mean_squared_error <= result.mse_history[0] + 1e-12
    np.testing.assert_array_equal(result.transform[3], [0.0, 0.0, 0.0, 1.0])

    # 45 deg is halfway between cube symmetries: the solution may be any
    # quarter turn about Y away from the true rotation, but must fit the target
    assert _quarter_turn_about_y_error(linear.T @ R) < 0.05
    assert result.final_mean_squared_error < 0.02
    assert _nn_rmse(result.apply(src), tgt) < 0.25


def test_cube_rotation_within_symmetry_basin():
    """A 30 deg turn is closer to the truth than to any cube symmetry, so it is recovered exactly."""
    src = _make_cube_edges()
    R = Rotation.from_euler("y", 30.0, degrees=True).as_matrix()
    t = np.array([5.0, 0.0, 0.0])
    tgt = _apply_similarity(src, R, t, s=2.0)

    result = ICPRegistration(max_iterations=200, tolerance=1e-12).align(src, tgt)

    T = result.transform
    assert result.scale_factor == pytest.approx(2.0, rel=1e-9)
    assert _rotation_angle((T[:3, :3] / result.scale_factor).T @ R) < 1e-2
    np.testing.assert_allclose(T[:3, 3], t, atol=1e-2)
    np.testing.assert_allclose(result.apply(src), tgt, atol=1e-2)


def test_convergence_returns_transform_before_final_check():
    """The update of the iteration that detects convergence is not applied."""
    src = _make_random_cloud(n=200, seed=6)
    tgt = _apply_similarity(src, _small_rotation(3.0), np.array([0.5, 0.0, 0.0]))

    one_step = ICPRegistration(max_iterations=1).align(src, tgt)
    assert one_step.termination is TerminationReason.MAX_ITERATIONS
    assert one_step.iterations_run == 1

    # Any change is "converged" at iteration 2, so only iteration 1's update exists
    loose = ICPRegistration(tolerance=1e9).align(src, tgt)
    assert loose.termination is TerminationReason.CONVERGED
    assert loose.converged
    assert loose.iterations_run == 2
    assert len(loose.mse_history) == 2
    np.testing.assert_allclose(loose.transform, one_step.transform, rtol=0, atol=1e-12)


def test_insufficient_points():
    icp = ICPRegistration()
    src = _make_random_cloud(n=9, seed=7)
    tgt = _make_random_cloud(n=100, seed=8)

    with pytest.raises(InsufficientPointsError) as exc:
        icp.align(src, tgt)
    assert exc.value.source_count == 9
    assert exc.value.target_count == 100

    with pytest.raises(InsufficientPointsError):
        icp.align(tgt, np.empty((0, 3)))


def test_insufficient_correspondences():
    src = _make_random_cloud(n=20, seed=9)
    tgt = _make_random_cloud(n=50, seed=10)

    with pytest.raises(InsufficientCorrespondencesError) as exc:
        ICPRegistration(min_correspondences=30).align(src, tgt)
    assert exc.value.iteration == 1
    assert exc.value.count == 20
    assert isinstance(exc.value, AlignmentError)


def test_non_finite_source_has_no_correspondences():
    src = np.full((20, 3), np.nan)
    tgt = _make_random_cloud(n=50, seed=12)
    with pytest.raises(InsufficientCorrespondencesError):
        align(src, tgt)


def test_reject_outliers_keeps_closest_fraction():
    icp = ICPRegistration()
    p = Point3(0.0, 0.0, 0.0, 0)
    corrs = [Correspondence(source=p, target=p, dist_sq=float(d)) for d in range(100, 0, -1)]

    kept = icp.reject_outliers(corrs)

    assert len(kept) == 80
    assert [c.dist_sq for c in kept] == [float(d) for d in range(1, 81)]


def test_reject_outliers_keeps_minimum():
    icp = ICPRegistration()
    p = Point3(0.0, 0.0, 0.0, 0)
    corrs = [Correspondence(source=p, target=p, dist_sq=float(d)) for d in range(12)]
    # floor(12 * 0.8) = 9 < 10
    assert len(icp.reject_outliers(corrs)) == 10


def test_estimate_transformation_exact_pairs():
    icp = ICPRegistration()
    src = _make_random_cloud(n=50, seed=13)
    R = _small_rotation(20.0)
    t = np.array([1.0, 2.0, 3.0])
    dst = _apply_similarity(src, R, t)
    corrs = [
        Correspondence(Point3(*s, index=i), Point3(*d, index=i), 0.0)
        for i, (s, d) in enumerate(zip(src, dst))
    ]

    T = icp.estimate_transformation(corrs)

    np.testing.assert_allclose(T[:3, :3], R, atol=1e-6)
    np.testing.assert_allclose(T[:3, 3], t, atol=1e-4)


def test_parallel_queries_match_serial():
    src = _make_random_cloud(n=150, seed=14)
    tgt = _apply_similarity(src, _small_rotation(3.0), np.array([0.2, 0.1, 0.0]))

    serial = ICPRegistration(max_iterations=5).align(src, tgt)
    parallel = ICPRegistration(max_iterations=5, n_jobs=2).align(src, tgt)

    np.testing.assert_allclose(parallel.transform, serial.transform, rtol=0, atol=1e-12)
    assert parallel.mse_history == serial.mse_history


def test_from_config():
    cfg = AlignmentICPConfig(max_iterations=7, inlier_fraction=0.5, n_jobs=1)
    icp = ICPRegistration.from_config(cfg)
    assert icp.max_iterations == 7
    assert icp.inlier_fraction == 0.5
    assert icp.tolerance == 1e-6


def test_invalid_inlier_fraction():
    with pytest.raises(ValueError):
        ICPRegistration(inlier_fraction=0.0)
