"""
ICP Registration Implementation

This module implements the trimmed Iterative Closest Point (ICP) algorithm
that aligns a dense point sample (e.g. Gaussian-splat centers) onto mesh
vertices with a rigid transform plus one uniform scale.

Conventions:
- The *source* is the set that moves and is rescaled; the *target* stays
  fixed and is indexed by the KD-tree. Swapping the roles gives the inverse
  alignment.
- All points are expected in a common (world) coordinate space.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import time

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from .coarse_registration import compute_initial_transform
from .exceptions import InsufficientCorrespondencesError, InsufficientPointsError
from .kdtree import KDTree, Point3, PointsLike, as_points, points_to_array
from .rotation import solve_rotation
from .transform_composer import rotation_matrix4, translation_matrix
from ..utils.config import AlignmentICPConfig
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


class TerminationReason(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations_reached"


@dataclass(frozen=True)
class Correspondence:
    source: Point3
    target: Point3
    dist_sq: float


@dataclass
class AlignmentResult:
    """
    Outcome of a registration run.

    Attributes:
        transform: 4x4 world-space matrix mapping the original source points
            onto the target (pre-alignment included).
        scale_factor: Uniform scale applied to the source during pre-alignment.
        iterations_run: Iterations in which correspondences were measured.
        final_mean_squared_error: Trimmed MSE of the last measured iteration.
        termination: Why the loop stopped.
        mse_history: Trimmed MSE per iteration, in order.
        num_correspondences: Correspondences kept after trimming in the last iteration.
    """

    transform: np.ndarray
    scale_factor: float
    iterations_run: int
    final_mean_squared_error: float
    termination: TerminationReason
    mse_history: List[float] = field(default_factory=list)
    num_correspondences: int = 0

    @property
    def converged(self) -> bool:
        return self.termination is TerminationReason.CONVERGED

    def apply(self, points: PointsLike) -> np.ndarray:
        """Apply the cumulative transform to an (N, 3) array or Point3 sequence."""
        return ICPRegistration.apply_transformation(points_to_array(points), self.transform)


def _query_chunk(tree: KDTree, queries: Sequence[Point3]) -> List[Optional[Tuple[Point3, float]]]:
    return tree.nearest_many(queries)


class ICPRegistration:
    """
    Trimmed ICP with similarity pre-alignment.

    The algorithm:
    1. Pre-aligns centroids and RMS spread (uniform scale) of source and target
    2. Builds a KD-tree over the target once
    3. Iteratively finds nearest-neighbor correspondences, keeps the closest
       fraction, solves the rigid update with Horn's method and applies it
    4. Stops when the trimmed MSE changes by less than the tolerance, or after
       the iteration budget
    """

    def __init__(
        self,
        max_iterations: int = 50,
        tolerance: float = 1e-6,
        inlier_fraction: float = 0.8,
        min_points: int = 10,
        min_correspondences: int = 10,
        power_iterations: int = 50,
        n_jobs: int = 1,
    ):
        """
        Initialize ICP parameters.

        Args:
            max_iterations: Maximum number of ICP iterations.
            tolerance: Convergence tolerance on change in trimmed mean squared error.
            inlier_fraction: Fraction of closest correspondences kept per iteration.
            min_points: Minimum number of points required in each input set.
            min_correspondences: Minimum correspondences per iteration; also the
                lower bound on how many are kept after trimming.
            power_iterations: Power-iteration steps in the rotation solver.
            n_jobs: Workers for nearest-neighbor queries (joblib). 1 runs serially.
        """
        if not 0.0 < inlier_fraction <= 1.0:
            raise ValueError(f"inlier_fraction must be in (0, 1], got {inlier_fraction}")
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.inlier_fraction = inlier_fraction
        self.min_points = min_points
        self.min_correspondences = min_correspondences
        self.power_iterations = power_iterations
        self.n_jobs = n_jobs

    @classmethod
    def from_config(cls, config: AlignmentICPConfig) -> "ICPRegistration":
        return cls(
            max_iterations=config.max_iterations,
            tolerance=config.tolerance,
            inlier_fraction=config.inlier_fraction,
            min_points=config.min_points,
            min_correspondences=config.min_correspondences,
            power_iterations=config.power_iterations,
            n_jobs=config.n_jobs,
        )

    def align(self, source: PointsLike, target: PointsLike) -> AlignmentResult:
        """
        Align source points onto target points.

        Args:
            source: Dense point sample (N x 3 array or Point3 sequence); this set moves.
            target: Mesh vertices (M x 3 array or Point3 sequence); this set is fixed.

        Returns:
            AlignmentResult with the cumulative 4x4 transform.

        Raises:
            InsufficientPointsError: If either set has fewer than ``min_points`` points.
            InsufficientCorrespondencesError: If an iteration finds fewer than
                ``min_correspondences`` matches.
        """
        source_pts = as_points(source)
        target_pts = as_points(target)
        n_src = len(source_pts)
        n_tgt = len(target_pts)

        if n_src < self.min_points or n_tgt < self.min_points:
            logger.warning(
                "Not enough points for ICP alignment (source=%d, target=%d, need %d).",
                n_src,
                n_tgt,
                self.min_points,
            )
            raise InsufficientPointsError(n_src, n_tgt, self.min_points)

        logger.info(
            "Starting ICP alignment with %d source points and %d target points.",
            n_src,
            n_tgt,
        )

        # Pre-alignment: centroids and RMS spread
        pre_align, scale_factor = compute_initial_transform(source_pts, target_pts)
        working = self._transform_points(source_pts, pre_align)
        cumulative = pre_align
        logger.info("Pre-alignment scale factor: %.6f", scale_factor)

        # Build the nearest-neighbor structure for the target ONCE; only the source moves.
        build_start = time.time()
        tree = KDTree(target_pts)
        logger.debug(
            "KD-tree built in %.4f s (%d points, depth %d).",
            time.time() - build_start,
            len(tree),
            tree.depth(),
        )

        previous_error = float("inf")
        mse_history: List[float] = []
        n_kept = 0
        termination = TerminationReason.MAX_ITERATIONS
        n_iterations = 0
        icp_start = time.time()

        for iteration in range(self.max_iterations):
            n_iterations = iteration + 1

            correspondences = self.find_correspondences(working, tree)
            if len(correspondences) < self.min_correspondences:
                logger.warning(
                    "Not enough valid correspondences found (%d < %d). Stopping ICP.",
                    len(correspondences),
                    self.min_correspondences,
                )
                raise InsufficientCorrespondencesError(
                    n_iterations, len(correspondences), self.min_correspondences
                )

            kept = self.reject_outliers(correspondences)
            n_kept = len(kept)
            current_error = float(np.mean([c.dist_sq for c in kept]))
            mse_history.append(current_error)

            logger.debug(
                "Iteration %d: MSE=%.6f (%d of %d correspondences kept)",
                n_iterations,
                current_error,
                n_kept,
                len(correspondences),
            )

            # Convergence is checked before this iteration's update is applied
            if abs(previous_error - current_error) < self.tolerance:
                termination = TerminationReason.CONVERGED
                logger.info(
                    "ICP converged after %d iterations (MSE change < %.3e).",
                    n_iterations,
                    self.tolerance,
                )
                break
            previous_error = current_error

            delta_transform = self.estimate_transformation(kept)
            # Update is expressed in the current world frame: pre-multiply
            cumulative = delta_transform @ cumulative
            working = self._transform_points(working, delta_transform)
        else:
            logger.info("ICP did not converge after %d iterations.", self.max_iterations)

        final_error = mse_history[-1] if mse_history else float("inf")
        logger.info(
            "ICP finished in %.4f s (%d iterations). Final MSE: %.6f",
            time.time() - icp_start,
            n_iterations,
            final_error,
        )

        return AlignmentResult(
            transform=cumulative,
            scale_factor=scale_factor,
            iterations_run=n_iterations,
            final_mean_squared_error=final_error,
            termination=termination,
            mse_history=mse_history,
            num_correspondences=n_kept,
        )

    def find_correspondences(self, source: Sequence[Point3], tree: KDTree) -> List[Correspondence]:
        """
        Find the closest target point for every source point.

        Args:
            source: Current (transformed) source points.
            tree: KD-tree over the target points.

        Returns:
            Correspondences with a finite squared distance, in source order.
        """
        if self.n_jobs == 1 or len(source) < 2:
            matches = tree.nearest_many(source)
        else:
            # One chunk per worker; the tree is pickled once per chunk
            n_chunks = min(effective_n_jobs(self.n_jobs), len(source))
            bounds = np.linspace(0, len(source), n_chunks + 1).astype(int)
            chunks = [source[a:b] for a, b in zip(bounds[:-1], bounds[1:]) if b > a]
            results = Parallel(n_jobs=self.n_jobs, backend="loky")(
                delayed(_query_chunk)(tree, chunk) for chunk in chunks
            )
            matches = [m for chunk_result in results for m in chunk_result]

        correspondences = []
        for src_pt, match in zip(source, matches):
            if match is None:
                continue
            tgt_pt, dist_sq = match
            if not np.isfinite(dist_sq):
                continue
            correspondences.append(Correspondence(source=src_pt, target=tgt_pt, dist_sq=dist_sq))
        return correspondences

    def reject_outliers(self, correspondences: Sequence[Correspondence]) -> List[Correspondence]:
        """
        Keep the closest ``inlier_fraction`` of correspondences.

        At least ``min_correspondences`` are kept (or all of them when fewer exist).
        """
        ordered = sorted(correspondences, key=lambda c: c.dist_sq)
        n_keep = max(self.min_correspondences, int(np.floor(len(ordered) * self.inlier_fraction)))
        return ordered[:n_keep]

    def estimate_transformation(self, correspondences: Sequence[Correspondence]) -> np.ndarray:
        """
        Estimate the rigid transform taking correspondence sources onto targets.

        Args:
            correspondences: Paired points (non-empty).

        Returns:
            Transformation matrix (4 x 4) = Translate(t) * R.
        """
        source_points = points_to_array([c.source for c in correspondences])
        target_points = points_to_array([c.target for c in correspondences])

        source_centroid = np.mean(source_points, axis=0)
        target_centroid = np.mean(target_points, axis=0)

        R = solve_rotation(
            source_points,
            target_points,
            source_centroid,
            target_centroid,
            iterations=self.power_iterations,
        )
        t = target_centroid - R @ source_centroid

        return translation_matrix(t) @ rotation_matrix4(R)

    @staticmethod
    def apply_transformation(points: np.ndarray, transform: np.ndarray) -> np.ndarray:
        """
        Apply a transformation matrix to a set of points.

        Args:
            points: Point cloud (N x 3).
            transform: Transformation matrix (4 x 4).

        Returns:
            Transformed point cloud (N x 3).
        """
        if points.size == 0:
            return points

        # Direct affine transform (no homogeneous coordinates)
        R = transform[:3, :3]
        t = transform[:3, 3]
        return points @ R.T + t

    def _transform_points(self, points: Sequence[Point3], transform: np.ndarray) -> List[Point3]:
        moved = self.apply_transformation(points_to_array(points), transform)
        return [
            Point3(x, y, z, p.index)
            for (x, y, z), p in zip(moved.tolist(), points)
        ]


def align(
    source: PointsLike,
    target: PointsLike,
    config: Optional[AlignmentICPConfig] = None,
) -> AlignmentResult:
    """
    Align a dense point sample (source) onto mesh vertices (target).

    Args:
        source: Points that move (N x 3 array or Point3 sequence), N >= 10.
        target: Fixed points (M x 3 array or Point3 sequence), M >= 10.
        config: Optional ICP configuration; defaults are used when omitted.

    Returns:
        AlignmentResult.
    """
    engine = ICPRegistration.from_config(config or AlignmentICPConfig())
    return engine.align(source, target)
