"""
Spatial Alignment Module

This module aligns a dense point sample (e.g. Gaussian-splat centers) with
mesh vertices using a similarity pre-alignment followed by trimmed ICP, and
converts the result into scene-graph local transforms.
"""

from .kdtree import KDTree, KdNode, Point3, as_points, points_to_array
from .rotation import solve_rotation, quaternion_to_matrix, matrix_to_quaternion
from .coarse_registration import compute_initial_transform, estimate_similarity_transform
from .fine_registration import (
    AlignmentResult,
    Correspondence,
    ICPRegistration,
    TerminationReason,
    align,
)
from .exceptions import (
    AlignmentError,
    InsufficientCorrespondencesError,
    InsufficientPointsError,
)
from .transform_composer import (
    LocalTransform,
    compose_matrix,
    decompose_matrix,
    to_local_transform,
)
from .transform_io import save_transform_matrix, load_transform_matrix

__all__ = [
    "KDTree",
    "KdNode",
    "Point3",
    "as_points",
    "points_to_array",
    "solve_rotation",
    "quaternion_to_matrix",
    "matrix_to_quaternion",
    "compute_initial_transform",
    "estimate_similarity_transform",
    "AlignmentResult",
    "Correspondence",
    "ICPRegistration",
    "TerminationReason",
    "align",
    "AlignmentError",
    "InsufficientCorrespondencesError",
    "InsufficientPointsError",
    "LocalTransform",
    "compose_matrix",
    "decompose_matrix",
    "to_local_transform",
    "save_transform_matrix",
    "load_transform_matrix",
]
