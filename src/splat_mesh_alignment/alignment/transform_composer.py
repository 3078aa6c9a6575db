"""
Transform composition and decomposition.

Helpers for building 4x4 homogeneous matrices and for turning the cumulative
world-space alignment into a parent-relative local transform
(position, quaternion, scale) that a scene-graph node can take directly.

Matrices act on column vectors: ``p' = M @ [x, y, z, 1]``. Products apply
right to left, so ``A @ B`` applies ``B`` first.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from .rotation import matrix_to_quaternion, quaternion_to_matrix


def translation_matrix(t: Sequence[float]) -> np.ndarray:
    T = np.eye(4)
    T[:3, 3] = np.asarray(t, dtype=np.float64)[:3]
    return T


def scale_matrix(s: float | Sequence[float]) -> np.ndarray:
    S = np.eye(4)
    S[:3, :3] = np.diag(np.broadcast_to(np.asarray(s, dtype=np.float64), (3,)))
    return S


def rotation_matrix4(R: np.ndarray) -> np.ndarray:
    """Embed a 3x3 rotation in a 4x4 homogeneous matrix."""
    M = np.eye(4)
    M[:3, :3] = R
    return M


def compose_matrix(
    position: Sequence[float],
    quaternion: Sequence[float],
    scale: float | Sequence[float],
) -> np.ndarray:
    """Build ``T(position) @ R(quaternion) @ S(scale)``; quaternion is (w, x, y, z)."""
    M = np.eye(4)
    R = quaternion_to_matrix(quaternion)
    s = np.broadcast_to(np.asarray(scale, dtype=np.float64), (3,))
    M[:3, :3] = R * s  # scales columns
    M[:3, 3] = np.asarray(position, dtype=np.float64)[:3]
    return M


def decompose_matrix(M: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Split an affine 4x4 matrix into translation, rotation and scale.

    Translation is the last column, scale is the length of each basis column
    and rotation is the basis with those lengths divided out. A negative
    determinant is folded into the x scale so the rotation stays proper.

    Args:
        M: 4x4 homogeneous matrix without shear.

    Returns:
        Tuple of (position (3,), quaternion (4,) as w, x, y, z, scale (3,)).
    """
    M = np.asarray(M, dtype=np.float64)
    if M.shape != (4, 4):
        raise ValueError(f"Transform must be 4x4 matrix, got {M.shape}")

    position = M[:3, 3].copy()
    basis = M[:3, :3]
    scale = np.linalg.norm(basis, axis=0)
    if np.linalg.det(basis) < 0:
        scale[0] = -scale[0]

    safe = np.where(np.abs(scale) > 0.0, scale, 1.0)
    R = basis / safe
    quaternion = matrix_to_quaternion(R)
    return position, quaternion, scale


@dataclass
class LocalTransform:
    """Parent-relative transform of a scene node."""

    position: np.ndarray
    quaternion: np.ndarray  # (w, x, y, z)
    scale: np.ndarray

    def to_matrix(self) -> np.ndarray:
        return compose_matrix(self.position, self.quaternion, self.scale)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-list form for JSON (position, quaternion, scale)."""
        return {
            "position": [float(v) for v in self.position],
            "quaternion": [float(v) for v in self.quaternion],
            "scale": [float(v) for v in self.scale],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalTransform":
        scale = data.get("scale", 1.0)
        return cls(
            position=np.asarray(data["position"], dtype=np.float64),
            quaternion=np.asarray(data["quaternion"], dtype=np.float64),
            scale=np.broadcast_to(np.asarray(scale, dtype=np.float64), (3,)).copy(),
        )


def to_local_transform(
    cumulative_world: np.ndarray,
    old_world: np.ndarray,
    parent_world: Optional[np.ndarray] = None,
) -> LocalTransform:
    """
    Re-express an alignment result as a node's local transform.

    Args:
        cumulative_world: Alignment transform in world space (AlignmentResult.transform).
        old_world: The node's world matrix before alignment.
        parent_world: World matrix of the node's parent, or None for a root node.

    Returns:
        LocalTransform for the node such that parent_world @ local == cumulative_world @ old_world.
    """
    cumulative_world = np.asarray(cumulative_world, dtype=np.float64)
    old_world = np.asarray(old_world, dtype=np.float64)
    new_world = cumulative_world @ old_world

    if parent_world is None:
        new_local = new_world
    else:
        new_local = np.linalg.inv(np.asarray(parent_world, dtype=np.float64)) @ new_world

    position, quaternion, scale = decompose_matrix(new_local)
    return LocalTransform(position=position, quaternion=quaternion, scale=scale)
