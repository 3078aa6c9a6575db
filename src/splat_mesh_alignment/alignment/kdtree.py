"""
KD-Tree Spatial Index

Static 3D KD-tree used by ICP to find the closest target point for every
source point. The tree is built once per registration run over the target
set and is read-only afterwards.

Construction cycles the split axis with depth (x, y, z, x, ...), sorts the
current subset along that axis and places the element at index ``n // 2`` in
the node. Queries use branch-and-bound descent: the near side is searched
first and the far side only when the splitting plane is closer than the best
match found so far.
"""

from __future__ import annotations

from dataclasses import dataclass
from operator import itemgetter
from typing import Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np


class Point3(NamedTuple):
    """3D coordinate with the index of the point in its source array."""

    x: float
    y: float
    z: float
    index: int = -1


PointsLike = Union[np.ndarray, Sequence[Point3]]

# Sort keys per split axis; Point3 is a tuple so x/y/z are items 0/1/2
_AXIS_KEYS = (itemgetter(0), itemgetter(1), itemgetter(2))


def as_points(points: PointsLike) -> List[Point3]:
    """
    Convert an (N, 3) array or a sequence of Point3 to a list of Point3.

    Array rows get their row number as ``index``. Sequences of Point3 are
    returned as a new list (the points themselves are immutable).

    Raises:
        ValueError: If an array input does not have shape (N, 3) or (N, 4+).
    """
    if isinstance(points, np.ndarray):
        if points.size == 0:
            return []
        if points.ndim != 2 or points.shape[1] < 3:
            raise ValueError(f"Expected Nx3 array, got shape {points.shape}")
        xyz = np.asarray(points[:, :3], dtype=np.float64)
        return [Point3(float(x), float(y), float(z), i) for i, (x, y, z) in enumerate(xyz.tolist())]

    result = []
    for i, p in enumerate(points):
        if isinstance(p, Point3):
            result.append(p)
        else:
            result.append(Point3(float(p[0]), float(p[1]), float(p[2]), i))
    return result


def points_to_array(points: PointsLike) -> np.ndarray:
    """Return the xyz coordinates of ``points`` as an (N, 3) float64 array."""
    if isinstance(points, np.ndarray):
        if points.size == 0:
            return np.empty((0, 3), dtype=np.float64)
        if points.ndim != 2 or points.shape[1] < 3:
            raise ValueError(f"Expected Nx3 array, got shape {points.shape}")
        return np.asarray(points[:, :3], dtype=np.float64)
    if len(points) == 0:
        return np.empty((0, 3), dtype=np.float64)
    return np.array([(p[0], p[1], p[2]) for p in points], dtype=np.float64)


@dataclass(frozen=True)
class KdNode:
    point: Point3
    axis: int
    left: Optional["KdNode"] = None
    right: Optional["KdNode"] = None


class KDTree:
    """
    Read-only 3D KD-tree for nearest neighbor queries.

    Example:
        >>> tree = KDTree(np.random.rand(100, 3))
        >>> point, dist_sq = tree.nearest((0.5, 0.5, 0.5))
    """

    def __init__(self, points: Optional[PointsLike] = None):
        pts = as_points(points) if points is not None else []
        self._size = len(pts)
        self.root: Optional[KdNode] = self._build(pts, 0)

    @classmethod
    def build(cls, points: PointsLike) -> "KDTree":
        return cls(points)

    def _build(self, points: List[Point3], depth: int) -> Optional[KdNode]:
        if not points:
            return None

        axis = depth % 3
        ordered = sorted(points, key=_AXIS_KEYS[axis])
        median = len(ordered) // 2

        return KdNode(
            point=ordered[median],
            axis=axis,
            left=self._build(ordered[:median], depth + 1),
            right=self._build(ordered[median + 1:], depth + 1),
        )

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[Point3]:
        """In-order traversal of every stored point."""
        stack: List[KdNode] = []
        node = self.root
        while stack or node is not None:
            while node is not None:
                stack.append(node)
                node = node.left
            node = stack.pop()
            yield node.point
            node = node.right

    def depth(self) -> int:
        """Number of levels in the tree (0 for an empty tree)."""

        def _depth(node: Optional[KdNode]) -> int:
            if node is None:
                return 0
            return 1 + max(_depth(node.left), _depth(node.right))

        return _depth(self.root)

    def nearest(self, target: Sequence[float]) -> Optional[Tuple[Point3, float]]:
        """
        Find the stored point closest to ``target``.

        Args:
            target: Query point; a Point3 or any (x, y, z) sequence.

        Returns:
            Tuple of (nearest_point, squared_distance), or None for an empty tree.
        """
        if self.root is None:
            return None

        tx, ty, tz = float(target[0]), float(target[1]), float(target[2])
        query = (tx, ty, tz)
        best_point = self.root.point
        best_dist_sq = float("inf")

        def search(node: Optional[KdNode]) -> None:
            nonlocal best_point, best_dist_sq
            if node is None:
                return

            p = node.point
            dx = tx - p[0]
            dy = ty - p[1]
            dz = tz - p[2]
            dist_sq = dx * dx + dy * dy + dz * dz
            if dist_sq < best_dist_sq:
                best_point = p
                best_dist_sq = dist_sq

            diff = query[node.axis] - p[node.axis]
            if diff < 0:
                near, far = node.left, node.right
            else:
                near, far = node.right, node.left

            search(near)
            # The far side can only help if the splitting plane is closer than the best match
            if diff * diff < best_dist_sq:
                search(far)

        search(self.root)
        return best_point, best_dist_sq

    def nearest_many(self, targets: Sequence[Sequence[float]]) -> List[Optional[Tuple[Point3, float]]]:
        """Run :meth:`nearest` for every query point, preserving order."""
        return [self.nearest(t) for t in targets]
