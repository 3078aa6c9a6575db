"""
Caller-side point sampling.

The engine accepts point sets of any size, but nearest-neighbor ICP in pure
Python is sized for a few thousand points. Callers extracting splat centers
or mesh vertices thin them with a fixed stride before aligning, keeping the
original row index on every point.
"""

from __future__ import annotations

import math
from typing import List, Union

import numpy as np

from ..alignment.kdtree import Point3, as_points


def subsample_stride(points: Union[np.ndarray, List[Point3]], max_points: int) -> List[Point3]:
    """
    Keep every k-th point so that at most ``max_points`` remain.

    The stride is ``ceil(n / max_points)``, so the kept points are spread
    over the whole input rather than only its first ``max_points`` rows.

    Args:
        points: (N, 3) array or list of Point3.
        max_points: Upper bound on the returned point count.

    Returns:
        List of Point3 carrying the index of each point in the input.
    """
    if max_points <= 0:
        raise ValueError(f"max_points must be positive, got {max_points}")

    pts = as_points(points)
    stride = max(1, math.ceil(len(pts) / max_points))
    return pts[::stride]
