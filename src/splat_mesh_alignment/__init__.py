"""
Splat-Mesh Alignment Package

A Python package for registering a dense point sample (such as the centers of
a Gaussian-splat scene) onto the vertices of a polygonal mesh of the same
object. Alignment combines a centroid/scale pre-alignment with trimmed ICP
over a KD-tree, with rotations solved by Horn's quaternion method. Both the
KD-tree and the rotation solver are implemented from scratch for fine-grained
control of the registration.
"""

__version__ = "0.1.0"

from .alignment import *
from .utils import *

__all__ = [
    "alignment",
    "utils",
]
