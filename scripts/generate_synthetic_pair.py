"""
Generate a synthetic splat/mesh point pair with a known misalignment.

- Samples a box-like "object" surface as the mesh vertices (target).
- Takes a denser jittered sample of the same surface as the splat centers
  (source) and moves it by a similarity transform (scale, rotation,
  translation) to simulate two independent captures.
- Writes data/synthetic/{source,target}.npy and the ground-truth transform
  mapping source -> target as data/synthetic/ground_truth.txt.

The output can be fed straight into scripts/run_alignment.py.
"""
from __future__ import annotations

import math
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from splat_mesh_alignment.alignment import save_transform_matrix


def sample_box_surface(n: int, size=(2.0, 1.0, 0.6), seed: int = 0) -> np.ndarray:
    """Uniform samples on the faces of an axis-aligned box centered at the origin."""
    rng = np.random.default_rng(seed)
    half = np.asarray(size) / 2.0
    pts = rng.uniform(-half, half, size=(n, 3))
    # Snap one random coordinate of each point onto a face
    axis = rng.integers(0, 3, size=n)
    sign = rng.choice([-1.0, 1.0], size=n)
    pts[np.arange(n), axis] = sign * half[axis]
    return pts


def similarity(scale=0.5, rot_deg=(5.0, 20.0, -3.0), translation=(1.0, 0.2, -0.5)) -> np.ndarray:
    rx, ry, rz = [math.radians(a) for a in rot_deg]
    Rx = np.array([[1, 0, 0], [0, math.cos(rx), -math.sin(rx)], [0, math.sin(rx), math.cos(rx)]])
    Ry = np.array([[math.cos(ry), 0, math.sin(ry)], [0, 1, 0], [-math.sin(ry), 0, math.cos(ry)]])
    Rz = np.array([[math.cos(rz), -math.sin(rz), 0], [math.sin(rz), math.cos(rz), 0], [0, 0, 1]])
    T = np.eye(4)
    T[:3, :3] = scale * (Rz @ Ry @ Rx)
    T[:3, 3] = translation
    return T


def main():
    out_dir = Path(__file__).parent.parent / "data" / "synthetic"
    out_dir.mkdir(parents=True, exist_ok=True)

    target = sample_box_surface(6000, seed=1)
    splat = sample_box_surface(20000, seed=2)
    splat += 0.005 * np.random.default_rng(3).standard_normal(splat.shape)

    # Misplace the splat capture; its inverse is what alignment must recover
    misplace = similarity()
    source = (splat @ misplace[:3, :3].T) + misplace[:3, 3]
    ground_truth = np.linalg.inv(misplace)

    np.save(out_dir / "source.npy", source)
    np.save(out_dir / "target.npy", target)
    save_transform_matrix(ground_truth, out_dir / "ground_truth.txt")

    print(f"Wrote: {out_dir / 'source.npy'} ({len(source):,} points)")
    print(f"Wrote: {out_dir / 'target.npy'} ({len(target):,} points)")
    print(f"Wrote: {out_dir / 'ground_truth.txt'}")


if __name__ == "__main__":
    main()
