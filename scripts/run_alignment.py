"""
Align a point sample onto mesh vertices from the command line.

Loads two point files, thins them with the configured stride caps, runs
trimmed ICP and reports the resulting transform.

Usage (from repo root):
    uv run scripts/run_alignment.py SOURCE TARGET [--config PATH] [--output FILE]

Point files:
    .npy                 (N, 3+) float array
    .txt / .xyz / .csv   whitespace or comma separated, first three columns used
"""

import argparse
import sys
import time
from pathlib import Path

import numpy as np

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from splat_mesh_alignment.alignment import (
    AlignmentError,
    ICPRegistration,
    save_transform_matrix,
    to_local_transform,
)
from splat_mesh_alignment.utils.config import load_config
from splat_mesh_alignment.utils.logging import set_package_log_level
from splat_mesh_alignment.utils.sampling import subsample_stride


def load_points(path: Path) -> np.ndarray:
    """Load an (N, 3) float array from .npy or delimited text."""
    if path.suffix.lower() == ".npy":
        pts = np.load(path)
    else:
        delimiter = "," if path.suffix.lower() == ".csv" else None
        pts = np.loadtxt(path, delimiter=delimiter, ndmin=2)
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError(f"{path}: expected Nx3 points, got shape {pts.shape}")
    return np.asarray(pts[:, :3], dtype=np.float64)


def main() -> int:
    parser = argparse.ArgumentParser(description="Align a point sample (source) onto mesh vertices (target)")
    parser.add_argument("source", type=str, help="Dense point sample that will be moved")
    parser.add_argument("target", type=str, help="Mesh vertices that stay fixed")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file (default: config/default.yaml)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write the 4x4 transform to this text file",
    )
    args = parser.parse_args()

    config = load_config(args.config)
    set_package_log_level(config.logging.level, config.logging.file)

    print("=" * 80)
    print("Splat / Mesh ICP Alignment")
    print("=" * 80)

    try:
        src_all = load_points(Path(args.source))
        tgt_all = load_points(Path(args.target))
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    src = subsample_stride(src_all, config.sampling.max_source_points)
    tgt = subsample_stride(tgt_all, config.sampling.max_target_points)
    print(f"Source: {len(src):,} of {len(src_all):,} points")
    print(f"Target: {len(tgt):,} of {len(tgt_all):,} points")

    icp = ICPRegistration.from_config(config.alignment)
    t0 = time.time()
    try:
        result = icp.align(src, tgt)
    except AlignmentError as e:
        print(f"Alignment failed ({e.reason}): {e}")
        return 2
    t1 = time.time()

    local = to_local_transform(result.transform, np.eye(4))

    print("\n" + "=" * 80)
    print("RESULTS")
    print("=" * 80)
    print(f"Duration: {t1 - t0:.3f} seconds")
    print(f"Termination: {result.termination.value} after {result.iterations_run} iterations")
    print(f"Scale factor: {result.scale_factor:.6f}")
    print(f"Final MSE: {result.final_mean_squared_error:.6e}")
    print("\nTransformation matrix:")
    print(np.array2string(result.transform, precision=6, suppress_small=True))
    print(f"\nPosition:   {np.round(local.position, 6).tolist()}")
    print(f"Quaternion: {np.round(local.quaternion, 6).tolist()} (w, x, y, z)")
    print(f"Scale:      {np.round(local.scale, 6).tolist()}")

    if args.output:
        save_transform_matrix(result.transform, args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
