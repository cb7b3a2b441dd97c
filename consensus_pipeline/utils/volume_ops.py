"""
Volume helpers for aligned label stacks.

Positive extents, slice selection and summary statistics used by the plotting
and command line layers.
"""

from typing import Optional, Tuple

import numpy as np


def positive_extent(*arrays: np.ndarray, padding: int = 0) -> Optional[Tuple[slice, ...]]:
    """
    Slices covering every positive voxel of the given arrays.

    All arrays must share one shape; the extent is taken over their union,
    so a rater vote map and the consensus crop to the same window.

    Args:
        *arrays: Label or vote arrays of equal shape.
        padding: Pixels added on each side, clipped to the array bounds.

    Returns:
        One slice per dimension, or None when every array is empty.
    """
    if not arrays:
        raise ValueError("positive_extent needs at least one array")
    shape = arrays[0].shape
    for array in arrays[1:]:
        if array.shape != shape:
            raise ValueError(f"Shape mismatch: {array.shape} vs {shape}")

    union = np.zeros(shape, dtype=bool)
    for array in arrays:
        union |= array > 0

    if not union.any():
        return None

    region = []
    for axis in range(union.ndim):
        # Collapse every other axis to find the occupied span on this one
        occupied = np.flatnonzero(union.any(axis=tuple(a for a in range(union.ndim) if a != axis)))
        start = max(0, int(occupied[0]) - padding)
        stop = min(shape[axis], int(occupied[-1]) + 1 + padding)
        region.append(slice(start, stop))
    return tuple(region)


def busiest_slice(volume: np.ndarray) -> int:
    """Index of the slice (axis 0) with the most positive voxels; 0 for empty volumes."""
    counts = np.count_nonzero(volume.reshape(volume.shape[0], -1), axis=1)
    return int(np.argmax(counts))


def compute_volume_stats(volume: np.ndarray) -> dict:
    """
    Compute basic statistics for a label volume.

    Args:
        volume: Label array.

    Returns:
        Dictionary with shape, dtype, positive count and ratio.
    """
    nonzero = int(np.count_nonzero(volume))
    return {
        "shape": volume.shape,
        "dtype": str(volume.dtype),
        "nonzero_count": nonzero,
        "nonzero_ratio": float(nonzero / volume.size) if volume.size else 0.0,
    }
