"""Shared utility functions."""

from .io import find_label, load_npz, save_npz, load_nifti, save_nifti, load_rater_volume, save_staple_result
from .volume_ops import busiest_slice, compute_volume_stats, positive_extent

__all__ = [
    # I/O
    "load_npz",
    "find_label",
    "save_npz",
    "load_nifti",
    "save_nifti",
    "load_rater_volume",
    "save_staple_result",
    # Volume operations
    "busiest_slice",
    "compute_volume_stats",
    "positive_extent",
]
