"""Alignment of rater volumes onto a master grid."""

from .aligner import (
    AlignedVolumes,
    Aligner,
    MasterGrid,
    remove_empty_indices,
    restore_reduced,
)

__all__ = [
    "Aligner",
    "AlignedVolumes",
    "MasterGrid",
    "remove_empty_indices",
    "restore_reduced",
]
