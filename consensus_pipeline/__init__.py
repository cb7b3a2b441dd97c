"""
Consensus Pipeline - Multi-Rater Segmentation Toolkit

A package for combining binary segmentations from several raters including:
- Binary slice and volume value objects with sparse index selections
- Alignment of rater volumes onto a shared master grid
- STAPLE estimation of the true segmentation and rater performance
- Per-rater evaluation tables and agreement metrics
- Visualization tools
"""

__version__ = "1.0.0"
