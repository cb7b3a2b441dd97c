"""Binary label value objects."""

from .selection import IndexSelection
from .volumes import AXIAL_COSINES, BinarySlice, BinaryVolume

__all__ = ["IndexSelection", "BinarySlice", "BinaryVolume", "AXIAL_COSINES"]
