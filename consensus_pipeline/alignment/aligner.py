"""
Alignment of independently positioned binary volumes onto one master grid.

Each rater may have segmented a different subset of slices, and its slices
may be offset in-plane by whole pixels. The aligner builds a master grid that
spans the union of all slice positions and all in-plane footprints, then
places each rater's positive pixels on it. A voxel a rater did not supply is
a negative label on the master grid.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..data.volumes import BinarySlice, BinaryVolume
from ..errors import GeometryMismatchError, InvalidArgumentError, ShapeMismatchError

logger = logging.getLogger(__name__)

KeptIndices = Tuple[np.ndarray, np.ndarray, np.ndarray]


@dataclass(frozen=True)
class MasterGrid:
    """
    Shared coordinate space of an alignment.

    Attributes:
        positions: Ascending slice positions (mm).
        rows: Row count of every master slice.
        columns: Column count of every master slice.
        spacing: Pixel spacing (row_spacing, col_spacing) in mm.
        cosines: Orientation cosines shared by all inputs.
        origin: Patient position (x, y, z) of the master's first pixel.
    """

    positions: Tuple[float, ...]
    rows: int
    columns: int
    spacing: Tuple[float, float]
    cosines: Tuple[float, ...]
    origin: Tuple[float, float, float]

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Array shape (slices, rows, columns)."""
        return (len(self.positions), self.rows, self.columns)

    def slice_index(self, position: float, tolerance: float = 1e-3) -> int:
        """
        Index of the master slice at a position.

        Raises:
            KeyError: If no master slice lies within tolerance.
        """
        distances = np.abs(np.asarray(self.positions) - float(position))
        index = int(np.argmin(distances))
        if distances[index] > tolerance:
            raise KeyError(f"No master slice at position {position}")
        return index


def remove_empty_indices(
    arrays: Sequence[np.ndarray],
) -> Tuple[List[np.ndarray], KeptIndices]:
    """
    Drop every slice, row and column index that is negative for all raters.

    Interior indices are dropped too, not only the margins. If no rater has
    any positive voxel nothing is removed.

    Args:
        arrays: Equally shaped 3D arrays, one per rater.

    Returns:
        Tuple of (reduced arrays, retained indices along each axis).
    """
    if not arrays:
        raise InvalidArgumentError("Invalid argument 'arrays'. Expected at least one array.")

    shapes = {a.shape for a in arrays}
    if len(shapes) > 1:
        raise ShapeMismatchError(f"Arrays have different shapes: {sorted(shapes)}")

    shape = arrays[0].shape
    union = np.zeros(shape, dtype=bool)
    for array in arrays:
        union |= np.asarray(array) > 0

    if not union.any():
        kept = tuple(np.arange(size) for size in shape)
        return [np.array(a, copy=True) for a in arrays], kept

    kept = tuple(
        np.flatnonzero(union.any(axis=tuple(a for a in range(union.ndim) if a != axis)))
        for axis in range(union.ndim)
    )
    reduced = [np.asarray(a)[np.ix_(*kept)] for a in arrays]

    removed = [size - len(k) for size, k in zip(shape, kept)]
    logger.debug(f"Removed empty indices (slices, rows, columns): {removed}")

    return reduced, kept


def restore_reduced(
    reduced: np.ndarray,
    kept: KeptIndices,
    shape: Tuple[int, ...],
    fill_value: float = 0,
) -> np.ndarray:
    """
    Scatter a reduced array back into its full shape.

    Args:
        reduced: Array produced on the reduced grid.
        kept: Retained indices per axis, as returned by remove_empty_indices.
        shape: Full array shape.
        fill_value: Value for removed voxels.

    Returns:
        Array of the full shape.
    """
    expected = tuple(len(k) for k in kept)
    if reduced.shape != expected:
        raise ShapeMismatchError(
            f"Reduced array shape {reduced.shape} does not match retained indices {expected}"
        )
    full = np.full(shape, fill_value, dtype=reduced.dtype)
    full[np.ix_(*kept)] = reduced
    return full


class AlignedVolumes:
    """
    Per-rater arrays on a common master grid.

    Arrays are read-only uint8 of identical shape, ordered as the input
    volumes. After :meth:`remove_empty_indices` the arrays cover only the
    retained indices, and ``kept_indices`` maps them back to the grid.
    """

    def __init__(
        self,
        grid: MasterGrid,
        arrays: Sequence[np.ndarray],
        sources: Optional[Sequence[Optional[str]]] = None,
        kept_indices: Optional[KeptIndices] = None,
    ) -> None:
        self.grid = grid
        self.arrays = []
        for array in arrays:
            array = np.asarray(array, dtype=np.uint8)
            array.setflags(write=False)
            self.arrays.append(array)
        self.sources = list(sources) if sources is not None else [None] * len(self.arrays)
        self.kept_indices = kept_indices

    def __len__(self) -> int:
        return len(self.arrays)

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Shape of the working arrays (reduced if indices were removed)."""
        return self.arrays[0].shape if self.arrays else self.grid.shape

    @property
    def full_shape(self) -> Tuple[int, int, int]:
        return self.grid.shape

    @property
    def is_reduced(self) -> bool:
        return self.kept_indices is not None

    @property
    def positions(self) -> List[float]:
        """Slice positions of the working arrays."""
        if self.kept_indices is None:
            return list(self.grid.positions)
        return [self.grid.positions[i] for i in self.kept_indices[0]]

    def remove_empty_indices(self) -> "AlignedVolumes":
        """
        Return a copy reduced to indices positive for at least one rater.

        The retained-index map is composed with any earlier reduction, so
        results can always be restored onto the full master grid.
        """
        reduced, kept = remove_empty_indices(self.arrays)
        if self.kept_indices is not None:
            kept = tuple(old[new] for old, new in zip(self.kept_indices, kept))
        return AlignedVolumes(self.grid, reduced, self.sources, kept)

    def restore(self, array: np.ndarray, fill_value: float = 0) -> np.ndarray:
        """Map a working-shape array back onto the full master grid."""
        if self.kept_indices is None:
            return np.array(array, copy=True)
        return restore_reduced(array, self.kept_indices, self.full_shape, fill_value)


class Aligner:
    """
    Maps binary volumes onto one master grid.

    The aligner is stateless apart from its tolerances; ``align`` never
    mutates its inputs.
    """

    def __init__(
        self,
        position_tolerance: float = 1e-3,
        offset_tolerance: float = 1e-2,
    ) -> None:
        """
        Initialize aligner.

        Args:
            position_tolerance: Slice positions closer than this (mm) are the
                same master slice.
            offset_tolerance: Largest deviation (in pixels) of an in-plane
                origin offset from a whole number of pixels.
        """
        if position_tolerance < 0 or offset_tolerance < 0:
            raise InvalidArgumentError("Tolerances must be non-negative")
        self.position_tolerance = position_tolerance
        self.offset_tolerance = offset_tolerance

    @classmethod
    def from_config(cls, config) -> "Aligner":
        """Create from an AlignmentConfig."""
        return cls(
            position_tolerance=config.position_tolerance,
            offset_tolerance=config.offset_tolerance,
        )

    def _validate(self, volumes: Sequence[BinaryVolume]) -> List[BinaryVolume]:
        if isinstance(volumes, BinaryVolume) or not isinstance(volumes, (list, tuple)):
            raise InvalidArgumentError(
                f"Invalid argument 'volumes'. Expected list of BinaryVolume, got {type(volumes).__name__}."
            )
        if len(volumes) == 0:
            raise InvalidArgumentError("Invalid argument 'volumes'. Expected at least one volume.")

        for volume in volumes:
            if not isinstance(volume, BinaryVolume):
                raise InvalidArgumentError(
                    f"Invalid argument 'volumes'. Expected only BinaryVolume instances, "
                    f"got {type(volume).__name__}."
                )
            if len(volume) == 0:
                raise InvalidArgumentError(f"Invalid argument 'volumes'. Volume '{volume.source}' has no slices.")

        shapes = sorted({(s.columns, s.rows) for v in volumes for s in v.slices})
        if len(shapes) > 1:
            raise ShapeMismatchError(
                f"Expected all slices to have the same (columns, rows), got {shapes}."
            )

        return list(volumes)

    def _check_geometry(self, reference: BinarySlice, other: BinarySlice, source: Optional[str]) -> None:
        if not np.allclose(reference.spacing, other.spacing):
            raise GeometryMismatchError(
                f"Pixel spacing {other.spacing} of volume '{source}' at position {other.position} "
                f"differs from {reference.spacing}."
            )
        if not np.allclose(reference.cosines, other.cosines, atol=1e-4):
            raise GeometryMismatchError(
                f"Orientation {other.cosines} of volume '{source}' at position {other.position} "
                f"differs from {reference.cosines}."
            )

    def _pixel_offset(self, reference: BinarySlice, other: BinarySlice, source: Optional[str]) -> Tuple[int, int]:
        """Whole-pixel (column, row) offset of a slice's origin from the reference origin."""
        delta = np.asarray(other.origin) - np.asarray(reference.origin)
        col_offset = float(np.dot(delta, reference.row_direction)) / reference.col_spacing
        row_offset = float(np.dot(delta, reference.column_direction)) / reference.row_spacing

        col_pixels, row_pixels = round(col_offset), round(row_offset)
        if (
            abs(col_offset - col_pixels) > self.offset_tolerance
            or abs(row_offset - row_pixels) > self.offset_tolerance
        ):
            raise GeometryMismatchError(
                f"Origin {other.origin} of volume '{source}' at position {other.position} is offset by "
                f"({col_offset:.3f}, {row_offset:.3f}) pixels, not a whole number of pixels."
            )
        return int(col_pixels), int(row_pixels)

    def _master_positions(self, volumes: Sequence[BinaryVolume]) -> List[float]:
        """Ascending union of slice positions, merging positions within tolerance."""
        positions = sorted(p for v in volumes for p in v.positions)
        merged: List[float] = []
        for position in positions:
            if not merged or position - merged[-1] > self.position_tolerance:
                merged.append(position)
        return merged

    def align(self, volumes: Sequence[BinaryVolume]) -> AlignedVolumes:
        """
        Align volumes onto a master grid.

        Args:
            volumes: Binary volumes, one per rater.

        Returns:
            AlignedVolumes with one fresh array per input volume, in input order.

        Raises:
            InvalidArgumentError: On empty or wrongly typed input.
            ShapeMismatchError: If slice grids differ in size.
            GeometryMismatchError: If spacing, orientation or origins cannot be reconciled.
        """
        volumes = self._validate(volumes)
        reference = volumes[0].slices[0]

        placements = []  # (volume index, slice, col offset, row offset)
        for v_index, volume in enumerate(volumes):
            for binary_slice in volume.slices:
                self._check_geometry(reference, binary_slice, volume.source)
                col_offset, row_offset = self._pixel_offset(reference, binary_slice, volume.source)
                placements.append((v_index, binary_slice, col_offset, row_offset))

        positions = self._master_positions(volumes)
        position_array = np.asarray(positions)

        min_col = min(p[2] for p in placements)
        min_row = min(p[3] for p in placements)
        columns = max(p[2] + p[1].columns for p in placements) - min_col
        rows = max(p[3] + p[1].rows for p in placements) - min_row

        origin = (
            np.asarray(reference.origin)
            + min_col * reference.col_spacing * reference.row_direction
            + min_row * reference.row_spacing * reference.column_direction
        )
        grid = MasterGrid(
            positions=tuple(positions),
            rows=rows,
            columns=columns,
            spacing=reference.spacing,
            cosines=reference.cosines,
            origin=tuple(float(x) for x in origin),
        )

        arrays = [np.zeros(grid.shape, dtype=np.uint8) for _ in volumes]
        occupied = [set() for _ in volumes]

        for v_index, binary_slice, col_offset, row_offset in placements:
            slice_index = int(np.argmin(np.abs(position_array - binary_slice.position)))
            if slice_index in occupied[v_index]:
                raise GeometryMismatchError(
                    f"Volume '{volumes[v_index].source}' has two slices within "
                    f"{self.position_tolerance} mm of position {positions[slice_index]}."
                )
            occupied[v_index].add(slice_index)

            selection = binary_slice.selection().to_grid(
                columns, rows, col_offset - min_col, row_offset - min_row
            )
            arrays[v_index][slice_index] = selection.to_mask()

        logger.info(
            f"Aligned {len(volumes)} volumes onto master grid of shape {grid.shape} "
            f"(slices, rows, columns)"
        )

        return AlignedVolumes(grid, arrays, [v.source for v in volumes])
