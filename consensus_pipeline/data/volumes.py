"""
Binary segmentation value objects.

A BinarySlice is one rater's label grid on one image slice together with the
geometry needed to place it in patient space. A BinaryVolume is the set of
slices one rater contributed, keyed by through-plane position.

Label grids use numpy's pixel layout: shape (rows, columns), so the flat
C-order index of a pixel is ``row * columns + col``.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import InvalidArgumentError, ShapeMismatchError
from .selection import IndexSelection


AXIAL_COSINES = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0)

# Positions are compared after rounding to this many decimals (mm).
POSITION_DECIMALS = 6


def _as_labels(labels: np.ndarray) -> np.ndarray:
    """Validate a 2D binary grid and return a read-only uint8 copy."""
    array = np.asarray(labels)

    if array.ndim != 2:
        raise InvalidArgumentError(
            f"Invalid argument 'labels'. Expected two-dimensional array, got {array.ndim} dimensions."
        )
    if array.dtype.kind not in "biu":
        raise InvalidArgumentError(
            f"Invalid argument 'labels'. Expected integer or boolean array, got dtype {array.dtype}."
        )
    if array.size and (array.min() < 0 or array.max() > 1):
        raise InvalidArgumentError(
            f"Invalid argument 'labels'. Expected binary array with values 0/1, "
            f"got range [{array.min()}, {array.max()}]."
        )

    out = array.astype(np.uint8, copy=True)
    out.setflags(write=False)
    return out


def _as_floats(values: Sequence[float], length: Tuple[int, ...], name: str) -> Tuple[float, ...]:
    try:
        out = tuple(float(v) for v in values)
    except (TypeError, ValueError):
        raise InvalidArgumentError(
            f"Invalid argument '{name}'. Expected sequence of numbers, got {values!r}."
        ) from None
    if len(out) not in length:
        raise InvalidArgumentError(
            f"Invalid argument '{name}'. Expected {' or '.join(map(str, length))} values, got {len(out)}."
        )
    return out


def position_key(position: float) -> float:
    """Canonical dictionary key for a slice position."""
    return round(float(position), POSITION_DECIMALS)


@dataclass(frozen=True, eq=False)
class BinarySlice:
    """
    One rater's binary label grid on a single image slice.

    Attributes:
        labels: Read-only uint8 array of shape (rows, columns).
        position: Through-plane position in mm.
        spacing: Pixel spacing (row_spacing, col_spacing) in mm.
        cosines: Orientation cosines (row direction xyz, column direction xyz).
        origin: Patient position of the first pixel, (x, y) or (x, y, z), in mm.
    """

    labels: np.ndarray
    position: float
    spacing: Tuple[float, float] = (1.0, 1.0)
    cosines: Tuple[float, ...] = AXIAL_COSINES
    origin: Tuple[float, ...] = (0.0, 0.0, 0.0)

    def __post_init__(self):
        try:
            position = float(self.position)
        except (TypeError, ValueError):
            raise InvalidArgumentError(
                f"Invalid argument 'position'. Expected number, got {type(self.position).__name__}."
            ) from None
        if not np.isfinite(position):
            raise InvalidArgumentError(f"Invalid argument 'position'. Expected finite number, got {position}.")

        spacing = _as_floats(self.spacing, (2,), "spacing")
        if min(spacing) <= 0:
            raise InvalidArgumentError(f"Invalid argument 'spacing'. Expected positive values, got {spacing}.")

        origin = _as_floats(self.origin, (2, 3), "origin")
        if len(origin) == 2:
            origin = origin + (0.0,)

        # Frozen dataclass: normalized values are written through object.__setattr__
        object.__setattr__(self, "labels", _as_labels(self.labels))
        object.__setattr__(self, "position", position)
        object.__setattr__(self, "spacing", spacing)
        object.__setattr__(self, "cosines", _as_floats(self.cosines, (6,), "cosines"))
        object.__setattr__(self, "origin", origin)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BinarySlice):
            return NotImplemented
        return (
            self.position == other.position
            and self.spacing == other.spacing
            and self.cosines == other.cosines
            and self.origin == other.origin
            and np.array_equal(self.labels, other.labels)
        )

    def __hash__(self) -> int:
        return hash((self.position, self.spacing, self.cosines, self.origin, self.labels.tobytes()))

    @property
    def rows(self) -> int:
        return self.labels.shape[0]

    @property
    def columns(self) -> int:
        return self.labels.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        """Grid shape (rows, columns)."""
        return self.labels.shape

    @property
    def row_spacing(self) -> float:
        return self.spacing[0]

    @property
    def col_spacing(self) -> float:
        return self.spacing[1]

    @property
    def row_direction(self) -> np.ndarray:
        """Unit vector along which the column index increases."""
        return np.asarray(self.cosines[:3])

    @property
    def column_direction(self) -> np.ndarray:
        """Unit vector along which the row index increases."""
        return np.asarray(self.cosines[3:])

    @property
    def pixel_area(self) -> float:
        """Area of one pixel in mm^2."""
        return self.row_spacing * self.col_spacing

    @property
    def positive_count(self) -> int:
        return int(np.count_nonzero(self.labels))

    def area(self, positive: bool = True) -> float:
        """
        Area covered by positive (or negative) pixels.

        Args:
            positive: Measure positive pixels if True, negative pixels otherwise.

        Returns:
            Area in mm^2.
        """
        count = self.positive_count if positive else self.labels.size - self.positive_count
        return count * self.pixel_area

    def selection(self) -> IndexSelection:
        """Sparse selection of this slice's positive pixels."""
        return IndexSelection.from_mask(self.labels)

    def with_labels(self, labels: np.ndarray) -> "BinarySlice":
        """Copy of this slice with new labels and unchanged geometry."""
        return BinarySlice(labels, self.position, self.spacing, self.cosines, self.origin)


class BinaryVolume:
    """
    A rater's segmentation: binary slices keyed by unique position.

    Insertion order is irrelevant; slices are always reported sorted by
    ascending position.
    """

    def __init__(
        self,
        slices: Iterable[BinarySlice] = (),
        source: Optional[str] = None,
    ) -> None:
        """
        Initialize volume.

        Args:
            slices: Binary slices; positions must be unique.
            source: Optional rater identity (e.g. ROI name). Presentation only.

        Raises:
            InvalidArgumentError: On non-BinarySlice items or duplicate positions.
        """
        self.source = source
        self._slices: Dict[float, BinarySlice] = {}

        for item in slices:
            self._insert(item)

    def _insert(self, binary_slice: BinarySlice) -> None:
        if not isinstance(binary_slice, BinarySlice):
            raise InvalidArgumentError(
                f"Invalid argument 'slices'. Expected BinarySlice, got {type(binary_slice).__name__}."
            )
        key = position_key(binary_slice.position)
        if key in self._slices:
            raise InvalidArgumentError(
                f"Invalid argument 'slices'. Duplicate slice position {binary_slice.position} "
                f"in volume '{self.source}'."
            )
        self._slices[key] = binary_slice

    def with_slice(self, binary_slice: BinarySlice) -> "BinaryVolume":
        """Return a new volume with one more slice."""
        return BinaryVolume(list(self._slices.values()) + [binary_slice], source=self.source)

    @property
    def slices(self) -> List[BinarySlice]:
        """Slices sorted by ascending position."""
        return [self._slices[key] for key in sorted(self._slices)]

    @property
    def positions(self) -> List[float]:
        return [s.position for s in self.slices]

    def __len__(self) -> int:
        return len(self._slices)

    def __iter__(self):
        return iter(self.slices)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BinaryVolume):
            return NotImplemented
        return self.source == other.source and self.slices == other.slices

    def __hash__(self) -> int:
        return hash((self.source, tuple(self.slices)))

    def __repr__(self) -> str:
        return f"BinaryVolume(source={self.source!r}, slices={len(self)})"

    @property
    def columns(self) -> Optional[int]:
        return self.slices[0].columns if self._slices else None

    @property
    def rows(self) -> Optional[int]:
        return self.slices[0].rows if self._slices else None

    def slice_at(self, position: float) -> Optional[BinarySlice]:
        """Slice at a position, or None if this rater did not supply one."""
        return self._slices.get(position_key(position))

    def to_array(self) -> np.ndarray:
        """
        Stack slices into a 3D array sorted by position.

        Returns:
            uint8 array of shape (slices, rows, columns).

        Raises:
            InvalidArgumentError: If the volume has no slices.
            ShapeMismatchError: If slices differ in shape.
        """
        slices = self.slices
        if not slices:
            raise InvalidArgumentError(f"Volume '{self.source}' has no slices.")

        shapes = sorted({s.shape for s in slices})
        if len(shapes) > 1:
            raise ShapeMismatchError(
                f"Volume '{self.source}' has slices of different shapes: {shapes}."
            )

        return np.stack([s.labels for s in slices]).astype(np.uint8)

    @property
    def positive_count(self) -> int:
        return sum(s.positive_count for s in self._slices.values())

    @classmethod
    def from_array(
        cls,
        array: np.ndarray,
        positions: Optional[Sequence[float]] = None,
        spacing: Tuple[float, float] = (1.0, 1.0),
        cosines: Tuple[float, ...] = AXIAL_COSINES,
        origin: Tuple[float, ...] = (0.0, 0.0, 0.0),
        source: Optional[str] = None,
    ) -> "BinaryVolume":
        """
        Build a volume from a dense (slices, rows, columns) label stack.

        Args:
            array: Binary array of shape (slices, rows, columns); 2D input is
                treated as a single slice.
            positions: Position of each slice; defaults to 0, 1, 2, ...
            spacing: Pixel spacing shared by all slices.
            cosines: Orientation cosines shared by all slices.
            origin: First-pixel position shared by all slices.
            source: Optional rater identity.

        Returns:
            BinaryVolume instance.
        """
        array = np.asarray(array)
        if array.ndim == 2:
            array = array[np.newaxis]
        if array.ndim != 3:
            raise InvalidArgumentError(
                f"Invalid argument 'array'. Expected 2D or 3D array, got {array.ndim}D."
            )

        if positions is None:
            positions = [float(i) for i in range(array.shape[0])]
        if len(positions) != array.shape[0]:
            raise InvalidArgumentError(
                f"Invalid argument 'positions'. Expected {array.shape[0]} positions, got {len(positions)}."
            )

        slices = [
            BinarySlice(array[i], positions[i], spacing, cosines, origin)
            for i in range(array.shape[0])
        ]
        return cls(slices, source=source)

    @classmethod
    def from_threshold(
        cls,
        values: np.ndarray,
        positions: Optional[Sequence[float]] = None,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
        spacing: Tuple[float, float] = (1.0, 1.0),
        cosines: Tuple[float, ...] = AXIAL_COSINES,
        origin: Tuple[float, ...] = (0.0, 0.0, 0.0),
        source: Optional[str] = None,
    ) -> "BinaryVolume":
        """
        Build a volume marking voxels inside a value window (e.g. a dose level).

        Args:
            values: Array of shape (slices, rows, columns).
            positions: Slice positions.
            minimum: Inclusive lower limit.
            maximum: Inclusive upper limit.
            spacing: Pixel spacing.
            cosines: Orientation cosines.
            origin: First-pixel position.
            source: Optional rater identity.

        Returns:
            BinaryVolume instance.

        Raises:
            InvalidArgumentError: If neither limit is given.
        """
        if minimum is None and maximum is None:
            raise InvalidArgumentError("Need at least one limit. Neither 'minimum' nor 'maximum' was given.")

        values = np.asarray(values, dtype=np.float64)
        marked = np.ones(values.shape, dtype=bool)
        if minimum is not None:
            marked &= values >= float(minimum)
        if maximum is not None:
            marked &= values <= float(maximum)

        return cls.from_array(
            marked.astype(np.uint8), positions, spacing, cosines, origin, source
        )

    @classmethod
    def filled_like(cls, volume: "BinaryVolume", source: Optional[str] = None) -> "BinaryVolume":
        """A volume with every pixel positive on the same slices and geometry."""
        slices = [s.with_labels(np.ones(s.shape, dtype=np.uint8)) for s in volume.slices]
        return cls(slices, source=source)
