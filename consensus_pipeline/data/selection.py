"""
Sparse positive-pixel selections.

An IndexSelection holds flat pixel indices into one slice grid. Indices are
always row-major: ``index = row * columns + col``, which is exactly numpy's
C-order flattening of a ``(rows, columns)`` array. The aligner and the
consensus estimator both rely on this encoding.
"""

from typing import Iterable, Optional, Tuple, Union

import numpy as np

from ..errors import InvalidArgumentError, InvalidIndicesError


def _validate_indices(indices: Union[np.ndarray, Iterable[int]]) -> np.ndarray:
    """Convert input to a 1D int64 array, rejecting anything not a non-negative integer."""
    if isinstance(indices, np.ndarray):
        if indices.size and indices.dtype.kind not in "iu":
            raise InvalidIndicesError(
                f"Invalid argument 'indices'. Expected integer array, got dtype {indices.dtype}."
            )
        array = indices.astype(np.int64, copy=True)
    else:
        try:
            items = list(indices)
        except TypeError:
            raise InvalidIndicesError(
                f"Invalid argument 'indices'. Expected a sequence of integers, got {type(indices).__name__}."
            ) from None
        bad = sorted(
            {
                type(item).__name__
                for item in items
                if isinstance(item, (bool, np.bool_))
                or not isinstance(item, (int, np.integer))
            }
        )
        if bad:
            raise InvalidIndicesError(
                f"Invalid argument 'indices'. Expected only integers, got {bad}."
            )
        array = np.asarray(items, dtype=np.int64).reshape(-1)

    if array.ndim != 1:
        raise InvalidIndicesError(
            f"Invalid argument 'indices'. Expected 1D indices, got {array.ndim}D."
        )
    if array.size and array.min() < 0:
        raise InvalidIndicesError(
            f"Invalid argument 'indices'. Expected non-negative indices, got {int(array.min())}."
        )

    array.setflags(write=False)
    return array


def _validate_extent(value: Optional[int], name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
        raise InvalidIndicesError(
            f"Invalid argument '{name}'. Expected positive integer, got {type(value).__name__}."
        )
    if value < 1:
        raise InvalidIndicesError(
            f"Invalid argument '{name}'. Expected positive integer, got {value}."
        )
    return int(value)


def _validate_delta(value: int, name: str) -> int:
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
        raise InvalidArgumentError(
            f"Invalid argument '{name}'. Expected Integer, got {type(value).__name__}."
        )
    return int(value)


class IndexSelection:
    """
    Immutable set of positive pixel indices within one slice grid.

    Every shifting operation returns a new selection; the receiver is never
    modified.
    """

    __slots__ = ("_indices", "_columns", "_rows")

    def __init__(
        self,
        indices: np.ndarray,
        columns: int,
        rows: Optional[int] = None,
    ) -> None:
        """
        Initialize selection. Prefer :meth:`create`, which validates input.

        Args:
            indices: Flat row-major pixel indices.
            columns: Column count of the grid the indices refer to.
            rows: Row count of the grid (needed for cropping and densifying).
        """
        self._indices = indices
        self._columns = columns
        self._rows = rows

    @classmethod
    def create(
        cls,
        indices: Union[np.ndarray, Iterable[int]],
        columns: int,
        rows: Optional[int] = None,
    ) -> "IndexSelection":
        """
        Create a validated selection.

        Args:
            indices: Flat row-major pixel indices (non-negative integers).
            columns: Column count of the grid.
            rows: Optional row count of the grid.

        Returns:
            IndexSelection instance.

        Raises:
            InvalidIndicesError: If any index is not a non-negative integer,
                lies beyond the grid when ``rows`` is given, or if columns
                or rows is not a positive integer.
        """
        columns = _validate_extent(columns, "columns")
        if columns is None:
            raise InvalidIndicesError("Invalid argument 'columns'. Expected positive integer, got None.")
        rows = _validate_extent(rows, "rows")
        array = _validate_indices(indices)

        if rows is not None and array.size and array.max() >= rows * columns:
            raise InvalidIndicesError(
                f"Invalid argument 'indices'. Index {int(array.max())} exceeds grid of "
                f"{rows}x{columns} pixels."
            )

        return cls(array, columns, rows)

    @classmethod
    def from_mask(cls, mask: np.ndarray) -> "IndexSelection":
        """
        Create a selection of the positive pixels of a 2D label grid.

        Args:
            mask: Array of shape (rows, columns).

        Returns:
            Selection with the grid's columns and rows.
        """
        mask = np.asarray(mask)
        if mask.ndim != 2:
            raise InvalidArgumentError(
                f"Invalid argument 'mask'. Expected 2D array, got {mask.ndim}D."
            )
        rows, columns = mask.shape
        return cls.create(np.flatnonzero(mask), columns, rows)

    @property
    def indices(self) -> np.ndarray:
        """Read-only flat indices."""
        return self._indices

    @property
    def grid_columns(self) -> int:
        return self._columns

    @property
    def grid_rows(self) -> Optional[int]:
        return self._rows

    def __len__(self) -> int:
        return int(self._indices.size)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IndexSelection):
            return NotImplemented
        return (
            self._columns == other._columns
            and self._rows == other._rows
            and np.array_equal(self._indices, other._indices)
        )

    def __hash__(self) -> int:
        return hash((self._columns, self._rows, self._indices.tobytes()))

    def __repr__(self) -> str:
        return (
            f"IndexSelection(n={len(self)}, columns={self._columns}, rows={self._rows})"
        )

    def columns(self) -> np.ndarray:
        """Column index of each selected pixel, in index order."""
        return self._indices % self._columns

    def rows(self) -> np.ndarray:
        """Row index of each selected pixel, in index order."""
        return self._indices // self._columns

    def decode(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Decode flat indices into (columns, rows) arrays, in index order.

        Returns:
            Tuple of (column indices, row indices).
        """
        return self.columns(), self.rows()

    def _encode(self, cols: np.ndarray, rows: np.ndarray, columns: int) -> np.ndarray:
        return rows * columns + cols

    def shift(self, delta_col: int, delta_row: int) -> "IndexSelection":
        """
        Shift selected pixels by whole columns and rows.

        No bounds check is made on the column axis: a pixel pushed past the
        right edge wraps into the next row. Only use this when the shifted
        set is known to stay inside the grid, otherwise use
        :meth:`shift_and_crop`.

        Args:
            delta_col: Column shift (positive moves right).
            delta_row: Row shift (positive moves down).

        Returns:
            New shifted selection on the same grid.

        Raises:
            InvalidIndicesError: If a shifted pixel encodes to a negative index.
        """
        delta_col = _validate_delta(delta_col, "delta_col")
        delta_row = _validate_delta(delta_row, "delta_row")

        cols, rows = self.decode()
        shifted = self._encode(cols + delta_col, rows + delta_row, self._columns)

        if shifted.size and shifted.min() < 0:
            raise InvalidIndicesError(
                f"Shift ({delta_col}, {delta_row}) moves pixels before the start of the grid."
            )
        shifted.setflags(write=False)
        return IndexSelection(shifted, self._columns, self._rows)

    def shift_columns(self, delta: int) -> "IndexSelection":
        """Shift by ``delta`` columns (see :meth:`shift`)."""
        return self.shift(delta, 0)

    def shift_rows(self, delta: int) -> "IndexSelection":
        """Shift by ``delta`` rows (see :meth:`shift`)."""
        return self.shift(0, delta)

    def shift_and_crop(self, delta_col: int, delta_row: int) -> "IndexSelection":
        """
        Shift selected pixels and drop any that leave the grid.

        Args:
            delta_col: Column shift.
            delta_row: Row shift.

        Returns:
            New selection containing only in-bounds pixels.

        Raises:
            InvalidArgumentError: If the selection does not know its row count.
        """
        if self._rows is None:
            raise InvalidArgumentError(
                "Cropping requires the grid row count. Create the selection with 'rows'."
            )
        return self.to_grid(self._columns, self._rows, delta_col, delta_row)

    def to_grid(
        self,
        columns: int,
        rows: int,
        delta_col: int = 0,
        delta_row: int = 0,
    ) -> "IndexSelection":
        """
        Re-encode the selection into another grid.

        Pixels are decoded with this selection's column count, offset by the
        deltas and encoded with the target column count. Pixels that fall
        outside the target grid are dropped.

        Args:
            columns: Target grid column count.
            rows: Target grid row count.
            delta_col: Column offset of this grid inside the target.
            delta_row: Row offset of this grid inside the target.

        Returns:
            Selection on the target grid.
        """
        columns = _validate_extent(columns, "columns")
        rows = _validate_extent(rows, "rows")
        delta_col = _validate_delta(delta_col, "delta_col")
        delta_row = _validate_delta(delta_row, "delta_row")

        cols, rws = self.decode()
        cols = cols + delta_col
        rws = rws + delta_row
        inside = (cols >= 0) & (cols < columns) & (rws >= 0) & (rws < rows)

        encoded = self._encode(cols[inside], rws[inside], columns)
        encoded.setflags(write=False)
        return IndexSelection(encoded, columns, rows)

    def to_mask(self, rows: Optional[int] = None) -> np.ndarray:
        """
        Materialize the selection as a dense label grid.

        Args:
            rows: Row count; defaults to the selection's own row count.

        Returns:
            uint8 array of shape (rows, columns).
        """
        rows = _validate_extent(rows, "rows") if rows is not None else self._rows
        if rows is None:
            raise InvalidArgumentError(
                "Invalid argument 'rows'. Row count is unknown for this selection."
            )

        mask = np.zeros(rows * self._columns, dtype=np.uint8)
        if self._indices.size:
            if self._indices.max() >= mask.size:
                raise InvalidIndicesError(
                    f"Index {int(self._indices.max())} exceeds grid of {rows}x{self._columns} pixels."
                )
            mask[self._indices] = 1
        return mask.reshape(rows, self._columns)
