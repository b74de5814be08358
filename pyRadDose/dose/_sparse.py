"""Column-wise assembly of sparse dose influence matrices."""

import logging
import math
from typing import Optional

import numpy as np
from scipy import sparse

from ..core import ConfigurationError

logger = logging.getLogger(__name__)


class SparseColumnBuilder:
    """
    Assemble a sparse matrix column by column.

    Columns are buffered and moved into the persistent triplet arrays in
    batches of ``container_size`` columns. The persistent arrays grow
    geometrically, so a flush only copies the buffered columns. The final
    matrix does not depend on the container size.

    Parameters
    ----------
    num_rows : int
        Number of rows (voxels).
    num_columns : int
        Number of columns (bixels).
    container_size : int, optional
        Number of columns buffered before a flush. Defaults to a tenth of the
        number of columns.
    dtype : np.dtype
        Data type of the stored values.
    """

    def __init__(
        self,
        num_rows: int,
        num_columns: int,
        container_size: Optional[int] = None,
        dtype: np.dtype = np.float32,
    ):
        if container_size is None:
            container_size = max(1, math.ceil(num_columns / 10))

        if int(container_size) < 1:
            raise ConfigurationError(
                f"Container size needs to be a positive integer, got {container_size}"
            )

        self.num_rows = int(num_rows)
        self.num_columns = int(num_columns)
        self.container_size = int(container_size)
        self.dtype = dtype

        self._written = np.zeros(self.num_columns, dtype=bool)

        self._buffer_columns: list[np.ndarray] = []
        self._buffer_rows: list[np.ndarray] = []
        self._buffer_values: list[np.ndarray] = []

        # persistent triplet arrays, preallocated and grown geometrically
        self._columns = np.empty(0, dtype=np.int64)
        self._rows = np.empty(0, dtype=np.int64)
        self._values = np.empty(0, dtype=self.dtype)
        self._num_stored = 0
        self._num_flushes = 0
        self._num_resizes = 0

    @property
    def num_buffered(self) -> int:
        """Number of columns waiting for the next flush."""
        return len(self._buffer_columns)

    @property
    def nnz(self) -> int:
        """Number of stored entries (flushed and buffered)."""
        return int(self._num_stored + sum(v.size for v in self._buffer_values))

    def append(self, column_ix: int, rows: np.ndarray, values: np.ndarray):
        """
        Buffer the entries of one column.

        Raises
        ------
        IndexError
            If the column or a row index is out of range.
        ValueError
            If the column has already been written or rows and values differ
            in length.
        """
        column_ix = int(column_ix)
        if column_ix < 0 or column_ix >= self.num_columns:
            raise IndexError(f"Column {column_ix} out of range for {self.num_columns} columns")
        if self._written[column_ix]:
            raise ValueError(f"Column {column_ix} has already been written")

        rows = np.asarray(rows, dtype=np.int64).ravel()
        values = np.asarray(values, dtype=self.dtype).ravel()
        if rows.shape != values.shape:
            raise ValueError("Row indices and values need to have the same length")
        if rows.size > 0 and (rows.min() < 0 or rows.max() >= self.num_rows):
            raise IndexError(f"Row index out of range for {self.num_rows} rows")

        self._written[column_ix] = True
        self._buffer_columns.append(np.full(rows.size, column_ix, dtype=np.int64))
        self._buffer_rows.append(rows)
        self._buffer_values.append(values)

        if self.num_buffered >= self.container_size:
            self.flush()

    def flush(self):
        """Move all buffered columns into the persistent arrays."""
        if not self._buffer_columns:
            return

        num_new = sum(v.size for v in self._buffer_values)
        start = self._num_stored
        end = start + num_new
        self._reserve(end)

        self._columns[start:end] = np.concatenate(self._buffer_columns)
        self._rows[start:end] = np.concatenate(self._buffer_rows)
        self._values[start:end] = np.concatenate(self._buffer_values)
        self._num_stored = end

        self._buffer_columns.clear()
        self._buffer_rows.clear()
        self._buffer_values.clear()

        self._num_flushes += 1
        logger.debug("Flush %d: %d entries stored", self._num_flushes, self._num_stored)

    def _reserve(self, size: int):
        """Grow the persistent arrays to hold at least ``size`` entries."""
        capacity = self._values.size
        if size <= capacity:
            return

        new_capacity = max(size, 2 * capacity, self.num_rows)
        logger.debug("Resizing sparse storage from %d to %d entries", capacity, new_capacity)
        self._columns.resize((new_capacity,), refcheck=False)
        self._rows.resize((new_capacity,), refcheck=False)
        self._values.resize((new_capacity,), refcheck=False)
        self._num_resizes += 1

    def finalize(self) -> sparse.csc_array:
        """
        Flush the remaining columns and create the sparse matrix.

        Returns
        -------
        sparse.csc_array
            Matrix of shape (num_rows, num_columns) with sorted indices and
            without explicit zeros.
        """
        self.flush()

        columns = self._columns[: self._num_stored]
        rows = self._rows[: self._num_stored]
        values = self._values[: self._num_stored]

        order = np.argsort(columns, kind="stable")
        indptr = np.zeros(self.num_columns + 1, dtype=np.int64)
        np.cumsum(np.bincount(columns, minlength=self.num_columns), out=indptr[1:])

        matrix = sparse.csc_array(
            (values[order], rows[order], indptr),
            shape=(self.num_rows, self.num_columns),
            dtype=self.dtype,
        )

        matrix.eliminate_zeros()
        if not matrix.has_canonical_format:
            matrix.sum_duplicates()
        matrix.sort_indices()

        return matrix
