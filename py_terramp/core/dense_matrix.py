"""
Dense row-major float matrix used throughout terrain amplification.

The matrix owns a flat float32 buffer of ``rows * columns`` samples. Range
accessors always return newly allocated copies, never views into the
buffer. Ranges are half-open Python ``range`` objects; a single integer
selects one row or column and ``ALL`` selects the whole axis.

The binary format is ``int32 rows, int32 columns`` followed by
``rows * columns`` float32 values in row-major order, all big-endian.
"""

import gzip
import math
import struct
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

import numpy as np

from ..utils.parallel import partition, resolve_workers


class _WholeAxis:
    """Marker selecting every row or every column of a matrix."""

    def __repr__(self) -> str:
        return "ALL"


ALL = _WholeAxis()

AxisRange = Union[int, range, _WholeAxis]

_HEADER = struct.Struct(">ii")
_FLOAT_BE = np.dtype(">f4")


def read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read exactly ``size`` bytes or raise EOFError."""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            raise EOFError(f"Unexpected end of stream: needed {size} bytes, got {size - remaining}")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class DenseMatrix:
    """
    Row-major 2-D float32 matrix.

    Args:
        rows: Number of rows
        columns: Number of columns
        array: Optional flat buffer of length ``rows * columns`` to adopt
        init: Optional generator called with each linear index
    """

    def __init__(
        self,
        rows: int,
        columns: int,
        array: Optional[np.ndarray] = None,
        init: Optional[Callable[[int], float]] = None,
    ):
        if rows < 0 or columns < 0:
            raise ValueError(f"Matrix dimensions must be non-negative, got {rows}x{columns}")
        self.rows = int(rows)
        self.columns = int(columns)
        size = self.rows * self.columns

        if array is not None:
            array = np.asarray(array, dtype=np.float32).reshape(-1)
            if array.size != size:
                raise ValueError(
                    f"Buffer of length {array.size} does not fit a {rows}x{columns} matrix"
                )
        elif init is not None:
            array = np.fromiter((init(i) for i in range(size)), dtype=np.float32, count=size)
        else:
            array = np.zeros(size, dtype=np.float32)
        self.array = array

    @classmethod
    def from_numpy(cls, values: np.ndarray) -> "DenseMatrix":
        """Create a matrix holding a copy of a 2-D array."""
        values = np.asarray(values, dtype=np.float32)
        if values.ndim != 2:
            raise ValueError(f"Expected a 2-D array, got {values.ndim} dimensions")
        return cls(values.shape[0], values.shape[1], values.copy())

    @property
    def size(self) -> int:
        return self.rows * self.columns

    @property
    def shape(self):
        return self.rows, self.columns

    @property
    def all_rows(self) -> range:
        return range(self.rows)

    @property
    def all_columns(self) -> range:
        return range(self.columns)

    def grid(self) -> np.ndarray:
        """2-D view of the backing buffer (aliases the matrix)."""
        return self.array.reshape(self.rows, self.columns)

    def to_numpy(self) -> np.ndarray:
        """2-D copy of the matrix contents."""
        return self.grid().copy()

    # Element access

    def _offset(self, key) -> int:
        """Linear offset of an element; negative indices are rejected."""
        if isinstance(key, tuple):
            row, column = (int(index) for index in key)
            if not (0 <= row < self.rows and 0 <= column < self.columns):
                raise IndexError(f"Index ({row}, {column}) out of bounds for {self.rows}x{self.columns} matrix")
            return row * self.columns + column
        index = int(key)
        if not 0 <= index < self.size:
            raise IndexError(f"Index {index} out of bounds for matrix of size {self.size}")
        return index

    def __getitem__(self, key) -> float:
        return float(self.array[self._offset(key)])

    def __setitem__(self, key, value: float) -> None:
        self.array[self._offset(key)] = value

    # Range access

    @staticmethod
    def _axis_slice(axis: AxisRange, length: int) -> slice:
        if axis is ALL:
            return slice(0, length)
        if isinstance(axis, (int, np.integer)):
            axis = range(int(axis), int(axis) + 1)
        if not isinstance(axis, range):
            raise TypeError(f"Expected int, range or ALL, got {type(axis).__name__}")
        if axis.step != 1:
            raise ValueError(f"Ranges must be contiguous, got step {axis.step}")
        start, stop = axis.start, max(axis.start, axis.stop)
        if start < 0 or stop > length:
            raise IndexError(f"Range [{start}, {stop}) out of bounds for axis of length {length}")
        return slice(start, stop)

    def _block(self, rows: AxisRange, columns: AxisRange) -> np.ndarray:
        return self.grid()[self._axis_slice(rows, self.rows), self._axis_slice(columns, self.columns)]

    def slice_get(self, rows: AxisRange, columns: AxisRange, alpha: Optional[float] = None) -> "DenseMatrix":
        """Copy a rectangular range, optionally scaled by ``alpha``."""
        block = self._block(rows, columns)
        values = block * np.float32(alpha) if alpha is not None else block.copy()
        return DenseMatrix(block.shape[0], block.shape[1], values)

    def slice_set(self, rows: AxisRange, columns: AxisRange, values: "DenseMatrix") -> None:
        """Copy ``values`` into a rectangular range."""
        block = self._block(rows, columns)
        if block.shape != values.shape:
            raise ValueError(f"Cannot assign {values.shape} values into a {block.shape} range")
        block[...] = values.grid()

    # Elementwise arithmetic

    def _elementwise(self, other, operation) -> "DenseMatrix":
        if isinstance(other, DenseMatrix):
            if other.shape != self.shape:
                raise ValueError(f"Shape mismatch: {self.shape} vs {other.shape}")
            result = operation(self.array, other.array)
        else:
            result = operation(self.array, np.float32(other))
        return DenseMatrix(self.rows, self.columns, result.astype(np.float32, copy=False))

    def __add__(self, other) -> "DenseMatrix":
        return self._elementwise(other, np.add)

    def __sub__(self, other) -> "DenseMatrix":
        return self._elementwise(other, np.subtract)

    def __mul__(self, other) -> "DenseMatrix":
        return self._elementwise(other, np.multiply)

    def __truediv__(self, other) -> "DenseMatrix":
        return self._elementwise(other, np.divide)

    def __eq__(self, other) -> bool:
        if not isinstance(other, DenseMatrix):
            return NotImplemented
        return self.shape == other.shape and np.array_equal(self.array, other.array)

    __hash__ = None

    def __repr__(self) -> str:
        return f"DenseMatrix(rows={self.rows}, columns={self.columns})"

    # Reductions

    def mean(self, rows: AxisRange = ALL, columns: AxisRange = ALL) -> float:
        """Mean over a range, NaN when the range is empty."""
        block = self._block(rows, columns)
        if block.size == 0:
            return math.nan
        return float(np.float32(block.mean(dtype=np.float64)))

    def sum(self, rows: AxisRange = ALL, columns: AxisRange = ALL) -> float:
        block = self._block(rows, columns)
        return float(np.float32(block.sum(dtype=np.float64)))

    def row_norm(self, row: int, columns: AxisRange = ALL) -> float:
        """Euclidean norm of one row over a column range."""
        values = self._block(row, columns).astype(np.float64)
        return float(np.float32(math.sqrt(float(np.sum(values * values)))))

    def column_norm(self, column: int, rows: AxisRange = ALL) -> float:
        """Euclidean norm of one column over a row range."""
        values = self._block(rows, column).astype(np.float64)
        return float(np.float32(math.sqrt(float(np.sum(values * values)))))

    def min(self) -> float:
        return float(self.array.min()) if self.size else math.nan

    def max(self) -> float:
        return float(self.array.max()) if self.size else math.nan

    # Shape operations

    def transpose(self) -> "DenseMatrix":
        return DenseMatrix(self.columns, self.rows, self.grid().T.copy())

    def parallel_transpose(self, workers: Optional[int] = None) -> "DenseMatrix":
        """Transpose with row bands copied concurrently."""
        workers = resolve_workers(workers)
        source = self.grid()
        output = np.zeros((self.columns, self.rows), dtype=np.float32)

        def copy_band(band: range) -> None:
            output[:, band.start:band.stop] = source[band.start:band.stop, :].T

        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(copy_band, partition(self.rows, workers)))
        return DenseMatrix(self.columns, self.rows, output)

    def rotate90_clockwise(self) -> None:
        """Rotate a square matrix in place."""
        if self.rows != self.columns:
            raise ValueError("Rows must equal columns.")
        self.array[:] = np.rot90(self.grid(), -1).reshape(-1)

    # Multiplication

    def _check_multiply(self, other: "DenseMatrix") -> None:
        if self.columns != other.rows:
            raise ValueError(f"A.Columns: {self.columns} did not match B.Rows {other.rows}.")

    def _multiply_rows(self, other: np.ndarray, output: np.ndarray, rows: range) -> None:
        left = self.grid()
        for i in rows:
            row = left[i]
            # Zero left-hand entries contribute nothing
            nonzero = np.flatnonzero(row)
            if nonzero.size:
                output[i] = row[nonzero] @ other[nonzero]

    def matrix_multiply(self, other: "DenseMatrix") -> "DenseMatrix":
        self._check_multiply(other)
        output = np.zeros((self.rows, other.columns), dtype=np.float32)
        self._multiply_rows(other.grid(), output, self.all_rows)
        return DenseMatrix(self.rows, other.columns, output)

    def parallel_matrix_multiply(self, other: "DenseMatrix", workers: Optional[int] = None) -> "DenseMatrix":
        """Matrix multiply with output rows sharded across a thread pool."""
        self._check_multiply(other)
        workers = resolve_workers(workers)
        right = other.grid()
        output = np.zeros((self.rows, other.columns), dtype=np.float32)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(lambda band: self._multiply_rows(right, output, band), partition(self.rows, workers)))
        return DenseMatrix(self.rows, other.columns, output)

    # Serialization

    def write(self, stream: BinaryIO) -> None:
        stream.write(_HEADER.pack(self.rows, self.columns))
        stream.write(self.array.astype(_FLOAT_BE).tobytes())

    @classmethod
    def read(cls, stream: BinaryIO) -> "DenseMatrix":
        rows, columns = _HEADER.unpack(read_exact(stream, _HEADER.size))
        if rows < 0 or columns < 0:
            raise ValueError(f"Corrupt matrix header: {rows}x{columns}")
        data = read_exact(stream, rows * columns * _FLOAT_BE.itemsize)
        return cls(rows, columns, np.frombuffer(data, dtype=_FLOAT_BE).astype(np.float32))

    def write_file(self, path: Union[str, Path]) -> None:
        """Write the matrix to a gzip-compressed file."""
        with gzip.open(Path(path), "wb") as stream:
            self.write(stream)

    @classmethod
    def read_file(cls, path: Union[str, Path]) -> "DenseMatrix":
        """Read a matrix from a gzip-compressed file."""
        with gzip.open(Path(path), "rb") as stream:
            return cls.read(stream)
