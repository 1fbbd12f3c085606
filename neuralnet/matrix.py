"""
matrix.py
~~~~~~~~~

Dense two-dimensional matrix used for layer parameters and gradients.

The matrix wraps a float64 numpy array. Every operation returns a new
Matrix and leaves its operands untouched; the only in-place mutation is
``set``, which layers never use on shared data.
"""

from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from neuralnet.errors import IndexOutOfRangeError, ShapeMismatchError, ValidationError

ArrayLike = Union['Matrix', np.ndarray, Sequence[Sequence[float]]]


class Matrix:
    """
    Fixed-size 2D numeric container with linear algebra operations.

    Attributes:
        rows: Number of rows
        cols: Number of columns
        data: Underlying float64 array of shape (rows, cols)
    """

    def __init__(
        self,
        rows: int,
        cols: int,
        initializer: Optional[Callable[[int, int], float]] = None
    ):
        """
        Create a rows x cols matrix.

        Args:
            rows: Number of rows
            cols: Number of columns
            initializer: Optional function (row, col) -> value. When omitted
                the matrix is filled with zeros.
        """
        if rows < 0 or cols < 0:
            raise ValidationError(
                f"Matrix dimensions must be non-negative, got {rows}x{cols}"
            )
        self.rows = int(rows)
        self.cols = int(cols)
        self.data = np.zeros((self.rows, self.cols), dtype=np.float64)
        if initializer is not None:
            for i in range(self.rows):
                for j in range(self.cols):
                    self.data[i, j] = initializer(i, j)

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def _wrap(cls, array: np.ndarray) -> 'Matrix':
        """Build a matrix that takes ownership of an existing 2D array."""
        matrix = cls.__new__(cls)
        matrix.rows, matrix.cols = array.shape
        matrix.data = array
        return matrix

    @classmethod
    def from_array(cls, array: ArrayLike) -> 'Matrix':
        """
        Create a matrix from a two-dimensional array.

        Args:
            array: Nested sequence, numpy array or Matrix

        Returns:
            Matrix: A new matrix holding a copy of the values

        Raises:
            ValidationError: If the array is empty, ragged or not 2D
        """
        if isinstance(array, Matrix):
            return array.clone()

        if isinstance(array, np.ndarray):
            values = array
        else:
            try:
                rows = list(array)
                if not rows or len(rows[0]) == 0:
                    raise ValidationError("Array cannot be empty")
                width = len(rows[0])
                ragged = any(len(row) != width for row in rows)
            except TypeError:
                raise ValidationError(
                    f"Expected a sequence of rows, got {type(array).__name__}"
                ) from None
            if ragged:
                raise ValidationError("All rows must have the same length")
            values = rows

        try:
            data = np.array(values, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Array is not numeric: {e}") from e

        if data.ndim != 2:
            raise ValidationError(
                f"Expected a 2D array, got {data.ndim} dimension(s)"
            )
        if data.size == 0:
            raise ValidationError("Array cannot be empty")
        return cls._wrap(data)

    @classmethod
    def random(
        cls,
        rows: int,
        cols: int,
        min_value: float = -1.0,
        max_value: float = 1.0
    ) -> 'Matrix':
        """Matrix with values drawn uniformly from [min_value, max_value]."""
        return cls(rows, cols).randomize(min_value, max_value)

    @classmethod
    def zeros(cls, rows: int, cols: int) -> 'Matrix':
        return cls(rows, cols)

    @classmethod
    def ones(cls, rows: int, cols: int) -> 'Matrix':
        return cls._wrap(np.ones((rows, cols), dtype=np.float64))

    @classmethod
    def identity(cls, size: int) -> 'Matrix':
        return cls._wrap(np.eye(size, dtype=np.float64))

    # ------------------------------------------------------------------
    # Element access
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int]:
        return self.rows, self.cols

    def get(self, row: int, col: int) -> float:
        """
        Return the value at (row, col).

        Raises:
            IndexOutOfRangeError: If the coordinates are outside the matrix
        """
        self._validate_indices(row, col)
        return float(self.data[row, col])

    def set(self, row: int, col: int, value: float) -> None:
        """
        Store value at (row, col).

        Raises:
            IndexOutOfRangeError: If the coordinates are outside the matrix
        """
        self._validate_indices(row, col)
        self.data[row, col] = value

    def clone(self) -> 'Matrix':
        return Matrix._wrap(self.data.copy())

    def to_array(self) -> List[List[float]]:
        """Return the values as nested Python lists."""
        return self.data.tolist()

    def to_numpy(self) -> np.ndarray:
        """Return a copy of the values as a numpy array."""
        return self.data.copy()

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def add(self, other: 'Matrix') -> 'Matrix':
        self._validate_dimensions(other, 'add')
        return Matrix._wrap(self.data + other.data)

    def subtract(self, other: 'Matrix') -> 'Matrix':
        self._validate_dimensions(other, 'subtract')
        return Matrix._wrap(self.data - other.data)

    def multiply(self, other: 'Matrix') -> 'Matrix':
        """
        Matrix product self . other.

        Raises:
            ShapeMismatchError: If self.cols != other.rows
        """
        if self.cols != other.rows:
            raise ShapeMismatchError(
                f"Cannot multiply matrices of dimensions "
                f"{self.rows}x{self.cols} and {other.rows}x{other.cols}"
            )
        return Matrix._wrap(self.data @ other.data)

    def hadamard_product(self, other: 'Matrix') -> 'Matrix':
        """Element-wise product of two matrices of equal shape."""
        self._validate_dimensions(other, 'hadamard')
        return Matrix._wrap(self.data * other.data)

    def transpose(self) -> 'Matrix':
        return Matrix._wrap(self.data.T.copy())

    def multiply_scalar(self, scalar: float) -> 'Matrix':
        return Matrix._wrap(self.data * scalar)

    def add_scalar(self, scalar: float) -> 'Matrix':
        return Matrix._wrap(self.data + scalar)

    def add_row_vector(self, vector: 'Matrix') -> 'Matrix':
        """
        Add a 1 x cols matrix to every row.

        Raises:
            ShapeMismatchError: If vector is not 1 x self.cols
        """
        if vector.rows != 1 or vector.cols != self.cols:
            raise ShapeMismatchError(
                f"Cannot broadcast {vector.rows}x{vector.cols} "
                f"over rows of {self.rows}x{self.cols}"
            )
        return Matrix._wrap(self.data + vector.data)

    def column_sums(self) -> 'Matrix':
        """Sum of every column as a 1 x cols matrix."""
        return Matrix._wrap(self.data.sum(axis=0, keepdims=True))

    def map(self, callback: Callable[[float, int, int], float]) -> 'Matrix':
        """Apply callback(value, row, col) to every element."""
        result = np.empty_like(self.data)
        for i in range(self.rows):
            for j in range(self.cols):
                result[i, j] = callback(float(self.data[i, j]), i, j)
        return Matrix._wrap(result)

    def for_each(self, callback: Callable[[float, int, int], Any]) -> None:
        """Call callback(value, row, col) for every element, row by row."""
        for i in range(self.rows):
            for j in range(self.cols):
                callback(float(self.data[i, j]), i, j)

    def randomize(self, min_value: float = -1.0, max_value: float = 1.0) -> 'Matrix':
        """Return a matrix of this shape filled i.i.d. uniform in [min, max]."""
        return Matrix._wrap(
            np.random.uniform(min_value, max_value, size=(self.rows, self.cols))
        )

    # ------------------------------------------------------------------
    # Dunder helpers
    # ------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self.data, other.data))

    def __repr__(self) -> str:
        return f"Matrix({self.rows}x{self.cols})"

    def __str__(self) -> str:
        return "\n".join(
            "\t".join(repr(float(value)) for value in row) for row in self.data
        )

    def _validate_indices(self, row: int, col: int) -> None:
        if row < 0 or row >= self.rows or col < 0 or col >= self.cols:
            raise IndexOutOfRangeError(
                f"Index out of bounds: ({row}, {col}) for matrix of size "
                f"{self.rows}x{self.cols}"
            )

    def _validate_dimensions(self, other: 'Matrix', operation: str) -> None:
        if self.rows != other.rows or self.cols != other.cols:
            raise ShapeMismatchError(
                f"Matrix dimensions do not match for {operation}: "
                f"{self.rows}x{self.cols} and {other.rows}x{other.cols}"
            )
