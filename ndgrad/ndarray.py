import logging
import math
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from ndgrad.config import get_config
from ndgrad.errors import DimensionError, ShapeError

logger = logging.getLogger(__name__)

Shape = Tuple[int, ...]


########### Shape arithmetic ###########
def compute_stride(shape: Sequence[int]) -> Shape:
    """
    Compute row-major (C order) element strides for a shape.

    ``strides[i]`` is the product of every dimension after ``i``, so the last
    axis always has stride 1. A rank-0 shape has no strides.

    Args:
        shape (Sequence[int]): The shape to compute strides for.

    Returns:
        Tuple[int, ...]: One stride per axis.

    Examples:
        >>> compute_stride((2, 3, 4))
        (12, 4, 1)
    """
    strides: List[int] = []
    acc = 1
    for dim in reversed(shape):
        strides.append(acc)
        acc *= dim
    return tuple(reversed(strides))


def broadcast(a: Sequence[int], b: Sequence[int]) -> Shape:
    """
    Merge two shapes of equal rank under broadcasting rules.

    Axes are compared from the trailing axis backward. Equal sizes are kept, a
    size of 1 is replaced by the other size, and anything else is an error.
    No implicit rank padding happens here; use :func:`broadcast_to` for that.

    Args:
        a (Sequence[int]): The first shape.
        b (Sequence[int]): The second shape.

    Returns:
        Tuple[int, ...]: The merged shape.

    Raises:
        ShapeError: If the ranks differ or any axis is incompatible.
    """
    if len(a) != len(b):
        raise ShapeError(f"Shapes {tuple(a)} and {tuple(b)} are not broadcastable")

    merged: List[int] = []
    for x, y in zip(reversed(a), reversed(b)):
        if x == y:
            merged.append(x)
        elif x == 1:
            merged.append(y)
        elif y == 1:
            merged.append(x)
        else:
            raise ShapeError(f"Shapes {tuple(a)} and {tuple(b)} are not broadcastable")
    return tuple(reversed(merged))


def broadcast_to(
    buf: np.ndarray, shape: Sequence[int], target_shape: Sequence[int]
) -> np.ndarray:
    """
    Materialize a flat buffer of ``shape`` repeated out to ``target_shape``.

    ``shape`` is left-padded with 1s to the rank of ``target_shape``. Each
    padded axis must either match the target axis or be 1, in which case its
    content is repeated ``target`` times.

    Args:
        buf (np.ndarray): Flat row-major buffer holding ``prod(shape)`` elements.
        shape (Sequence[int]): The shape of ``buf``.
        target_shape (Sequence[int]): The shape to expand to.

    Returns:
        np.ndarray: A new flat buffer holding ``prod(target_shape)`` elements.

    Raises:
        ShapeError: If ``target_shape`` has fewer axes than ``shape``, or an
            axis is neither equal to the target nor 1.
    """
    ldiff = len(target_shape) - len(shape)
    if ldiff < 0:
        raise ShapeError(
            f"target_shape length ({len(target_shape)}) is smaller than "
            f"shape length ({len(shape)})"
        )

    padded_shape = (1,) * ldiff + tuple(shape)
    repeat_factors = []
    for p_dim, t_dim in zip(padded_shape, target_shape):
        if p_dim == t_dim:
            repeat_factors.append(1)
        elif p_dim == 1:
            repeat_factors.append(t_dim)
        else:
            raise ShapeError(
                f"Cannot broadcast shape {tuple(shape)} to {tuple(target_shape)}: "
                f"dimension {p_dim} vs {t_dim}"
            )

    if padded_shape == tuple(target_shape):
        return buf.copy()

    logger.debug("Materializing broadcast %s -> %s", tuple(shape), tuple(target_shape))
    # One vectorized repeat per broadcast axis, outermost first.
    block = buf.reshape(padded_shape)
    for axis, repeats in enumerate(repeat_factors):
        if repeats != 1:
            block = np.repeat(block, repeats, axis=axis)
    return np.array(block, copy=True).reshape(-1)


class MultiIndexIterator:
    """
    Iterate every coordinate of an N-dimensional box in row-major order.

    The last axis increments fastest and carries into the axis on its left
    when it overflows. The iterator is single-pass: once exhausted it stays
    exhausted.

    A rank-0 shape yields exactly one empty tuple. A shape with any zero-sized
    axis yields nothing.

    Examples:
        >>> list(MultiIndexIterator((2, 2)))
        [(0, 0), (0, 1), (1, 0), (1, 1)]
    """

    def __init__(self, shape: Sequence[int]):
        self.shape = tuple(shape)
        if all(dim > 0 for dim in self.shape):
            self._current: Optional[List[int]] = [0] * len(self.shape)
        else:
            self._current = None

    def __iter__(self) -> "MultiIndexIterator":
        return self

    def __next__(self) -> Shape:
        if self._current is None:
            raise StopIteration

        result = tuple(self._current)
        for axis in reversed(range(len(self.shape))):
            if self._current[axis] + 1 < self.shape[axis]:
                self._current[axis] += 1
                for inner in range(axis + 1, len(self.shape)):
                    self._current[inner] = 0
                return result

        self._current = None
        return result


def _offset(index: Sequence[int], strides: Sequence[int]) -> int:
    return sum(i * s for i, s in zip(index, strides))


def _batch_slice(buf: np.ndarray, shape: Shape, batch_index: Shape) -> np.ndarray:
    """
    Return the contiguous block of ``buf`` addressed by a leading-axes index.

    Args:
        buf (np.ndarray): Flat buffer of ``shape``.
        shape (Tuple[int, ...]): Full shape of ``buf``.
        batch_index (Tuple[int, ...]): Coordinates along the leading axes.

    Returns:
        np.ndarray: A view over the ``prod(shape[len(batch_index):])`` elements.
    """
    start = _offset(batch_index, compute_stride(shape))
    size = math.prod(shape[len(batch_index) :])
    return buf[start : start + size]


class NDArray:
    """
    A dense, row-major N-dimensional array.

    An ``NDArray`` owns a flat one-dimensional numpy buffer ``buf`` and a
    ``shape`` tuple, with ``buf.size == prod(shape)``. Arrays are values:
    every operation returns a new ``NDArray`` and leaves its operands alone.
    The element type is whatever numeric numpy dtype the buffer holds.
    """

    def __init__(
        self, buf: Any, shape: Sequence[int], dtype: Optional[Any] = None
    ) -> None:
        """
        Initialize an ``NDArray`` from a flat buffer and a shape.

        Args:
            buf (Any): Flat sequence of elements in row-major order. Lists,
                tuples and numpy arrays are accepted.
            shape (Sequence[int]): The dimension sizes.
            dtype (Any, optional): Element dtype. Defaults to the dtype numpy
                infers from ``buf``.

        The buffer is copied and made read-only, so later changes to ``buf``
        do not reach the array.

        Raises:
            ShapeError: If a dimension is negative, ``buf`` is nested, or
                ``len(buf)`` differs from ``prod(shape)``.
        """
        shape = tuple(int(dim) for dim in shape)
        if any(dim < 0 for dim in shape):
            raise ShapeError(f"Dimensions must be non-negative, got {shape}")

        data = np.array(buf, dtype=dtype, copy=True)
        if data.ndim > 1:
            raise ShapeError(
                f"Buffer must be flat, got {data.ndim} dimensions; use NDArray.array"
            )
        data = data.reshape(-1)
        expected = math.prod(shape)
        if data.size != expected:
            raise ShapeError(
                f"Buffer of length {data.size} does not match shape {shape} "
                f"({expected} elements)"
            )

        data.flags.writeable = False
        self.buf: np.ndarray = data
        self.shape: Shape = shape

    @classmethod
    def new(
        cls, buf: Any, shape: Sequence[int], dtype: Optional[Any] = None
    ) -> "NDArray":
        return cls(buf, shape, dtype=dtype)

    @classmethod
    def array(cls, data: Any, dtype: Optional[Any] = None) -> "NDArray":
        """
        Build an ``NDArray`` from a (possibly nested) sequence, scalar or numpy array.

        Args:
            data (Any): The values. The nesting determines the shape.
            dtype (Any, optional): Element dtype. Inferred by numpy when omitted.

        Returns:
            NDArray: The new array.
        """
        arr = np.asarray(data, dtype=dtype)
        return cls(arr.reshape(-1), arr.shape)

    @classmethod
    def ones(cls, shape: Sequence[int], dtype: Optional[Any] = None) -> "NDArray":
        """
        Build an array of ones, the seed value for gradient propagation.

        Args:
            shape (Sequence[int]): The shape.
            dtype (Any, optional): Element dtype. Defaults to the configured
                ``default_dtype``.

        Returns:
            NDArray: An array of ``shape`` filled with 1.
        """
        dtype = dtype if dtype is not None else get_config().default_dtype
        return cls(np.ones(math.prod(shape), dtype=dtype), shape)

    @classmethod
    def ones_like(cls, other: "NDArray") -> "NDArray":
        return cls.ones(other.shape, dtype=other.dtype)

    @classmethod
    def zeros(cls, shape: Sequence[int], dtype: Optional[Any] = None) -> "NDArray":
        dtype = dtype if dtype is not None else get_config().default_dtype
        return cls(np.zeros(math.prod(shape), dtype=dtype), shape)

    @classmethod
    def zeros_like(cls, other: "NDArray") -> "NDArray":
        return cls.zeros(other.shape, dtype=other.dtype)

    @property
    def size(self) -> int:
        return int(self.buf.size)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def dtype(self) -> np.dtype:
        return self.buf.dtype

    @property
    def strides(self) -> Shape:
        """Element (not byte) strides of this array's row-major layout."""
        return compute_stride(self.shape)

    ########### Binary ops ###########
    def add(self, other: "NDArray") -> "NDArray":
        """
        Element-wise sum with broadcasting.

        Both operands must have the same rank. Axes of size 1 are repeated to
        match the other operand.

        Args:
            other (NDArray): The array to add.

        Returns:
            NDArray: The sum, with shape ``broadcast(self.shape, other.shape)``.

        Raises:
            ShapeError: If the shapes are not broadcastable.
        """
        merged = broadcast(self.shape, other.shape)
        lhs = broadcast_to(self.buf, self.shape, merged)
        rhs = broadcast_to(other.buf, other.shape, merged)
        return NDArray(lhs + rhs, merged)

    def matmul(self, other: "NDArray") -> "NDArray":
        """
        Batched matrix multiplication.

        The last two axes of each operand are the matrix axes; everything
        before them is a batch axis. The batch axes of both operands must have
        equal rank and are broadcast against each other, then each ``m x n``
        by ``n x p`` pair of matrices is multiplied independently.

        Args:
            other (NDArray): The right-hand operand.

        Returns:
            NDArray: An array of shape ``batch + (m, p)``.

        Raises:
            DimensionError: If either operand has rank < 2, or the inner
                dimensions disagree.
            ShapeError: If the batch axes differ in rank or are incompatible.

        Examples:
            >>> NDArray.ones((2, 3)).matmul(NDArray.ones((3, 4))).tolist()
            [[3, 3, 3, 3], [3, 3, 3, 3]]
        """
        a_shape, b_shape = self.shape, other.shape
        if len(a_shape) < 2 or len(b_shape) < 2:
            raise DimensionError(
                f"matmul requires operands of rank >= 2, got {a_shape} and {b_shape}"
            )

        a_batch, b_batch = a_shape[:-2], b_shape[:-2]
        m, n = a_shape[-2:]
        n_other, p = b_shape[-2:]
        if n != n_other:
            raise DimensionError(
                f"matmul inner dimensions do not match: {a_shape} @ {b_shape}"
            )

        batch_shape = broadcast(a_batch, b_batch)
        a_full = batch_shape + (m, n)
        b_full = batch_shape + (n, p)
        a_buf = broadcast_to(self.buf, a_shape, a_full)
        b_buf = broadcast_to(other.buf, b_shape, b_full)

        out_shape = batch_shape + (m, p)
        out_strides = compute_stride(out_shape)
        out = np.zeros(math.prod(out_shape), dtype=np.result_type(self.dtype, other.dtype))

        for batch_index in MultiIndexIterator(batch_shape):
            a_mat = _batch_slice(a_buf, a_full, batch_index).reshape(m, n)
            b_mat = _batch_slice(b_buf, b_full, batch_index).reshape(n, p)
            start = _offset(batch_index, out_strides)
            out[start : start + m * p] = np.matmul(a_mat, b_mat).reshape(-1)

        return NDArray(out, out_shape)

    ########### Reductions ###########
    def sum_to(self, shape: Sequence[int]) -> "NDArray":
        """
        Reduce a broadcast array back down to ``shape``.

        This undoes :func:`broadcast_to`: leading axes missing from ``shape``
        are summed out, then every axis where ``shape`` has size 1 but this
        array does not is summed with the axis kept.

        Args:
            shape (Sequence[int]): The shape to reduce to. It must be
                expandable to ``self.shape``.

        Returns:
            NDArray: The reduced array. ``self`` is returned unchanged when the
            shapes already match.

        Raises:
            ShapeError: If ``shape`` could not have been broadcast to ``self.shape``.
        """
        shape = tuple(shape)
        if shape == self.shape:
            return self

        lead = self.ndim - len(shape)
        if lead < 0 or any(
            t_dim not in (1, s_dim) for t_dim, s_dim in zip(shape, self.shape[lead:])
        ):
            raise ShapeError(f"Cannot reduce shape {self.shape} to {shape}")

        grid = self.buf.reshape(self.shape)
        if lead:
            grid = grid.sum(axis=tuple(range(lead)), dtype=self.dtype)
        axes = tuple(
            dim for dim in range(len(shape)) if shape[dim] == 1 and grid.shape[dim] != 1
        )
        if axes:
            grid = grid.sum(axis=axes, keepdims=True, dtype=self.dtype)
        return NDArray(grid.reshape(-1), shape)

    ########### Conversions ###########
    def to_numpy(self) -> np.ndarray:
        return self.buf.reshape(self.shape).copy()

    def tolist(self) -> Any:
        return self.to_numpy().tolist()

    def __add__(self, other: "NDArray") -> "NDArray":
        if not isinstance(other, NDArray):
            return NotImplemented
        return self.add(other)

    def __matmul__(self, other: "NDArray") -> "NDArray":
        if not isinstance(other, NDArray):
            return NotImplemented
        return self.matmul(other)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NDArray):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self.buf, other.buf))

    __hash__ = None

    def __repr__(self) -> str:
        return f"NDArray(buf={self.buf.tolist()}, shape={list(self.shape)})"
