import math
from unittest import TestCase

import numpy as np
import pytest
import torch  # for comparison

from ndgrad.errors import DimensionError, ShapeError
from ndgrad.ndarray import (
    MultiIndexIterator,
    NDArray,
    broadcast,
    broadcast_to,
    compute_stride,
)


class TestShapeArithmetic(TestCase):
    def test_compute_stride(self):
        assert compute_stride((2, 3, 4)) == (12, 4, 1)
        assert compute_stride((5,)) == (1,)
        assert compute_stride(()) == ()

    def test_compute_stride_matches_suffix_products(self):
        for shape in [(3, 1), (2, 1, 4), (1, 1, 1), (4, 3, 2, 5)]:
            strides = compute_stride(shape)
            for i in range(len(shape)):
                assert strides[i] == math.prod(shape[i + 1 :])

    def test_strides_visit_every_element_once(self):
        shape = (2, 3, 4)
        strides = compute_stride(shape)
        offsets = [
            sum(i * s for i, s in zip(index, strides))
            for index in MultiIndexIterator(shape)
        ]
        assert sorted(offsets) == list(range(math.prod(shape)))
        # Row-major order visits the buffer front to back
        assert offsets == list(range(math.prod(shape)))

    def test_broadcast(self):
        assert broadcast((3, 1), (3, 4)) == (3, 4)
        assert broadcast((1, 4), (3, 1)) == (3, 4)
        assert broadcast((2, 3), (2, 3)) == (2, 3)
        assert broadcast((), ()) == ()

    def test_broadcast_is_symmetric(self):
        pairs = [((3, 1), (3, 4)), ((1, 1, 5), (2, 3, 1)), ((4, 1), (1, 1))]
        for a, b in pairs:
            assert broadcast(a, b) == broadcast(b, a)

    def test_broadcast_incompatible(self):
        with pytest.raises(ShapeError):
            broadcast((3, 4), (2, 4))

    def test_broadcast_rank_mismatch_is_not_padded(self):
        with pytest.raises(ShapeError):
            broadcast((4,), (3, 4))

    def test_broadcast_to_repeats_size_one_axes(self):
        buf = np.array([1, 2, 3])
        out = broadcast_to(buf, (3, 1), (3, 2))
        assert out.tolist() == [1, 1, 2, 2, 3, 3]

        out = broadcast_to(np.array([1, 2]), (1, 2), (3, 2))
        assert out.tolist() == [1, 2, 1, 2, 1, 2]

    def test_broadcast_to_pads_leading_axes(self):
        buf = np.arange(6)
        out = broadcast_to(buf, (2, 3), (2, 2, 3))
        np.testing.assert_array_equal(
            out.reshape(2, 2, 3), np.broadcast_to(buf.reshape(2, 3), (2, 2, 3))
        )

    def test_broadcast_to_matches_numpy(self):
        cases = [
            ((3, 1, 1), (2, 3, 4, 4)),
            ((1, 4), (3, 4)),
            ((2, 1, 3), (2, 5, 3)),
            ((1,), (2, 2)),
        ]
        for shape, target in cases:
            buf = np.random.randn(math.prod(shape))
            out = broadcast_to(buf, shape, target)
            expected = np.broadcast_to(buf.reshape(shape), target).reshape(-1)
            np.testing.assert_array_equal(out, expected)

    def test_broadcast_to_does_not_alias_input(self):
        buf = np.array([1, 2, 3])
        out = broadcast_to(buf, (3,), (3,))
        out[0] = 100
        assert buf[0] == 1

    def test_broadcast_to_errors(self):
        with pytest.raises(ShapeError):
            broadcast_to(np.arange(6), (2, 3), (3,))
        with pytest.raises(ShapeError):
            broadcast_to(np.arange(6), (2, 3), (4, 3))


class TestMultiIndexIterator(TestCase):
    def test_row_major_order(self):
        assert list(MultiIndexIterator((2, 3))) == [
            (0, 0),
            (0, 1),
            (0, 2),
            (1, 0),
            (1, 1),
            (1, 2),
        ]

    def test_yields_product_of_shape(self):
        assert len(list(MultiIndexIterator((2, 3, 4)))) == 24
        assert list(MultiIndexIterator((1, 1))) == [(0, 0)]

    def test_rank_zero_yields_single_empty_index(self):
        assert list(MultiIndexIterator(())) == [()]

    def test_zero_sized_axis_yields_nothing(self):
        assert list(MultiIndexIterator((2, 0, 3))) == []

    def test_is_not_restartable(self):
        it = MultiIndexIterator((2,))
        assert list(it) == [(0,), (1,)]
        assert list(it) == []


class TestNDArray(TestCase):
    def setUp(self) -> None:
        self.a = NDArray.new([1, 2, 3], [3, 1])
        self.b = NDArray.new([4, 5, 6], [3, 1])

    def test_construction(self):
        assert self.a.shape == (3, 1)
        assert self.a.buf.tolist() == [1, 2, 3]
        assert self.a.size == 3
        assert self.a.ndim == 2
        assert self.a.strides == (1, 1)
        assert self.a.tolist() == [[1], [2], [3]]

    def test_construction_copies_and_freezes_buffer(self):
        raw = np.array([1.0, 2.0, 3.0])
        arr = NDArray.new(raw, (3,))
        raw[0] = 42.0
        assert arr.buf.tolist() == [1.0, 2.0, 3.0]

        with pytest.raises(ValueError):
            arr.buf[0] = 99.0
        assert arr.buf.tolist() == [1.0, 2.0, 3.0]

    def test_construction_rejects_nested_buffer(self):
        with pytest.raises(ShapeError):
            NDArray.new([[1, 2], [3, 4]], (4,))
        # Nested input goes through NDArray.array instead
        assert NDArray.array([[1, 2], [3, 4]]).shape == (2, 2)

    def test_construction_length_mismatch(self):
        with pytest.raises(ShapeError):
            NDArray.new([1, 2, 3], [2, 2])
        with pytest.raises(ShapeError):
            NDArray.new([1, 2], [-1, -2])

    def test_array_from_nested_sequence(self):
        arr = NDArray.array([[1.0, 2.0], [3.0, 4.0]])
        assert arr.shape == (2, 2)
        assert arr.buf.tolist() == [1.0, 2.0, 3.0, 4.0]
        assert arr.dtype == np.float64

    def test_rank_zero_holds_one_element(self):
        scalar = NDArray.new([7], [])
        assert scalar.shape == ()
        assert scalar.size == 1
        assert NDArray.ones(()).buf.tolist() == [1]

    def test_ones_and_zeros(self):
        ones = NDArray.ones((2, 3))
        assert ones.shape == (2, 3)
        assert ones.buf.tolist() == [1] * 6
        assert ones.dtype == np.int64
        assert NDArray.ones_like(self.a) == NDArray.new([1, 1, 1], [3, 1])
        assert NDArray.zeros((2,), dtype=np.float32).buf.tolist() == [0.0, 0.0]
        assert NDArray.zeros_like(self.a).buf.tolist() == [0, 0, 0]

    def test_ones_like_keeps_dtype(self):
        floats = NDArray.array([[0.5, 1.5]])
        assert NDArray.ones_like(floats).dtype == np.float64

    def test_add(self):
        c = self.a.add(self.b)
        assert c.shape == (3, 1)
        assert c.buf.tolist() == [5, 7, 9]
        assert (self.a + self.b) == c

    def test_add_large_arrays(self):
        x = np.random.randn(500, 500)
        y = np.random.randn(500, 1)
        out = NDArray.array(x).add(NDArray.array(x))
        np.testing.assert_allclose(out.to_numpy(), x + x)

        out = NDArray.array(x).add(NDArray.array(y))
        np.testing.assert_allclose(out.to_numpy(), x + y)

    def test_add_leaves_operands_unchanged(self):
        self.a.add(self.b)
        assert self.a.buf.tolist() == [1, 2, 3]
        assert self.b.buf.tolist() == [4, 5, 6]

    def test_add_broadcasting(self):
        row = NDArray.new([10, 20, 30, 40], [1, 4])
        col = NDArray.new([1, 2, 3], [3, 1])
        out = row.add(col)
        assert out.shape == (3, 4)
        np.testing.assert_array_equal(
            out.to_numpy(), row.to_numpy() + col.to_numpy()
        )

    def test_add_incompatible_shapes(self):
        with pytest.raises(ShapeError):
            NDArray.ones((3, 4)).add(NDArray.ones((2, 4)))
        with pytest.raises(ShapeError):
            NDArray.ones((3, 4)).add(NDArray.ones((4,)))

    def test_matmul(self):
        out = NDArray.ones((2, 3)).matmul(NDArray.ones((3, 4)))
        assert out.shape == (2, 4)
        assert out.buf.tolist() == [3] * 8

    def test_matmul_values(self):
        x = NDArray.array([[1, 2], [3, 4]])
        y = NDArray.array([[5, 6], [7, 8]])
        assert (x @ y).tolist() == [[19, 22], [43, 50]]

    def test_batched_matmul(self):
        x = np.random.randn(2, 2, 3)
        y = np.random.randn(2, 3, 4)
        out = NDArray.array(x).matmul(NDArray.array(y))
        assert out.shape == (2, 2, 4)

        expected = torch.matmul(torch.tensor(x), torch.tensor(y)).numpy()
        np.testing.assert_allclose(out.to_numpy(), expected)
        # Each batch is computed independently
        for i in range(2):
            np.testing.assert_allclose(out.to_numpy()[i], x[i] @ y[i])

    def test_batched_matmul_broadcasts_batch_dims(self):
        x = np.random.randn(1, 3, 2, 5)
        y = np.random.randn(4, 1, 5, 2)
        out = NDArray.array(x).matmul(NDArray.array(y))
        assert out.shape == (4, 3, 2, 2)

        expected = torch.matmul(torch.tensor(x), torch.tensor(y)).numpy()
        np.testing.assert_allclose(out.to_numpy(), expected)

    def test_matmul_rejects_batch_rank_mismatch(self):
        with pytest.raises(ShapeError):
            NDArray.ones((2, 2, 3)).matmul(NDArray.ones((3, 4)))

    def test_matmul_rejects_incompatible_batch_dims(self):
        with pytest.raises(ShapeError):
            NDArray.ones((2, 2, 3)).matmul(NDArray.ones((3, 3, 4)))

    def test_matmul_dimension_errors(self):
        with pytest.raises(DimensionError):
            NDArray.ones((3,)).matmul(NDArray.ones((3, 4)))
        with pytest.raises(DimensionError):
            NDArray.ones((2, 3)).matmul(NDArray.ones((2, 4)))

    def test_matmul_zero_sized_batch(self):
        out = NDArray.ones((0, 2, 3)).matmul(NDArray.ones((0, 3, 4)))
        assert out.shape == (0, 2, 4)
        assert out.size == 0

    def test_sum_to(self):
        grad = NDArray.array(np.arange(12).reshape(3, 4))
        reduced = grad.sum_to((1, 4))
        assert reduced.shape == (1, 4)
        assert reduced.tolist() == [[12, 15, 18, 21]]

        assert grad.sum_to((3, 1)).tolist() == [[6], [22], [38]]
        assert grad.sum_to((4,)).tolist() == [12, 15, 18, 21]
        assert grad.sum_to((3, 4)) is grad

    def test_sum_to_matches_torch(self):
        x = np.random.randn(2, 3, 4, 4)
        reduced = NDArray.array(x).sum_to((3, 1, 1))
        expected = torch.tensor(x).sum(dim=(0, 2, 3)).reshape(3, 1, 1).numpy()
        np.testing.assert_allclose(reduced.to_numpy(), expected)

    def test_sum_to_errors(self):
        grad = NDArray.ones((3, 4))
        with pytest.raises(ShapeError):
            grad.sum_to((2, 4))
        with pytest.raises(ShapeError):
            grad.sum_to((1, 3, 4))

    def test_equality(self):
        assert self.a == NDArray.new([1, 2, 3], [3, 1])
        assert self.a != NDArray.new([1, 2, 3], [1, 3])
        assert self.a != self.b

    def test_repr(self):
        assert repr(self.a) == "NDArray(buf=[1, 2, 3], shape=[3, 1])"
