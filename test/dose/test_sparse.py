import pytest
import numpy as np

from pyRadDose.core import ConfigurationError
from pyRadDose.dose import SparseColumnBuilder


def test_builder_default_container_size():
    assert SparseColumnBuilder(10, 25).container_size == 3
    assert SparseColumnBuilder(10, 0).container_size == 1


def test_builder_invalid_container_size():
    with pytest.raises(ConfigurationError):
        SparseColumnBuilder(10, 5, container_size=0)


def test_builder_flushes_full_containers():
    builder = SparseColumnBuilder(4, 5, container_size=2)

    builder.append(0, [0, 1], [1.0, 2.0])
    assert builder.num_buffered == 1
    builder.append(3, [3], [4.0])
    assert builder.num_buffered == 0
    builder.append(1, [2], [3.0])
    assert builder.num_buffered == 1
    assert builder.nnz == 4


def test_builder_finalize():
    builder = SparseColumnBuilder(4, 3, container_size=2)
    builder.append(2, [3, 0], [5.0, 6.0])
    builder.append(0, [1], [1.0])
    builder.append(1, [2, 3], [0.0, 2.0])

    matrix = builder.finalize()

    assert matrix.shape == (4, 3)
    assert matrix.dtype == np.float32
    assert matrix.has_sorted_indices
    # explicit zeros are dropped
    assert matrix.nnz == 4
    assert np.array_equal(
        matrix.toarray(),
        np.array([[0, 0, 6], [1, 0, 0], [0, 0, 0], [0, 2, 5]], dtype=np.float32),
    )


def test_builder_container_size_independent():
    rng = np.random.default_rng(42)
    columns = [(c, rng.choice(50, size=10, replace=False), rng.random(10)) for c in range(12)]

    matrices = []
    for container_size in (1, 5, 100):
        builder = SparseColumnBuilder(50, 12, container_size=container_size)
        for c, rows, values in columns:
            builder.append(c, rows, values)
        matrices.append(builder.finalize())

    for matrix in matrices[1:]:
        assert np.array_equal(matrix.indptr, matrices[0].indptr)
        assert np.array_equal(matrix.indices, matrices[0].indices)
        assert np.array_equal(matrix.data, matrices[0].data)


def test_builder_unwritten_columns_are_empty():
    builder = SparseColumnBuilder(3, 3)
    builder.append(1, [0], [1.0])
    matrix = builder.finalize()
    assert matrix.indptr.tolist() == [0, 0, 1, 1]


def test_builder_double_write():
    builder = SparseColumnBuilder(3, 3)
    builder.append(1, [0], [1.0])
    with pytest.raises(ValueError):
        builder.append(1, [1], [1.0])


def test_builder_column_out_of_range():
    builder = SparseColumnBuilder(3, 3)
    with pytest.raises(IndexError):
        builder.append(3, [0], [1.0])
    with pytest.raises(IndexError):
        builder.append(-1, [0], [1.0])


def test_builder_row_out_of_range():
    builder = SparseColumnBuilder(3, 3)
    with pytest.raises(IndexError):
        builder.append(0, [3], [1.0])


def test_builder_length_mismatch():
    builder = SparseColumnBuilder(3, 3)
    with pytest.raises(ValueError):
        builder.append(0, [0, 1], [1.0])


def test_builder_storage_grows_geometrically():
    num_columns = 1000
    builder = SparseColumnBuilder(20, num_columns, container_size=1)
    for c in range(num_columns):
        builder.append(c, np.arange(20), np.ones(20))

    assert builder.nnz == 20 * num_columns
    # one flush per column, but only logarithmically many reallocations
    assert builder._num_flushes == num_columns
    assert builder._num_resizes <= 12

    matrix = builder.finalize()
    assert matrix.nnz == 20 * num_columns
    assert np.all(matrix.sum(axis=0) == 20)
