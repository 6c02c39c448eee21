import math

import numpy as np
import pytest

from tieredvectordb.exceptions import DimensionMismatch, UnknownMetric
from tieredvectordb.implementations.distance import (
    Metric,
    batch_distances,
    cosine_distance,
    distance,
    dot_distance,
    euclidean_distance,
)


@pytest.fixture
def pairs():
    gen = np.random.default_rng(0)
    return [(gen.standard_normal(32), gen.standard_normal(32)) for _ in range(20)]


def test_cosine_basic_values():
    assert cosine_distance([1.0, 0.0], [1.0, 0.0]) == pytest.approx(0.0, abs=1e-12)
    assert cosine_distance([1.0, 0.0], [0.0, 1.0]) == pytest.approx(1.0)
    assert cosine_distance([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(2.0)


def test_cosine_ignores_magnitude():
    assert cosine_distance([1.0, 2.0, 3.0], [2.0, 4.0, 6.0]) == pytest.approx(0.0, abs=1e-12)


def test_cosine_zero_vector_is_maximally_uninformative():
    assert cosine_distance([0.0, 0.0], [1.0, 2.0]) == 1.0
    assert cosine_distance([0.0, 0.0], [0.0, 0.0]) == 1.0


def test_euclidean_and_dot():
    assert euclidean_distance([0.0, 0.0], [3.0, 4.0]) == pytest.approx(5.0)
    assert dot_distance([1.0, 2.0], [3.0, 4.0]) == pytest.approx(-11.0)


@pytest.mark.parametrize("metric", list(Metric))
def test_symmetry(pairs, metric):
    for a, b in pairs:
        assert distance(a, b, metric) == distance(b, a, metric)


@pytest.mark.parametrize("metric", [Metric.COSINE, Metric.EUCLIDEAN])
def test_self_distance_is_zero(pairs, metric):
    for a, _ in pairs:
        assert distance(a, a, metric) == pytest.approx(0.0, abs=1e-9)


@pytest.mark.parametrize("metric", list(Metric))
def test_batch_matches_scalar(pairs, metric):
    query = pairs[0][0]
    matrix = np.stack([b for _, b in pairs])
    batch = batch_distances(query, matrix, metric)
    assert batch.dtype == np.float64
    for row, value in zip(matrix, batch):
        assert value == pytest.approx(distance(query, row, metric), rel=1e-9, abs=1e-9)


def test_batch_zero_rows_cosine():
    matrix = np.array([[0.0, 0.0], [1.0, 0.0]])
    out = batch_distances([1.0, 0.0], matrix, "cosine")
    assert out[0] == 1.0
    assert out[1] == pytest.approx(0.0, abs=1e-12)


def test_batch_empty_matrix():
    assert batch_distances([1.0, 2.0], np.empty((0, 2)), "euclidean").shape == (0,)


def test_dimension_mismatch():
    with pytest.raises(DimensionMismatch):
        distance([1.0, 2.0], [1.0, 2.0, 3.0])
    with pytest.raises(DimensionMismatch):
        batch_distances([1.0, 2.0], np.ones((3, 4)))


def test_metric_parse():
    assert Metric.parse("COSINE") is Metric.COSINE
    assert Metric.parse(Metric.DOT) is Metric.DOT
    assert Metric.parse(None, default=Metric.EUCLIDEAN) is Metric.EUCLIDEAN
    with pytest.raises(UnknownMetric):
        Metric.parse("manhattan")
    with pytest.raises(ValueError):
        distance([1.0], [1.0], "hamming")


def test_component_order_does_not_change_result():
    a = np.array([1e16, 1.0, -1e16, 3.0])
    b = np.ones(4)
    perm = [3, 2, 1, 0]
    assert dot_distance(a, b) == dot_distance(a[perm], b[perm])
    assert math.isclose(dot_distance(a, b), -4.0)


@pytest.mark.parametrize("metric", list(Metric))
def test_same_permutation_gives_identical_distances(metric):
    gen = np.random.default_rng(7)
    query = gen.standard_normal(768)
    matrix = gen.standard_normal((50, 768))
    perm = gen.permutation(768)

    batch = batch_distances(query, matrix, metric)
    permuted = batch_distances(query[perm], matrix[:, perm], metric)
    np.testing.assert_array_equal(batch, permuted)
    for row in matrix[:5]:
        assert distance(query, row, metric) == distance(query[perm], row[perm], metric)
