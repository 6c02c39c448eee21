"""
Distance engine: cosine, euclidean and dot-product distances.

Scalar functions accumulate with ``math.fsum`` over float64 products so the
result does not depend on component order. ``batch_distances`` is the
vectorized path used by the index and the exact scans; it sorts each row of
element products before summing, which makes it order-independent as well.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Sequence, Union

import numpy as np

from ..exceptions import DimensionMismatch, UnknownMetric

ArrayLike = Union[np.ndarray, Sequence[float]]


class Metric(str, Enum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    DOT = "dot"

    @classmethod
    def parse(cls, value: Union[str, "Metric", None], default: "Metric" = None) -> "Metric":
        if value is None:
            if default is None:
                raise UnknownMetric(value)
            return default
        if isinstance(value, Metric):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnknownMetric(value) from None


def _pair(a: ArrayLike, b: ArrayLike):
    x = np.asarray(a, dtype=np.float64).ravel()
    y = np.asarray(b, dtype=np.float64).ravel()
    if x.shape[0] != y.shape[0]:
        raise DimensionMismatch(x.shape[0], y.shape[0])
    return x, y


def dot_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """Raw (un-negated) dot product."""
    x, y = _pair(a, b)
    return math.fsum(x * y)


def dot_distance(a: ArrayLike, b: ArrayLike) -> float:
    return -dot_similarity(a, b)


def euclidean_distance(a: ArrayLike, b: ArrayLike) -> float:
    x, y = _pair(a, b)
    diff = x - y
    return math.sqrt(math.fsum(diff * diff))


def cosine_distance(a: ArrayLike, b: ArrayLike) -> float:
    x, y = _pair(a, b)
    nx = math.fsum(x * x)
    ny = math.fsum(y * y)
    if nx == 0.0 or ny == 0.0:
        return 1.0
    cos = math.fsum(x * y) / math.sqrt(nx * ny)
    return 1.0 - min(1.0, max(-1.0, cos))


_SCALAR = {
    Metric.COSINE: cosine_distance,
    Metric.EUCLIDEAN: euclidean_distance,
    Metric.DOT: dot_distance,
}


def distance(a: ArrayLike, b: ArrayLike, metric: Union[str, Metric] = Metric.COSINE) -> float:
    """Distance between two vectors; smaller is closer for every metric."""
    return _SCALAR[Metric.parse(metric)](a, b)


def ordered_sum(products: np.ndarray) -> np.ndarray:
    """Sum along the last axis after sorting, so equal multisets give equal sums."""
    return np.sort(products, axis=-1).sum(axis=-1)


def batch_distances(
    query: np.ndarray,
    matrix: np.ndarray,
    metric: Union[str, Metric] = Metric.COSINE,
) -> np.ndarray:
    """
    Distances from ``query`` to every row of ``matrix`` as a float64 array.

    Args:
        query: 1-D vector of dimension D
        matrix: (n, D) array
        metric: distance metric
    """
    metric = Metric.parse(metric)
    q = np.asarray(query, dtype=np.float64).ravel()
    m = np.asarray(matrix, dtype=np.float64)
    if m.ndim != 2:
        m = m.reshape(-1, q.shape[0]) if m.size else np.empty((0, q.shape[0]))
    if m.shape[1] != q.shape[0]:
        raise DimensionMismatch(m.shape[1], q.shape[0], what="query")
    if m.shape[0] == 0:
        return np.empty(0, dtype=np.float64)

    if metric is Metric.EUCLIDEAN:
        diff = m - q
        return np.sqrt(ordered_sum(diff * diff))

    dots = ordered_sum(m * q)
    if metric is Metric.DOT:
        return -dots

    norms = ordered_sum(m * m)
    qn = float(ordered_sum(q * q))
    denom = np.sqrt(norms * qn)
    out = np.ones(m.shape[0], dtype=np.float64)
    nz = denom > 0.0
    out[nz] = 1.0 - np.clip(dots[nz] / denom[nz], -1.0, 1.0)
    return out
