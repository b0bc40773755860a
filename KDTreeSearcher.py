from __future__ import annotations

import logging
import math
import numbers
import typing

import numpy as np
from scipy.spatial import KDTree

logger = logging.getLogger(__name__)

# Two mismatching indicator columns then add up to a squared distance of 1
_NOMINAL_WEIGHT = math.sqrt(0.5)


class SearcherError(Exception):
    """Base class for nearest neighbour search failures."""


class IndexBuildError(SearcherError):
    """The examples of a chunk could not be indexed."""


class IndexQueryError(SearcherError):
    """A neighbour query could not be answered by the current index."""


class KDTreeSearcher:
    """
    k-nearest neighbour search over a fixed batch of labelled examples.

    Examples are river style ``(x, y)`` pairs. The feature space is the sorted
    union of all keys seen in the batch.

    A feature holding any non-numeric value in the batch is nominal: it is one
    hot encoded so that two different values are exactly one unit apart, and a
    missing value (``None`` or NaN) is a category of its own. Values the batch
    never showed are equally far from every example.

    Every other feature is numeric and min-max scaled with the ranges of the
    indexed batch before the euclidean distance is taken, so attributes with
    large magnitudes do not dominate the neighbourhood. An absent key counts
    as 0, an explicit ``None`` or NaN is replaced by the batch mean of the
    feature.
    """

    def __init__(self, leafsize: int = 16):
        self.leafsize = leafsize
        self._tree: KDTree | None = None
        self._features: list = []
        self._numeric: list = []
        self._nominal: dict[typing.Any, dict[typing.Hashable, int]] = {}
        self._n_columns = 0
        self._fill: np.ndarray | None = None
        self._offset: np.ndarray | None = None
        self._scale: np.ndarray | None = None
        self._examples: list[tuple[dict, typing.Any]] = []

    def __len__(self):
        return len(self._examples)

    @property
    def features(self) -> list:
        return list(self._features)

    @property
    def nominal_features(self) -> list:
        return list(self._nominal)

    def set_instances(self, examples: typing.Sequence[tuple[dict, typing.Any]]):
        """Index ``examples``, replacing whatever was indexed before."""
        self._tree = None
        self._examples = []

        if len(examples) == 0:
            raise IndexBuildError("Cannot build a KD-tree over an empty batch")

        features = sorted({k for x, _ in examples for k in x})
        if not features:
            raise IndexBuildError("The batch has no features to index")

        nominal = [f for f in features if any(_is_nominal(x.get(f)) for x, _ in examples)]
        numeric = [f for f in features if f not in nominal]

        points = np.array([[_as_float(x.get(f, 0.0)) for f in numeric] for x, _ in examples], dtype=float)
        points = points.reshape(len(examples), len(numeric))
        if np.isinf(points).any():
            raise IndexBuildError("The batch contains infinite values")

        observed = ~np.isnan(points)
        counts = observed.sum(axis=0)
        sums = np.where(observed, points, 0.0).sum(axis=0)
        fill = np.divide(sums, counts, out=np.zeros_like(sums), where=counts > 0)
        points = np.where(observed, points, fill)

        offset = points.min(axis=0)
        scale = points.max(axis=0) - offset
        scale[scale == 0.0] = 1.0

        categories: dict[typing.Any, dict[typing.Hashable, int]] = {}
        n_columns = 0
        for f in nominal:
            columns = {}
            for x, _ in examples:
                value = _category(x.get(f))
                if value not in columns:
                    columns[value] = n_columns
                    n_columns += 1
            categories[f] = columns

        self._nominal = categories
        self._n_columns = n_columns
        one_hot = np.vstack([self._encode_nominal(x) for x, _ in examples])

        try:
            tree = KDTree(np.hstack([(points - offset) / scale, one_hot]), leafsize=self.leafsize)
        except ValueError as e:
            self._nominal = {}
            raise IndexBuildError(str(e)) from e

        self._tree = tree
        self._features = features
        self._numeric = numeric
        self._fill = fill
        self._offset = offset
        self._scale = scale
        self._examples = list(examples)
        logger.debug(
            "KD-tree built over %d examples, %d numeric and %d nominal features",
            len(self),
            len(numeric),
            len(nominal),
        )

    def k_nearest_neighbours(self, x: dict, k: int) -> list[tuple[dict, typing.Any]]:
        """Return the ``k`` indexed examples closest to ``x``, nearest first."""
        if self._tree is None:
            raise IndexQueryError("No examples have been indexed")
        if k < 1:
            raise IndexQueryError(f"k must be at least 1, got {k}")
        if k > len(self):
            raise IndexQueryError(f"Asked for {k} neighbours but only {len(self)} examples are indexed")

        try:
            query = np.array([_as_float(x.get(f, 0.0)) for f in self._numeric], dtype=float)
        except TypeError as e:
            raise IndexQueryError(f"Non numeric value for a numeric feature: {e}") from e
        if np.isinf(query).any():
            raise IndexQueryError("The query contains infinite values")
        query = np.where(np.isnan(query), self._fill, query)

        point = np.concatenate([(query - self._offset) / self._scale, self._encode_nominal(x)])
        _, idx = self._tree.query(point, k=k)
        return [self._examples[i] for i in np.atleast_1d(idx)]

    def _encode_nominal(self, x: dict) -> np.ndarray:
        row = np.zeros(self._n_columns)
        for f, columns in self._nominal.items():
            column = columns.get(_category(x.get(f)))
            if column is not None:
                row[column] = _NOMINAL_WEIGHT
        return row


def _is_missing(value) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _is_nominal(value) -> bool:
    return not _is_missing(value) and not isinstance(value, numbers.Number)


def _category(value) -> typing.Hashable:
    # NaN != NaN, so every missing value maps to None
    return None if _is_missing(value) else value


def _as_float(value) -> float:
    # float("1.5") would accept strings
    if value is None:
        return float("nan")
    if not isinstance(value, numbers.Number):
        raise TypeError(f"{value!r} is not a number")
    return float(value)
