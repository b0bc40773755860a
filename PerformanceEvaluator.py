from __future__ import annotations

import collections

from river import base, metrics

Measurement = collections.namedtuple("Measurement", ["name", "value"])


class ClassificationPerformanceEvaluator:
    """
    Running classification performance of a single learner.

    Predictions arrive as probability dicts, the arg-max is scored against the
    true label. ``get_performance_measurements`` lists, in this order:

    0. the weight of classified instances,
    1. the accuracy in percent,
    2. Cohen's kappa in percent.

    Consumers that rank learners read slot 1.
    """

    ACCURACY_SLOT = 1

    def __init__(self):
        self._accuracy = metrics.Accuracy()
        self._kappa = metrics.CohenKappa()
        self._weight_seen = 0.0

    def clone(self) -> ClassificationPerformanceEvaluator:
        return self.__class__()

    def add_result(
        self,
        y_true: base.typing.ClfTarget,
        y_proba: dict[base.typing.ClfTarget, float],
        w: float = 1.0,
    ):
        if w <= 0.0:
            return
        self._weight_seen += w
        # No opinion, nothing to score
        if not y_proba:
            return
        y_pred = max(y_proba, key=y_proba.get)
        self._accuracy.update(y_true, y_pred, w)
        self._kappa.update(y_true, y_pred, w)

    @property
    def accuracy(self) -> float:
        return self._accuracy.get() * 100.0

    def get_performance_measurements(self) -> list[Measurement]:
        return [
            Measurement("classified instances", self._weight_seen),
            Measurement("classifications correct (percent)", self.accuracy),
            Measurement("Kappa Statistic (percent)", self._kappa.get() * 100.0),
        ]

    def __repr__(self):
        return f"{type(self).__name__}(accuracy={self.accuracy:.2f}%, n={self._weight_seen:g})"
