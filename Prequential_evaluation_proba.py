from __future__ import annotations

import dataclasses
import itertools
import time
import typing

import pandas as pd
from river import base, metrics
from tqdm.auto import tqdm


@dataclasses.dataclass
class PrequentialResults:
    learner: str
    stream: str
    wallclock: float
    cpu_time: float
    max_instances: int | None
    instances_seen: int
    cumulative_accuracy: metrics.Accuracy
    cumulative_kappa: metrics.CohenKappa
    result_windows: list[dict] = dataclasses.field(default_factory=list)
    ground_truth_y: list | None = None
    predictions: list | None = None

    def accuracy(self) -> float:
        return self.cumulative_accuracy.get() * 100.0

    def kappa(self) -> float:
        return self.cumulative_kappa.get() * 100.0

    def metrics_per_window(self) -> pd.DataFrame:
        return pd.DataFrame(self.result_windows, columns=["instances", "accuracy", "kappa"])


class _Window:
    def __init__(self):
        self.accuracy = metrics.Accuracy()
        self.kappa = metrics.CohenKappa()
        self.seen = 0

    def update(self, y_true, y_pred):
        self.seen += 1
        if y_pred is None:
            return
        self.accuracy.update(y_true, y_pred)
        self.kappa.update(y_true, y_pred)

    def result(self, instances: int) -> dict:
        return {
            "instances": instances,
            "accuracy": self.accuracy.get() * 100.0,
            "kappa": self.kappa.get() * 100.0,
        }


def prequential_evaluation_proba(
    stream: typing.Iterable[tuple[dict, base.typing.ClfTarget]],
    learner: base.Classifier,
    max_instances: int | None = None,
    window_size: int = 1000,
    store_predictions: bool = False,
    store_y: bool = False,
    label_aware: bool = False,
    progress_bar: bool | tqdm = False,
    stream_name: str | None = None,
) -> PrequentialResults:
    """
    Test-then-train evaluation of a river classifier on a stream of ``(x, y)`` pairs.

    Every example is first predicted with ``predict_proba_one``, the arg-max of
    the returned dict is scored, then the learner learns the example. With
    ``label_aware`` the true label is handed to ``predict_proba_one`` as ``y``
    so that learners tracking the accuracy of their members (``ChunkDCSClassifier``)
    score them on the prediction itself instead of again in ``learn_one``. As in ``river.evaluate``, examples the
    learner abstains on (empty probability dict) are not scored.

    Windowed metrics are computed over consecutive, non-overlapping windows of
    ``window_size`` examples; a trailing partial window is reported as well.
    """
    stream_name = stream_name or type(stream).__name__
    if max_instances is not None:
        stream = itertools.islice(stream, max_instances)

    predictions = [] if store_predictions else None
    ground_truth = [] if store_y else None

    cumulative_accuracy = metrics.Accuracy()
    cumulative_kappa = metrics.CohenKappa()
    windows: list[dict] = []
    window = _Window() if window_size and window_size > 0 else None

    if isinstance(progress_bar, tqdm):
        bar = progress_bar
    elif progress_bar:
        bar = tqdm(total=max_instances, desc="Eval")
    else:
        bar = None

    start_wallclock, start_cpu = time.perf_counter(), time.process_time()

    n = 0
    for x, y in stream:
        n += 1
        y_proba = learner.predict_proba_one(x, y=y) if label_aware else learner.predict_proba_one(x)
        y_pred = max(y_proba, key=y_proba.get) if y_proba else None

        if y_pred is not None:
            cumulative_accuracy.update(y, y_pred)
            cumulative_kappa.update(y, y_pred)

        if window is not None:
            window.update(y, y_pred)
            if window.seen == window_size:
                windows.append(window.result(n))
                window = _Window()

        learner.learn_one(x, y)

        if predictions is not None:
            predictions.append(y_proba)
        if ground_truth is not None:
            ground_truth.append(y)
        if bar is not None:
            bar.update(1)

    if bar is not None:
        bar.close()

    if window is not None and window.seen > 0:
        windows.append(window.result(n))

    return PrequentialResults(
        learner=str(learner),
        stream=stream_name,
        wallclock=time.perf_counter() - start_wallclock,
        cpu_time=time.process_time() - start_cpu,
        max_instances=max_instances,
        instances_seen=n,
        cumulative_accuracy=cumulative_accuracy,
        cumulative_kappa=cumulative_kappa,
        result_windows=windows,
        ground_truth_y=ground_truth,
        predictions=predictions,
    )
