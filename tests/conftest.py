from __future__ import annotations

import threading

import pytest
from river import base

from ChunkDCS import DCSMember
from PerformanceEvaluator import ClassificationPerformanceEvaluator


class ConstantClassifier(base.Classifier):
    """Returns the same scores for every x and records what it learns."""

    def __init__(self, votes: dict | None = None):
        self.votes = votes
        self.learnt: list = []

    def learn_one(self, x, y, w=1.0):
        self.learnt.append((x, y, w))

    def predict_proba_one(self, x):
        return dict(self.votes or {})


class ThresholdClassifier(ConstantClassifier):
    """Predicts ``below`` when x["x"] < threshold, ``above`` otherwise."""

    def __init__(self, threshold: float = 5.0, below=0, above=1):
        super().__init__()
        self.threshold = threshold
        self.below = below
        self.above = above

    def predict_proba_one(self, x):
        return {self.below: 1.0} if x["x"] < self.threshold else {self.above: 1.0}


class FailingCloneClassifier(ConstantClassifier):
    def clone(self, new_params=None, include_attributes=False):
        raise RuntimeError("cannot copy this model")


class FailingLearnClassifier(ConstantClassifier):
    def learn_one(self, x, y, w=1.0):
        raise RuntimeError("training blew up")


RELEASE_TRAINING = threading.Event()


class BlockingClassifier(ConstantClassifier):
    def learn_one(self, x, y, w=1.0):
        RELEASE_TRAINING.wait(timeout=10)
        super().learn_one(x, y, w)


@pytest.fixture
def release_training():
    RELEASE_TRAINING.clear()
    yield RELEASE_TRAINING
    RELEASE_TRAINING.set()


def make_member(model, created_on=0) -> DCSMember:
    return DCSMember(model=model, evaluator=ClassificationPerformanceEvaluator(), created_on=created_on)


def score(member: DCSMember, n_correct: int, n_wrong: int):
    """Feed ``member``'s evaluator so that its accuracy is n_correct / (n_correct + n_wrong)."""
    for _ in range(n_correct):
        member.evaluator.add_result(0, {0: 1.0})
    for _ in range(n_wrong):
        member.evaluator.add_result(1, {0: 1.0})


def line_chunk(n: int = 10, boundary: int = 5) -> list:
    """Examples on a line, x < boundary is class 0, the rest class 1."""
    return [({"x": float(i)}, 0 if i < boundary else 1) for i in range(n)]


def feed(model, examples):
    for x, y in examples:
        model.learn_one(x, y)
