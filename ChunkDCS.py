from __future__ import annotations

import collections
import dataclasses
import logging
import random
import typing
from concurrent.futures import ThreadPoolExecutor, wait

from river import base
from river.tree import HoeffdingTreeClassifier
from river.utils.random import poisson

from KDTreeSearcher import IndexBuildError, KDTreeSearcher, SearcherError
from PerformanceEvaluator import ClassificationPerformanceEvaluator, Measurement

logger = logging.getLogger(__name__)

NO_SEL = "NO_SEL"
KNORAE = "KNORAE"
KNORAU = "KNORAU"

N_NEIGHBOURS = 7

# Above any accuracy percentage, so an ensemble of 0% members still has a victim
_WORST_ACCURACY_SENTINEL = 101.0


@dataclasses.dataclass
class ChunkReport:
    """What happened during one chunk completion."""

    chunk_id: int
    n_examples: int
    index_built: bool = False
    member_added: bool = False
    evicted: int | None = None
    n_trained: int = 0
    n_failed: int = 0
    timed_out: bool = False


class DCSMember:
    """A base model together with the evaluator tracking its accuracy."""

    def __init__(self, model: base.Classifier, evaluator: ClassificationPerformanceEvaluator, created_on: int):
        self.model = model
        self.evaluator = evaluator
        self.created_on = created_on

    def votes(self, x: dict) -> dict[base.typing.ClfTarget, float]:
        return self.model.predict_proba_one(x) or {}

    def predicted_class(self, x: dict) -> base.typing.ClfTarget | None:
        return _arg_max(self.votes(x))

    def accuracy(self) -> float:
        return self.evaluator.get_performance_measurements()[ClassificationPerformanceEvaluator.ACCURACY_SLOT].value

    def learn_chunk(self, chunk: list, rng: random.Random | None = None) -> int:
        """Train over ``chunk``, resampling with Poisson(1) weights when ``rng`` is given."""
        n_learnt = 0
        for x, y, kwargs in chunk:
            if rng is None:
                self.model.learn_one(x, y, **kwargs)
                n_learnt += 1
                continue
            k = poisson(rate=1.0, rng=rng)
            if k == 0:
                continue
            self.model.learn_one(x, y, **{**kwargs, "w": kwargs.get("w", 1.0) * k})
            n_learnt += 1
        return n_learnt

    def __repr__(self):
        return f"DCSMember({self.model}, created_on={self.created_on}, accuracy={self.accuracy():.2f}%)"


class ChunkDCSClassifier(base.Wrapper, base.Ensemble, base.Classifier):
    """
    Chunk-based ensemble with dynamic classifier selection.

    Training examples are buffered until ``chunk_size`` of them have been
    collected. The next example then closes the chunk (it is not part of it,
    nor of the following one): a KD-tree is built over the chunk, a fresh copy
    of ``model`` joins the ensemble (the member with the lowest accuracy is
    evicted first when ``n_models`` members are already present) and every
    member is trained on the whole chunk in a pool of ``n_jobs`` threads.

    Predictions combine the members in one of three ways:

    - ``"NO_SEL"``: sum of the members' normalised probability dicts.
    - ``"KNORAE"``: among the members that classify the most of the 7 nearest
      chunk neighbours correctly, one vote each for their predicted class.
    - ``"KNORAU"``: every member votes for its predicted class once per
      neighbour it classifies correctly.

    The KNORA methods fall back to ``"NO_SEL"`` while no KD-tree can answer
    the query. Every labelled example updates each member evaluator with the
    member's prediction, either at prediction time when the true label is
    passed along with the query or else in ``learn_one`` before the example
    is buffered. The eviction policy relies on it.

    Parameters
    ----------
    model
        Base learner prototype, cloned for every new member.
    n_models
        Maximum number of ensemble members.
    chunk_size
        Number of examples in a training chunk.
    n_jobs
        Number of threads training members at the end of a chunk.
    init_ensemble
        Start with ``n_models`` untrained members instead of an empty ensemble.
    bagging
        Resample each chunk per member with Poisson(1) weights (online bagging).
    voting_method
        One of ``"NO_SEL"``, ``"KNORAE"``, ``"KNORAU"``.
    evaluator
        Evaluator prototype, cloned for every new member.
    train_timeout
        Seconds to wait for the training pool before giving up on it.
    seed
        Seed of the random number generator used for bagging.

    """

    _VALID_VOTING_METHODS = (NO_SEL, KNORAE, KNORAU)

    def __init__(
        self,
        model: base.Classifier | None = None,
        n_models: int = 10,
        chunk_size: int = 1000,
        n_jobs: int = 1,
        init_ensemble: bool = False,
        bagging: bool = False,
        voting_method: str = NO_SEL,
        evaluator: ClassificationPerformanceEvaluator | None = None,
        train_timeout: float = 3600.0,
        seed: int | None = None,
    ):
        super().__init__([])  # type: ignore
        for name, value in (("n_models", n_models), ("chunk_size", chunk_size), ("n_jobs", n_jobs)):
            if value < 1:
                raise ValueError(f"{name} must be at least 1, got {value}")
        if voting_method not in self._VALID_VOTING_METHODS:
            logger.warning(
                "Unknown voting_method %r, predictions will be empty. Valid options are: %s",
                voting_method,
                self._VALID_VOTING_METHODS,
            )

        self.model = model if model is not None else HoeffdingTreeClassifier(grace_period=50, delta=0.01)
        self.n_models = n_models
        self.chunk_size = chunk_size
        self.n_jobs = n_jobs
        self.init_ensemble = init_ensemble
        self.bagging = bagging
        self.voting_method = voting_method
        self.evaluator = evaluator if evaluator is not None else ClassificationPerformanceEvaluator()
        self.train_timeout = train_timeout
        self.seed = seed

        self._init_state()

    def _init_state(self):
        self.data.clear()
        self._rng = random.Random(self.seed)
        self._buffer: list[tuple[dict, base.typing.ClfTarget, dict]] = []
        self._searcher: KDTreeSearcher | None = None
        self._n_chunks = 0
        self._n_samples_seen = 0
        self._last_scored: tuple | None = None
        self.last_chunk_report_: ChunkReport | None = None

        if self.init_ensemble:
            for _ in range(self.n_models):
                self.append(self._new_member())

    @property
    def _min_number_of_models(self):
        return 0

    @property
    def _wrapped_model(self):
        return self.model

    @property
    def _multiclass(self):
        return True

    @classmethod
    def _unit_test_params(cls):
        yield {"n_models": 3, "chunk_size": 20, "seed": 42}
        yield {"n_models": 3, "chunk_size": 20, "bagging": True, "voting_method": KNORAE, "seed": 42}
        yield {"n_models": 3, "chunk_size": 20, "init_ensemble": True, "voting_method": KNORAU, "seed": 42}

    def reset(self):
        """Forget the ensemble, the buffered examples and the KD-tree."""
        self._init_state()

    # ------------------------------------------------------------------
    # Training

    def learn_one(self, x: dict, y: base.typing.ClfTarget, **kwargs):
        self._n_samples_seen += 1
        self._score_members(x, y)
        if len(self._buffer) < self.chunk_size:
            self._buffer.append((x, y, kwargs))
            return

        self.last_chunk_report_ = self._complete_chunk(self._buffer)
        self._buffer = []

    def _score_members(self, x: dict, y: base.typing.ClfTarget):
        """Test every member on a training example before it is learnt."""
        last, self._last_scored = self._last_scored, None
        # Already scored by a labelled vote on this very example
        if last is not None and last[0] is x and last[1] == y:
            return
        for member in self:
            member.evaluator.add_result(y, member.votes(x))

    def _complete_chunk(self, chunk: list) -> ChunkReport:
        report = ChunkReport(chunk_id=self._n_chunks, n_examples=len(chunk))

        self._searcher = self._build_searcher(chunk)
        report.index_built = self._searcher is not None

        self._grow_ensemble(report)
        self._train_members(chunk, report)

        self._n_chunks += 1
        logger.debug("Chunk %d completed: %s", report.chunk_id, report)
        return report

    def _build_searcher(self, chunk: list) -> KDTreeSearcher | None:
        searcher = KDTreeSearcher()
        try:
            searcher.set_instances([(x, y) for x, y, _ in chunk])
        except IndexBuildError as e:
            logger.warning("Could not index chunk %d, falling back to %s: %s", self._n_chunks, NO_SEL, e)
            return None
        return searcher

    def _new_member(self) -> DCSMember:
        return DCSMember(model=self.model.clone(), evaluator=self.evaluator.clone(), created_on=self._n_chunks)

    def _grow_ensemble(self, report: ChunkReport):
        try:
            member = self._new_member()
        except Exception:
            logger.warning("Could not prepare a new member for chunk %d, skipping it", self._n_chunks, exc_info=True)
            return

        if len(self) >= self.n_models:
            report.evicted = self._worst_member()
            self._remove_member(report.evicted)

        self.append(member)
        report.member_added = True

    def _worst_member(self) -> int:
        index = 0
        worst = _WORST_ACCURACY_SENTINEL
        for i, member in enumerate(self):
            accuracy = member.accuracy()
            if accuracy < worst:
                worst = accuracy
                index = i
        return index

    def _remove_member(self, index: int):
        member = self.data[index]
        logger.info(
            "Evicting member %d (created on chunk %d, accuracy %.2f%%)",
            index,
            member.created_on,
            member.accuracy(),
        )
        del self.data[index]

    def _train_members(self, chunk: list, report: ChunkReport):
        if not self:
            return

        # One stream per member, drawn before dispatch so results do not depend on n_jobs
        if self.bagging:
            rngs = [random.Random(self._rng.randint(0, 2**32 - 1)) for _ in self]
        else:
            rngs = [None] * len(self)

        pool = ThreadPoolExecutor(max_workers=self.n_jobs, thread_name_prefix="dcs-train")
        futures = [pool.submit(member.learn_chunk, chunk, rng) for member, rng in zip(self, rngs)]
        done, not_done = wait(futures, timeout=self.train_timeout)

        if not_done:
            report.timed_out = True
            logger.warning(
                "Training of %d/%d members did not finish within %ss, cancelling",
                len(not_done),
                len(futures),
                self.train_timeout,
            )
            pool.shutdown(wait=False, cancel_futures=True)
        else:
            pool.shutdown(wait=True)

        for future in done:
            error = future.exception()
            if error is None:
                report.n_trained += 1
            else:
                report.n_failed += 1
                logger.warning("Member training failed on chunk %d", self._n_chunks, exc_info=error)

    # ------------------------------------------------------------------
    # Prediction

    def predict_proba_one(
        self, x: dict, y: base.typing.ClfTarget | None = None, **kwargs: typing.Any
    ) -> dict[base.typing.ClfTarget, float]:
        return self.vote(x, y)

    def vote(self, x: dict, y: base.typing.ClfTarget | None = None) -> dict[base.typing.ClfTarget, float]:
        """
        Combine the members' predictions for ``x`` with the configured voting method.

        The result is a sparse score dict, classes nobody votes for are left
        out. Passing the true label ``y`` updates every member's evaluator,
        whether or not the member ends up being selected. Otherwise the
        members are scored when the example reaches ``learn_one``.
        """
        self._last_scored = (x, y) if y is not None else None
        if self.voting_method == NO_SEL:
            return self._votes_no_sel(x, y)
        elif self.voting_method == KNORAE:
            return self._votes_knora_e(x, y)
        elif self.voting_method == KNORAU:
            return self._votes_knora_u(x, y)
        return {}

    def _score(self, member: DCSMember, x: dict, y) -> dict:
        votes = member.votes(x)
        if y is not None:
            member.evaluator.add_result(y, votes)
        return votes

    def _neighbours(self, x: dict) -> list | None:
        if self._searcher is None:
            return None
        try:
            return self._searcher.k_nearest_neighbours(x, N_NEIGHBOURS)
        except SearcherError as e:
            logger.debug("Neighbour query failed, falling back to %s: %s", NO_SEL, e)
            return None

    def _votes_no_sel(self, x: dict, y) -> dict[base.typing.ClfTarget, float]:
        combined: typing.Counter = collections.Counter()
        for member in self:
            votes = self._score(member, x, y)
            total = sum(votes.values())
            if total > 0.0:
                combined.update({c: v / total for c, v in votes.items()})
        return dict(combined)

    def _votes_knora_u(self, x: dict, y) -> dict[base.typing.ClfTarget, float]:
        neighbours = self._neighbours(x)
        if neighbours is None:
            return self._votes_no_sel(x, y)

        result: typing.Counter = collections.Counter()
        for member in self:
            predicted = _arg_max(self._score(member, x, y))
            if predicted is None:
                continue
            for x_n, y_n in neighbours:
                if member.predicted_class(x_n) == y_n:
                    result[predicted] += 1.0
        return dict(result)

    def _votes_knora_e(self, x: dict, y) -> dict[base.typing.ClfTarget, float]:
        neighbours = self._neighbours(x)
        if neighbours is None:
            return self._votes_no_sel(x, y)

        votes = [self._score(member, x, y) for member in self]
        n_correct = [
            sum(1 for x_n, y_n in neighbours if member.predicted_class(x_n) == y_n) for member in self
        ]
        if not n_correct:
            return {}

        best = max(n_correct)
        result: typing.Counter = collections.Counter()
        for member_votes, correct in zip(votes, n_correct):
            if correct != best:
                continue
            predicted = _arg_max(member_votes)
            if predicted is not None:
                result[predicted] += 1.0
        return dict(result)

    # ------------------------------------------------------------------
    # Inspection

    @property
    def ensemble_size(self) -> int:
        return len(self.data)

    @property
    def n_samples_seen(self) -> int:
        return self._n_samples_seen

    @property
    def n_chunks(self) -> int:
        return self._n_chunks

    @property
    def n_buffered(self) -> int:
        return len(self._buffer)

    def sub_classifiers(self) -> list[base.Classifier]:
        return [member.model for member in self]

    def model_measurements(self) -> list[Measurement]:
        return [Measurement("ensemble size", self.ensemble_size)]


def _arg_max(votes: dict) -> base.typing.ClfTarget | None:
    if not votes:
        return None
    return max(votes, key=votes.get)
