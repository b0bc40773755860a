import logging
import math

import pytest

import ChunkDCS
from ChunkDCS import ChunkDCSClassifier
from conftest import (
    BlockingClassifier,
    ConstantClassifier,
    FailingCloneClassifier,
    FailingLearnClassifier,
    feed,
    line_chunk,
    make_member,
    score,
)


def test_chunk_closes_on_the_example_after_capacity():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=3)
    examples = line_chunk(4)

    feed(clf, examples[:3])
    assert clf.n_chunks == 0
    assert clf.ensemble_size == 0
    assert clf.n_buffered == 3

    feed(clf, examples[3:])
    assert clf.n_chunks == 1
    assert clf.ensemble_size == 1
    assert clf.n_buffered == 0

    # The closing example belongs to neither chunk
    learnt = clf.sub_classifiers()[0].learnt
    assert [(x, y) for x, y, _ in learnt] == examples[:3]


def test_ensemble_grows_by_one_per_chunk_until_full():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=3, chunk_size=2)
    sizes = []
    for i in range(5):
        feed(clf, line_chunk(3))
        sizes.append(clf.ensemble_size)
        report = clf.last_chunk_report_
        assert report.chunk_id == i
        assert report.member_added
        if i < 3:
            assert report.evicted is None
        else:
            assert report.evicted == 0
    assert sizes == [1, 2, 3, 3, 3]


def test_full_ensemble_evicts_the_least_accurate_member():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=3, init_ensemble=True)
    good, bad = clf.data
    score(good, n_correct=3, n_wrong=1)
    score(bad, n_correct=1, n_wrong=3)

    feed(clf, line_chunk(4))

    assert clf.ensemble_size == 2
    assert clf.last_chunk_report_.evicted == 1
    assert bad not in clf.data
    assert clf.data[0] is good
    assert clf.data[1] is not bad
    assert clf.data[1].created_on == 0


def test_eviction_tie_removes_the_earliest_member():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=4, chunk_size=1, init_ensemble=True)
    for member, (correct, wrong) in zip(clf.data, [(1, 1), (1, 3), (1, 3), (3, 1)]):
        score(member, correct, wrong)
    assert clf._worst_member() == 1


def test_all_zero_accuracy_ensemble_still_has_a_victim():
    clf = ChunkDCSClassifier(model=ConstantClassifier({1: 1.0}), n_models=3, chunk_size=1, init_ensemble=True)
    first = clf.data[0]
    feed(clf, line_chunk(2))
    assert clf.last_chunk_report_.evicted == 0
    assert first not in clf.data
    assert clf.ensemble_size == 3


def test_every_surviving_member_is_retrained_on_the_chunk():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=3, chunk_size=4, init_ensemble=True, n_jobs=2)
    feed(clf, line_chunk(5))
    assert clf.last_chunk_report_.n_trained == 3
    for model in clf.sub_classifiers():
        assert len(model.learnt) == 4
        assert all(w == 1.0 for _, _, w in model.learnt)


def test_members_never_share_a_model_instance():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=4, chunk_size=1, init_ensemble=True)
    feed(clf, line_chunk(4))
    models = clf.sub_classifiers()
    assert len({id(m) for m in models}) == len(models)
    assert all(m is not clf.model for m in models)


def test_bagging_skips_examples_with_a_zero_draw(monkeypatch):
    monkeypatch.setattr(ChunkDCS, "poisson", lambda rate, rng: 0)
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=3, bagging=True, seed=1)
    feed(clf, line_chunk(4))
    assert clf.ensemble_size == 1
    assert clf.sub_classifiers()[0].learnt == []


def test_bagging_multiplies_the_example_weight(monkeypatch):
    monkeypatch.setattr(ChunkDCS, "poisson", lambda rate, rng: 3)
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=2, bagging=True, seed=1)
    clf.learn_one({"x": 0.0}, 0, w=0.5)
    clf.learn_one({"x": 1.0}, 0)
    clf.learn_one({"x": 2.0}, 1)
    assert [w for _, _, w in clf.sub_classifiers()[0].learnt] == [1.5, 3.0]


def test_bagging_draws_do_not_depend_on_the_number_of_workers():
    learnt = []
    for n_jobs in (1, 4):
        clf = ChunkDCSClassifier(
            model=ConstantClassifier({0: 1.0}), n_models=4, chunk_size=30, bagging=True,
            init_ensemble=True, n_jobs=n_jobs, seed=7,
        )
        feed(clf, line_chunk(31, boundary=15))
        learnt.append([m.learnt for m in clf.sub_classifiers()])
    assert learnt[0] == learnt[1]
    # Members resample independently
    assert len({tuple(w for _, _, w in member) for member in learnt[0]}) > 1


def test_member_construction_failure_skips_growth(caplog):
    clf = ChunkDCSClassifier(model=FailingCloneClassifier(), n_models=2, chunk_size=2)
    with caplog.at_level(logging.WARNING, logger="ChunkDCS"):
        feed(clf, line_chunk(3))
    assert clf.n_chunks == 1
    assert clf.ensemble_size == 0
    assert not clf.last_chunk_report_.member_added
    assert "Could not prepare a new member" in caplog.text


def test_member_construction_failure_does_not_evict():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=2, init_ensemble=True)
    before = list(clf.data)
    clf.model = FailingCloneClassifier()
    feed(clf, line_chunk(3))
    assert clf.data == before
    assert clf.last_chunk_report_.evicted is None
    assert clf.last_chunk_report_.n_trained == 2


def test_training_errors_are_counted_not_raised():
    clf = ChunkDCSClassifier(model=FailingLearnClassifier(), n_models=3, chunk_size=2, init_ensemble=True, n_jobs=3)
    feed(clf, line_chunk(3))
    report = clf.last_chunk_report_
    assert report.n_failed == 3
    assert report.n_trained == 0
    assert clf.n_buffered == 0


def test_training_timeout_cancels_and_moves_on(release_training):
    clf = ChunkDCSClassifier(
        model=BlockingClassifier(), n_models=2, chunk_size=2, init_ensemble=True, n_jobs=1, train_timeout=0.05,
    )
    feed(clf, line_chunk(3))
    report = clf.last_chunk_report_
    assert report.timed_out
    assert report.n_trained == 0
    assert clf.n_buffered == 0

    release_training.set()
    feed(clf, line_chunk(1))
    assert clf.n_buffered == 1


def test_unindexable_chunk_leaves_no_searcher(caplog):
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=2)
    with caplog.at_level(logging.WARNING, logger="ChunkDCS"):
        feed(clf, [({"x": 0.0}, 0), ({"x": math.inf}, 1), ({"x": 1.0}, 0)])
    assert not clf.last_chunk_report_.index_built
    assert clf._searcher is None
    assert clf.ensemble_size == 1
    assert "Could not index chunk" in caplog.text


@pytest.mark.parametrize("param", ["n_models", "chunk_size", "n_jobs"])
def test_sizes_must_be_positive(param):
    with pytest.raises(ValueError, match=param):
        ChunkDCSClassifier(**{param: 0})


def test_accessors_before_any_chunk():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=3)
    assert clf.ensemble_size == 0
    assert clf.sub_classifiers() == []
    assert clf.model_measurements() == [("ensemble size", 0)]
    assert clf.last_chunk_report_ is None


def test_sub_classifiers_is_a_snapshot():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=3, init_ensemble=True)
    models = clf.sub_classifiers()
    models.clear()
    assert clf.ensemble_size == 3
    assert clf.model_measurements()[0].value == 3


def test_reset_forgets_everything_but_the_configuration():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=2, init_ensemble=True)
    feed(clf, line_chunk(4))
    assert clf.n_chunks == 1

    clf.reset()
    assert clf.n_chunks == 0
    assert clf.n_buffered == 0
    assert clf._searcher is None
    assert clf.ensemble_size == 2
    assert all(m.learnt == [] for m in clf.sub_classifiers())


def test_clone_keeps_parameters_and_drops_state():
    clf = ChunkDCSClassifier(
        model=ConstantClassifier({1: 1.0}), n_models=4, chunk_size=2, voting_method="KNORAU", bagging=True, seed=3,
    )
    feed(clf, line_chunk(3))
    twin = clf.clone()
    assert twin.n_models == 4
    assert twin.voting_method == "KNORAU"
    assert twin.bagging
    assert twin.ensemble_size == 0
    assert twin.n_chunks == 0


def test_evicted_member_is_dropped_with_its_evaluator():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=1)
    clf.data[:] = [make_member(ConstantClassifier({0: 1.0})), make_member(ConstantClassifier({1: 1.0}))]
    score(clf.data[0], 0, 4)
    score(clf.data[1], 2, 0)
    evaluators = [m.evaluator for m in clf.data]
    feed(clf, line_chunk(2))
    assert evaluators[0] not in [m.evaluator for m in clf.data]
    assert clf.data[0].evaluator is evaluators[1]


def test_learning_scores_every_member_first():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=5)
    clf.data[:] = [make_member(ConstantClassifier({0: 1.0})), make_member(ConstantClassifier({1: 1.0}))]
    feed(clf, line_chunk(4))
    right, wrong = clf.data
    assert right.evaluator.get_performance_measurements()[0].value == 4
    assert right.accuracy() == 100.0
    assert wrong.accuracy() == 0.0


def test_labelled_vote_is_not_scored_twice():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=1, chunk_size=5, init_ensemble=True)
    member = clf.data[0]
    x = {"x": 0.0}
    clf.predict_proba_one(x, y=0)
    clf.learn_one(x, 0)
    assert member.evaluator.get_performance_measurements()[0].value == 1

    # Another example, or the same one with another label, is scored again
    clf.predict_proba_one(x, y=0)
    clf.learn_one({"x": 0.0}, 0)
    clf.predict_proba_one(x, y=0)
    clf.learn_one(x, 1)
    assert member.evaluator.get_performance_measurements()[0].value == 5


def test_eviction_follows_accuracy_on_unlabelled_predictions():
    clf = ChunkDCSClassifier(model=ConstantClassifier({0: 1.0}), n_models=2, chunk_size=3)
    good, bad = make_member(ConstantClassifier({0: 1.0})), make_member(ConstantClassifier({1: 1.0}))
    clf.data[:] = [good, bad]
    for x, y in [({"x": float(i)}, 0) for i in range(4)]:
        clf.predict_proba_one(x)
        clf.learn_one(x, y)
    assert clf.last_chunk_report_.evicted == 1
    assert good in clf.data
    assert bad not in clf.data
