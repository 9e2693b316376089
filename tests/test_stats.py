"""Tests for the per-interval moving average statistics."""

import importlib
import random
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

stats_mod = importlib.import_module("harmony_trainer.stats")
models = importlib.import_module("harmony_trainer.models")
store_mod = importlib.import_module("harmony_trainer.store")
errors = importlib.import_module("harmony_trainer.errors")


def make_run(score, interval=3, session_id="s", mode="diatonic"):
    return models.Run(
        session_id=session_id,
        melody_seed=1,
        key="C",
        difficulty=2,
        harmony_interval_degrees=interval,
        interval_mode=mode,
        note_count=8,
        loop_mode=True,
        ghost_harmony_enabled=False,
        score=score,
        duration_ms=1000,
    )


def test_two_runs_with_initial_score():
    """Scores 80 then 60 from a prior of 50 follow the EMA recurrence."""

    agg = stats_mod.IntervalStatsAggregator(initial_score=50.0)
    agg.record(make_run(80.0))
    stat = agg.record(make_run(60.0))
    expected = 0.3 * 60 + 0.7 * (0.3 * 80 + 0.7 * 50)
    assert stat.average_score == pytest.approx(expected)
    assert stat.total_attempts == 2
    assert stat.struggling


def test_first_run_seeds_average():
    """Without a prior the first score becomes the average."""

    agg = stats_mod.IntervalStatsAggregator()
    first = agg.record(make_run(80.0))
    assert first.average_score == pytest.approx(80.0)
    assert not first.struggling
    second = agg.record(make_run(60.0))
    assert second.average_score == pytest.approx(0.3 * 60 + 0.7 * 80)


def test_fixed_mode_runs_do_not_touch_diatonic_stats():
    """A fixed four-semitone run leaves the diatonic fourth alone."""

    store = store_mod.InMemoryStore()
    agg = stats_mod.IntervalStatsAggregator(store=store)
    agg.record(make_run(90.0, interval=4))
    assert agg.record(make_run(10.0, interval=4, mode="fixed")) is None
    stat = agg.get_stat(4)
    assert stat.total_attempts == 1
    assert stat.average_score == pytest.approx(90.0)
    assert not stat.struggling
    assert store.get_interval_stat(4).total_attempts == 1


def test_struggling_threshold():
    """Averages strictly below 70 are struggling."""

    agg = stats_mod.IntervalStatsAggregator()
    assert not agg.record(make_run(70.0, interval=2)).struggling
    assert agg.record(make_run(69.9, interval=-3)).struggling
    assert agg.struggling_intervals() == [-3]


def test_intervals_are_tracked_separately():
    """Each interval keeps its own statistics."""

    agg = stats_mod.IntervalStatsAggregator()
    agg.record(make_run(90.0, interval=3))
    agg.record(make_run(40.0, interval=6))
    assert agg.get_stat(3).average_score == pytest.approx(90.0)
    assert agg.get_stat(6).average_score == pytest.approx(40.0)
    assert [s.interval_degrees for s in agg.all_stats()] == [3, 6]


def test_unknown_interval_returns_empty_stat():
    """Unseen intervals report zero attempts."""

    stat = stats_mod.IntervalStatsAggregator().get_stat(5)
    assert stat.total_attempts == 0
    assert stat.last_attempt_at is None


def test_get_stat_returns_copy():
    """Mutating a returned stat does not change the aggregator."""

    agg = stats_mod.IntervalStatsAggregator()
    agg.record(make_run(80.0))
    agg.get_stat(3).average_score = 0.0
    assert agg.get_stat(3).average_score == pytest.approx(80.0)


def test_concurrent_records_are_not_lost():
    """Parallel updates to one interval all count."""

    agg = stats_mod.IntervalStatsAggregator()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for _ in range(50):
            agg.record(make_run(75.0))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    stat = agg.get_stat(3)
    assert stat.total_attempts == 400
    assert stat.average_score == pytest.approx(75.0)


def test_recommend_prefers_struggling():
    """A struggling interval is offered before fresh ones."""

    agg = stats_mod.IntervalStatsAggregator()
    agg.record(make_run(95.0, interval=3))
    agg.record(make_run(20.0, interval=6))
    assert agg.recommend_interval([3, 6, -3], random.Random(0)) == 6


def test_recommend_least_attempted():
    """Without struggling intervals the least practised one wins."""

    agg = stats_mod.IntervalStatsAggregator()
    agg.record(make_run(95.0, interval=3))
    assert agg.recommend_interval([3, -3], random.Random(0)) == -3
    with pytest.raises(ValueError):
        agg.recommend_interval([])


def test_record_writes_through_to_store():
    """Every update is upserted to the store."""

    store = store_mod.InMemoryStore()
    agg = stats_mod.IntervalStatsAggregator(store=store)
    agg.record(make_run(80.0))
    agg.record(make_run(60.0))
    assert store.get_interval_stat(3).total_attempts == 2


class FailingStore:
    def upsert_interval_stat(self, stat):
        raise errors.PersistenceError("disk full")


def test_store_failure_keeps_memory_state():
    """A failed write raises but the in-memory update stands."""

    agg = stats_mod.IntervalStatsAggregator(store=FailingStore())
    with pytest.raises(errors.PersistenceError):
        agg.record(make_run(80.0))
    assert agg.get_stat(3).total_attempts == 1


def test_load_seeds_statistics():
    """Previously stored statistics continue the moving average."""

    agg = stats_mod.IntervalStatsAggregator()
    agg.load([models.IntervalStat(interval_degrees=3, total_attempts=4, average_score=50.0)])
    stat = agg.record(make_run(100.0))
    assert stat.average_score == pytest.approx(0.3 * 100 + 0.7 * 50)
    assert stat.total_attempts == 5


@pytest.mark.parametrize("kwargs", [{"alpha": 0}, {"alpha": 1.5}, {"initial_score": 120}])
def test_invalid_parameters(kwargs):
    """Out-of-range smoothing settings are rejected."""

    with pytest.raises(ValueError):
        stats_mod.IntervalStatsAggregator(**kwargs)
