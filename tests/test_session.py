"""Integration tests for :class:`harmony_trainer.session.PracticeSession`.

The session runs with the fake audio engine, a manually ticked scheduler
and a stand-in tracker whose sink the tests call directly. Observations are
timestamped on the engine's fake clock so they map onto the exercise's
beats exactly as live input would.
"""

import importlib
import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from test_audio_engine import FakeClock, make_engine  # noqa: E402

session_mod = importlib.import_module("harmony_trainer.session")
scheduler_mod = importlib.import_module("harmony_trainer.scheduler")
settings_mod = importlib.import_module("harmony_trainer.settings")
store_mod = importlib.import_module("harmony_trainer.store")
stats_mod = importlib.import_module("harmony_trainer.stats")
models = importlib.import_module("harmony_trainer.models")
theory = importlib.import_module("harmony_trainer.theory")
errors = importlib.import_module("harmony_trainer.errors")


class FakeTracker:
    """Minimal tracker exposing the sink handed to ``start``."""

    def __init__(self, error=None):
        self.error = error
        self.sink = None
        self.starts = 0
        self.stops = 0

    def start(self, sink):
        if self.error is not None:
            raise self.error
        self.sink = sink
        self.starts += 1

    def stop(self):
        self.stops += 1


SETTINGS = settings_mod.PracticeSettings(
    tempo=60.0,
    key="C",
    melodic_mode="scale_walk",
    rhythmic_complexity=0,
    measure_count=2,
    harmony_interval_degrees=3,
)


def build(store=None, tracker=None, settings=SETTINGS, aggregator=None):
    clock = FakeClock(100.0)
    engine, synth = make_engine(clock)
    scheduler = scheduler_mod.PlaybackScheduler(engine, threaded=False)
    session = session_mod.PracticeSession(
        engine,
        settings=settings,
        store=store,
        aggregator=aggregator,
        tracker=tracker or FakeTracker(),
        scheduler=scheduler,
    )
    return session, clock, synth


def sung(pitch, timestamp, confidence=0.95):
    return models.PitchObservation(theory.pitch_to_frequency(pitch), confidence, pitch, timestamp)


def test_full_run_is_scored_and_recorded():
    """A run sung on the harmony scores 100 and lands in every record."""

    store = store_mod.InMemoryStore()
    session, clock, synth = build(store=store)
    exercise = session.start_run()
    assert [n.pitch for n in exercise.harmony] == [64, 65]
    assert session.running

    sink = session.tracker.sink
    sink(sung(64, 100.5))
    sink(sung(64, 102.0))
    sink(sung(65, 104.5))
    clock.value = 107.0
    run = session.finish_run()

    assert run.score == 100.0
    assert run.duration_ms == 7000
    assert session.last_observation.pitch == 65
    assert run.harmony_interval_degrees == 3
    assert session.tracker.stops == 1
    assert not session.running
    assert session.session.total_runs == 1
    assert store.runs_for_session(session.session.id) == [run]
    assert store.get_session(session.session.id).total_runs == 1
    assert store.get_interval_stat(3).total_attempts == 1
    assert session.aggregator.get_stat(3).average_score == pytest.approx(100.0)


def test_observations_off_target_lower_score():
    """Singing the melody instead of the harmony scores zero."""

    session, clock, _ = build()
    session.start_run()
    session.tracker.sink(sung(60, 100.5))
    session.tracker.sink(sung(62, 104.5))
    assert session.finish_run().score == 0.0


def test_playback_starts_with_run():
    """Starting a run sounds the first melody and harmony notes."""

    session, clock, synth = build()
    session.start_run()
    assert synth.ons() == [("on", 0, 60, 100), ("on", 1, 64, 70)]
    session.finish_run()
    assert synth.offs()


def test_ghost_setting_mutes_harmony():
    """Ghost harmony keeps the harmony guide silent."""

    settings = SETTINGS.updated(ghost_harmony_enabled=True)
    session, clock, synth = build(settings=settings)
    session.start_run()
    assert synth.ons(1) == []
    run = session.finish_run()
    assert run.ghost_harmony_enabled


def test_device_error_aborts_start():
    """A microphone failure stops playback and records nothing."""

    tracker = FakeTracker(error=errors.PermissionDenied("blocked"))
    session, clock, synth = build(tracker=tracker)
    with pytest.raises(errors.PermissionDenied):
        session.start_run()
    assert not session.running
    assert session.scheduler.state is scheduler_mod.PlaybackState.STOPPED
    assert session.engine.sounding_notes() == set()
    assert not session.scorer.active
    with pytest.raises(RuntimeError):
        session.finish_run()


def test_start_twice_raises():
    """Only one run may be active at a time."""

    session, _, _ = build()
    session.start_run()
    with pytest.raises(RuntimeError):
        session.start_run()
    session.close()


def test_close_aborts_without_recording():
    """Closing discards the active run."""

    store = store_mod.InMemoryStore()
    session, _, _ = build(store=store)
    session.start_run()
    session.tracker.sink(sung(64, 100.5))
    session.close()
    assert not session.running
    assert session.session.total_runs == 0
    assert store.runs_for_session(session.session.id) == []
    session.close()


def test_context_manager_closes():
    """Leaving the ``with`` block aborts the run."""

    session, _, _ = build()
    with session:
        session.start_run()
    assert not session.running
    assert session.tracker.stops == 1


class FailingRunStore(store_mod.InMemoryStore):
    def create_run(self, run):
        raise errors.PersistenceError("database locked")


def test_store_failure_keeps_in_memory_results():
    """A failed save raises after session and statistics are updated."""

    session, clock, _ = build(store=FailingRunStore())
    session.start_run()
    session.tracker.sink(sung(64, 100.5))
    with pytest.raises(errors.PersistenceError):
        session.finish_run()
    assert session.session.total_runs == 1
    assert session.aggregator.get_stat(3).total_attempts == 1
    assert not session.running


def test_stored_statistics_loaded():
    """Statistics in the store seed the session's aggregator."""

    store = store_mod.InMemoryStore()
    store.upsert_interval_stat(
        models.IntervalStat(interval_degrees=6, total_attempts=3, average_score=40.0, struggling=True)
    )
    session, _, _ = build(store=store)
    assert session.aggregator.get_stat(6).total_attempts == 3


def test_adaptive_prepare_picks_struggling_interval():
    """Adaptive preparation practises the weakest interval."""

    aggregator = stats_mod.IntervalStatsAggregator()
    aggregator.load([models.IntervalStat(interval_degrees=-3, total_attempts=2, average_score=30.0, struggling=True)])
    session, _, _ = build(aggregator=aggregator)
    exercise = session.prepare(seed=1, adaptive_intervals=[3, -3, 6], rng=random.Random(0))
    assert exercise.config.harmony_interval_degrees == -3
    assert exercise.seed == 1


def test_consecutive_runs_accumulate():
    """Two runs in one session update the running average."""

    session, clock, _ = build()
    session.start_run()
    session.tracker.sink(sung(64, 100.5))
    session.finish_run()

    clock.value = 200.0
    session.start_run()
    session.tracker.sink(sung(70, 200.5))
    session.finish_run()

    assert session.session.total_runs == 2
    assert session.session.average_score == pytest.approx(50.0)
    assert session.aggregator.get_stat(3).total_attempts == 2


class FlakySessionStore(store_mod.InMemoryStore):
    """Fails the first ``create_session`` call and works afterwards."""

    def __init__(self):
        super().__init__()
        self.session_failures = 1

    def create_session(self, session):
        if self.session_failures:
            self.session_failures -= 1
            raise errors.PersistenceError("disk full")
        super().create_session(session)


def test_session_save_failure_does_not_block_practice(caplog):
    """An unsaved session is reported, the run goes on and is saved later."""

    store = FlakySessionStore()
    session, clock, _ = build(store=store)
    with caplog.at_level("ERROR"):
        session.start_run()
    assert "Could not save session" in caplog.text
    assert session.running
    session.tracker.sink(sung(64, 100.5))
    run = session.finish_run()
    assert store.get_session(session.session.id).total_runs == 1
    assert store.runs_for_session(session.session.id) == [run]
