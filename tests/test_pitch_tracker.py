"""Tests for the live pitch tracker.

The engine's stream factory is replaced with :class:`StreamFactory` from the
audio engine tests so audio blocks are pushed by hand through the captured
callback. Observations are collected by a sink guarded with a condition so
the tests can wait for the worker thread without fixed sleeps where
possible.
"""

import importlib
import sys
import threading
import time
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from test_audio_engine import FakeClock, StreamFactory, make_engine  # noqa: E402

tracker_mod = importlib.import_module("harmony_trainer.pitch_tracker")
errors = importlib.import_module("harmony_trainer.errors")

SAMPLE_RATE = 44100
BLOCK = 1024


def sine_block(freq, start, size=BLOCK):
    t = (np.arange(size) + start) / SAMPLE_RATE
    return (0.5 * np.sin(2 * np.pi * freq * t)).astype(np.float32).reshape(-1, 1)


class Collector:
    """Thread-safe observation sink."""

    def __init__(self):
        self.items = []
        self.cond = threading.Condition()

    def __call__(self, observation):
        with self.cond:
            self.items.append(observation)
            self.cond.notify_all()

    def wait_for(self, count, timeout=2.0):
        with self.cond:
            return self.cond.wait_for(lambda: len(self.items) >= count, timeout)


@pytest.fixture
def rig():
    factory = StreamFactory()
    clock = FakeClock(0.0)
    engine, _ = make_engine(clock, factory, SAMPLE_RATE)
    tracker = tracker_mod.PitchTracker(engine)
    yield tracker, factory, clock
    tracker.stop()


def feed_sine(stream, clock, freq, blocks):
    for i in range(blocks):
        clock.advance(BLOCK / SAMPLE_RATE)
        stream.feed(sine_block(freq, i * BLOCK))


def test_observations_report_sung_pitch(rig):
    """A 440 Hz input yields observations near pitch 69."""

    tracker, factory, clock = rig
    sink = Collector()
    tracker.start(sink)
    feed_sine(factory.last, clock, 440.0, 4)
    assert sink.wait_for(3)

    observation = sink.items[-1]
    assert observation.frequency_hz == pytest.approx(440.0, rel=0.005)
    assert observation.pitch == pytest.approx(69.0, abs=0.1)
    assert observation.confidence > 0.9
    timestamps = [o.timestamp for o in sink.items]
    assert timestamps == sorted(timestamps)


def test_window_must_fill_before_first_observation(rig):
    """One block is shorter than the analysis window so nothing is emitted."""

    tracker, factory, clock = rig
    sink = Collector()
    tracker.start(sink)
    feed_sine(factory.last, clock, 440.0, 1)
    assert not sink.wait_for(1, timeout=0.2)


def test_silence_is_emitted_unvoiced(rig):
    """Silent frames still produce observations, with zero frequency."""

    tracker, factory, clock = rig
    sink = Collector()
    tracker.start(sink)
    for _ in range(3):
        factory.last.feed(np.zeros((BLOCK, 1), dtype=np.float32))
    assert sink.wait_for(2)
    assert all(not o.voiced for o in sink.items)


def test_second_start_raises_and_keeps_capture(rig):
    """Starting an active tracker is refused without disturbing it."""

    tracker, factory, clock = rig
    tracker.start(Collector())
    with pytest.raises(errors.TrackerAlreadyRunning):
        tracker.start(Collector())
    assert tracker.is_running
    assert len(factory.streams) == 1
    assert factory.last.closed == 0


def test_stop_is_idempotent(rig):
    """Stopping twice closes the stream only once."""

    tracker, factory, clock = rig
    tracker.start(Collector())
    tracker.stop()
    tracker.stop()
    assert not tracker.is_running
    assert factory.last.stopped == 1
    assert factory.last.closed == 1


def test_no_observations_after_stop(rig):
    """Blocks delivered after ``stop`` never reach the sink."""

    tracker, factory, clock = rig
    sink = Collector()
    tracker.start(sink)
    stream = factory.last
    feed_sine(stream, clock, 220.0, 3)
    sink.wait_for(2)
    tracker.stop()
    count = len(sink.items)
    feed_sine(stream, clock, 220.0, 5)
    time.sleep(0.2)
    assert len(sink.items) == count


def test_stop_from_inside_sink(rig):
    """The sink may stop the tracker without deadlocking."""

    tracker, factory, clock = rig
    calls = []

    def sink(observation):
        calls.append(observation)
        tracker.stop()

    tracker.start(sink)
    feed_sine(factory.last, clock, 330.0, 6)
    deadline = time.time() + 2.0
    while tracker.is_running and time.time() < deadline:
        time.sleep(0.01)
    time.sleep(0.1)
    assert not tracker.is_running
    assert len(calls) == 1


def test_restart_after_stop(rig):
    """A stopped tracker can start a fresh capture."""

    tracker, factory, clock = rig
    tracker.start(Collector())
    tracker.stop()
    sink = Collector()
    tracker.start(sink)
    assert len(factory.streams) == 2
    feed_sine(factory.last, clock, 440.0, 3)
    assert sink.wait_for(1)


@pytest.mark.parametrize(
    "error", [errors.PermissionDenied("denied"), errors.DeviceUnavailable("no mic")]
)
def test_device_failure_leaves_tracker_idle(error):
    """Device errors propagate and the tracker can be started again later."""

    factory = StreamFactory(error=error)
    engine, _ = make_engine(FakeClock(), factory)
    tracker = tracker_mod.PitchTracker(engine)
    with pytest.raises(type(error)):
        tracker.start(Collector())
    assert not tracker.is_running

    factory.error = None
    tracker.start(Collector())
    assert tracker.is_running
    tracker.stop()


def test_estimator_failure_skips_frame():
    """A failing analysis step is logged and the next frame still counts."""

    calls = {"n": 0}

    def flaky(samples, rate, settings):
        calls["n"] += 1
        if calls["n"] == 1:
            raise FloatingPointError("transient")
        return 220.0, 0.95

    factory = StreamFactory()
    clock = FakeClock()
    engine, _ = make_engine(clock, factory)
    tracker = tracker_mod.PitchTracker(engine, estimator=flaky)
    sink = Collector()
    tracker.start(sink)
    for _ in range(4):
        clock.advance(0.02)
        factory.last.feed(np.ones((BLOCK, 1), dtype=np.float32))
    assert sink.wait_for(1)
    tracker.stop()
    assert sink.items[0].frequency_hz == 220.0
    assert sink.items[0].pitch == pytest.approx(57.0)


def test_slow_analysis_drops_oldest_blocks():
    """When analysis falls behind the queue discards the oldest blocks."""

    release = threading.Event()

    def slow(samples, rate, settings):
        release.wait(2.0)
        return 0.0, 0.0

    factory = StreamFactory()
    engine, _ = make_engine(FakeClock(), factory)
    tracker = tracker_mod.PitchTracker(engine, window_size=8, blocksize=8, queue_size=2, estimator=slow)
    tracker.start(Collector())
    for _ in range(10):
        factory.last.feed(np.ones((8, 1), dtype=np.float32))
    assert tracker.dropped_frames >= 1
    release.set()
    tracker.stop()


def test_start_pitch_tracking_handle():
    """The functional interface returns a handle that stops tracking."""

    factory = StreamFactory()
    engine, _ = make_engine(FakeClock(), factory)
    with tracker_mod.start_pitch_tracking(engine, Collector()) as handle:
        assert handle.active
    assert not handle.active
    tracker_mod.stop(handle)
    assert factory.last.closed == 1
