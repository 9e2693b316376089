"""Harmony Trainer library.

This package is a real-time practice engine for singing harmony. A typical
workflow generates an :class:`~harmony_trainer.generator.Exercise` (a
melody plus a diatonically derived harmony line) with
:func:`~harmony_trainer.generator.generate`, plays it on an
:class:`~harmony_trainer.audio_engine.AudioEngine` through the
:class:`~harmony_trainer.scheduler.PlaybackScheduler` while the
:class:`~harmony_trainer.pitch_tracker.PitchTracker` listens to the singer,
and lets the :class:`~harmony_trainer.scorer.PracticeScorer` measure how long
the voice stayed on the harmony note. :class:`~harmony_trainer.session.PracticeSession`
wires those pieces together and feeds finished runs to the per-interval
statistics.

Underlying Algorithm
--------------------
Pitch is detected with the YIN difference function on a rolling window of
microphone samples. Melodies either walk the scale up and down or take a
constrained random walk over the scale members inside the singer's range;
each melody note is then moved a fixed number of *scale degrees* to obtain
the harmony. Scoring compares every detected pitch with the harmony note at
the current musical position and counts the fraction within 50 cents.

Features include:
- Live pitch tracking with a race-free stop.
- Looping playback driven by one monotonic clock shared with the tracker.
- Exponentially weighted per-interval skill estimates that flag struggling
  intervals.
- SQLite practice history, JSON preferences and MIDI export.
- A command line interface (``python -m harmony_trainer``).
"""

# Modification Summary
# ---------------------
# * Package exports narrowed to the practice engine: generation, playback,
#   tracking, scoring and statistics.
# * ``main`` is re-exported from :mod:`harmony_trainer.cli` so both the
#   console script and ``python -m harmony_trainer`` share one entry point.

__version__ = "0.1.0"

from .audio_engine import AudioEngine  # noqa: E402
from .errors import (  # noqa: E402
    AudioOutputError,
    DeviceError,
    DeviceUnavailable,
    HarmonyTrainerError,
    InvalidRangeError,
    PermissionDenied,
    PersistenceError,
    SchedulingRace,
    TrackerAlreadyRunning,
)
from .generator import (  # noqa: E402
    Exercise,
    GeneratorConfig,
    MelodicMode,
    beats_to_seconds,
    generate,
    generate_harmony,
    seconds_to_beats,
    total_beats,
)
from .models import IntervalStat, Note, NoteStat, PitchObservation, Run, Session  # noqa: E402
from .pitch_tracker import PitchTracker, TrackingHandle, start_pitch_tracking, stop  # noqa: E402
from .scheduler import PlaybackScheduler, PlaybackState  # noqa: E402
from .scorer import PracticeScorer, RunConfig  # noqa: E402
from .session import PracticeSession  # noqa: E402
from .settings import PracticeSettings, load_settings, save_settings  # noqa: E402
from .stats import IntervalStatsAggregator  # noqa: E402
from .store import InMemoryStore, SQLiteStore, Store  # noqa: E402
from .theory import (  # noqa: E402
    ScaleType,
    build_scale,
    cents_difference,
    diatonic_transpose,
    frequency_to_pitch,
    pitch_to_frequency,
    scale_degree,
)
from .yin import EstimatorSettings, estimate_frequency  # noqa: E402
from .cli import main  # noqa: E402

__all__ = [
    "__version__",
    "AudioEngine",
    "AudioOutputError",
    "DeviceError",
    "DeviceUnavailable",
    "HarmonyTrainerError",
    "InvalidRangeError",
    "PermissionDenied",
    "PersistenceError",
    "SchedulingRace",
    "TrackerAlreadyRunning",
    "Exercise",
    "GeneratorConfig",
    "MelodicMode",
    "beats_to_seconds",
    "generate",
    "generate_harmony",
    "seconds_to_beats",
    "total_beats",
    "IntervalStat",
    "Note",
    "NoteStat",
    "PitchObservation",
    "Run",
    "Session",
    "PitchTracker",
    "TrackingHandle",
    "start_pitch_tracking",
    "stop",
    "PlaybackScheduler",
    "PlaybackState",
    "PracticeScorer",
    "RunConfig",
    "PracticeSession",
    "PracticeSettings",
    "load_settings",
    "save_settings",
    "IntervalStatsAggregator",
    "InMemoryStore",
    "SQLiteStore",
    "Store",
    "ScaleType",
    "build_scale",
    "cents_difference",
    "diatonic_transpose",
    "frequency_to_pitch",
    "pitch_to_frequency",
    "scale_degree",
    "EstimatorSettings",
    "estimate_frequency",
    "main",
]
