"""Melody and harmony generation for practice exercises.

An exercise is a melody plus a harmony line sharing the same timeline. Two
melodic modes are supported:

``scale_walk``
    The key's scale one octave up and back down (15 distinct positions per
    cycle) repeated for as many notes as the rhythm needs. The vocal range is
    not consulted so beginners always hear the complete scale.
``random_walk``
    A constrained random walk over the scale members inside the configured
    pitch range. Step sizes come from a complexity-indexed probability table
    and the final note is pulled to the nearest tonic or fifth so phrases
    sound resolved.

The harmony is derived note by note with
:func:`~harmony_trainer.theory.diatonic_transpose` (or a fixed semitone shift)
and keeps the melody's timing.

Every random decision, rhythm included, is drawn from a single
``random.Random`` seeded from the configuration. When no seed is configured
one is drawn and recorded on the returned :class:`Exercise` so any exercise
can be reproduced later.

Example
-------
>>> cfg = GeneratorConfig(root_pitch=60, measure_count=4, rhythmic_complexity=0,
...                       melodic_mode=MelodicMode.SCALE_WALK, seed=1)
>>> [n.pitch for n in generate(cfg).melody]
[60, 62, 64, 65]
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

from .errors import InvalidRangeError
from .models import Note
from .rhythm_engine import RhythmGenerator, generate_rhythm, onsets
from .theory import (
    VOCAL_RANGES,
    ScaleType,
    build_scale,
    diatonic_transpose,
    fixed_transpose,
    recommended_root,
)

__all__ = [
    "MelodicMode",
    "GeneratorConfig",
    "Exercise",
    "MOVEMENT_TABLES",
    "draw_movement",
    "scale_walk_cycle",
    "generate",
    "generate_melody",
    "generate_harmony",
    "total_beats",
    "beats_to_seconds",
    "seconds_to_beats",
    "difficulty_for_config",
]


logger = logging.getLogger(__name__)


class MelodicMode(str, Enum):
    SCALE_WALK = "scale_walk"
    RANDOM_WALK = "random_walk"

    @classmethod
    def parse(cls, value: Union[str, "MelodicMode"]) -> "MelodicMode":
        if isinstance(value, MelodicMode):
            return value
        key = value.strip().lower().replace("-", "_")
        key = {"scale": "scale_walk", "random": "random_walk"}.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown melodic mode: {value}") from None


# Signed scale-step probabilities per complexity ceiling. Each entry lists
# ``(cumulative_probability, step)`` pairs checked in order against one
# uniform draw.
MOVEMENT_TABLES: Tuple[Tuple[int, Tuple[Tuple[float, int], ...]], ...] = (
    (0, ((1.0, 0),)),
    (2, ((0.7, 0), (0.85, -1), (1.0, 1))),
    (4, ((0.4, 0), (0.6, -1), (0.8, 1), (0.9, -2), (1.0, 2))),
    (
        6,
        ((0.2, 0), (0.4, -1), (0.6, 1), (0.75, -2), (0.9, 2), (0.95, -3), (1.0, 3)),
    ),
    (
        10,
        (
            (0.1, 0),
            (0.25, -1),
            (0.4, 1),
            (0.55, -2),
            (0.7, 2),
            (0.8, -3),
            (0.9, 3),
            (0.95, -4),
            (1.0, 4),
        ),
    ),
)


@dataclass(frozen=True)
class GeneratorConfig:
    """Parameters controlling :func:`generate`.

    ``harmony_interval_degrees`` is a signed scale-degree offset in interval
    naming (``3`` = third above, ``-3`` = third below). ``interval_mode``
    ``"fixed"`` reinterprets it as a semitone offset instead.
    """

    root_pitch: int = 60
    scale_type: ScaleType = ScaleType.MAJOR
    measure_count: int = 4
    beats_per_measure: int = 4
    pitch_range_min: int = 48
    pitch_range_max: int = 72
    rhythmic_complexity: int = 3
    melodic_mode: MelodicMode = MelodicMode.RANDOM_WALK
    harmony_interval_degrees: int = 3
    interval_mode: str = "diatonic"
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        # Accept plain strings for the enum fields so configurations loaded
        # from JSON settings work unchanged.
        object.__setattr__(self, "scale_type", ScaleType.parse(self.scale_type))
        object.__setattr__(self, "melodic_mode", MelodicMode.parse(self.melodic_mode))
        if self.measure_count <= 0:
            raise ValueError("measure_count must be positive")
        if self.beats_per_measure <= 0:
            raise ValueError("beats_per_measure must be positive")
        if not 0 <= self.rhythmic_complexity <= 10:
            raise ValueError("rhythmic_complexity must be between 0 and 10")
        if self.pitch_range_min > self.pitch_range_max:
            raise ValueError("pitch_range_min must not exceed pitch_range_max")
        if self.interval_mode not in ("diatonic", "fixed"):
            raise ValueError("interval_mode must be 'diatonic' or 'fixed'")
        if self.interval_mode == "diatonic" and self.harmony_interval_degrees == 0:
            raise ValueError("diatonic harmony_interval_degrees must be non-zero")

    @classmethod
    def for_vocal_range(
        cls, vocal_range: str, root_pitch: Optional[int] = None, **kwargs
    ) -> "GeneratorConfig":
        """Build a configuration whose pitch window is ``vocal_range``.

        When ``root_pitch`` is omitted the recommended root for the range is
        used.
        """

        try:
            low, high = VOCAL_RANGES[vocal_range.strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown vocal range: {vocal_range}") from None
        if root_pitch is None:
            root_pitch = recommended_root(vocal_range)
        return cls(root_pitch=root_pitch, pitch_range_min=low, pitch_range_max=high, **kwargs)


@dataclass(frozen=True)
class Exercise:
    """A generated melody with its harmony and the seed that produced them."""

    melody: Tuple[Note, ...]
    harmony: Tuple[Note, ...]
    config: GeneratorConfig
    seed: int
    difficulty: int = field(default=1)

    @property
    def total_beats(self) -> float:
        return total_beats(self.melody)


def draw_movement(complexity: int, rng: random.Random) -> int:
    """Return a signed scale step drawn from the table for ``complexity``."""

    if complexity == 0:
        return 0
    for ceiling, table in MOVEMENT_TABLES:
        if complexity <= ceiling:
            break
    roll = rng.random()
    for threshold, step in table:
        if roll < threshold:
            return step
    return table[-1][1]


def scale_walk_cycle(root_pitch: int, scale_type: Union[ScaleType, str]) -> List[int]:
    """Return the 15-note up-and-down cycle through one octave of the key."""

    scale = build_scale(root_pitch, scale_type, 1)
    up = scale[:8]
    down = list(reversed(scale[:7]))
    return up + down


def _filtered_scale(config: GeneratorConfig) -> List[int]:
    wide = build_scale(config.root_pitch - 24, config.scale_type, 6)
    return [p for p in wide if config.pitch_range_min <= p <= config.pitch_range_max]


def _phrase_ending(last_pitch: int, scale: Sequence[int], root_pitch: int) -> int:
    """Return the tonic or fifth in ``scale`` closest to ``last_pitch``."""

    tonics = [p for p in scale if p % 12 == root_pitch % 12]
    fifths = [p for p in scale if p % 12 == (root_pitch + 7) % 12]
    candidates = tonics + fifths
    if not candidates:
        return last_pitch
    closest = candidates[0]
    for pitch in candidates:
        if abs(last_pitch - pitch) < abs(last_pitch - closest):
            closest = pitch
    return closest


def generate_melody(config: GeneratorConfig, rng: random.Random) -> List[Note]:
    """Return the melody for ``config`` drawing randomness from ``rng``.

    Raises
    ------
    InvalidRangeError
        In ``random_walk`` mode when no scale member lies inside the pitch
        range.
    """

    if config.melodic_mode is MelodicMode.SCALE_WALK:
        cycle = scale_walk_cycle(config.root_pitch, config.scale_type)
        durations = generate_rhythm(
            config.measure_count, config.rhythmic_complexity, config.beats_per_measure, rng=rng
        )
        pitches = [cycle[index % len(cycle)] for index in range(len(durations))]
        return _notes(pitches, durations)

    scale = _filtered_scale(config)
    if not scale:
        raise InvalidRangeError(
            f"No {config.scale_type.value} scale notes from root {config.root_pitch} "
            f"lie within {config.pitch_range_min}-{config.pitch_range_max}"
        )

    rhythm = RhythmGenerator(
        config.rhythmic_complexity, config.beats_per_measure, rng=rng
    )
    index = len(scale) // 2
    pitches: List[int] = []
    durations = []
    for _ in range(config.measure_count):
        for duration in rhythm.measure():
            step = draw_movement(config.rhythmic_complexity, rng)
            index = max(0, min(len(scale) - 1, index + step))
            pitches.append(scale[index])
            durations.append(duration)

    if pitches:
        pitches[-1] = _phrase_ending(pitches[-1], scale, config.root_pitch)
    return _notes(pitches, durations)


def _notes(pitches: Sequence[int], durations: Sequence[float]) -> List[Note]:
    return [
        Note(pitch=pitch, duration_beats=duration, start_beat=start)
        for pitch, duration, start in zip(pitches, durations, onsets(durations))
    ]


def generate_harmony(
    melody: Sequence[Note],
    root_pitch: int,
    scale_type: Union[ScaleType, str],
    interval: int = 3,
    mode: str = "diatonic",
) -> List[Note]:
    """Return a harmony line with the melody's timing.

    In ``diatonic`` mode ``interval`` is a signed scale-degree offset; in
    ``fixed`` mode it is a signed semitone offset.

    Raises
    ------
    ValueError
        If ``mode`` is unknown or a diatonic ``interval`` is ``0``.
    """

    if mode == "diatonic":
        transpose = lambda p: diatonic_transpose(p, root_pitch, scale_type, interval)  # noqa: E731
    elif mode == "fixed":
        transpose = lambda p: fixed_transpose(p, interval)  # noqa: E731
    else:
        raise ValueError(f"Unknown interval mode: {mode}")
    return [replace(note, pitch=transpose(note.pitch)) for note in melody]


def generate(config: GeneratorConfig) -> Exercise:
    """Generate a complete exercise for ``config``.

    Raises
    ------
    InvalidRangeError
        If the pitch range holds no scale member in ``random_walk`` mode.
    """

    seed = config.seed
    if seed is None:
        seed = random.SystemRandom().randrange(2 ** 31)
        logger.debug("No seed configured, drew %d", seed)
    rng = random.Random(seed)

    melody = generate_melody(config, rng)
    harmony = generate_harmony(
        melody,
        config.root_pitch,
        config.scale_type,
        config.harmony_interval_degrees,
        config.interval_mode,
    )
    logger.info(
        "Generated %d-note %s exercise (seed %d)",
        len(melody),
        config.melodic_mode.value,
        seed,
    )
    return Exercise(
        melody=tuple(melody),
        harmony=tuple(harmony),
        config=replace(config, seed=seed),
        seed=seed,
        difficulty=difficulty_for_config(config),
    )


def total_beats(notes: Sequence[Note]) -> float:
    """Return the end beat of the last note, or ``0.0`` for no notes."""

    if not notes:
        return 0.0
    return notes[-1].end_beat


def beats_to_seconds(beats: float, tempo: float) -> float:
    """Convert ``beats`` to seconds at ``tempo`` beats per minute."""

    if tempo <= 0:
        raise ValueError("tempo must be positive")
    return beats / tempo * 60.0


def seconds_to_beats(seconds: float, tempo: float) -> float:
    """Convert ``seconds`` to beats at ``tempo`` beats per minute."""

    if tempo <= 0:
        raise ValueError("tempo must be positive")
    return seconds * tempo / 60.0


def difficulty_for_config(config: GeneratorConfig) -> int:
    """Classify ``config`` as easy (1), medium (2) or hard (3)."""

    if config.melodic_mode is MelodicMode.SCALE_WALK:
        return 1
    if config.rhythmic_complexity <= 4:
        return 2
    return 3
