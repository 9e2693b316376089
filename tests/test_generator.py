"""Tests for melody and harmony generation.

The scale walk is fully deterministic so its output is compared note for
note. Random walks are checked through their invariants over many seeds:
pitches stay inside the configured range, harmony notes stay in the key and
the phrase ends on a tonic or fifth.
"""

import importlib
import logging
import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

generator = importlib.import_module("harmony_trainer.generator")
theory = importlib.import_module("harmony_trainer.theory")
errors = importlib.import_module("harmony_trainer.errors")

GeneratorConfig = generator.GeneratorConfig
MelodicMode = generator.MelodicMode

C_MAJOR_CYCLE = [60, 62, 64, 65, 67, 69, 71, 72, 71, 69, 67, 65, 64, 62, 60]


def test_scale_walk_whole_notes():
    """Four measures at complexity zero give four whole notes up the scale."""

    cfg = GeneratorConfig(
        root_pitch=60,
        scale_type="major",
        measure_count=4,
        beats_per_measure=4,
        rhythmic_complexity=0,
        melodic_mode=MelodicMode.SCALE_WALK,
    )
    exercise = generator.generate(cfg)

    assert [n.duration_beats for n in exercise.melody] == [4.0] * 4
    assert [n.start_beat for n in exercise.melody] == [0.0, 4.0, 8.0, 12.0]
    assert [n.pitch for n in exercise.melody] == C_MAJOR_CYCLE[:4]
    assert exercise.total_beats == 16.0


def test_scale_walk_cycle_shape():
    """The cycle climbs eight notes and descends seven."""

    assert generator.scale_walk_cycle(60, "major") == C_MAJOR_CYCLE


def test_scale_walk_repeats_cycle():
    """Longer scale walks wrap around to the start of the cycle."""

    cfg = GeneratorConfig(
        measure_count=20, rhythmic_complexity=0, melodic_mode="scale_walk", seed=5
    )
    pitches = [n.pitch for n in generator.generate(cfg).melody]
    assert pitches == [C_MAJOR_CYCLE[i % 15] for i in range(20)]


def test_scale_walk_ignores_pitch_range():
    """The scale walk plays the full octave even outside the range."""

    cfg = GeneratorConfig(
        measure_count=8,
        rhythmic_complexity=0,
        melodic_mode="scale_walk",
        pitch_range_min=60,
        pitch_range_max=64,
    )
    assert max(n.pitch for n in generator.generate(cfg).melody) == 72


@pytest.mark.parametrize("complexity", [0, 2, 5, 8, 10])
def test_random_walk_stays_in_range(complexity):
    """Every random-walk pitch lies within the configured range."""

    for seed in range(40):
        cfg = GeneratorConfig(
            root_pitch=62,
            measure_count=6,
            pitch_range_min=55,
            pitch_range_max=70,
            rhythmic_complexity=complexity,
            seed=seed,
        )
        for note in generator.generate(cfg).melody:
            assert 55 <= note.pitch <= 70


@pytest.mark.parametrize("scale", list(theory.ScaleType))
@pytest.mark.parametrize("interval", [-6, -3, 3, 6])
def test_harmony_notes_are_in_scale(scale, interval):
    """Diatonic harmony lines never leave the key."""

    for seed in range(10):
        cfg = GeneratorConfig(
            root_pitch=65,
            scale_type=scale,
            rhythmic_complexity=7,
            harmony_interval_degrees=interval,
            seed=seed,
        )
        exercise = generator.generate(cfg)
        for note in exercise.harmony:
            assert theory.is_in_scale(note.pitch, 65, scale)


def test_harmony_shares_melody_timing():
    """Harmony notes start and last exactly like their melody notes."""

    exercise = generator.generate(GeneratorConfig(rhythmic_complexity=9, seed=11))
    assert len(exercise.harmony) == len(exercise.melody)
    for m, h in zip(exercise.melody, exercise.harmony):
        assert (m.start_beat, m.duration_beats) == (h.start_beat, h.duration_beats)


def test_fixed_interval_mode():
    """Fixed mode adds a constant number of semitones."""

    cfg = GeneratorConfig(harmony_interval_degrees=4, interval_mode="fixed", seed=2)
    exercise = generator.generate(cfg)
    for m, h in zip(exercise.melody, exercise.harmony):
        assert h.pitch == m.pitch + 4


def test_fixed_unison_is_allowed():
    """A zero semitone shift is a valid unison in fixed mode."""

    cfg = GeneratorConfig(harmony_interval_degrees=0, interval_mode="fixed", seed=2)
    exercise = generator.generate(cfg)
    assert [h.pitch for h in exercise.harmony] == [m.pitch for m in exercise.melody]


def test_random_walk_ends_on_tonic_or_fifth():
    """The final note resolves to scale degree one or five."""

    for seed in range(30):
        cfg = GeneratorConfig(root_pitch=60, rhythmic_complexity=6, seed=seed)
        last = generator.generate(cfg).melody[-1].pitch
        assert theory.scale_degree(last, 60, "major") in (1, 5)


def test_phrase_ending_may_leap_past_step_table():
    """The final snap moves to the nearest tonic or fifth even when far away.

    At complexity zero the walk never moves, so every note repeats the middle
    of the filtered scale (E4 here). The closing note still jumps two scale
    steps up to G4, beyond anything the movement table allows.
    """

    cfg = GeneratorConfig(
        root_pitch=60,
        pitch_range_min=60,
        pitch_range_max=67,
        measure_count=3,
        rhythmic_complexity=0,
        seed=1,
    )
    pitches = [n.pitch for n in generator.generate(cfg).melody]
    assert pitches == [64, 64, 67]


def test_same_seed_same_exercise():
    """Generation is reproducible from the seed."""

    cfg = GeneratorConfig(rhythmic_complexity=8, seed=1234)
    assert generator.generate(cfg).melody == generator.generate(cfg).melody


def test_missing_seed_is_recorded(caplog):
    """Without a seed one is drawn, logged and stored on the exercise."""

    with caplog.at_level(logging.DEBUG, logger="harmony_trainer.generator"):
        exercise = generator.generate(GeneratorConfig(rhythmic_complexity=5))
    assert exercise.config.seed == exercise.seed
    assert "drew" in caplog.text
    again = generator.generate(GeneratorConfig(rhythmic_complexity=5, seed=exercise.seed))
    assert again.melody == exercise.melody


def test_empty_range_raises():
    """A range holding no scale member is an ``InvalidRangeError``."""

    cfg = GeneratorConfig(root_pitch=60, pitch_range_min=61, pitch_range_max=61)
    with pytest.raises(errors.InvalidRangeError):
        generator.generate(cfg)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"measure_count": 0},
        {"beats_per_measure": 0},
        {"rhythmic_complexity": 11},
        {"pitch_range_min": 80, "pitch_range_max": 70},
        {"harmony_interval_degrees": 0},
        {"interval_mode": "chromatic"},
        {"scale_type": "blues"},
        {"melodic_mode": "zigzag"},
    ],
)
def test_config_validation(kwargs):
    """Invalid configurations raise ``ValueError``."""

    with pytest.raises(ValueError):
        GeneratorConfig(**kwargs)


def test_for_vocal_range():
    """Vocal range presets set the pitch window and a default root."""

    cfg = GeneratorConfig.for_vocal_range("alto", seed=3)
    assert (cfg.pitch_range_min, cfg.pitch_range_max) == theory.VOCAL_RANGES["alto"]
    assert cfg.root_pitch == theory.recommended_root("alto")
    with pytest.raises(ValueError):
        GeneratorConfig.for_vocal_range("treble")


def test_draw_movement_respects_table_width():
    """Steps never exceed the widest entry of the complexity's table."""

    rng = random.Random(0)
    assert {generator.draw_movement(0, rng) for _ in range(50)} == {0}
    assert {generator.draw_movement(2, rng) for _ in range(500)} <= {-1, 0, 1}
    assert max(abs(generator.draw_movement(10, rng)) for _ in range(500)) <= 4


@pytest.mark.parametrize(
    "mode, complexity, expected",
    [("scale_walk", 0, 1), ("random_walk", 3, 2), ("random_walk", 8, 3)],
)
def test_difficulty_tiers(mode, complexity, expected):
    """Difficulty follows the melodic mode and rhythmic complexity."""

    cfg = GeneratorConfig(melodic_mode=mode, rhythmic_complexity=complexity)
    assert generator.difficulty_for_config(cfg) == expected


def test_tempo_conversions():
    """Beats and seconds convert through the tempo."""

    assert generator.beats_to_seconds(4, 120) == pytest.approx(2.0)
    assert generator.seconds_to_beats(1.5, 80) == pytest.approx(2.0)
    with pytest.raises(ValueError):
        generator.beats_to_seconds(1, 0)


def test_generate_harmony_unknown_mode():
    """Unknown interval modes are rejected."""

    with pytest.raises(ValueError):
        generator.generate_harmony([], 60, "major", 3, "chromatic")
