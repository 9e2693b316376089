"""Command line interface tests.

Every test points ``--settings-file`` and ``--db`` into ``tmp_path`` so the
user's real preferences and history are never touched. The practice command
runs against an :class:`AudioEngine` built from the fakes in the audio engine
tests; its microphone never delivers audio so the run scores zero, which is
enough to follow the command from exercise generation to the stored result.
"""

from __future__ import annotations

import importlib
import json
import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from test_audio_engine import FakeSynth, StreamFactory  # noqa: E402

cli = importlib.import_module("harmony_trainer.cli")
audio_engine = importlib.import_module("harmony_trainer.audio_engine")
store_mod = importlib.import_module("harmony_trainer.store")
errors = importlib.import_module("harmony_trainer.errors")


@pytest.fixture
def settings_file(tmp_path):
    return str(tmp_path / "settings.json")


def test_list_scales(capsys):
    """``--list-scales`` prints every supported scale."""

    cli.run_cli(["--list-scales"])
    out = capsys.readouterr().out.split()
    assert out == ["major", "natural_minor", "harmonic_minor", "melodic_minor"]


def test_list_ranges(capsys):
    """``--list-ranges`` prints the vocal ranges with their note spans."""

    cli.run_cli(["--list-ranges"])
    assert "tenor: C3-G4" in capsys.readouterr().out


def test_no_command_exits(capsys):
    """Running without a subcommand prints help and fails."""

    with pytest.raises(SystemExit) as exc:
        cli.run_cli([])
    assert exc.value.code == 1


def test_generate_prints_and_writes_midi(tmp_path, settings_file, capsys):
    """``generate`` prints the exercise table and saves the MIDI file."""

    out = tmp_path / "ex.mid"
    cli.run_cli(
        [
            "--settings-file", settings_file,
            "generate",
            "--mode", "scale_walk",
            "--complexity", "0",
            "--measures", "2",
            "--seed", "7",
            "--output", str(out),
        ]
    )
    text = capsys.readouterr().out
    assert "Seed 7" in text
    assert "C4      E4" in text
    assert out.is_file()


def test_generate_same_seed_same_output(settings_file, capsys):
    """Seeded generation is reproducible from the command line."""

    args = ["--settings-file", settings_file, "generate", "--seed", "99", "--key", "G"]
    cli.run_cli(args)
    first = capsys.readouterr().out
    cli.run_cli(args)
    assert capsys.readouterr().out == first


@pytest.mark.parametrize(
    "extra",
    [["--key", "H"], ["--range", "falsetto"], ["--interval", "0"], ["--scale", "blues"]],
)
def test_invalid_options_exit(settings_file, extra, caplog):
    """Bad option values are logged and exit with status 1."""

    with caplog.at_level(logging.ERROR):
        with pytest.raises(SystemExit) as exc:
            cli.run_cli(["--settings-file", settings_file, "generate", *extra])
    assert exc.value.code == 1
    assert caplog.text


def test_generate_uses_saved_settings(tmp_path, capsys):
    """Unset options fall back to the settings file."""

    path = tmp_path / "prefs.json"
    path.write_text(json.dumps({"key": "D", "melodic_mode": "scale_walk", "rhythmic_complexity": 0}))
    cli.run_cli(["--settings-file", str(path), "generate", "--seed", "1", "--measures", "1"])
    assert "root D4 major" in capsys.readouterr().out


def test_stats_empty(tmp_path, settings_file, capsys):
    """``stats`` on a fresh database reports no history."""

    cli.run_cli(["--settings-file", settings_file, "stats", "--db", str(tmp_path / "h.db")])
    assert "No practice history yet." in capsys.readouterr().out


@pytest.fixture
def fake_audio(monkeypatch):
    """Replace ``AudioEngine`` with one wired to fake devices."""

    synth = FakeSynth()
    real_engine = audio_engine.AudioEngine

    def factory(sample_rate=44100, soundfont=None, **kwargs):
        return real_engine(
            sample_rate,
            soundfont,
            stream_factory=StreamFactory(),
            synth_factory=lambda sf, programs: synth,
        )

    monkeypatch.setattr(audio_engine, "AudioEngine", factory)
    return synth


def test_practice_records_run(tmp_path, settings_file, capsys, fake_audio):
    """``practice`` plays the exercise, scores it and stores the result."""

    db = str(tmp_path / "h.db")
    cli.run_cli(
        [
            "--settings-file", settings_file,
            "practice",
            "--seed", "3",
            "--tempo", "240",
            "--duration", "0.2",
            "--db", db,
            "--save-settings",
        ]
    )
    out = capsys.readouterr().out
    assert "Score: 0.0%" in out
    assert "Interval +3" in out
    assert fake_audio.ons()
    assert json.loads(Path(settings_file).read_text())["tempo"] == 240.0

    with store_mod.SQLiteStore(db) as store:
        stats = store.all_interval_stats()
    assert [(s.interval_degrees, s.total_attempts) for s in stats] == [(3, 1)]

    cli.run_cli(["--settings-file", settings_file, "stats", "--db", db])
    assert "struggling" in capsys.readouterr().out


def test_practice_without_microphone_exits(tmp_path, settings_file, monkeypatch, caplog):
    """A missing input device is reported and exits with status 1."""

    real_engine = audio_engine.AudioEngine

    def factory(sample_rate=44100, soundfont=None, **kwargs):
        return real_engine(
            sample_rate,
            soundfont,
            stream_factory=StreamFactory(error=errors.DeviceUnavailable("no input device")),
            synth_factory=lambda sf, programs: FakeSynth(),
        )

    monkeypatch.setattr(audio_engine, "AudioEngine", factory)
    with caplog.at_level(logging.ERROR):
        with pytest.raises(SystemExit) as exc:
            cli.run_cli(
                ["--settings-file", settings_file, "practice", "--db", str(tmp_path / "h.db")]
            )
    assert exc.value.code == 1
    assert "Audio input unavailable" in caplog.text


def test_fixed_interval_marks_out_of_key_harmony(settings_file, capsys):
    """Harmony notes outside the key are flagged in the exercise table."""

    cli.run_cli(
        [
            "--settings-file", settings_file,
            "generate",
            "--mode", "scale_walk",
            "--complexity", "0",
            "--measures", "1",
            "--interval", "1",
            "--interval-mode", "fixed",
            "--seed", "7",
        ]
    )
    assert "C4      C#4 *" in capsys.readouterr().out


def test_format_readout():
    """The live readout names the sung pitch, its cents offset and the target."""

    models = importlib.import_module("harmony_trainer.models")
    target = models.Note(64, 1.0, 0.0)
    sung = models.PitchObservation(330.0, 0.95, 64.1, 1.0)
    assert cli.format_readout(sung, target, True) == "  E4 +10c    target E4   on target"
    quiet = models.PitchObservation(0.0, 0.0, 0.0, 1.0)
    assert cli.format_readout(quiet, target, False) == "  (silence)"
