"""Command line interface for Harmony Trainer.

Modification summary
--------------------
* Split the interface into ``generate``, ``practice`` and ``stats``
  subcommands sharing one set of exercise options.
* Options left unset fall back to the saved JSON settings so the command
  line only needs to mention what differs from the usual routine.
* ``--verbose`` switches logging to DEBUG for troubleshooting audio devices.

Example
-------
Running ``python -m harmony_trainer generate --key G --range alto --interval -3 \
    --seed 7 --output out.mid`` prints a seeded G major exercise with a third
below as harmony and writes it to ``out.mid``. ``practice`` needs a working
microphone (``sounddevice``) and FluidSynth with a SoundFont; ``stats`` reads
the SQLite practice history.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import AudioOutputError, DeviceError, HarmonyTrainerError, PersistenceError
from .generator import Exercise, MelodicMode, generate
from .models import Note, PitchObservation
from .note_utils import key_to_root, midi_to_note, pitch_name
from .settings import PracticeSettings, load_settings, save_settings
from .theory import AVAILABLE_KEYS, VOCAL_RANGES, ScaleType, is_in_scale

__all__ = ["build_parser", "format_exercise", "format_readout", "run_cli", "main"]


def _add_exercise_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--key", type=str, help=f"Key root ({', '.join(AVAILABLE_KEYS)} or e.g. F#3)")
    parser.add_argument("--scale", type=str, help="Scale type (see --list-scales)")
    parser.add_argument("--range", dest="vocal_range", type=str, help="Vocal range (see --list-ranges)")
    parser.add_argument("--measures", dest="measure_count", type=int, help="Number of measures")
    parser.add_argument("--complexity", dest="rhythmic_complexity", type=int, help="Rhythmic complexity 0-10")
    parser.add_argument(
        "--mode",
        dest="melodic_mode",
        choices=[m.value for m in MelodicMode],
        help="Melody construction mode",
    )
    parser.add_argument(
        "--interval",
        dest="harmony_interval_degrees",
        type=int,
        help="Signed harmony interval in scale degrees (3 = third above, -3 = third below)",
    )
    parser.add_argument(
        "--interval-mode",
        choices=["diatonic", "fixed"],
        help="Interpret --interval as scale degrees (diatonic) or semitones (fixed)",
    )
    parser.add_argument("--tempo", type=float, help="Tempo in beats per minute")
    parser.add_argument("--seed", type=int, help="Random seed for reproducible exercises")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harmony-trainer",
        description="Practise singing harmony lines against a generated melody.",
    )
    parser.add_argument("--list-scales", action="store_true", help="List supported scales and exit")
    parser.add_argument("--list-ranges", action="store_true", help="List vocal ranges and exit")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--settings-file", type=str, help="Path to the JSON settings file")
    sub = parser.add_subparsers(dest="command")

    gen = sub.add_parser("generate", help="Print an exercise and optionally save it as MIDI")
    _add_exercise_options(gen)
    gen.add_argument("--output", type=str, help="Write the exercise to this .mid file")
    gen.add_argument("--no-harmony", action="store_true", help="Leave the harmony track out of the MIDI file")

    practice = sub.add_parser("practice", help="Sing one run against the microphone")
    _add_exercise_options(practice)
    practice.add_argument("--soundfont", type=str, help="SoundFont (.sf2) used for playback")
    practice.add_argument("--duration", type=float, help="Seconds to practise (default: one pass, or 30s when looping)")
    practice.add_argument("--no-loop", action="store_true", help="Play the exercise once")
    practice.add_argument("--ghost", action="store_true", help="Mute the harmony guide")
    practice.add_argument("--tolerance", dest="tolerance_cents", type=float, help="On-target tolerance in cents")
    practice.add_argument("--adaptive", action="store_true", help="Choose the interval from your weakest ones")
    practice.add_argument("--db", type=str, help="SQLite database path")
    practice.add_argument("--save-settings", action="store_true", help="Remember these options as defaults")

    stats = sub.add_parser("stats", help="Show per-interval statistics")
    stats.add_argument("--db", type=str, help="SQLite database path")
    return parser


def _settings_from_args(args: argparse.Namespace, base: PracticeSettings) -> PracticeSettings:
    changes = {}
    for name in (
        "key",
        "vocal_range",
        "measure_count",
        "rhythmic_complexity",
        "melodic_mode",
        "harmony_interval_degrees",
        "interval_mode",
        "tempo",
        "tolerance_cents",
        "soundfont",
    ):
        changes[name] = getattr(args, name, None)
    if getattr(args, "scale", None):
        changes["scale_type"] = args.scale
    if getattr(args, "no_loop", False):
        changes["loop_mode"] = False
    if getattr(args, "ghost", False):
        changes["ghost_harmony_enabled"] = True
    if changes.get("vocal_range"):
        changes["vocal_range"] = changes["vocal_range"].lower()
    return base.updated(**changes)


def format_exercise(exercise: Exercise) -> str:
    """Return a printable table of the exercise's notes."""

    cfg = exercise.config
    lines = [
        f"Seed {exercise.seed} | root {midi_to_note(cfg.root_pitch)} {cfg.scale_type.value} | "
        f"{cfg.melodic_mode.value} | interval {cfg.harmony_interval_degrees:+d} ({cfg.interval_mode}) | "
        f"difficulty {exercise.difficulty} | {exercise.total_beats:g} beats",
        f"{'beat':>6}  {'len':>4}  {'melody':<6}  harmony",
    ]
    for melody, harmony in zip(exercise.melody, exercise.harmony):
        # Fixed intervals can leave the key; flag those harmony notes.
        mark = "" if is_in_scale(harmony.pitch, cfg.root_pitch, cfg.scale_type) else " *"
        lines.append(
            f"{melody.start_beat:>6g}  {melody.duration_beats:>4g}  "
            f"{midi_to_note(melody.pitch):<6}  {midi_to_note(harmony.pitch)}{mark}"
        )
    return "\n".join(lines)


def format_readout(
    observation: PitchObservation, target: Optional[Note], on_target: bool
) -> str:
    """Return the live practice line for the latest pitch observation."""

    if not observation.voiced:
        return "  (silence)"
    target_name = midi_to_note(target.pitch) if target is not None else "-"
    status = "on target" if on_target else "off target"
    return f"  {pitch_name(observation.pitch):<10} target {target_name:<4} {status}"


def _cmd_generate(args: argparse.Namespace, settings: PracticeSettings) -> None:
    exercise = generate(settings.generator_config(seed=args.seed))
    print(format_exercise(exercise))
    if args.output:
        from .midi_io import create_midi_file

        try:
            create_midi_file(
                exercise, settings.tempo, args.output, include_harmony=not args.no_harmony
            )
        except OSError as exc:
            logging.error("Could not write MIDI file: %s", exc)
            sys.exit(1)


def _cmd_practice(args: argparse.Namespace, settings: PracticeSettings) -> None:
    from .audio_engine import AudioEngine
    from .session import PracticeSession
    from .store import SQLiteStore

    store = SQLiteStore(args.db)
    try:
        with AudioEngine(soundfont=settings.soundfont) as engine:
            session = PracticeSession(engine, settings=settings, store=store)
            exercise = session.prepare(
                seed=args.seed,
                adaptive_intervals=[-6, -3, 3, 6] if args.adaptive else None,
            )
            print(format_exercise(exercise))
            duration = args.duration
            if duration is None:
                one_pass = exercise.total_beats * 60.0 / settings.tempo
                duration = 30.0 if settings.loop_mode else one_pass + 0.5
            session.start_run(exercise)
            try:
                deadline = time.monotonic() + duration
                next_readout = time.monotonic() + 1.0
                while time.monotonic() < deadline:
                    time.sleep(0.1)
                    if time.monotonic() >= next_readout:
                        next_readout += 1.0
                        if session.last_observation is not None:
                            print(
                                format_readout(
                                    session.last_observation,
                                    session.scorer.current_target(),
                                    session.scorer.is_on_target(),
                                )
                            )
            except KeyboardInterrupt:
                logging.info("Stopping early")
            run = session.finish_run()
            print(f"Score: {run.score:.1f}% on target over {run.duration_ms / 1000:.1f}s")
            if run.interval_mode != "diatonic":
                return
            stat = session.aggregator.get_stat(run.harmony_interval_degrees)
            print(
                f"Interval {stat.interval_degrees:+d}: average {stat.average_score:.1f} "
                f"after {stat.total_attempts} attempts{' (needs work)' if stat.struggling else ''}"
            )
    finally:
        store.close()


def _cmd_stats(args: argparse.Namespace) -> None:
    from .store import SQLiteStore

    with SQLiteStore(args.db) as store:
        stats = store.all_interval_stats()
    if not stats:
        print("No practice history yet.")
        return
    print(f"{'interval':>8}  {'attempts':>8}  {'average':>7}  status")
    for stat in stats:
        status = "struggling" if stat.struggling else "ok"
        print(
            f"{stat.interval_degrees:>+8d}  {stat.total_attempts:>8d}  "
            f"{stat.average_score:>7.1f}  {status}"
        )


def run_cli(argv: Optional[Sequence[str]] = None) -> None:
    """Parse ``argv`` and execute the selected command.

    Errors are logged and turned into exit status ``1``.
    """

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.list_scales:
        print("\n".join(s.value for s in ScaleType))
        return
    if args.list_ranges:
        for name, (low, high) in VOCAL_RANGES.items():
            print(f"{name}: {midi_to_note(low)}-{midi_to_note(high)}")
        return
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings_file = Path(args.settings_file).expanduser() if args.settings_file else None
    try:
        settings = _settings_from_args(args, load_settings(settings_file))
        if getattr(args, "key", None):
            key_to_root(settings.key)
    except ValueError as exc:
        logging.error("Invalid option: %s", exc)
        sys.exit(1)

    try:
        if args.command == "generate":
            _cmd_generate(args, settings)
        elif args.command == "practice":
            _cmd_practice(args, settings)
            if args.save_settings:
                save_settings(settings, settings_file)
        elif args.command == "stats":
            _cmd_stats(args)
    except DeviceError as exc:
        logging.error("Audio input unavailable: %s", exc)
        sys.exit(1)
    except AudioOutputError as exc:
        logging.error("Audio output unavailable: %s", exc)
        sys.exit(1)
    except PersistenceError as exc:
        logging.error("Could not save practice history: %s", exc)
        sys.exit(1)
    except (HarmonyTrainerError, ValueError) as exc:
        logging.error(str(exc))
        sys.exit(1)


def main(argv: Optional[List[str]] = None) -> None:
    """Console entry point."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    run_cli(argv)
