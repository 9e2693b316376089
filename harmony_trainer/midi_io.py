"""Writing generated exercises to Standard MIDI Files.

Modification summary
--------------------
* ``create_midi_file`` takes an :class:`~harmony_trainer.generator.Exercise`
  and writes the melody and harmony as separate named tracks on their own
  channels, matching the channel layout used for live playback.
* Events are laid out on absolute ticks and converted to delta times at the
  end so fractional beat durations never accumulate rounding drift.
* Imports from ``mido`` are deferred inside ``create_midi_file`` so the module
  can load even when the dependency is missing.

Example
-------
>>> from harmony_trainer.midi_io import create_midi_file
>>> create_midi_file(exercise, 90, "exercise.mid")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Sequence, Tuple

if TYPE_CHECKING:
    from mido import MidiFile

from .generator import Exercise
from .models import Note

__all__ = ["create_midi_file", "TICKS_PER_BEAT"]

TICKS_PER_BEAT = 480
MELODY_CHANNEL = 0
HARMONY_CHANNEL = 1


def _note_events(notes: Sequence[Note], velocity: int) -> List[Tuple[int, int, int, int]]:
    """Return ``(tick, order, pitch, velocity)`` tuples; offs sort before ons."""

    events = []
    for note in notes:
        start = int(round(note.start_beat * TICKS_PER_BEAT))
        end = int(round(note.end_beat * TICKS_PER_BEAT))
        events.append((start, 1, note.pitch, velocity))
        events.append((end, 0, note.pitch, 0))
    events.sort()
    return events


def create_midi_file(
    exercise: Exercise,
    tempo: float,
    output_file: str,
    *,
    include_harmony: bool = True,
    melody_program: int = 0,
    harmony_program: int = 0,
) -> "MidiFile":
    """Write ``exercise`` to ``output_file`` and return the ``MidiFile``.

    The parent directory is created when missing.

    Raises
    ------
    ValueError
        If ``tempo`` is not positive.
    ImportError
        If ``mido`` is not installed.
    """

    try:
        import mido
        from mido import Message, MetaMessage, MidiFile, MidiTrack
    except ModuleNotFoundError as exc:
        raise ImportError(
            "mido is required to create MIDI files; install it with 'pip install mido'"
        ) from exc

    if tempo <= 0:
        raise ValueError("tempo must be positive")

    mid = MidiFile(ticks_per_beat=TICKS_PER_BEAT)
    voices = [("Melody", exercise.melody, MELODY_CHANNEL, melody_program, 100)]
    if include_harmony and exercise.harmony:
        voices.append(("Harmony", exercise.harmony, HARMONY_CHANNEL, harmony_program, 70))

    for index, (name, notes, channel, program, velocity) in enumerate(voices):
        track = MidiTrack()
        mid.tracks.append(track)
        track.append(MetaMessage("track_name", name=name, time=0))
        if index == 0:
            track.append(MetaMessage("set_tempo", tempo=mido.bpm2tempo(tempo), time=0))
            track.append(
                MetaMessage(
                    "time_signature",
                    numerator=exercise.config.beats_per_measure,
                    denominator=4,
                    time=0,
                )
            )
        track.append(Message("program_change", program=program, channel=channel, time=0))
        last_tick = 0
        for tick, kind, pitch, vel in _note_events(notes, velocity):
            message = "note_on" if kind == 1 else "note_off"
            track.append(
                Message(message, note=pitch, velocity=vel, channel=channel, time=tick - last_tick)
            )
            last_tick = tick

    Path(output_file).parent.mkdir(parents=True, exist_ok=True)
    mid.save(output_file)
    logging.info("MIDI file saved to %s", output_file)
    return mid
