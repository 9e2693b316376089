"""Utility functions for translating between note names and pitches.

Pitches coming out of the tracker are continuous (``60.37`` is a slightly
sharp middle C) so besides the integer conversions used for keys and
exercise printouts this module also offers :func:`pitch_name`, which
reports the nearest note together with its cents offset.

Example
-------
>>> from harmony_trainer.note_utils import note_to_midi
>>> note_to_midi("C4")
60
"""

# Modification Summary
# ---------------------
# * Added ``pitch_name`` for labelling continuous tracker output with the
#   nearest note and a signed cents deviation.
# * Added ``key_to_root`` so key names such as ``Bb`` resolve to the root
#   pitches offered to singers.
# * ``midi_to_note`` now accepts an optional ``flats`` flag so flat keys can
#   be printed with their usual spelling.

from __future__ import annotations

import logging
import re
from functools import lru_cache

from .theory import AVAILABLE_KEYS, NOTE_NAMES

__all__ = ["note_to_midi", "midi_to_note", "pitch_name", "key_to_root"]

NOTE_TO_SEMITONE = {name: index for index, name in enumerate(NOTE_NAMES)}

_FLAT_NAMES = ("C", "Db", "D", "Eb", "E", "F", "Gb", "G", "Ab", "A", "Bb", "B")

_FLAT_TO_SHARP = {
    "Db": "C#",
    "Eb": "D#",
    "Fb": "E",
    "Gb": "F#",
    "Ab": "G#",
    "Bb": "A#",
    "Cb": "B",
    "E#": "F",
    "B#": "C",
}


@lru_cache(maxsize=None)
def note_to_midi(note: str) -> int:
    """Convert a note string such as ``C#4`` into a MIDI number.

    Parameters
    ----------
    note:
        Note name including octave. Octaves may be negative.

    Raises
    ------
    ValueError
        If ``note`` is not properly formatted or the result falls outside
        ``0-127``.
    """

    match = re.fullmatch(r"([A-Ga-g][#b]?)(-?\d+)", note.strip())
    if not match:
        logging.error("Invalid note format: %s", note)
        raise ValueError(f"Invalid note format: {note}")

    note_name, octave_str = match.groups()
    # MIDI octave numbers are offset by one relative to scientific notation.
    octave = int(octave_str) + 1
    note_name = note_name[0].upper() + note_name[1:]
    octave_shift = 0
    if note_name == "Cb":
        octave_shift = -1
    elif note_name == "B#":
        octave_shift = 1
    note_name = _FLAT_TO_SHARP.get(note_name, note_name)

    midi_val = NOTE_TO_SEMITONE[note_name] + (octave + octave_shift) * 12
    if not 0 <= midi_val <= 127:
        logging.error("MIDI value out of range: %s -> %d", note, midi_val)
        raise ValueError(
            f"Computed MIDI value {midi_val} out of range 0-127 for note {note}"
        )
    return midi_val


def midi_to_note(midi_note: int, flats: bool = False) -> str:
    """Convert a MIDI number into a note name such as ``C#4``.

    Raises
    ------
    ValueError
        If ``midi_note`` is outside the inclusive ``0-127`` range.

    Examples
    --------
    >>> midi_to_note(61)
    'C#4'
    >>> midi_to_note(70, flats=True)
    'Bb4'
    """

    if not 0 <= midi_note <= 127:
        raise ValueError(f"MIDI note {midi_note} out of range 0-127")
    names = _FLAT_NAMES if flats else NOTE_NAMES
    return f"{names[midi_note % 12]}{midi_note // 12 - 1}"


def pitch_name(pitch: float) -> str:
    """Return the nearest note name and the cents offset of ``pitch``.

    ``0`` (the unvoiced marker) is reported as ``"-"``.

    >>> pitch_name(60.25)
    'C4 +25c'
    """

    if pitch <= 0:
        return "-"
    nearest = int(round(pitch))
    cents = int(round((pitch - nearest) * 100))
    nearest = max(0, min(127, nearest))
    return f"{midi_to_note(nearest)} {cents:+d}c"


def key_to_root(key: str) -> int:
    """Return the root pitch for a key name like ``"G"`` or ``"Bb"``.

    Names listed in :data:`~harmony_trainer.theory.AVAILABLE_KEYS` map to the
    root offered to singers; any other spelling is accepted when it carries
    an octave (``"F#3"``).
    """

    name = key.strip()
    if name in AVAILABLE_KEYS:
        return AVAILABLE_KEYS[name]
    for candidate, root in AVAILABLE_KEYS.items():
        if candidate.lower() == name.lower():
            return root
    return note_to_midi(name)
