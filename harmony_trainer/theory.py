"""Music theory helpers shared by the generator and the scorer.

All functions in this module are pure. Pitches are MIDI-style numbers where
``69`` is A4 at 440 Hz and twelve units make an octave. Fractional values are
allowed wherever a detected (continuous) pitch may appear.

Underlying Idea
---------------
Harmony lines are derived *diatonically*: a "third above" moves two scale
positions up from the melody note rather than a fixed number of semitones.
To make that possible :func:`diatonic_transpose` builds a six octave scale
window around the key's root, snaps the melody pitch to the nearest member
and then walks along the window. Clamping at the window edges (instead of
wrapping) keeps every result inside the scale.

Example
-------
>>> diatonic_transpose(60, 60, ScaleType.MAJOR, 3)
64
>>> round(cents_difference(446.0, 440.0), 1)
23.5
"""

from __future__ import annotations

import math
from enum import Enum
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Tuple, Union

__all__ = [
    "ScaleType",
    "SCALE_PATTERNS",
    "NOTE_NAMES",
    "VOCAL_RANGES",
    "AVAILABLE_KEYS",
    "A4_PITCH",
    "A4_FREQUENCY",
    "build_scale",
    "scale_degree",
    "is_in_scale",
    "quantize_to_scale",
    "diatonic_transpose",
    "fixed_transpose",
    "cents_difference",
    "pitch_to_frequency",
    "frequency_to_pitch",
    "recommended_root",
]

A4_PITCH = 69
A4_FREQUENCY = 440.0

# Pitch class names using sharps, indexed by ``pitch % 12``.
NOTE_NAMES: Tuple[str, ...] = (
    "C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B",
)


class ScaleType(str, Enum):
    """Supported seven-note scales."""

    MAJOR = "major"
    NATURAL_MINOR = "natural_minor"
    HARMONIC_MINOR = "harmonic_minor"
    MELODIC_MINOR = "melodic_minor"

    @classmethod
    def parse(cls, value: Union[str, "ScaleType"]) -> "ScaleType":
        """Return the member matching ``value`` regardless of spelling.

        ``"naturalMinor"``, ``"natural-minor"`` and ``"minor"`` all resolve
        to :attr:`NATURAL_MINOR`. Unknown names raise ``ValueError``.
        """

        if isinstance(value, ScaleType):
            return value
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        key = _SCALE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown scale type: {value}") from None


_SCALE_ALIASES: Dict[str, str] = {
    "minor": "natural_minor",
    "naturalminor": "natural_minor",
    "harmonicminor": "harmonic_minor",
    "melodicminor": "melodic_minor",
    "ionian": "major",
    "aeolian": "natural_minor",
}

# Whole/half step patterns for one octave of each scale. Every pattern sums to
# twelve so stacking them produces octave-aligned scales.
SCALE_PATTERNS: Dict[ScaleType, Tuple[int, ...]] = {
    ScaleType.MAJOR: (2, 2, 1, 2, 2, 2, 1),
    ScaleType.NATURAL_MINOR: (2, 1, 2, 2, 1, 2, 2),
    ScaleType.HARMONIC_MINOR: (2, 1, 2, 2, 1, 3, 1),
    ScaleType.MELODIC_MINOR: (2, 1, 2, 2, 2, 2, 1),
}

# Comfortable singing ranges (tessitura) per voice type as inclusive MIDI
# bounds. They feed the random-walk generator's pitch window.
VOCAL_RANGES: Dict[str, Tuple[int, int]] = {
    "bass": (40, 60),
    "baritone": (43, 64),
    "tenor": (48, 67),
    "alto": (53, 74),
    "mezzosoprano": (57, 77),
    "soprano": (60, 81),
}

# Keys offered to users, as root pitches in the fourth octave.
AVAILABLE_KEYS: Dict[str, int] = {
    "C": 60,
    "G": 67,
    "D": 62,
    "A": 69,
    "E": 64,
    "F": 65,
    "Bb": 70,
    "Eb": 63,
}

# Span of the window used for diatonic transposition: six octaves starting two
# octaves below the root covers bass through soprano for every practical key.
_TRANSPOSE_OCTAVES_BELOW = 2
_TRANSPOSE_OCTAVE_SPAN = 6


@lru_cache(maxsize=None)
def _scale_tuple(root: int, scale_type: ScaleType, octave_span: int) -> Tuple[int, ...]:
    pattern = SCALE_PATTERNS[scale_type]
    pitches = [root]
    current = root
    for _ in range(octave_span):
        for step in pattern:
            current += step
            pitches.append(current)
    return tuple(pitches)


def build_scale(
    root: int, scale_type: Union[ScaleType, str], octave_span: int = 1
) -> List[int]:
    """Return the ascending scale starting at ``root``.

    Parameters
    ----------
    root:
        MIDI pitch of the first scale member.
    scale_type:
        Member of :class:`ScaleType` (or its name).
    octave_span:
        Number of octaves to cover. The result holds ``7 * octave_span + 1``
        pitches so the top octave of the root is included.

    Raises
    ------
    ValueError
        If ``octave_span`` is negative or ``scale_type`` is unknown.
    """

    if octave_span < 0:
        raise ValueError("octave_span must be non-negative")
    return list(_scale_tuple(int(root), ScaleType.parse(scale_type), int(octave_span)))


def scale_degree(
    pitch: float, root: int, scale_type: Union[ScaleType, str]
) -> Optional[int]:
    """Return the 1-based degree of ``pitch`` in the key or ``None``.

    Only the pitch class matters, so ``scale_degree(72, 60, "major")`` is
    ``1`` just like ``scale_degree(60, 60, "major")``.
    """

    pitch_class = int(round(pitch)) % 12
    octave = _scale_tuple(int(root) % 12, ScaleType.parse(scale_type), 1)[:7]
    for index, member in enumerate(octave):
        if member % 12 == pitch_class:
            return index + 1
    return None


def is_in_scale(pitch: float, root: int, scale_type: Union[ScaleType, str]) -> bool:
    return scale_degree(pitch, root, scale_type) is not None


def _nearest_index(window: Sequence[int], pitch: float) -> int:
    """Index of the member closest to ``pitch``; ties go to the lower one."""

    best_index = 0
    best_distance = math.inf
    for index, member in enumerate(window):
        distance = abs(member - pitch)
        # Strict comparison keeps the first (lower) member on ties because the
        # window is ascending.
        if distance < best_distance:
            best_distance = distance
            best_index = index
    return best_index


def _transpose_window(root: int, scale_type: ScaleType) -> Tuple[int, ...]:
    start = int(root) - 12 * _TRANSPOSE_OCTAVES_BELOW
    return _scale_tuple(start, scale_type, _TRANSPOSE_OCTAVE_SPAN)


def quantize_to_scale(pitch: float, root: int, scale_type: Union[ScaleType, str]) -> int:
    """Return the scale member nearest ``pitch`` inside the transposition window."""

    window = _transpose_window(root, ScaleType.parse(scale_type))
    return window[_nearest_index(window, pitch)]


def diatonic_transpose(
    melody_pitch: float,
    root_pitch: int,
    scale_type: Union[ScaleType, str],
    degree_offset: int,
) -> int:
    """Return the pitch ``degree_offset`` scale degrees away from ``melody_pitch``.

    ``degree_offset`` follows interval naming: ``+3`` is a third above, ``-6``
    a sixth below and ``+1``/``-1`` the unison. The melody pitch is first
    snapped to the nearest member of a six octave window built from
    ``root_pitch``; the result then moves ``abs(degree_offset) - 1`` positions
    in the offset's direction and is clamped to the window's first and last
    members. The returned value is therefore always a scale member.

    Raises
    ------
    ValueError
        If ``degree_offset`` is ``0`` which names no interval.
    """

    if degree_offset == 0:
        raise ValueError("degree_offset must be non-zero (use 1 for unison)")
    scale_type = ScaleType.parse(scale_type)
    window = _transpose_window(root_pitch, scale_type)
    start = window.index(quantize_to_scale(melody_pitch, root_pitch, scale_type))
    direction = 1 if degree_offset > 0 else -1
    target = start + direction * (abs(degree_offset) - 1)
    target = max(0, min(len(window) - 1, target))
    return window[target]


def fixed_transpose(pitch: int, semitones: int) -> int:
    """Shift ``pitch`` by a fixed number of semitones (``fixed`` interval mode)."""

    return int(pitch) + int(semitones)


def cents_difference(freq_a: float, freq_b: float) -> float:
    """Return ``1200 * log2(freq_a / freq_b)``.

    Silence on either side makes the comparison meaningless so ``0.0`` is
    returned when either frequency is not positive.
    """

    if freq_a <= 0 or freq_b <= 0:
        return 0.0
    return 1200.0 * math.log2(freq_a / freq_b)


def pitch_to_frequency(pitch: float) -> float:
    """Convert a (possibly fractional) MIDI pitch to Hertz."""

    return A4_FREQUENCY * 2.0 ** ((pitch - A4_PITCH) / 12.0)


def frequency_to_pitch(frequency: float) -> float:
    """Convert Hertz to a continuous MIDI pitch; ``0.0`` for silence."""

    if frequency <= 0:
        return 0.0
    return A4_PITCH + 12.0 * math.log2(frequency / A4_FREQUENCY)


def recommended_root(vocal_range: str) -> int:
    """Return a common key root sitting in the lower-middle of ``vocal_range``.

    Raises
    ------
    ValueError
        If ``vocal_range`` is not one of :data:`VOCAL_RANGES`.
    """

    try:
        low, high = VOCAL_RANGES[vocal_range.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown vocal range: {vocal_range}") from None
    target = low + int((high - low) * 0.3)
    # C, F and G roots across the third to fifth octaves.
    common_roots = (48, 53, 55, 60, 65, 67, 72)
    best = common_roots[0]
    for candidate in common_roots:
        if abs(candidate - target) < abs(best - target):
            best = candidate
    return best
