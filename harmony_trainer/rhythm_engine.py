"""Measure-based rhythm generation.

Rhythm is decided before pitch: every measure draws one pattern from a table
indexed by the exercise's rhythmic complexity and the concatenated durations
form the note timeline the melody generator fills with pitches.

Complexity tiers
----------------
* ``0``: whole notes only.
* ``1-3``: whole or two halves.
* ``4-6``: adds patterns mixing halves and quarters.
* ``7-10``: drops the whole note and adds quarters and eighths.

Patterns are written for four beats per measure. Any pattern other than the
whole note is scaled by ``beats_per_measure / 4`` so every measure always
sums to ``beats_per_measure``.

``generate_rhythm`` proxies to a throwaway :class:`RhythmGenerator` for
convenience.
"""

from __future__ import annotations

import random
from typing import List, Optional, Sequence

__all__ = [
    "RHYTHM_TIERS",
    "patterns_for_complexity",
    "RhythmGenerator",
    "generate_rhythm",
    "onsets",
]

# ``None`` marks the whole-measure note which depends on the meter.
_WHOLE = None

RHYTHM_TIERS = {
    0: [[_WHOLE]],
    3: [[_WHOLE], [2, 2]],
    6: [[_WHOLE], [2, 2], [2, 1, 1], [1, 1, 2], [1, 2, 1]],
    10: [
        [2, 2],
        [2, 1, 1],
        [1, 1, 2],
        [1, 1, 1, 1],
        [1, 2, 1],
        [1, 1, 0.5, 0.5, 1],
        [0.5, 0.5, 1, 1, 1],
        [1, 0.5, 0.5, 1, 1],
    ],
}


def patterns_for_complexity(complexity: int, beats_per_measure: int = 4) -> List[List[float]]:
    """Return the rhythm patterns available at ``complexity``.

    Raises
    ------
    ValueError
        If ``complexity`` is outside ``0-10`` or ``beats_per_measure`` is not
        positive.
    """

    if not 0 <= complexity <= 10:
        raise ValueError("complexity must be between 0 and 10")
    if beats_per_measure <= 0:
        raise ValueError("beats_per_measure must be positive")

    for ceiling in sorted(RHYTHM_TIERS):
        if complexity <= ceiling:
            tier = RHYTHM_TIERS[ceiling]
            break
    scale = beats_per_measure / 4.0
    patterns = []
    for pattern in tier:
        if pattern == [_WHOLE]:
            patterns.append([float(beats_per_measure)])
        else:
            patterns.append([d * scale for d in pattern])
    return patterns


class RhythmGenerator:
    """Draw one rhythm pattern per measure for a fixed complexity."""

    def __init__(
        self,
        complexity: int,
        beats_per_measure: int = 4,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Create a generator.

        Parameters
        ----------
        complexity:
            Rhythmic complexity in ``0-10``.
        beats_per_measure:
            Meter numerator; patterns are scaled to fill it.
        rng:
            Random source. Melody generation passes its own seeded instance
            so pitch and rhythm choices come from one reproducible stream.
        """

        self.patterns = patterns_for_complexity(complexity, beats_per_measure)
        self.beats_per_measure = beats_per_measure
        self.rng = rng or random.Random()

    def measure(self) -> List[float]:
        """Return the durations of one measure."""

        return list(self.rng.choice(self.patterns))

    def generate(self, measures: int) -> List[float]:
        """Return the concatenated durations for ``measures`` measures."""

        if measures <= 0:
            raise ValueError("measures must be positive")
        durations: List[float] = []
        for _ in range(measures):
            durations.extend(self.measure())
        return durations


def generate_rhythm(
    measures: int,
    complexity: int,
    beats_per_measure: int = 4,
    rng: Optional[random.Random] = None,
) -> List[float]:
    """Return a rhythm ``measures`` long at the given complexity."""

    return RhythmGenerator(complexity, beats_per_measure, rng=rng).generate(measures)


def onsets(durations: Sequence[float]) -> List[float]:
    """Return the start beat of each duration in ``durations``."""

    starts = []
    beat = 0.0
    for duration in durations:
        starts.append(beat)
        beat += duration
    return starts
