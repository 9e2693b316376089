"""Intonation scoring for a single practice run.

The scorer receives every pitch observation produced while a run is active,
works out which note the singer should be producing at that moment and
tallies the time spent on target. ``end_run`` turns the tallies into an
immutable :class:`~harmony_trainer.models.Run` with a per-note breakdown.

Target selection
----------------
The harmony note sounding at the observation's beat is the target. Only when
no harmony note is active *and* ghost harmony is disabled does the melody
note become the target; otherwise the observation is not counted at all.

An observation is on target when it is within ``tolerance_cents`` of the
target and its confidence reaches ``confidence_threshold``. The run score is
the percentage of counted observations that were on target.

Example
-------
>>> scorer = PracticeScorer(scheduler)
>>> scorer.begin_run(RunConfig(session_id="s1", key="C"), exercise)
>>> scorer.on_observation(observation)
>>> run = scorer.end_run()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .generator import Exercise
from .models import Note, NoteStat, PitchObservation, Run
from .theory import cents_difference, pitch_to_frequency

__all__ = ["RunConfig", "PracticeScorer", "DEFAULT_TOLERANCE_CENTS", "DEFAULT_CONFIDENCE_THRESHOLD"]


logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_CENTS = 50.0
DEFAULT_CONFIDENCE_THRESHOLD = 0.8


@dataclass(frozen=True)
class RunConfig:
    """Metadata recorded on the :class:`Run` plus the scoring thresholds."""

    session_id: str
    key: str
    loop_mode: bool = True
    ghost_harmony_enabled: bool = False
    tolerance_cents: float = DEFAULT_TOLERANCE_CENTS
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD

    def __post_init__(self) -> None:
        if self.tolerance_cents <= 0:
            raise ValueError("tolerance_cents must be positive")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must lie within 0-1")


class _NoteTally:
    __slots__ = ("observations", "voiced", "on_target", "abs_cents")

    def __init__(self) -> None:
        self.observations = 0
        self.voiced = 0
        self.on_target = 0
        self.abs_cents = 0.0


def _note_index(notes: Sequence[Note], beat: float) -> Optional[int]:
    for index, note in enumerate(notes):
        if note.covers(beat):
            return index
    return None


class PracticeScorer:
    """Score observations against an exercise.

    Parameters
    ----------
    scheduler:
        Optional :class:`~harmony_trainer.scheduler.PlaybackScheduler`. When
        given, observations without an explicit beat are placed on the
        timeline through ``scheduler.beat_at(timestamp)``.
    on_run:
        Callback receiving each finished :class:`Run`, typically
        :meth:`IntervalStatsAggregator.record`.
    clock:
        Monotonic clock used to measure the run duration.
    """

    def __init__(
        self,
        scheduler: Any = None,
        *,
        on_run: Optional[Callable[[Run], Any]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.scheduler = scheduler
        self.on_run = on_run
        self._clock = clock or time.perf_counter
        self._lock = threading.Lock()
        self._config: Optional[RunConfig] = None
        self._exercise: Optional[Exercise] = None
        self._reset()

    def _reset(self) -> None:
        self._started_at = 0.0
        self._last_timestamp: Optional[float] = None
        self._counted = 0
        self._on_target = 0
        self._tallies: List[_NoteTally] = []
        self._current_target: Optional[Note] = None
        self._on_target_now = False

    @property
    def active(self) -> bool:
        return self._config is not None

    @property
    def running_score(self) -> float:
        """Score of the observations counted so far (``0`` when none)."""

        with self._lock:
            if not self._counted:
                return 0.0
            return self._on_target / self._counted * 100.0

    def is_on_target(self) -> bool:
        """Whether the most recent counted observation was on target."""

        return self._on_target_now

    def current_target(self) -> Optional[Note]:
        """The note the latest counted observation was compared with."""

        return self._current_target

    def begin_run(self, config: RunConfig, exercise: Exercise) -> None:
        """Start scoring ``exercise``. Any unfinished run is discarded."""

        with self._lock:
            if self._config is not None:
                logger.warning("Discarding unfinished run for session %s", self._config.session_id)
            self._config = config
            self._exercise = exercise
            self._reset()
            self._tallies = [_NoteTally() for _ in self._target_line()]
            self._started_at = self._clock()

    def on_observation(self, observation: PitchObservation, beat: Optional[float] = None) -> bool:
        """Score one observation and return whether it was on target.

        Observations arriving outside a run, not newer than the previous one
        or falling where there is no target are ignored.
        """

        with self._lock:
            config = self._config
            exercise = self._exercise
            if config is None or exercise is None:
                return False
            if self._last_timestamp is not None and observation.timestamp <= self._last_timestamp:
                logger.debug("Dropping stale observation at %.4f", observation.timestamp)
                return False
            self._last_timestamp = observation.timestamp

            if beat is None:
                beat = self._beat_for(observation.timestamp)
                if beat is None:
                    return False

            target, index = self._select_target(exercise, config, beat)
            if target is None:
                return False

            cents = 0.0
            if observation.voiced:
                cents = cents_difference(
                    observation.frequency_hz, pitch_to_frequency(target.pitch)
                )
            on_target = (
                observation.voiced
                and abs(cents) <= config.tolerance_cents
                and observation.confidence >= config.confidence_threshold
            )

            self._counted += 1
            if on_target:
                self._on_target += 1
            if index is not None and index < len(self._tallies):
                tally = self._tallies[index]
                tally.observations += 1
                if observation.voiced:
                    tally.voiced += 1
                    tally.abs_cents += abs(cents)
                if on_target:
                    tally.on_target += 1
            self._current_target = target
            self._on_target_now = on_target
            return on_target

    def end_run(self) -> Run:
        """Finish the run and return its immutable record.

        Raises
        ------
        RuntimeError
            If no run is active.
        """

        with self._lock:
            config = self._config
            exercise = self._exercise
            if config is None or exercise is None:
                raise RuntimeError("No run in progress")
            duration_ms = int(round((self._clock() - self._started_at) * 1000))
            score = self._on_target / self._counted * 100.0 if self._counted else 0.0
            note_stats = self._note_stats(self._target_line())
            run = Run(
                session_id=config.session_id,
                melody_seed=exercise.seed,
                key=config.key,
                difficulty=exercise.difficulty,
                harmony_interval_degrees=exercise.config.harmony_interval_degrees,
                interval_mode=exercise.config.interval_mode,
                note_count=len(exercise.melody),
                loop_mode=config.loop_mode,
                ghost_harmony_enabled=config.ghost_harmony_enabled,
                score=min(100.0, max(0.0, score)),
                duration_ms=max(0, duration_ms),
                note_sequence_snapshot=_sequence_snapshot(exercise),
                per_note_stats_snapshot=tuple(s.to_dict() for s in note_stats),
            )
            counted = self._counted
            self._config = None
            self._exercise = None

        logger.info("Run finished: score %.1f over %d observations", run.score, counted)
        if self.on_run is not None:
            self.on_run(run)
        return run

    def cancel_run(self) -> None:
        """Discard the active run without producing a record."""

        with self._lock:
            if self._config is None:
                return
            logger.info("Run for session %s cancelled", self._config.session_id)
            self._config = None
            self._exercise = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _target_line(self) -> Sequence[Note]:
        exercise = self._exercise
        if exercise is None:
            return ()
        return exercise.harmony or exercise.melody

    def _beat_for(self, timestamp: float) -> Optional[float]:
        if self.scheduler is None:
            return None
        position = self.scheduler.beat_at(timestamp)
        if position is None:
            return None
        return position[1]

    def _select_target(
        self, exercise: Exercise, config: RunConfig, beat: float
    ) -> Tuple[Optional[Note], Optional[int]]:
        index = _note_index(exercise.harmony, beat)
        if index is not None:
            return exercise.harmony[index], index
        if config.ghost_harmony_enabled:
            return None, None
        index = _note_index(exercise.melody, beat)
        if index is None:
            return None, None
        return exercise.melody[index], index

    def _note_stats(self, notes: Sequence[Note]) -> List[NoteStat]:
        stats = []
        for index, (note, tally) in enumerate(zip(notes, self._tallies)):
            stats.append(
                NoteStat(
                    index=index,
                    target_pitch=note.pitch,
                    start_beat=note.start_beat,
                    duration_beats=note.duration_beats,
                    observations=tally.observations,
                    voiced_observations=tally.voiced,
                    on_target_observations=tally.on_target,
                    on_target_fraction=(
                        tally.on_target / tally.observations if tally.observations else 0.0
                    ),
                    mean_abs_cents=tally.abs_cents / tally.voiced if tally.voiced else 0.0,
                )
            )
        return stats


def _sequence_snapshot(exercise: Exercise) -> Tuple[Dict[str, Any], ...]:
    """Melody notes as dictionaries with the paired harmony pitch."""

    rows = []
    for index, note in enumerate(exercise.melody):
        row = note.to_dict()
        if index < len(exercise.harmony):
            row["harmony_pitch"] = exercise.harmony[index].pitch
        rows.append(row)
    return tuple(rows)
