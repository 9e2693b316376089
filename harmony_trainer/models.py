"""Record types exchanged between the practice engine components.

The dataclasses below mirror the rows an external store keeps for a practice
history (sessions, runs and per-interval statistics) plus the ephemeral
values that flow through the live loop (pitch observations and notes).

Records that are created once and never changed afterwards are declared
``frozen`` so accidental mutation raises immediately. :class:`Session` and
:class:`IntervalStat` are deliberately mutable because the session object
and the aggregator update them in place under their own locks.

Example
-------
>>> from harmony_trainer.models import Note
>>> Note(pitch=60, duration_beats=4.0, start_beat=0.0).end_beat
4.0
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

__all__ = [
    "utc_now",
    "new_id",
    "PitchObservation",
    "Note",
    "NoteStat",
    "Session",
    "Run",
    "IntervalStat",
    "notes_to_dicts",
    "notes_from_dicts",
]


def utc_now() -> datetime:
    """Return the current time as an aware UTC ``datetime``."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a random identifier suitable as a store primary key."""

    return str(uuid.uuid4())


@dataclass(frozen=True)
class PitchObservation:
    """One analysis frame worth of detected pitch.

    ``frequency_hz`` and ``pitch`` are both ``0`` when the frame is unvoiced.
    ``timestamp`` is taken from the audio engine's monotonic clock so it can
    be compared directly with the scheduler's beat-zero anchor.
    """

    frequency_hz: float
    confidence: float
    pitch: float
    timestamp: float

    @property
    def voiced(self) -> bool:
        return self.frequency_hz > 0


@dataclass(frozen=True)
class Note:
    """A semitone-quantized note placed on the beat grid."""

    pitch: int
    duration_beats: float
    start_beat: float

    def __post_init__(self) -> None:
        if self.duration_beats <= 0:
            raise ValueError("duration_beats must be positive")
        if self.start_beat < 0:
            raise ValueError("start_beat must be non-negative")

    @property
    def end_beat(self) -> float:
        return self.start_beat + self.duration_beats

    def covers(self, beat: float) -> bool:
        """Return ``True`` when ``beat`` falls inside ``[start, end)``."""

        return self.start_beat <= beat < self.end_beat

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pitch": self.pitch,
            "duration_beats": self.duration_beats,
            "start_beat": self.start_beat,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        return cls(
            pitch=int(data["pitch"]),
            duration_beats=float(data["duration_beats"]),
            start_beat=float(data["start_beat"]),
        )


def notes_to_dicts(notes: Sequence[Note]) -> List[Dict[str, Any]]:
    return [n.to_dict() for n in notes]


def notes_from_dicts(rows: Sequence[Dict[str, Any]]) -> List[Note]:
    return [Note.from_dict(r) for r in rows]


@dataclass(frozen=True)
class NoteStat:
    """Per-note breakdown produced by the scorer at the end of a run."""

    index: int
    target_pitch: int
    start_beat: float
    duration_beats: float
    observations: int
    voiced_observations: int
    on_target_observations: int
    on_target_fraction: float
    mean_abs_cents: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Session:
    """A practice session grouping many runs.

    ``average_score`` is the running mean of every completed run's score.
    """

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    total_runs: int = 0
    total_practice_time_ms: int = 0
    average_score: float = 0.0

    def add_run(self, run: "Run") -> None:
        """Fold ``run`` into the session totals."""

        previous_total = self.average_score * self.total_runs
        self.total_runs += 1
        self.total_practice_time_ms += max(0, int(run.duration_ms))
        self.average_score = (previous_total + run.score) / self.total_runs
        self.updated_at = run.created_at


def _read_only(rows: Iterable[Mapping[str, Any]]) -> Tuple[Mapping[str, Any], ...]:
    return tuple(MappingProxyType(dict(row)) for row in rows)


@dataclass(frozen=True)
class Run:
    """Immutable outcome of one practice attempt."""

    session_id: str
    melody_seed: int
    key: str
    difficulty: int
    harmony_interval_degrees: int
    interval_mode: str
    note_count: int
    loop_mode: bool
    ghost_harmony_enabled: bool
    score: float
    duration_ms: int
    note_sequence_snapshot: Tuple[Mapping[str, Any], ...] = ()
    per_note_stats_snapshot: Tuple[Mapping[str, Any], ...] = ()
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.difficulty not in (1, 2, 3):
            raise ValueError("difficulty must be 1, 2 or 3")
        if self.interval_mode not in ("fixed", "diatonic"):
            raise ValueError("interval_mode must be 'fixed' or 'diatonic'")
        if not 0.0 <= self.score <= 100.0:
            raise ValueError("score must lie within 0-100")
        # Snapshot rows are read-only views so the record stays immutable.
        object.__setattr__(self, "note_sequence_snapshot", _read_only(self.note_sequence_snapshot))
        object.__setattr__(self, "per_note_stats_snapshot", _read_only(self.per_note_stats_snapshot))


@dataclass
class IntervalStat:
    """Exponentially weighted skill estimate for one harmony interval."""

    interval_degrees: int
    total_attempts: int = 0
    average_score: float = 0.0
    last_attempt_at: Optional[datetime] = None
    struggling: bool = False

    def copy(self) -> "IntervalStat":
        return IntervalStat(
            interval_degrees=self.interval_degrees,
            total_attempts=self.total_attempts,
            average_score=self.average_score,
            last_attempt_at=self.last_attempt_at,
            struggling=self.struggling,
        )
