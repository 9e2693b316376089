"""Clock-driven playback of melody and harmony lines.

:class:`PlaybackScheduler` turns beat-based notes into onset and release
events on the :class:`~harmony_trainer.audio_engine.AudioEngine` clock and
sounds them when they fall due. A tick (a background timer thread, or
manual :meth:`PlaybackScheduler.tick` calls in tests) pops every event whose
time has passed.

Timing model
------------
``play`` captures *beat zero* from the engine clock. A note starting at beat
``b`` sounds at ``beat_zero + b * 60 / tempo`` and is released after 90% of
its duration, leaving a short articulation gap before the next onset. In loop
mode beat zero advances by exactly one loop length each time the loop end is
reached so the musical position never drifts. The two most recent anchors are
kept which lets :meth:`beat_at` attribute an observation captured just
before a loop boundary to the iteration it belongs to.

Cancellation
------------
Firing and :meth:`stop` share one lock. ``stop`` bumps a playback generation
and empties the event queue while holding it, so no onset that was pending
when ``stop`` returned can ever sound afterwards. Notes left ringing by
``stop(cut=False)`` keep only their pending releases, which later ticks fire.
"""

from __future__ import annotations

import bisect
import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, NamedTuple, Optional, Sequence, Tuple

from .errors import SchedulingRace
from .generator import beats_to_seconds, seconds_to_beats, total_beats
from .models import Note

__all__ = [
    "PlaybackState",
    "PlaybackScheduler",
    "Target",
    "ARTICULATION",
    "DEFAULT_TICK_INTERVAL",
]


logger = logging.getLogger(__name__)

# Fraction of a note's duration it sounds before being released.
ARTICULATION = 0.9
DEFAULT_TICK_INTERVAL = 0.005
MELODY_VELOCITY = 100
# The harmony guide sits under the melody.
HARMONY_VELOCITY = 70


class PlaybackState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    PLAYING = "playing"
    STOPPED = "stopped"


class Target(NamedTuple):
    """Notes sounding at a beat; either may be ``None``."""

    melody: Optional[Note]
    harmony: Optional[Note]


@dataclass(order=True)
class _Event:
    time: float
    order: int
    kind: str = field(compare=False)
    channel: int = field(compare=False)
    pitch: int = field(compare=False)
    velocity: int = field(compare=False)
    generation: int = field(compare=False)


class _Timeline:
    """Beat lookup over one note sequence."""

    def __init__(self, notes: Sequence[Note]) -> None:
        self.notes = list(notes)
        self._starts = [n.start_beat for n in self.notes]

    def at(self, beat: float) -> Optional[Note]:
        index = bisect.bisect_right(self._starts, beat) - 1
        if index < 0:
            return None
        note = self.notes[index]
        return note if note.covers(beat) else None


class PlaybackScheduler:
    """Schedule melody and harmony notes on an audio engine.

    Parameters
    ----------
    engine:
        Object offering ``now()``, ``note_on``, ``note_off``,
        ``all_notes_off`` and ``sounding_notes`` plus
        ``MELODY_CHANNEL``/``HARMONY_CHANNEL``.
    tick_interval:
        Seconds between timer ticks when ``threaded`` is true.
    threaded:
        Run a timer thread while playing. Pass ``False`` to drive the
        scheduler with explicit :meth:`tick` calls.
    """

    def __init__(
        self,
        engine: Any,
        *,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        threaded: bool = True,
    ) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self.engine = engine
        self.tick_interval = tick_interval
        self.threaded = threaded
        self.harmony_muted = False

        self._lock = threading.RLock()
        self._state = PlaybackState.IDLE
        self._generation = 0
        self._events: List[_Event] = []
        # Releases of notes left ringing by ``stop(cut=False)``.
        self._releases: List[_Event] = []
        self._counter = itertools.count()
        self._melody = _Timeline(())
        self._harmony = _Timeline(())
        self._tempo = 120.0
        self._loop = True
        self._total_beats = 0.0
        self._anchor = 0.0
        self._iteration = 0
        self._previous_anchor: Optional[Tuple[int, float]] = None
        self._frozen_beat = 0.0
        self._listeners: List[Callable[[int], None]] = []
        self._thread: Optional[threading.Thread] = None
        self._wake = threading.Event()
        self._release_wake = threading.Event()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def tempo(self) -> float:
        return self._tempo

    @property
    def loop(self) -> bool:
        return self._loop

    @property
    def total_beats(self) -> float:
        return self._total_beats

    @property
    def iteration(self) -> int:
        """Number of completed loop passes since ``play``."""

        return self._iteration

    def add_loop_listener(self, callback: Callable[[int], None]) -> None:
        """Call ``callback(iteration)`` whenever playback wraps to beat zero."""

        self._listeners.append(callback)

    def set_harmony_muted(self, muted: bool) -> None:
        """Silence (or restore) the harmony guide for upcoming onsets."""

        with self._lock:
            self.harmony_muted = bool(muted)
            if muted and self._state is PlaybackState.PLAYING:
                self.engine.all_notes_off(self.engine.HARMONY_CHANNEL)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def play(
        self,
        melody: Sequence[Note],
        harmony: Optional[Sequence[Note]] = None,
        tempo: float = 120.0,
        loop: bool = True,
    ) -> None:
        """Start playback of ``melody`` (and ``harmony``) at ``tempo`` BPM.

        Raises
        ------
        RuntimeError
            If playback is already scheduled or running.
        ValueError
            If ``melody`` is empty or ``tempo`` is not positive.
        """

        if tempo <= 0:
            raise ValueError("tempo must be positive")
        if not melody:
            raise ValueError("melody must contain at least one note")
        harmony = list(harmony or ())

        with self._lock:
            if self._state in (PlaybackState.SCHEDULED, PlaybackState.PLAYING):
                raise RuntimeError("Playback already in progress; call stop() first")
            self._state = PlaybackState.SCHEDULED
            self._flush_releases()
            self._generation += 1
            self._events = []
            self._melody = _Timeline(melody)
            self._harmony = _Timeline(harmony)
            self._tempo = float(tempo)
            self._loop = bool(loop)
            self._total_beats = total_beats(melody)
            self._iteration = 0
            self._previous_anchor = None
            self._frozen_beat = 0.0
            self._anchor = self.engine.now()
            self._queue_iteration(self._anchor)
            self._state = PlaybackState.PLAYING
            generation = self._generation
            logger.debug(
                "Playback started: %d notes, %.1f beats at %.1f BPM (loop=%s)",
                len(melody),
                self._total_beats,
                self._tempo,
                self._loop,
            )

        if self.threaded:
            self._wake.clear()
            self._thread = threading.Thread(
                target=self._run, args=(generation,), name="playback-scheduler", daemon=True
            )
            self._thread.start()
        self.tick()

    def stop(self, cut: bool = True) -> None:
        """Cancel pending onsets; when ``cut`` also silence sounding notes.

        Without ``cut`` the notes already sounding ring out and are released
        at their normal articulation time by later ticks. Stopping an idle or
        stopped scheduler does nothing, except that ``cut`` silences notes
        still ringing from an earlier ``stop(cut=False)``.
        """

        with self._lock:
            if self._state not in (PlaybackState.SCHEDULED, PlaybackState.PLAYING):
                if cut:
                    self._flush_releases()
                return
            self._frozen_beat = self._beat_locked(self.engine.now())
            if cut:
                self.engine.all_notes_off()
            else:
                self._releases = self._ringing_releases()
            self._generation += 1
            self._events = []
            self._state = PlaybackState.STOPPED
            thread = self._thread
            self._thread = None
            self._wake.set()
            generation = self._generation
            if self.threaded and self._releases:
                self._release_wake.clear()
                threading.Thread(
                    target=self._drain_releases,
                    args=(generation,),
                    name="playback-release",
                    daemon=True,
                ).start()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        logger.debug("Playback stopped (cut=%s)", cut)

    def tick(self, now: Optional[float] = None) -> int:
        """Sound every event that is due and return how many fired."""

        with self._lock:
            if now is None:
                now = self.engine.now()
            if self._state is not PlaybackState.PLAYING:
                return self._release_due(now)
            self._advance(now)
            fired = 0
            while self._events and self._events[0].time <= now:
                event = heapq.heappop(self._events)
                self._fire(event)
                fired += 1
            if not self._loop and not self._events and now >= self._loop_end():
                self._state = PlaybackState.STOPPED
                self._frozen_beat = self._total_beats
                self._wake.set()
                logger.debug("Single-shot playback finished")
            return fired

    # ------------------------------------------------------------------
    # Position
    # ------------------------------------------------------------------
    def current_beat(self) -> float:
        """Return the musical position in beats since beat zero."""

        with self._lock:
            if self._state is PlaybackState.PLAYING:
                now = self.engine.now()
                self._advance(now)
                return self._beat_locked(now)
            return self._frozen_beat

    def beat_at(self, timestamp: float) -> Optional[Tuple[int, float]]:
        """Map a clock ``timestamp`` to ``(iteration, beat)``.

        Timestamps earlier than the current anchor are attributed to the
        previous loop pass when it is still known. Returns ``None`` before the
        first ``play``.
        """

        with self._lock:
            if self._state is PlaybackState.IDLE:
                return None
            if timestamp >= self._anchor or self._previous_anchor is None:
                iteration, anchor = self._iteration, self._anchor
            else:
                iteration, anchor = self._previous_anchor
            beat = seconds_to_beats(timestamp - anchor, self._tempo)
            if self._loop and beat >= self._total_beats > 0:
                wraps = int(beat // self._total_beats)
                iteration += wraps
                beat -= wraps * self._total_beats
            return iteration, beat

    def target_at(self, beat: float) -> Target:
        """Return the melody and harmony notes sounding at ``beat``."""

        with self._lock:
            return Target(self._melody.at(beat), self._harmony.at(beat))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _loop_end(self) -> float:
        return self._anchor + beats_to_seconds(self._total_beats, self._tempo)

    def _beat_locked(self, now: float) -> float:
        beat = seconds_to_beats(now - self._anchor, self._tempo)
        if not self._loop:
            return min(max(beat, 0.0), self._total_beats)
        if self._total_beats > 0:
            beat %= self._total_beats
        return max(beat, 0.0)

    def _advance(self, now: float) -> None:
        """Re-anchor at loop boundaries and queue the next pass."""

        if not self._loop or self._total_beats <= 0:
            return
        loop_seconds = beats_to_seconds(self._total_beats, self._tempo)
        while now >= self._anchor + loop_seconds:
            self._previous_anchor = (self._iteration, self._anchor)
            self._anchor += loop_seconds
            self._iteration += 1
            self._queue_iteration(self._anchor)
            logger.debug("Loop boundary, iteration %d", self._iteration)
            for callback in list(self._listeners):
                try:
                    callback(self._iteration)
                except Exception:
                    logger.exception("Loop listener raised")

    def _queue_iteration(self, anchor: float) -> None:
        voices = (
            (self._melody.notes, self.engine.MELODY_CHANNEL, MELODY_VELOCITY),
            (self._harmony.notes, self.engine.HARMONY_CHANNEL, HARMONY_VELOCITY),
        )
        for notes, channel, velocity in voices:
            for note in notes:
                onset = anchor + beats_to_seconds(note.start_beat, self._tempo)
                release = onset + beats_to_seconds(
                    note.duration_beats * ARTICULATION, self._tempo
                )
                for kind, when in (("on", onset), ("off", release)):
                    heapq.heappush(
                        self._events,
                        _Event(
                            time=when,
                            order=next(self._counter),
                            kind=kind,
                            channel=channel,
                            pitch=note.pitch,
                            velocity=velocity,
                            generation=self._generation,
                        ),
                    )

    def _fire(self, event: _Event) -> None:
        if event.generation != self._generation:
            raise SchedulingRace(
                f"event from generation {event.generation} fired during "
                f"generation {self._generation}"
            )
        if event.kind == "on":
            if event.channel == self.engine.HARMONY_CHANNEL and self.harmony_muted:
                return
            self.engine.note_on(event.channel, event.pitch, event.velocity)
        else:
            self.engine.note_off(event.channel, event.pitch)

    def _ringing_releases(self) -> List[_Event]:
        """Earliest pending release of every note that is sounding now."""

        sounding = self.engine.sounding_notes()
        releases = {}
        for event in sorted(self._events):
            key = (event.channel, event.pitch)
            if event.kind == "off" and key in sounding and key not in releases:
                releases[key] = event
        return sorted(releases.values())

    def _release_due(self, now: float) -> int:
        fired = 0
        while self._releases and self._releases[0].time <= now:
            event = self._releases.pop(0)
            self.engine.note_off(event.channel, event.pitch)
            fired += 1
        return fired

    def _flush_releases(self) -> None:
        for event in self._releases:
            self.engine.note_off(event.channel, event.pitch)
        self._releases = []
        self._release_wake.set()

    def _drain_releases(self, generation: int) -> None:
        while not self._release_wake.wait(self.tick_interval):
            with self._lock:
                if generation != self._generation or not self._releases:
                    return
                self._release_due(self.engine.now())

    def _run(self, generation: int) -> None:
        while not self._wake.wait(self.tick_interval):
            with self._lock:
                if generation != self._generation:
                    return
            try:
                self.tick()
            except SchedulingRace:
                logger.exception("Playback scheduling race")
                raise
            except Exception:
                logger.exception("Playback tick failed")
