"""Practice loop orchestration.

:class:`PracticeSession` wires the components of one practice sitting
together:

* the generator produces an :class:`~harmony_trainer.generator.Exercise`;
* the scheduler plays it on the shared :class:`AudioEngine`;
* the pitch tracker pushes observations into a bounded queue which a single
  consumer thread drains into the scorer;
* finished runs update the :class:`~harmony_trainer.models.Session` totals,
  the interval statistics and the store.

A run ends with :meth:`PracticeSession.finish_run`. It stops capture and
playback first, then lets the consumer empty the queue so every observation
captured before the stop is scored exactly once.
"""

from __future__ import annotations

import logging
import queue
import random
import threading
from typing import Any, Optional, Sequence

from .errors import AudioOutputError, DeviceError, PersistenceError
from .generator import Exercise, generate
from .models import PitchObservation, Run, Session
from .pitch_tracker import PitchTracker
from .scheduler import PlaybackScheduler
from .scorer import PracticeScorer, RunConfig
from .settings import PracticeSettings
from .stats import IntervalStatsAggregator

__all__ = ["PracticeSession"]


logger = logging.getLogger(__name__)

_STOP = object()


class PracticeSession:
    """Run practice attempts and record their outcome.

    Parameters
    ----------
    engine:
        The :class:`~harmony_trainer.audio_engine.AudioEngine` shared by
        tracker and scheduler. It must be open before a run starts.
    settings:
        :class:`PracticeSettings` used for new exercises and runs.
    store:
        Optional :class:`~harmony_trainer.store.Store`. Persisted interval
        statistics are loaded from it on construction.
    aggregator, tracker, scheduler, scorer:
        Components to use instead of the defaults built from ``engine``.
    queue_size:
        Capacity of the observation channel between tracker and scorer.
    """

    def __init__(
        self,
        engine: Any,
        *,
        settings: Optional[PracticeSettings] = None,
        store: Any = None,
        aggregator: Optional[IntervalStatsAggregator] = None,
        tracker: Optional[PitchTracker] = None,
        scheduler: Optional[PlaybackScheduler] = None,
        scorer: Optional[PracticeScorer] = None,
        queue_size: int = 256,
    ) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self.engine = engine
        self.settings = settings or PracticeSettings()
        self.store = store
        self.aggregator = aggregator or IntervalStatsAggregator(store=store)
        if store is not None and aggregator is None:
            self.aggregator.load(store.all_interval_stats())
        self.tracker = tracker or PitchTracker(engine)
        self.scheduler = scheduler or PlaybackScheduler(engine)
        self.scorer = scorer or PracticeScorer(self.scheduler, clock=engine.now)
        self.session = Session()
        self._session_saved = False
        self.last_observation: Optional[PitchObservation] = None
        self._observations: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size)
        self._consumer: Optional[threading.Thread] = None
        self._exercise: Optional[Exercise] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Exercise preparation
    # ------------------------------------------------------------------
    def prepare(
        self,
        *,
        seed: Optional[int] = None,
        adaptive_intervals: Optional[Sequence[int]] = None,
        rng: Optional[random.Random] = None,
    ) -> Exercise:
        """Generate the next exercise.

        When ``adaptive_intervals`` is given the harmony interval is chosen
        among them by the aggregator, favouring struggling intervals.
        """

        interval = None
        if adaptive_intervals:
            interval = self.aggregator.recommend_interval(adaptive_intervals, rng)
            logger.info("Practising interval %+d", interval)
        return generate(
            self.settings.generator_config(seed=seed, harmony_interval_degrees=interval)
        )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._exercise is not None

    def start_run(self, exercise: Optional[Exercise] = None) -> Exercise:
        """Begin scoring and playback of ``exercise`` (generated when omitted).

        Raises
        ------
        RuntimeError
            If a run is already in progress.
        DeviceError
            If the microphone cannot be opened. Playback is stopped again and
            no run is recorded.
        AudioOutputError
            If the engine has no running synthesizer.
        """

        with self._lock:
            if self._exercise is not None:
                raise RuntimeError("A run is already in progress")
            exercise = exercise or self.prepare()
            try:
                self._ensure_session_saved()
            except PersistenceError as exc:
                logger.error(
                    "Could not save session %s, retrying after the run: %s", self.session.id, exc
                )
            self.last_observation = None
            s = self.settings
            self.scorer.begin_run(
                RunConfig(
                    session_id=self.session.id,
                    key=s.key,
                    loop_mode=s.loop_mode,
                    ghost_harmony_enabled=s.ghost_harmony_enabled,
                    tolerance_cents=s.tolerance_cents,
                    confidence_threshold=s.confidence_threshold,
                ),
                exercise,
            )
            self._start_consumer()
            try:
                self.scheduler.set_harmony_muted(s.ghost_harmony_enabled)
                self.scheduler.play(exercise.melody, exercise.harmony, s.tempo, s.loop_mode)
                self.tracker.start(self._enqueue)
            except (DeviceError, AudioOutputError):
                self.scheduler.stop(cut=True)
                self._stop_consumer()
                self.scorer.cancel_run()
                raise
            self._exercise = exercise
        logger.info(
            "Run started: %d notes, interval %+d, %.0f BPM",
            len(exercise.melody),
            exercise.config.harmony_interval_degrees,
            self.settings.tempo,
        )
        return exercise

    def finish_run(self) -> Run:
        """Stop the current run, score it and record the result.

        The session totals and interval statistics are updated before the
        store is written; a failing write raises :class:`PersistenceError`
        after the in-memory state is already current. A session that could
        not be saved when the run started is saved here first.

        Raises
        ------
        RuntimeError
            If no run is in progress.
        """

        with self._lock:
            if self._exercise is None:
                raise RuntimeError("No run in progress")
            self.tracker.stop()
            self.scheduler.stop(cut=True)
            self._stop_consumer()
            run = self.scorer.end_run()
            self._exercise = None

            self.session.add_run(run)
            failure: Optional[PersistenceError] = None
            try:
                self.aggregator.record(run)
            except PersistenceError as exc:
                failure = exc
            if self.store is not None:
                try:
                    self._ensure_session_saved()
                    self.store.create_run(run)
                    self.store.update_session(self.session)
                except PersistenceError as exc:
                    logger.error("Could not save run %s: %s", run.id, exc)
                    failure = failure or exc
        if failure is not None:
            raise failure
        return run

    def close(self) -> None:
        """Abort any active run without recording it."""

        with self._lock:
            if self._exercise is None:
                return
            self.tracker.stop()
            self.scheduler.stop(cut=True)
            self._stop_consumer()
            self.scorer.cancel_run()
            self._exercise = None
        logger.info("Run aborted")

    def __enter__(self) -> "PracticeSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Observation channel
    # ------------------------------------------------------------------
    def _enqueue(self, observation: PitchObservation) -> None:
        try:
            self._observations.put_nowait(observation)
        except queue.Full:
            try:
                self._observations.get_nowait()
            except queue.Empty:
                pass
            logger.debug("Scorer behind, dropped oldest observation")
            self._observations.put_nowait(observation)

    def _consume(self) -> None:
        while True:
            item = self._observations.get()
            if item is _STOP:
                return
            try:
                self.scorer.on_observation(item)
                self.last_observation = item
            except Exception:
                logger.exception("Scoring observation failed")

    def _start_consumer(self) -> None:
        self._consumer = threading.Thread(
            target=self._consume, name="practice-scorer", daemon=True
        )
        self._consumer.start()

    def _stop_consumer(self) -> None:
        consumer = self._consumer
        self._consumer = None
        if consumer is None:
            return
        # The tracker is stopped, so nothing else writes to the queue now.
        self._observations.put(_STOP)
        consumer.join()

    def _ensure_session_saved(self) -> None:
        if self._session_saved or self.store is None:
            return
        self.store.create_session(self.session)
        self._session_saved = True
        logger.debug("Saved session %s", self.session.id)
