"""Live pitch tracking on microphone input.

The tracker owns one input stream at a time. The audio callback does nothing
except copy the captured block into a bounded queue; a worker thread drains
the queue, maintains a rolling analysis window and runs the YIN estimator on
it. Every analysed frame produces one :class:`~harmony_trainer.models.PitchObservation`
which is handed to the caller's sink, including low-confidence and unvoiced
frames so the consumer can decide how to treat them.

Stopping is immediate: emission and :meth:`PitchTracker.stop` share one lock
and each capture carries a generation number, so once ``stop()`` has returned
no further observation reaches the sink even when a frame was queued or in
the middle of analysis.

Example usage
-------------
>>> from harmony_trainer.audio_engine import AudioEngine
>>> from harmony_trainer.pitch_tracker import start_pitch_tracking
>>> engine = AudioEngine()
>>> with start_pitch_tracking(engine, print) as handle:
...     pass
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

import numpy as np

from .errors import DeviceError, TrackerAlreadyRunning
from .models import PitchObservation
from .theory import frequency_to_pitch
from .yin import EstimatorSettings, estimate_frequency

__all__ = [
    "PitchTracker",
    "TrackingHandle",
    "start_pitch_tracking",
    "stop",
    "DEFAULT_WINDOW_SIZE",
    "DEFAULT_BLOCK_SIZE",
]


logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 2048
DEFAULT_BLOCK_SIZE = 1024
DEFAULT_QUEUE_SIZE = 32

ObservationSink = Callable[[PitchObservation], None]


@dataclass
class _Capture:
    """State belonging to one ``start()``/``stop()`` cycle."""

    generation: int
    sink: ObservationSink
    frames: "queue.Queue[Tuple[Any, float]]"
    stop_event: threading.Event = field(default_factory=threading.Event)
    stream: Any = None
    thread: Optional[threading.Thread] = None


class PitchTracker:
    """Capture microphone audio and emit pitch observations.

    Parameters
    ----------
    engine:
        :class:`~harmony_trainer.audio_engine.AudioEngine` providing the input
        stream and the clock used for timestamps.
    window_size:
        Number of samples analysed per frame.
    blocksize:
        Samples per captured block; one observation is produced per block once
        the rolling window has filled.
    queue_size:
        Maximum number of blocks waiting for analysis. When full the oldest
        block is discarded.
    settings:
        Optional :class:`~harmony_trainer.yin.EstimatorSettings`.
    estimator:
        ``(samples, sample_rate, settings) -> (frequency, clarity)``.
    """

    def __init__(
        self,
        engine: Any,
        *,
        window_size: int = DEFAULT_WINDOW_SIZE,
        blocksize: int = DEFAULT_BLOCK_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        settings: Optional[EstimatorSettings] = None,
        estimator: Callable[..., Tuple[float, float]] = estimate_frequency,
    ) -> None:
        if window_size < 8:
            raise ValueError("window_size must be at least 8 samples")
        if blocksize <= 0:
            raise ValueError("blocksize must be positive")
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self.engine = engine
        self.window_size = window_size
        self.blocksize = blocksize
        self.queue_size = queue_size
        self.settings = settings
        self._estimator = estimator
        self._lock = threading.RLock()
        self._generation = 0
        self._capture: Optional[_Capture] = None
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._capture is not None

    @property
    def dropped_frames(self) -> int:
        """Number of blocks discarded because analysis fell behind."""

        return self._dropped

    def start(self, sink: ObservationSink) -> None:
        """Open the input stream and begin emitting observations to ``sink``.

        Raises
        ------
        TrackerAlreadyRunning
            If a capture is already active. The active capture is unaffected.
        PermissionDenied, DeviceUnavailable
            If the input device cannot be acquired. The tracker stays idle.
        """

        with self._lock:
            if self._capture is not None:
                raise TrackerAlreadyRunning("Pitch tracking is already running")
            self._generation += 1
            capture = _Capture(
                generation=self._generation,
                sink=sink,
                frames=queue.Queue(maxsize=self.queue_size),
            )

            def callback(indata, frames, time_info, status) -> None:
                self._on_audio(capture, indata, status)

            try:
                capture.stream = self.engine.open_input_stream(callback, self.blocksize)
            except DeviceError as exc:
                logger.error("Could not start pitch tracking: %s", exc)
                raise
            capture.thread = threading.Thread(
                target=self._run,
                args=(capture,),
                name=f"pitch-tracker-{capture.generation}",
                daemon=True,
            )
            self._capture = capture
            capture.thread.start()
        logger.debug("Pitch tracking started (generation %d)", capture.generation)

    def stop(self) -> None:
        """Stop capturing. Safe to call repeatedly and from within the sink."""

        with self._lock:
            capture = self._capture
            if capture is None:
                return
            self._capture = None
            self._generation += 1
            capture.stop_event.set()

        stream = capture.stream
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:
                logger.warning("Failed to close input stream: %s", exc)

        thread = capture.thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
            if thread.is_alive():
                logger.warning("Pitch analysis thread did not exit promptly")
        logger.debug("Pitch tracking stopped (generation %d)", capture.generation)

    # ------------------------------------------------------------------
    # Audio thread
    # ------------------------------------------------------------------
    def _on_audio(self, capture: _Capture, indata, status) -> None:
        if status:
            logger.debug("Input stream status: %s", status)
        if capture.stop_event.is_set():
            return
        item = (np.array(indata, copy=True), self.engine.now())
        try:
            capture.frames.put_nowait(item)
        except queue.Full:
            try:
                capture.frames.get_nowait()
            except queue.Empty:
                pass
            with self._dropped_lock:
                self._dropped += 1
            logger.debug("Analysis behind, dropped oldest audio block")
            try:
                capture.frames.put_nowait(item)
            except queue.Full:
                logger.debug("Analysis queue still full, block discarded")

    # ------------------------------------------------------------------
    # Worker thread
    # ------------------------------------------------------------------
    def _run(self, capture: _Capture) -> None:
        window = np.zeros(self.window_size, dtype=np.float64)
        filled = 0
        while not capture.stop_event.is_set():
            try:
                block, timestamp = capture.frames.get(timeout=0.05)
            except queue.Empty:
                continue
            try:
                samples = _mono(block)
            except ValueError as exc:
                logger.warning("Skipping malformed audio block: %s", exc)
                continue
            window, filled = _push(window, filled, samples)
            if filled < self.window_size:
                continue
            try:
                observation = self._analyse(window, timestamp)
            except Exception as exc:
                logger.warning("Pitch analysis failed, skipping frame: %s", exc)
                continue
            self._emit(capture, observation)

    def _analyse(self, window: np.ndarray, timestamp: float) -> PitchObservation:
        frequency, clarity = self._estimator(
            window, self.engine.sample_rate, self.settings
        )
        if frequency <= 0:
            return PitchObservation(0.0, float(clarity), 0.0, timestamp)
        return PitchObservation(
            frequency_hz=float(frequency),
            confidence=float(clarity),
            pitch=frequency_to_pitch(frequency),
            timestamp=timestamp,
        )

    def _emit(self, capture: _Capture, observation: PitchObservation) -> None:
        with self._lock:
            if capture.generation != self._generation or capture.stop_event.is_set():
                return
            try:
                capture.sink(observation)
            except Exception:
                logger.exception("Observation sink raised")


def _mono(block: Any) -> np.ndarray:
    """Return the first channel of ``block`` as a flat float64 array."""

    data = np.asarray(block, dtype=np.float64)
    if data.ndim == 2:
        data = data[:, 0]
    elif data.ndim != 1:
        raise ValueError(f"unexpected block shape {data.shape}")
    if data.size == 0:
        raise ValueError("empty block")
    return data


def _push(window: np.ndarray, filled: int, samples: np.ndarray) -> Tuple[np.ndarray, int]:
    """Append ``samples`` to the rolling ``window`` keeping the newest values."""

    size = window.shape[0]
    if samples.shape[0] >= size:
        return samples[-size:].copy(), size
    count = samples.shape[0]
    window = np.roll(window, -count)
    window[-count:] = samples
    return window, min(size, filled + count)


class TrackingHandle:
    """Handle returned by :func:`start_pitch_tracking`.

    Usable as a context manager; leaving the block stops tracking.
    """

    def __init__(self, tracker: PitchTracker) -> None:
        self.tracker = tracker

    @property
    def active(self) -> bool:
        return self.tracker.is_running

    def stop(self) -> None:
        self.tracker.stop()

    def __enter__(self) -> "TrackingHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


def start_pitch_tracking(
    engine: Any, on_observation: ObservationSink, **kwargs: Any
) -> TrackingHandle:
    """Create a :class:`PitchTracker`, start it and return its handle.

    Keyword arguments are forwarded to :class:`PitchTracker`.

    Raises
    ------
    DeviceError
        If the input device cannot be acquired.
    """

    tracker = PitchTracker(engine, **kwargs)
    tracker.start(on_observation)
    return TrackingHandle(tracker)


def stop(handle: TrackingHandle) -> None:
    """Stop the capture behind ``handle``."""

    handle.stop()
