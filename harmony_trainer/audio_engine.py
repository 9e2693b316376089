"""Shared audio clock, microphone input and note synthesis.

An :class:`AudioEngine` is created explicitly by whoever runs a practice
session and handed to the pitch tracker and the playback scheduler. Both
components read the same monotonic clock from :meth:`AudioEngine.now` so a
pitch observation timestamp and a scheduled onset time are directly
comparable.

Input streams are opened with ``sounddevice`` and notes are rendered by a
FluidSynth synthesizer through ``pyfluidsynth``. Both libraries are imported
lazily so the rest of the package (and the test-suite) works on machines
without PortAudio or FluidSynth installed.

Example usage
-------------
>>> from harmony_trainer.audio_engine import AudioEngine
>>> with AudioEngine(soundfont="/usr/share/sounds/sf2/FluidR3_GM.sf2") as engine:
...     engine.note_on(engine.MELODY_CHANNEL, 60)

The SoundFont path can be supplied via the ``soundfont`` parameter or the
``SOUND_FONT`` environment variable. When neither is given a platform default
is attempted.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from typing import Any, Callable, Optional, Set, Tuple

from .errors import AudioOutputError, DeviceUnavailable, PermissionDenied

__all__ = ["AudioEngine", "resolve_soundfont", "DEFAULT_SAMPLE_RATE"]


logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 44100

StreamCallback = Callable[[Any, int, Any, Any], None]


def resolve_soundfont(sf: Optional[str]) -> str:
    """Return the path to the SoundFont used for synthesis.

    Parameters
    ----------
    sf:
        Optional path supplied directly by the caller. When ``None`` the
        ``SOUND_FONT`` environment variable is consulted followed by
        platform-specific defaults.

    Raises
    ------
    AudioOutputError
        If no valid file can be located.
    """

    if sf:
        candidate = sf
    else:
        candidate = os.environ.get("SOUND_FONT")
        if not candidate:
            if sys.platform.startswith("win"):
                candidate = r"C:\\Windows\\System32\\drivers\\gm.dls"
            elif sys.platform == "darwin":
                candidate = "/Library/Audio/Sounds/Banks/FluidR3_GM.sf2"
            else:
                candidate = "/usr/share/sounds/sf2/TimGM6mb.sf2"

    candidate = os.path.expanduser(os.path.expandvars(candidate))
    if not os.path.isfile(candidate):
        raise AudioOutputError(
            "SoundFont not found. Provide a valid path via the argument or "
            "SOUND_FONT environment variable, or install a General MIDI soundfont."
        )
    return candidate


def _create_fluidsynth(soundfont: Optional[str], programs: Tuple[Tuple[int, int], ...]) -> Any:
    """Start a FluidSynth instance with ``programs`` selected per channel."""

    try:
        import fluidsynth  # type: ignore
    except FileNotFoundError as exc:
        # Raised by pyfluidsynth when the C library cannot be located.
        raise AudioOutputError(
            "fluidsynth not installed. Install the FluidSynth library and "
            "pyFluidSynth package."
        ) from exc
    except ImportError as exc:
        raise AudioOutputError("PyFluidSynth is required for note playback") from exc

    sf_path = resolve_soundfont(soundfont)
    try:
        synth = fluidsynth.Synth()
    except FileNotFoundError as exc:
        raise AudioOutputError(
            "fluidsynth not installed. Install the FluidSynth library and "
            "pyFluidSynth package."
        ) from exc
    try:
        synth.start()
    except Exception as exc:
        synth.delete()
        raise AudioOutputError(f"Could not start audio driver: {exc}") from exc
    try:
        sfid = synth.sfload(sf_path)
        for channel, program in programs:
            synth.program_select(channel, sfid, 0, program)
    except Exception as exc:
        synth.delete()
        raise AudioOutputError(f"Could not load SoundFont {sf_path}: {exc}") from exc
    return synth


def _open_sounddevice_stream(
    sample_rate: int,
    blocksize: int,
    channels: int,
    callback: StreamCallback,
    device: Optional[Any],
) -> Any:
    """Open and start a ``sounddevice.InputStream``.

    PortAudio failures are translated into :class:`PermissionDenied` or
    :class:`DeviceUnavailable` so callers never see backend exceptions.
    """

    try:
        import sounddevice as sd  # type: ignore
    except OSError as exc:
        # sounddevice raises OSError when the PortAudio library is missing.
        raise DeviceUnavailable(f"PortAudio library not available: {exc}") from exc
    except ImportError as exc:
        raise DeviceUnavailable("sounddevice is required for audio capture") from exc

    try:
        stream = sd.InputStream(
            samplerate=sample_rate,
            blocksize=blocksize,
            channels=channels,
            callback=callback,
            dtype="float32",
            device=device,
        )
        stream.start()
    except sd.PortAudioError as exc:
        message = str(exc)
        if "permission" in message.lower() or "not authorized" in message.lower():
            raise PermissionDenied(f"Microphone access denied: {message}") from exc
        raise DeviceUnavailable(f"Could not open input device: {message}") from exc
    except ValueError as exc:
        # Invalid device names or unsupported settings.
        raise DeviceUnavailable(f"Could not open input device: {exc}") from exc
    return stream


class AudioEngine:
    """Owner of the monotonic clock, the input device and the synthesizer.

    Parameters
    ----------
    sample_rate:
        Sampling rate used for both capture and synthesis.
    soundfont:
        SoundFont path handed to :func:`resolve_soundfont`.
    clock:
        Callable returning monotonic seconds. Defaults to
        :func:`time.perf_counter`; tests pass a controllable fake.
    stream_factory:
        ``(sample_rate, blocksize, channels, callback, device) -> stream``.
        The returned object must provide ``stop()`` and ``close()`` and be
        started already.
    synth_factory:
        ``(soundfont, programs) -> synth`` where ``synth`` offers
        ``noteon``, ``noteoff`` and ``delete`` like ``fluidsynth.Synth``.
    """

    MELODY_CHANNEL = 0
    HARMONY_CHANNEL = 1

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        soundfont: Optional[str] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
        synth_factory: Optional[Callable[..., Any]] = None,
        input_device: Optional[Any] = None,
        melody_program: int = 0,
        harmony_program: int = 0,
    ) -> None:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        self.sample_rate = int(sample_rate)
        self.soundfont = soundfont
        self.input_device = input_device
        self._clock = clock or time.perf_counter
        self._stream_factory = stream_factory or _open_sounddevice_stream
        self._synth_factory = synth_factory or _create_fluidsynth
        self._programs = (
            (self.MELODY_CHANNEL, melody_program),
            (self.HARMONY_CHANNEL, harmony_program),
        )
        self._synth: Any = None
        self._sounding: Set[Tuple[int, int]] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self) -> "AudioEngine":
        """Start the synthesizer. Calling ``open`` twice is harmless."""

        with self._lock:
            if self._synth is None:
                self._synth = self._synth_factory(self.soundfont, self._programs)
                logger.debug("Synthesizer started")
        return self

    def close(self) -> None:
        """Silence every note and release the synthesizer."""

        with self._lock:
            synth = self._synth
            if synth is None:
                return
            for channel, pitch in sorted(self._sounding):
                synth.noteoff(channel, pitch)
            self._sounding.clear()
            self._synth = None
        synth.delete()
        logger.debug("Synthesizer closed")

    @property
    def is_open(self) -> bool:
        return self._synth is not None

    def __enter__(self) -> "AudioEngine":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Clock and input
    # ------------------------------------------------------------------
    def now(self) -> float:
        """Return the shared monotonic clock in seconds."""

        return self._clock()

    def open_input_stream(
        self, callback: StreamCallback, blocksize: int = 1024, channels: int = 1
    ) -> Any:
        """Open a started mono float32 input stream delivering to ``callback``.

        Raises
        ------
        PermissionDenied
            If the operating system refused microphone access.
        DeviceUnavailable
            If no usable input device exists.
        """

        if blocksize <= 0:
            raise ValueError("blocksize must be positive")
        return self._stream_factory(
            self.sample_rate, blocksize, channels, callback, self.input_device
        )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------
    def note_on(self, channel: int, pitch: int, velocity: int = 100) -> None:
        """Start sounding ``pitch`` on ``channel``.

        Raises
        ------
        AudioOutputError
            If the engine has not been opened.
        """

        with self._lock:
            synth = self._require_synth()
            key = (channel, int(pitch))
            if key in self._sounding:
                # Retrigger cleanly rather than stacking voices.
                synth.noteoff(channel, int(pitch))
            synth.noteon(channel, int(pitch), int(velocity))
            self._sounding.add(key)

    def note_off(self, channel: int, pitch: int) -> None:
        with self._lock:
            synth = self._require_synth()
            key = (channel, int(pitch))
            if key in self._sounding:
                synth.noteoff(channel, int(pitch))
                self._sounding.discard(key)

    def all_notes_off(self, channel: Optional[int] = None) -> None:
        """Release every sounding note, optionally limited to ``channel``."""

        with self._lock:
            if self._synth is None:
                return
            for key in sorted(self._sounding):
                if channel is None or key[0] == channel:
                    self._synth.noteoff(*key)
                    self._sounding.discard(key)

    def sounding_notes(self) -> Set[Tuple[int, int]]:
        """Return a snapshot of ``(channel, pitch)`` pairs currently on."""

        with self._lock:
            return set(self._sounding)

    def _require_synth(self) -> Any:
        if self._synth is None:
            raise AudioOutputError("Audio engine is not open")
        return self._synth
