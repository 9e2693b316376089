"""Exception hierarchy shared by the practice engine.

Every error raised on purpose by :mod:`harmony_trainer` derives from
:class:`HarmonyTrainerError` so callers can catch the whole family in one
place. Validation failures additionally subclass :class:`ValueError` which
keeps them compatible with code that already guards generator calls with
``except ValueError``.

Example
-------
>>> from harmony_trainer.errors import InvalidRangeError
>>> issubclass(InvalidRangeError, ValueError)
True
"""

from __future__ import annotations

__all__ = [
    "HarmonyTrainerError",
    "DeviceError",
    "PermissionDenied",
    "DeviceUnavailable",
    "InvalidRangeError",
    "SchedulingRace",
    "PersistenceError",
    "AudioOutputError",
    "TrackerAlreadyRunning",
]


class HarmonyTrainerError(Exception):
    """Base class for all package specific errors."""


class DeviceError(HarmonyTrainerError):
    """Raised when the microphone cannot be acquired.

    Device errors are fatal to pitch tracking. They are surfaced to the user
    and never retried automatically; a fresh ``start()`` is required.
    """


class PermissionDenied(DeviceError):
    """The operating system refused access to the input device."""


class DeviceUnavailable(DeviceError):
    """No usable input device exists or it could not be opened."""


class InvalidRangeError(HarmonyTrainerError, ValueError):
    """A generator configuration leaves no scale pitch inside the range."""


class SchedulingRace(HarmonyTrainerError, RuntimeError):
    """A cancelled onset reached the audio output.

    The scheduler is built so this cannot happen; the exception exists so the
    invariant is checked rather than assumed.
    """


class PersistenceError(HarmonyTrainerError):
    """The external store rejected or failed a write.

    In-memory session and interval statistics remain valid when this is
    raised. Retrying is the caller's decision.
    """


class AudioOutputError(HarmonyTrainerError, RuntimeError):
    """Raised when the synthesizer or its SoundFont cannot be loaded."""


class TrackerAlreadyRunning(HarmonyTrainerError, RuntimeError):
    """``start()`` was called on a pitch tracker that is already capturing."""
