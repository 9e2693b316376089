"""User preferences stored as a small JSON document.

The file location defaults to ``~/.harmony_trainer_settings.json`` and can be
redirected with the ``HARMONY_TRAINER_SETTINGS_FILE`` environment variable.
Loading never fails: a missing or unreadable file yields the defaults and
unknown keys are ignored so older or newer files keep working.

Example
-------
>>> settings = load_settings()
>>> settings.tempo
80.0
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .generator import GeneratorConfig, MelodicMode
from .note_utils import key_to_root
from .theory import VOCAL_RANGES, ScaleType

__all__ = [
    "PracticeSettings",
    "DEFAULT_SETTINGS_FILE",
    "settings_path",
    "load_settings",
    "save_settings",
]

_SETTINGS_ENV = "HARMONY_TRAINER_SETTINGS_FILE"

env_path = os.environ.get(_SETTINGS_ENV)
if env_path:
    DEFAULT_SETTINGS_FILE = Path(env_path).expanduser()
else:
    DEFAULT_SETTINGS_FILE = Path.home() / ".harmony_trainer_settings.json"


def settings_path() -> Path:
    """Resolve the settings file, honouring the environment at call time."""

    override = os.environ.get(_SETTINGS_ENV)
    return Path(override).expanduser() if override else DEFAULT_SETTINGS_FILE


@dataclass(frozen=True)
class PracticeSettings:
    """Preferences applied to new practice runs."""

    tolerance_cents: float = 50.0
    confidence_threshold: float = 0.8
    tempo: float = 80.0
    vocal_range: str = "tenor"
    key: str = "C"
    scale_type: str = ScaleType.MAJOR.value
    rhythmic_complexity: int = 3
    melodic_mode: str = MelodicMode.RANDOM_WALK.value
    measure_count: int = 4
    harmony_interval_degrees: int = 3
    interval_mode: str = "diatonic"
    loop_mode: bool = True
    ghost_harmony_enabled: bool = False
    soundfont: Optional[str] = None

    def __post_init__(self) -> None:
        if self.tolerance_cents <= 0:
            raise ValueError("tolerance_cents must be positive")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must lie within 0-1")
        if self.tempo <= 0:
            raise ValueError("tempo must be positive")
        if self.vocal_range not in VOCAL_RANGES:
            raise ValueError(f"Unknown vocal range: {self.vocal_range}")
        object.__setattr__(self, "scale_type", ScaleType.parse(self.scale_type).value)
        object.__setattr__(self, "melodic_mode", MelodicMode.parse(self.melodic_mode).value)
        if not 0 <= self.rhythmic_complexity <= 10:
            raise ValueError("rhythmic_complexity must be between 0 and 10")
        if self.measure_count <= 0:
            raise ValueError("measure_count must be positive")
        if self.interval_mode not in ("diatonic", "fixed"):
            raise ValueError("interval_mode must be 'diatonic' or 'fixed'")
        if self.interval_mode == "diatonic" and self.harmony_interval_degrees == 0:
            raise ValueError("diatonic harmony_interval_degrees must be non-zero")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PracticeSettings":
        """Build settings from ``data`` ignoring unknown keys."""

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def updated(self, **changes: Any) -> "PracticeSettings":
        """Return a copy with ``changes`` applied (``None`` values skipped)."""

        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def generator_config(
        self,
        *,
        seed: Optional[int] = None,
        harmony_interval_degrees: Optional[int] = None,
    ) -> GeneratorConfig:
        """Return the :class:`GeneratorConfig` these settings describe."""

        return GeneratorConfig.for_vocal_range(
            self.vocal_range,
            root_pitch=key_to_root(self.key),
            scale_type=self.scale_type,
            measure_count=self.measure_count,
            rhythmic_complexity=self.rhythmic_complexity,
            melodic_mode=self.melodic_mode,
            harmony_interval_degrees=(
                self.harmony_interval_degrees
                if harmony_interval_degrees is None
                else harmony_interval_degrees
            ),
            interval_mode=self.interval_mode,
            seed=seed,
        )


def load_settings(path: Optional[Path] = None) -> PracticeSettings:
    """Load saved settings from ``path`` falling back to the defaults.

    Errors are logged rather than raised so a damaged file never stops a
    practice session.
    """

    path = Path(path) if path is not None else settings_path()
    if path.is_file():
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
            if not isinstance(data, dict):
                raise ValueError("settings file must contain a JSON object")
            return PracticeSettings.from_dict(data)
        except Exception as exc:
            logging.error("Could not load settings: %s", exc)
    return PracticeSettings()


def save_settings(settings: PracticeSettings, path: Optional[Path] = None) -> None:
    """Save ``settings`` to ``path`` as JSON.

    Failures are logged and ignored so saving preferences never interrupts
    practice.
    """

    path = Path(path) if path is not None else settings_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(settings.to_dict(), fh, indent=2)
    except Exception as exc:
        logging.error("Could not save settings: %s", exc)
