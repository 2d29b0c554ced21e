# Core Module - Monitor Configuration
#
# Settings the monitor, watcher manager and containment engine read at
# call time. Persisted through the Preferences key/value store; every
# field can also be overridden with a PERSISTWATCH_<FIELD> environment
# variable (e.g. PERSISTWATCH_COOLDOWN_INTERVAL=10).
#
# Presets:
#   minimal  - core high-signal categories only, quiet notifications
#   balanced - core categories, default thresholds
#   paranoid - everything watchable, low threshold, fast cooldown

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Set

from .models import CORE_CATEGORIES, PersistenceCategory
from .preferences import Preferences

logger = logging.getLogger(__name__)

_PREF_PREFIX = "monitor."
_ENV_PREFIX = "PERSISTWATCH_"


class MonitorPreset(str, Enum):
    MINIMAL = "minimal"
    BALANCED = "balanced"
    PARANOID = "paranoid"


def _default_categories() -> Set[PersistenceCategory]:
    return set(PersistenceCategory.monitorable())


@dataclass
class MonitorConfiguration:
    """Monitor settings with defaults matching a fresh install."""

    monitoring_enabled: bool = False
    auto_start: bool = False
    cooldown_interval: float = 5.0
    scan_debounce_interval: float = 2.0
    minimum_relevance_score: int = 30
    enabled_categories: Set[PersistenceCategory] = field(default_factory=_default_categories)
    notify_on_add: bool = True
    notify_on_remove: bool = True
    notify_on_modify: bool = True
    play_sound_on_high_relevance: bool = True
    show_badge: bool = True
    default_containment_timeout: float = 86400.0

    def should_notify(self, change_type: str) -> bool:
        """Whether a change of this type passes the per-type toggles."""
        value = getattr(change_type, "value", change_type)
        if value == "added":
            return self.notify_on_add
        if value == "removed":
            return self.notify_on_remove
        return self.notify_on_modify

    def monitorable_categories(self) -> Set[PersistenceCategory]:
        """Enabled categories that actually have directories to watch."""
        return {c for c in self.enabled_categories if c.monitored_paths}

    def reset_to_defaults(self) -> None:
        defaults = MonitorConfiguration()
        for f in fields(self):
            setattr(self, f.name, getattr(defaults, f.name))

    def apply_preset(self, preset: MonitorPreset) -> None:
        preset = MonitorPreset(preset)
        if preset == MonitorPreset.MINIMAL:
            self.enabled_categories = {
                PersistenceCategory.LAUNCH_DAEMONS,
                PersistenceCategory.LAUNCH_AGENTS,
                PersistenceCategory.PRIVILEGED_HELPERS,
            }
            self.minimum_relevance_score = 60
            self.cooldown_interval = 10.0
            self.notify_on_remove = False
        elif preset == MonitorPreset.BALANCED:
            self.enabled_categories = {c for c in CORE_CATEGORIES if c.monitored_paths}
            self.minimum_relevance_score = 30
            self.cooldown_interval = 5.0
            self.notify_on_add = True
            self.notify_on_remove = True
            self.notify_on_modify = True
        else:
            self.enabled_categories = _default_categories()
            self.minimum_relevance_score = 10
            self.cooldown_interval = 2.0
            self.notify_on_add = True
            self.notify_on_remove = True
            self.notify_on_modify = True

    # ── Serialization ────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["enabled_categories"] = sorted(c.value for c in self.enabled_categories)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitorConfiguration":
        config = cls()
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            config._set_field(f.name, data[f.name])
        return config

    def _set_field(self, name: str, raw: Any) -> None:
        current = getattr(self, name)
        if name == "enabled_categories":
            if isinstance(raw, str):
                raw = [v.strip() for v in raw.split(",") if v.strip()]
            categories = set()
            for value in raw:
                try:
                    categories.add(PersistenceCategory(value))
                except ValueError:
                    logger.warning("Ignoring unknown category %r in configuration", value)
            value = categories
        elif isinstance(current, bool):
            value = raw if isinstance(raw, bool) else str(raw).strip().lower() in ("1", "true", "yes", "on")
        elif isinstance(current, int):
            value = int(raw)
        elif isinstance(current, float):
            value = float(raw)
        else:
            value = raw
        setattr(self, name, value)

    @classmethod
    def load(cls, prefs: Preferences) -> "MonitorConfiguration":
        """Build a configuration from stored preferences plus env overrides."""
        stored = {}
        for f in fields(cls):
            value = prefs.get(_PREF_PREFIX + f.name)
            if value is not None:
                stored[f.name] = value
        config = cls.from_dict(stored)
        config.apply_env()
        return config

    def save(self, prefs: Preferences) -> None:
        for key, value in self.to_dict().items():
            prefs.set(_PREF_PREFIX + key, value)

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> None:
        environ = os.environ if environ is None else environ
        for f in fields(self):
            raw = environ.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                self._set_field(f.name, raw)
            except ValueError:
                logger.warning("Invalid value for %s%s: %r", _ENV_PREFIX, f.name.upper(), raw)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "MonitorConfiguration":
        config = cls()
        config.apply_env(environ)
        return config
