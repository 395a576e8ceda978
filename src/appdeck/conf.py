"""Driver settings and config persistence for appdeck.

Config is stored at ~/.config/appdeck/config.json (XDG-compliant).
Only driver settings live here; app definitions are never persisted.

Usage:
    from appdeck.conf import settings

    settings.deck_type          # "Stream Deck MK.2"
    settings.poll_interval      # reconnect/liveness interval in seconds
    settings.jpeg_quality       # 1-100
    settings.backend            # "auto", "hidapi" or "pyusb"
    settings.brightness         # 0-100, applied on open by the CLI
    settings.profile_overrides  # dict merged into the deck profile

    # Low-level config access
    from appdeck.conf import load_config, save_config
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict

log = logging.getLogger(__name__)

# =========================================================================
# Config file location (XDG-compliant)
# =========================================================================

_XDG_CONFIG = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
CONFIG_DIR = os.path.join(_XDG_CONFIG, 'appdeck')
CONFIG_PATH = os.path.join(CONFIG_DIR, 'config.json')

DEFAULTS: Dict[str, Any] = {
    'deck_type': "Stream Deck MK.2",
    'poll_interval': 1.0,
    'jpeg_quality': 100,
    'backend': "auto",
    'brightness': 100,
    'profile_overrides': {},
}


# =========================================================================
# Low-level config persistence
# =========================================================================

def load_config() -> dict:
    """Load user config from disk. Returns empty dict on missing/corrupt file."""
    try:
        with open(CONFIG_PATH, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (json.JSONDecodeError, OSError) as e:
        log.warning("Ignoring unreadable config %s: %s", CONFIG_PATH, e)
        return {}
    return data if isinstance(data, dict) else {}


def save_config(config: dict):
    """Save user config to disk."""
    os.makedirs(CONFIG_DIR, exist_ok=True)
    with open(CONFIG_PATH, 'w') as f:
        json.dump(config, f, indent=2)


def save_setting(key: str, value: Any):
    """Persist a single top-level setting."""
    config = load_config()
    config[key] = value
    save_config(config)


# =========================================================================
# Settings singleton
# =========================================================================

class Settings:
    """Application-wide settings.

    Values come from the config file layered over ``DEFAULTS``.  Setters
    validate and persist.
    """

    def __init__(self) -> None:
        self.reload()

    def reload(self) -> None:
        merged = dict(DEFAULTS)
        merged.update(load_config())
        self._values = merged

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    @property
    def deck_type(self) -> str:
        return self._values['deck_type']

    @property
    def poll_interval(self) -> float:
        return float(self._values['poll_interval'])

    @property
    def jpeg_quality(self) -> int:
        return int(self._values['jpeg_quality'])

    @property
    def backend(self) -> str:
        return self._values['backend']

    @property
    def brightness(self) -> int:
        return int(self._values['brightness'])

    @property
    def profile_overrides(self) -> Dict[str, Any]:
        return dict(self._values.get('profile_overrides') or {})

    def set(self, key: str, value: Any, persist: bool = True) -> None:
        """Validate and update one setting."""
        if key not in DEFAULTS:
            raise KeyError(f"Unknown setting: {key}")
        value = self._validate(key, value)
        log.info("Settings: %s = %r", key, value)
        self._values[key] = value
        if persist:
            save_setting(key, value)

    @staticmethod
    def _validate(key: str, value: Any) -> Any:
        if key == 'deck_type':
            from .deck_info import resolve_deck_type
            return resolve_deck_type(value).value
        if key == 'poll_interval':
            value = float(value)
            if value <= 0:
                raise ValueError("poll_interval must be positive")
            return value
        if key == 'jpeg_quality':
            value = int(value)
            if not 1 <= value <= 100:
                raise ValueError("jpeg_quality must be 1-100")
            return value
        if key == 'backend':
            from .device_hid import BACKENDS
            if value not in BACKENDS:
                raise ValueError(f"backend must be one of {', '.join(BACKENDS)}")
            return value
        if key == 'brightness':
            return max(0, min(100, int(value)))
        if key == 'profile_overrides':
            if isinstance(value, str):
                value = json.loads(value)
            if not isinstance(value, dict):
                raise ValueError("profile_overrides must be a JSON object")
            return value
        return value


# Module-level singleton, import and use directly
settings = Settings()
