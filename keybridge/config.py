"""Hotkey configuration for keybridge."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from keybridge.exceptions import ConfigurationError

log = logging.getLogger(__name__)


def _config_dir() -> Path:
    """Get the XDG config directory for keybridge."""
    base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return base / "keybridge"


CONFIG_FILE = _config_dir() / "config.json"


def _default_actions() -> dict:
    return {
        "show_config": "altgr+shift+c",
        "reload_config": "altgr+shift+r",
        "toggle_streaming": "altgr+shift+s",
        "switch_model": "altgr+shift+m",
    }


@dataclass
class HotkeyConfig:
    start_recording: str = "ctrl+alt+r"
    provider: str = "auto"  # auto | dbus | evdev
    actions: dict = field(default_factory=_default_actions)

    def get_start_recording_hotkey(self) -> str:
        return self.start_recording

    def get_provider(self) -> str:
        return self.provider or "auto"

    def get_action_hotkey(self, action: str) -> str:
        """Return the hotkey bound to *action*, or ``""`` when it has none."""
        return self.actions.get(action, "") or ""

    def save(self, path: Optional[Path] = None) -> None:
        """Persist config to disk."""
        path = path or CONFIG_FILE
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(asdict(self), f, indent=2)
        except OSError as e:
            raise ConfigurationError(f"cannot write {path}: {e}") from e

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "HotkeyConfig":
        """Load config from disk, or return defaults."""
        path = path or CONFIG_FILE
        if not path.exists():
            return cls()
        try:
            with open(path, "r") as f:
                data = json.load(f)
            # Filter to only known fields
            known = {f.name for f in cls.__dataclass_fields__.values()}
            filtered = {k: v for k, v in data.items() if k in known}
            if not isinstance(filtered.get("actions", {}), dict):
                raise TypeError("'actions' must be an object")
            return cls(**filtered)
        except (json.JSONDecodeError, TypeError, AttributeError) as e:
            log.warning("Ignoring malformed config %s: %s", path, e)
            return cls()
