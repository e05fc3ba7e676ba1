"""Runtime and desktop detection.

Everything here reads the process environment only, so results can be
computed for an arbitrary mapping in tests.
"""

import enum
import logging
import os
from typing import Mapping, Optional

log = logging.getLogger(__name__)


class RuntimeKind(enum.Enum):
    """How the application was packaged and launched."""
    SYSTEM = "system"
    APPIMAGE = "appimage"
    FLATPAK = "flatpak"


def _env(environ: Optional[Mapping[str, str]]) -> Mapping[str, str]:
    return os.environ if environ is None else environ


def detect_runtime(environ: Optional[Mapping[str, str]] = None) -> RuntimeKind:
    """Classify the runtime as plain system, AppImage or Flatpak.

    Flatpak wins when both markers are present: inside the sandbox raw
    input devices are unreachable no matter how the payload was built.
    """
    env = _env(environ)
    if env.get("FLATPAK_ID"):
        return RuntimeKind.FLATPAK
    if env.get("APPIMAGE") or env.get("APPDIR"):
        return RuntimeKind.APPIMAGE
    return RuntimeKind.SYSTEM


def detect_desktop(environ: Optional[Mapping[str, str]] = None) -> str:
    """Return the desktop name (``XDG_CURRENT_DESKTOP``), or ``"Unknown"``."""
    env = _env(environ)
    return env.get("XDG_CURRENT_DESKTOP") or env.get("DESKTOP_SESSION") or "Unknown"


def is_gnome_or_kde(environ: Optional[Mapping[str, str]] = None) -> bool:
    # XDG_CURRENT_DESKTOP may be a colon list such as "ubuntu:GNOME".
    desktop = detect_desktop(environ).lower()
    return "gnome" in desktop or "kde" in desktop


def detect_display_server(environ: Optional[Mapping[str, str]] = None) -> str:
    """Return ``'wayland'``, ``'x11'`` or ``'unknown'``."""
    env = _env(environ)
    session_type = env.get("XDG_SESSION_TYPE", "").lower()
    if session_type == "wayland" or env.get("WAYLAND_DISPLAY"):
        return "wayland"
    if session_type == "x11" or env.get("DISPLAY"):
        return "x11"
    return "unknown"


def describe(environ: Optional[Mapping[str, str]] = None) -> str:
    """One-line summary used in startup logs."""
    return "runtime=%s desktop=%s display=%s" % (
        detect_runtime(environ).value,
        detect_desktop(environ),
        detect_display_server(environ),
    )
