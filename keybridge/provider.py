"""Keyboard event provider contract.

A provider turns some source of key events (the desktop portal, raw input
devices, or nothing at all) into hotkey callbacks.  The hotkey manager only
ever talks to this interface.
"""

import abc
import logging
import threading
from typing import Callable, Optional

from keybridge.exceptions import (
    CaptureUnsupportedError,
    HotkeyAlreadyRegisteredError,
)

log = logging.getLogger(__name__)

HotkeyCallback = Callable[[], None]


class KeyboardProvider(abc.ABC):
    """Base class for every hotkey backend.

    Owns the registration table and the lock guarding it.  Subclasses add
    their own state under the same lock.

    Registration contract: while the provider is stopped, registering a
    hotkey that already exists replaces its callback.  While it is
    listening, a duplicate raises :class:`HotkeyAlreadyRegisteredError`.
    """

    #: Short identifier used for config overrides and logs.
    name = "base"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: dict[str, HotkeyCallback] = {}
        self._listening = False

    @property
    def is_listening(self) -> bool:
        return self._listening

    # ── contract ──

    @abc.abstractmethod
    def is_supported(self) -> bool:
        """Cheap probe: can this backend work on the current system?"""

    @abc.abstractmethod
    def start(self) -> None:
        """Begin listening.  Raises ProviderAlreadyStartedError or ProviderStartError."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop listening.  Idempotent and bounded in time."""

    def register_hotkey(self, hotkey: str, callback: HotkeyCallback) -> None:
        """Bind *callback* to *hotkey*.  May be called before start()."""
        with self._lock:
            if self._listening and hotkey in self._callbacks:
                raise HotkeyAlreadyRegisteredError(f"hotkey {hotkey} already registered")
            self._callbacks[hotkey] = callback
        log.debug("%s: registered hotkey %s", self.name, hotkey)

    def unregister_hotkey(self, hotkey: str) -> None:
        """Drop *hotkey*.  Unknown hotkeys are ignored."""
        with self._lock:
            removed = self._callbacks.pop(hotkey, None)
        if removed is not None:
            log.debug("%s: unregistered hotkey %s", self.name, hotkey)

    def registered_hotkeys(self) -> list[str]:
        with self._lock:
            return list(self._callbacks)

    def capture_once(self, timeout: float) -> str:
        """Wait up to *timeout* seconds for one key combination."""
        raise CaptureUnsupportedError(f"capture is not supported by the {self.name} provider")

    def supports_capture_once(self) -> bool:
        return False

    # ── helpers for subclasses ──

    def _snapshot_callbacks(self) -> dict[str, HotkeyCallback]:
        with self._lock:
            return dict(self._callbacks)

    def _lookup_callback(self, hotkey: str) -> Optional[HotkeyCallback]:
        with self._lock:
            return self._callbacks.get(hotkey)

    def _dispatch(self, hotkey: str, callback: HotkeyCallback) -> None:
        """Run *callback* on its own thread so a slow handler cannot stall events."""
        threading.Thread(
            target=self._invoke,
            args=(hotkey, callback),
            daemon=True,
            name=f"keybridge-{self.name}-callback",
        ).start()

    def _invoke(self, hotkey: str, callback: HotkeyCallback) -> None:
        try:
            callback()
        except Exception:
            log.exception("Hotkey callback for %s failed", hotkey)

    def __repr__(self) -> str:
        state = "listening" if self._listening else "stopped"
        return f"<{type(self).__name__} {state} hotkeys={len(self._callbacks)}>"
