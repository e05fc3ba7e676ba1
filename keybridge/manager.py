"""Hotkey manager — owns the active provider and wires hotkeys to the app.

The manager selects a provider for the current runtime, registers the
start/stop recording hotkey and any named actions on it, and starts it.
If the provider fails to start, the other real provider is tried unless
the desktop is GNOME/KDE outside an AppImage: there a portal failure is a
permissions problem for the user to fix, and silently switching to raw
device access would need privileges they may not expect to grant.
"""

import functools
import logging
import threading
from typing import Callable, Mapping, Optional

from keybridge.environment import RuntimeKind, describe, detect_runtime, is_gnome_or_kde
from keybridge.evdev_provider import EvdevKeyboardProvider
from keybridge.exceptions import (
    CaptureUnsupportedError,
    HotkeyError,
    ProviderAlreadyStartedError,
    ProviderStartError,
)
from keybridge.null_provider import NullKeyboardProvider
from keybridge.portal import PortalKeyboardProvider
from keybridge.provider import KeyboardProvider
from keybridge.selector import (
    FALLBACK_PROVIDER,
    PROVIDER_DBUS,
    PROVIDER_EVDEV,
    select_provider,
)

log = logging.getLogger(__name__)

HotkeyAction = Callable[[], None]

DEFAULT_PROVIDERS = {
    PROVIDER_DBUS: PortalKeyboardProvider,
    PROVIDER_EVDEV: EvdevKeyboardProvider,
}


class HotkeyManager:
    """Global hotkeys for the application, independent of the backend in use.

    *config* is any object exposing ``get_start_recording_hotkey()``,
    ``get_provider()`` and ``get_action_hotkey(name)``, such as
    :class:`keybridge.config.HotkeyConfig`.

    Example:
        >>> manager = HotkeyManager(HotkeyConfig.load())
        >>> manager.register_callbacks(recorder.start, recorder.stop)
        >>> manager.register_hotkey_action("show_config", window.show)
        >>> manager.start()
        >>> # ... application runs ...
        >>> manager.stop()
    """

    def __init__(self, config,
                 environ: Optional[Mapping[str, str]] = None,
                 provider_factories: Optional[Mapping[str, Callable[[], KeyboardProvider]]] = None,
                 null_factory: Callable[[], KeyboardProvider] = NullKeyboardProvider):
        self._config = config
        self._environ = environ
        self._runtime = detect_runtime(environ)
        self._factories = dict(provider_factories or DEFAULT_PROVIDERS)
        self._null_factory = null_factory

        self._lock = threading.RLock()
        # Separate lock for the recording toggle so a hotkey callback never
        # waits on start/stop/reload and may itself call back into us.
        self._recording_lock = threading.RLock()
        self._listening = False
        self._recording = False
        self._on_start: Optional[HotkeyAction] = None
        self._on_stop: Optional[HotkeyAction] = None
        self._actions: dict[str, HotkeyAction] = {}

        log.info("Hotkey environment: %s", describe(environ))
        self._provider = self._select_provider()

    # ── properties ──

    @property
    def provider(self) -> KeyboardProvider:
        return self._provider

    @property
    def runtime(self) -> RuntimeKind:
        return self._runtime

    @property
    def is_listening(self) -> bool:
        return self._listening

    # ── registration ──

    def register_callbacks(self, on_start: HotkeyAction, on_stop: HotkeyAction) -> None:
        """Set the callbacks fired by the start/stop recording hotkey."""
        with self._recording_lock:
            self._on_start = on_start
            self._on_stop = on_stop

    def register_hotkey_action(self, name: str, callback: HotkeyAction) -> None:
        """Bind *callback* to the hotkey configured for action *name*.

        Actions without a configured hotkey are skipped when the manager
        starts.  Takes effect on the next start() or reload_config().
        """
        with self._lock:
            self._actions[name] = callback

    def unregister_hotkey_action(self, name: str) -> None:
        """Forget action *name* and drop its hotkey from the provider."""
        with self._lock:
            if self._actions.pop(name, None) is None:
                return
            hotkey = self._config.get_action_hotkey(name)
            if hotkey and hotkey not in self._wanted_hotkeys():
                self._provider.unregister_hotkey(hotkey)

    def registered_hotkeys(self) -> list[str]:
        """Return every configured hotkey the manager will register."""
        with self._lock:
            return list(self._wanted_hotkeys())

    # ── lifecycle ──

    def start(self) -> None:
        """Register every hotkey on the provider and start listening.

        Raises:
            ProviderAlreadyStartedError: If the manager is already listening.
            ProviderStartError: If neither the provider nor the fallback
                could be started.
        """
        with self._lock:
            if self._listening:
                raise ProviderAlreadyStartedError("hotkey manager is already running")

            log.info("Starting hotkey manager (%s provider)...", self._provider.name)
            log.info("- Start/Stop recording: %s", self._config.get_start_recording_hotkey())

            self._register_all_hotkeys_on(self._provider)
            try:
                self._provider.start()
            except ProviderStartError as e:
                self._start_fallback(e)
            self._listening = True

    def stop(self) -> None:
        """Stop listening.  Safe to call any number of times."""
        with self._lock:
            if not self._listening:
                return
            self._provider.stop()
            self._listening = False
            log.info("Hotkey manager stopped")

    def reload_config(self, config) -> None:
        """Apply a new configuration without restarting the process.

        Stops the current provider, selects a provider again (the override
        may have changed), and, if the manager was listening, registers
        the new hotkeys and starts again.
        """
        with self._lock:
            was_listening = self._listening
            log.info("Reloading hotkey configuration")
            self.stop()
            self._config = config
            self._provider = self._select_provider()
            if was_listening:
                self.start()

    # ── recording state ──

    def is_recording(self) -> bool:
        return self._recording

    def reset_recording_state(self) -> None:
        """Forget about an in-progress recording (e.g. after an app error)."""
        with self._recording_lock:
            self._recording = False

    def simulate_hotkey_press(self, name: str) -> None:
        """Fire the handler for *name* as if its hotkey had been pressed.

        *name* is ``start_recording``, ``stop_recording`` or a registered
        action name.
        """
        if name == "start_recording":
            with self._recording_lock:
                if not self._recording and self._on_start is not None:
                    self._on_start()
                    self._recording = True
            return
        if name == "stop_recording":
            with self._recording_lock:
                if self._on_stop is not None:
                    self._on_stop()
                    self._recording = False
            return

        with self._lock:
            action = self._actions.get(name)
        if action is None:
            raise HotkeyError(f"unknown hotkey: {name}")
        action()

    # ── capture ──

    def capture_once(self, timeout: float) -> str:
        """Wait up to *timeout* seconds for the user to press a combination.

        Uses the active provider when it can read raw keys, otherwise a
        temporary evdev provider.
        """
        provider = self._provider
        if provider.supports_capture_once():
            return provider.capture_once(timeout)

        factory = self._capture_factory()
        if factory is None:
            raise CaptureUnsupportedError(
                f"hotkey capture is not available with the {provider.name} provider"
            )
        log.info("%s provider cannot capture keys, using a temporary evdev provider",
                 provider.name)
        return factory().capture_once(timeout)

    def supports_capture_once(self) -> bool:
        if self._provider.supports_capture_once():
            return True
        factory = self._capture_factory()
        return factory is not None and factory().is_supported()

    # ── internals ──

    def _capture_factory(self) -> Optional[Callable[[], KeyboardProvider]]:
        if self._runtime is RuntimeKind.FLATPAK:
            return None
        return self._factories.get(PROVIDER_EVDEV)

    def _select_provider(self) -> KeyboardProvider:
        return select_provider(
            self._config.get_provider(), self._runtime, self._factories, self._null_factory,
        )

    def _wanted_hotkeys(self) -> dict[str, HotkeyAction]:
        """Map every hotkey the current config and actions need to its handler."""
        wanted: dict[str, HotkeyAction] = {}
        start_hotkey = self._config.get_start_recording_hotkey()
        if start_hotkey:
            wanted[start_hotkey] = self._toggle_recording

        for name, action in self._actions.items():
            hotkey = self._config.get_action_hotkey(name)
            if not hotkey:
                log.debug("No hotkey configured for action %s, skipping", name)
                continue
            if hotkey == start_hotkey:
                log.warning("Hotkey %s for action %s clashes with start/stop recording, skipping",
                            hotkey, name)
                continue
            wanted[hotkey] = functools.partial(self._run_action, name, action)
        return wanted

    def _register_all_hotkeys_on(self, provider: KeyboardProvider) -> None:
        if not self._config.get_start_recording_hotkey():
            log.warning("No start/stop recording hotkey configured")

        wanted = self._wanted_hotkeys()
        # Drop hotkeys left over from unregistered actions or an older config.
        for hotkey in provider.registered_hotkeys():
            if hotkey not in wanted:
                provider.unregister_hotkey(hotkey)
        for hotkey, handler in wanted.items():
            provider.register_hotkey(hotkey, handler)

    def _toggle_recording(self) -> None:
        with self._recording_lock:
            if not self._recording and self._on_start is not None:
                log.info("Start recording hotkey detected")
                self._on_start()
                self._recording = True
            elif self._recording and self._on_stop is not None:
                log.info("Stop recording hotkey detected")
                self._on_stop()
                self._recording = False

    @staticmethod
    def _run_action(name: str, action: HotkeyAction) -> None:
        log.info("Action hotkey detected: %s", name)
        action()

    def _start_fallback(self, error: ProviderStartError) -> None:
        log.warning("Primary keyboard provider failed to start: %s", error)

        if self._runtime is RuntimeKind.FLATPAK:
            log.info("Flatpak sandbox - no raw device fallback; check portal permissions")
            raise ProviderStartError(f"failed to start keyboard provider: {error}") from error

        is_appimage = self._runtime is RuntimeKind.APPIMAGE
        if is_gnome_or_kde(self._environ) and not is_appimage:
            log.info("Skipping fallback on GNOME/KDE; please check portal permissions")
            raise ProviderStartError(f"failed to start keyboard provider: {error}") from error
        if is_appimage:
            log.info("AppImage detected - allowing provider fallback for better hotkey compatibility")

        fallback_name = FALLBACK_PROVIDER.get(self._provider.name)
        factory = self._factories.get(fallback_name) if fallback_name else None
        if factory is None:
            raise ProviderStartError(f"failed to start keyboard provider: {error}") from error

        fallback = factory()
        if not fallback.is_supported():
            log.info("Fallback %s keyboard provider not available", fallback_name)
            raise ProviderStartError(f"failed to start keyboard provider: {error}") from error

        log.info("Falling back to %s keyboard provider", fallback_name)
        self._register_all_hotkeys_on(fallback)
        try:
            fallback.start()
        except ProviderStartError as e:
            # Keep the primary so the next start() tries it again.
            raise ProviderStartError(f"failed to start fallback keyboard provider: {e}") from e
        self._provider = fallback
        log.info("Fallback keyboard provider started successfully")
