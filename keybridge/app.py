"""Command-line application — wires config, manager and signals together."""

import argparse
import logging
import signal
import threading
from pathlib import Path

from keybridge.config import CONFIG_FILE, HotkeyConfig
from keybridge.exceptions import (
    CaptureCancelledError,
    CaptureError,
    CaptureTimeoutError,
    ProviderStartError,
)
from keybridge.manager import HotkeyManager

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keybridge",
        description="Listen for global hotkeys via the desktop portal or evdev.",
    )
    parser.add_argument("--config", type=Path, default=CONFIG_FILE,
                        help="config file (default: %(default)s)")
    parser.add_argument("--provider", choices=("auto", "dbus", "evdev"),
                        help="override the provider from the config file")
    parser.add_argument("--capture", action="store_true",
                        help="print the next key combination pressed and exit")
    parser.add_argument("--timeout", type=float, default=10.0,
                        help="capture timeout in seconds (default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


class KeybridgeApp:
    """Runs the hotkey manager until interrupted, or performs one capture."""

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.config = self._load_config()
        self.manager = HotkeyManager(self.config)
        self._stop_event = threading.Event()

    def _load_config(self) -> HotkeyConfig:
        config = HotkeyConfig.load(self.args.config)
        if self.args.provider:
            config.provider = self.args.provider
        return config

    def run(self) -> int:
        if self.args.capture:
            return self._capture()
        return self._listen()

    def _capture(self) -> int:
        if not self.manager.supports_capture_once():
            log.error("Hotkey capture is not available in this environment")
            return EXIT_ERROR
        print("Press a key combination (Esc to cancel)...", flush=True)
        try:
            hotkey = self.manager.capture_once(self.args.timeout)
        except CaptureCancelledError:
            log.info("Capture cancelled")
            return EXIT_CANCELLED
        except CaptureTimeoutError as e:
            log.error("%s", e)
            return EXIT_ERROR
        except CaptureError as e:
            log.error("Capture failed: %s", e)
            return EXIT_ERROR
        print(hotkey)
        return EXIT_OK

    def _listen(self) -> int:
        self.manager.register_callbacks(self._on_start_recording, self._on_stop_recording)
        self.manager.register_hotkey_action("show_config", self._on_show_config)
        self.manager.register_hotkey_action("reload_config", self.reload)

        signal.signal(signal.SIGINT, self._on_signal)
        signal.signal(signal.SIGTERM, self._on_signal)
        signal.signal(signal.SIGHUP, lambda *_: self.reload())

        try:
            self.manager.start()
        except ProviderStartError as e:
            log.error("Failed to register hotkeys: %s", e)
            log.info("TIP: on Wayland/Flatpak the GlobalShortcuts portal is preferred; "
                     "for evdev, add your user to the 'input' group and re-login.")
            return EXIT_ERROR

        log.info("Listening for hotkeys: %s", ", ".join(self.manager.registered_hotkeys()))
        self._stop_event.wait()
        self.manager.stop()
        return EXIT_OK

    def reload(self) -> None:
        """Re-read the config file and re-bind every hotkey."""
        log.info("Reloading %s", self.args.config)
        self.config = self._load_config()
        try:
            self.manager.reload_config(self.config)
        except ProviderStartError as e:
            log.error("Hotkeys unavailable after reload: %s", e)

    def _on_signal(self, signum, _frame) -> None:
        log.info("Received signal %d, shutting down", signum)
        self._stop_event.set()

    def _on_start_recording(self) -> None:
        log.info("Recording started")

    def _on_stop_recording(self) -> None:
        log.info("Recording stopped")

    def _on_show_config(self) -> None:
        log.info("Provider: %s (%s)", self.config.get_provider(), self.manager.provider.name)
        log.info("Start/stop recording: %s", self.config.get_start_recording_hotkey())
        for name, hotkey in sorted(self.config.actions.items()):
            log.info("%s: %s", name, hotkey or "(unbound)")
