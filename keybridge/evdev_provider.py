"""Raw input device hotkey provider (Linux evdev).

Reads ``/dev/input/event*`` directly, so it works on X11 and Wayland alike
but needs read access to the devices (usually membership in the ``input``
group).  Unavailable inside Flatpak.

Each keyboard gets its own listener thread blocked in ``select()`` on the
device fd and the read end of a stop pipe.  Stopping closes the devices,
writes one byte to the pipe (waking every listener at once), then waits a
bounded time for the threads to exit.
"""

import logging
import os
import queue
import select
import threading
import time
from typing import Iterator, Optional

from keybridge.exceptions import (
    CaptureCancelledError,
    CaptureError,
    CaptureTimeoutError,
    InvalidHotkeyError,
    NoKeyboardDevicesError,
    ProviderAlreadyStartedError,
    ProviderStartError,
)
from keybridge.keys import (
    build_hotkey_string,
    build_modifier_list,
    canonical_key,
    is_cancel_gesture,
    is_modifier_key,
    is_modifier_pressed,
    is_virtual_modifier,
    key_name,
    parse_hotkey,
    validate_captured_hotkey,
)
from keybridge.provider import KeyboardProvider

log = logging.getLogger(__name__)

# How long stop() waits for listener threads before leaving them to a
# background reaper.  A read can stay blocked well past close().
STOP_TIMEOUT = 0.5

# ── Device discovery ───────────────────────────────────────────

def is_keyboard_device(dev) -> bool:
    """Return True if *dev* looks like a keyboard rather than a mouse or pad."""
    from evdev import ecodes

    if "keyboard" in (dev.name or "").lower():
        return True
    caps = dev.capabilities()
    key_caps = caps.get(ecodes.EV_KEY)
    if not key_caps:
        return False
    probe_codes = (ecodes.KEY_Q, ecodes.KEY_A, ecodes.KEY_Z, ecodes.KEY_SPACE)
    return any(code in key_caps for code in probe_codes)


def find_keyboard_devices() -> list:
    """Open every input device and keep the ones that look like keyboards."""
    try:
        import evdev
    except ImportError:
        log.warning("python-evdev not installed — raw device hotkeys unavailable")
        return []

    devices = []
    for path in evdev.list_devices():
        try:
            dev = evdev.InputDevice(path)
        except OSError as e:
            log.warning("Could not open input device %s: %s", path, e)
            continue
        try:
            keep = is_keyboard_device(dev)
        except OSError as e:
            log.debug("Could not query capabilities of %s: %s", path, e)
            keep = False
        if keep:
            log.debug("Found keyboard device: %s (%s)", dev.name, dev.path)
            devices.append(dev)
        else:
            _close_quietly(dev)
    return devices


def _close_quietly(dev) -> None:
    try:
        dev.close()
    except OSError as e:
        log.debug("Evdev device close (ignored): %s", e)


def _close_pipe(pipe: tuple[int, int]) -> None:
    for fd in pipe:
        try:
            os.close(fd)
        except OSError:
            log.debug("Stop pipe fd %d already closed", fd)


# ── Event reading ──────────────────────────────────────────────

def _iter_key_events(dev, stop_fd: int, stopping: threading.Event) -> Iterator:
    """Yield EV_KEY events from *dev* until *stop_fd* becomes readable.

    Read errors end the iteration.  They are expected once the device has
    been closed for a stop or reload, so they are only logged at debug
    level while *stopping* is set.
    """
    from evdev import ecodes

    while True:
        try:
            readable, _, _ = select.select([dev.fd, stop_fd], [], [])
        except (OSError, ValueError) as e:
            # ValueError: the device was closed and its fd reset to -1.
            _log_read_end(dev, e, stopping)
            return
        if stop_fd in readable:
            return
        try:
            events = list(dev.read())
        except BlockingIOError:
            continue
        except OSError as e:
            _log_read_end(dev, e, stopping)
            return
        for event in events:
            if event.type == ecodes.EV_KEY:
                yield event


def _log_read_end(dev, error: Exception, stopping: threading.Event) -> None:
    path = getattr(dev, "path", "?")
    if stopping.is_set():
        log.debug("Device read ended on %s: %s", path, error)
    else:
        log.error("Device read error on %s: %s", path, error)


def hotkey_matches(hotkey: str, pressed_key: str, modifier_state: dict) -> bool:
    """Return True if pressing *pressed_key* with *modifier_state* fires *hotkey*."""
    combo = parse_hotkey(hotkey)
    if not combo.key or canonical_key(combo.key) != pressed_key:
        return False
    return all(is_modifier_pressed(mod, modifier_state) for mod in combo.modifiers)


def _event_key_name(code: int) -> str:
    return key_name(code) or f"key_{code}"


# ── Provider ───────────────────────────────────────────────────

class EvdevKeyboardProvider(KeyboardProvider):
    """Listen for global hotkeys on raw keyboard devices."""

    name = "evdev"

    def __init__(self, stop_timeout: float = STOP_TIMEOUT):
        super().__init__()
        self._stop_timeout = stop_timeout
        self._devices: list = []
        self._threads: list[threading.Thread] = []
        self._modifier_state: dict[str, bool] = {}
        self._stop_pipe: Optional[tuple[int, int]] = None
        self._stopping = threading.Event()

    def _find_keyboard_devices(self) -> list:
        return find_keyboard_devices()

    def register_hotkey(self, hotkey: str, callback) -> None:
        super().register_hotkey(hotkey, callback)
        virtual = [m for m in parse_hotkey(hotkey).modifiers if is_virtual_modifier(m)]
        if virtual:
            log.warning("Hotkey %s uses %s, which raw keyboard devices never report; "
                        "it will not fire with the evdev provider", hotkey, "+".join(virtual))

    def is_supported(self) -> bool:
        devices = self._find_keyboard_devices()
        for dev in devices:
            _close_quietly(dev)
        return bool(devices)

    def start(self) -> None:
        with self._lock:
            if self._listening:
                raise ProviderAlreadyStartedError("evdev keyboard provider already started")

            devices = self._find_keyboard_devices()
            if not devices:
                raise NoKeyboardDevicesError(
                    "No keyboard devices found. Make sure the user is in the "
                    "'input' group: sudo usermod -aG input $USER (then re-login)"
                )

            # Fresh stop signal per start; a previous one may still be held
            # by listeners that are being reaped in the background.
            try:
                stop_pipe = os.pipe()
            except OSError as e:
                for dev in devices:
                    _close_quietly(dev)
                raise ProviderStartError(f"cannot create evdev stop pipe: {e}") from e
            self._stopping = threading.Event()
            self._stop_pipe = stop_pipe
            self._devices = devices
            self._modifier_state = {}
            self._listening = True

            self._threads = []
            for dev in devices:
                thread = threading.Thread(
                    target=self._listen_device,
                    args=(dev, self._stop_pipe[0], self._stopping),
                    daemon=True,
                    name=f"keybridge-evdev-{getattr(dev, 'path', '?')}",
                )
                self._threads.append(thread)
                thread.start()

        log.info("Evdev hotkey provider listening on %d device(s)", len(devices))

    def stop(self) -> None:
        with self._lock:
            if not self._listening:
                return
            self._listening = False
            self._stopping.set()
            devices, self._devices = self._devices, []
            threads, self._threads = self._threads, []
            stop_pipe, self._stop_pipe = self._stop_pipe, None
            self._modifier_state = {}

        # Close first: closing is what interrupts a read blocked in the kernel.
        for dev in devices:
            _close_quietly(dev)
        os.write(stop_pipe[1], b"\x00")

        deadline = time.monotonic() + self._stop_timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        blocked = [t for t in threads if t.is_alive()]
        if not blocked:
            _close_pipe(stop_pipe)
            log.info("Evdev listeners stopped cleanly")
            return

        log.warning(
            "Evdev stop timeout (%dms) - %d listener(s) still blocked, "
            "cleaning up in background",
            int(self._stop_timeout * 1000), len(blocked),
        )
        threading.Thread(
            target=_reap_listeners,
            args=(blocked, devices, stop_pipe),
            daemon=True,
            name="keybridge-evdev-reaper",
        ).start()

    def _listen_device(self, dev, stop_fd: int, stopping: threading.Event) -> None:
        log.debug("Monitoring keyboard: %s", getattr(dev, "name", dev))
        for event in _iter_key_events(dev, stop_fd, stopping):
            self._handle_key_event(event.code, event.value)

    def _handle_key_event(self, code: int, value: int) -> None:
        from evdev import KeyEvent

        name = _event_key_name(code)

        if is_modifier_key(name):
            with self._lock:
                # Auto-repeat (key_hold) keeps the modifier held.
                self._modifier_state[name] = value != KeyEvent.key_up
            return

        if value != KeyEvent.key_down:
            return

        # Match against copies so user callbacks never run under the lock.
        with self._lock:
            callbacks = dict(self._callbacks)
            modifier_state = dict(self._modifier_state)

        for hotkey, callback in callbacks.items():
            if hotkey_matches(hotkey, name, modifier_state):
                log.debug("Hotkey activated: %s", hotkey)
                self._dispatch(hotkey, callback)

    # ── one-shot capture ──

    def supports_capture_once(self) -> bool:
        return True

    def capture_once(self, timeout: float) -> str:
        """Return the next key combination pressed on any keyboard.

        Runs on its own devices and modifier state, independent of start()
        and stop().  Raises NoKeyboardDevicesError immediately when nothing
        can be opened, CaptureCancelledError on a bare Escape, and
        CaptureTimeoutError when *timeout* seconds pass without a valid
        combination.
        """
        devices = self._find_keyboard_devices()
        if not devices:
            log.error("Capture: no keyboard devices found")
            raise NoKeyboardDevicesError("no keyboard devices found")
        try:
            session = _CaptureSession(devices, self._stop_timeout)
        except OSError as e:
            for dev in devices:
                _close_quietly(dev)
            raise CaptureError(f"cannot start capture: {e}") from e
        return session.run(timeout)


def _reap_listeners(threads: list, devices: list, stop_pipe: tuple[int, int]) -> None:
    """Wait out listeners that outlived stop(), then release their resources."""
    for thread in threads:
        thread.join()
    for dev in devices:
        _close_quietly(dev)
    _close_pipe(stop_pipe)
    log.debug("Background evdev cleanup finished")


class _CaptureSession:
    """State for a single capture_once() call.

    Owns its devices, its modifier map and a one-slot result queue, so a
    capture can run while the provider is listening without disturbing
    the provider's modifier tracking.
    """

    def __init__(self, devices: list, stop_timeout: float):
        self.devices = devices
        self.modifier_state: dict[str, bool] = {}
        self.lock = threading.Lock()
        self.results: queue.Queue = queue.Queue(maxsize=1)
        self.stopping = threading.Event()
        self.stop_pipe = os.pipe()
        self.stop_timeout = stop_timeout
        self.threads: list[threading.Thread] = []

    def run(self, timeout: float) -> str:
        for dev in self.devices:
            thread = threading.Thread(
                target=self._listen, args=(dev,), daemon=True,
                name="keybridge-evdev-capture",
            )
            self.threads.append(thread)
            thread.start()

        try:
            result = self.results.get(timeout=timeout)
        except queue.Empty:
            result = None
        finally:
            self._cleanup()

        if result is None:
            raise CaptureTimeoutError(f"no hotkey pressed within {timeout:.1f}s")
        if not result:
            raise CaptureCancelledError("capture cancelled")
        log.info("Captured hotkey: %s", result)
        return result

    def _listen(self, dev) -> None:
        for event in _iter_key_events(dev, self.stop_pipe[0], self.stopping):
            result = self.process_key_event(event.code, event.value)
            if result is None:
                continue
            try:
                self.results.put_nowait(result)
            except queue.Full:
                pass  # another device won the race
            return

    def process_key_event(self, code: int, value: int) -> Optional[str]:
        """Return a combination, ``""`` for cancel, or None to keep waiting."""
        from evdev import KeyEvent

        name = key_name(code)
        if not name:
            return None

        if is_modifier_key(name):
            with self.lock:
                self.modifier_state[name] = value != KeyEvent.key_up
            return None

        if value != KeyEvent.key_down:
            return None

        with self.lock:
            state = dict(self.modifier_state)

        if is_cancel_gesture(name, state):
            return ""

        combo = build_hotkey_string(build_modifier_list(state), name)
        try:
            validate_captured_hotkey(combo)
        except InvalidHotkeyError as e:
            log.debug("Ignoring captured key: %s", e)
            return None
        return combo

    def _cleanup(self) -> None:
        self.stopping.set()
        for dev in self.devices:
            _close_quietly(dev)
        os.write(self.stop_pipe[1], b"\x00")

        deadline = time.monotonic() + self.stop_timeout
        for thread in self.threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        blocked = [t for t in self.threads if t.is_alive()]
        if blocked:
            threading.Thread(
                target=_reap_listeners,
                args=(blocked, self.devices, self.stop_pipe),
                daemon=True,
                name="keybridge-evdev-capture-reaper",
            ).start()
        else:
            _close_pipe(self.stop_pipe)
