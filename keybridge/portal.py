"""Desktop portal hotkey provider (org.freedesktop.portal.GlobalShortcuts).

The compositor grabs the keys and notifies us over the session bus, so no
special permissions are needed and it works inside Flatpak.  Supported by
GNOME 48+ and KDE Plasma 6+ through xdg-desktop-portal.

Protocol, once per start():

1. ``CreateSession`` returns a request object path; the session handle
   arrives later in that request's ``Response`` signal.
2. ``BindShortcuts`` hands every registered hotkey to the portal with its
   accelerator (``<Ctrl><Shift>a``) as the preferred trigger.
3. ``Activated(session, shortcut_id, timestamp, options)`` fires whenever
   the user presses one; ``shortcut_id`` is the registered hotkey string.
"""

import ctypes
import ctypes.util
import itertools
import logging
import os
import threading
import time
from typing import Callable, Optional

from keybridge.exceptions import PortalProtocolError, ProviderAlreadyStartedError
from keybridge.keys import parse_hotkey
from keybridge.provider import KeyboardProvider

log = logging.getLogger(__name__)

PORTAL_BUS_NAME = "org.freedesktop.portal.Desktop"
PORTAL_OBJECT_PATH = "/org/freedesktop/portal/desktop"
SHORTCUTS_IFACE = "org.freedesktop.portal.GlobalShortcuts"
REQUEST_IFACE = "org.freedesktop.portal.Request"
_INTROSPECTABLE_IFACE = "org.freedesktop.DBus.Introspectable"

# Seconds to wait for the CreateSession Response signal.
RESPONSE_TIMEOUT = 5.0

_token_counter = itertools.count(1)


# ── Accelerator conversion ─────────────────────────────────────

_MODIFIER_ACCELERATORS = {
    "ctrl": "<Ctrl>",
    "leftctrl": "<Ctrl>",
    "rightctrl": "<Ctrl>",
    "alt": "<Alt>",
    "leftalt": "<Alt>",
    "altgr": "<AltGr>",
    "rightalt": "<AltGr>",
    "shift": "<Shift>",
    "leftshift": "<Shift>",
    "rightshift": "<Shift>",
    "super": "<Super>",
    "meta": "<Super>",
    "win": "<Super>",
    "leftmeta": "<Super>",
    "rightmeta": "<Super>",
    "hyper": "<Hyper>",
}

_KEY_ACCELERATORS = {
    "comma": "comma",
    "period": "period",
    "dot": "period",
    "space": "space",
    "enter": "Return",
    "return": "Return",
    "tab": "Tab",
    "escape": "Escape",
    "esc": "Escape",
    "backspace": "BackSpace",
    "delete": "Delete",
    "del": "Delete",
}


def hotkey_to_accelerator(hotkey: str) -> str:
    """Convert ``ctrl+shift+a`` style hotkeys to portal accelerator syntax.

    >>> hotkey_to_accelerator("ctrl+shift+a")
    '<Ctrl><Shift>a'
    >>> hotkey_to_accelerator("altgr+comma")
    '<AltGr>comma'
    """
    combo = parse_hotkey(hotkey)
    prefix = "".join(
        _MODIFIER_ACCELERATORS[m] for m in combo.modifiers if m in _MODIFIER_ACCELERATORS
    )
    key = _KEY_ACCELERATORS.get(combo.key.lower(), combo.key)
    return prefix + key


def request_path(unique_name: str, token: str) -> str:
    """Object path the portal will use for a request made with *token*."""
    sender = unique_name.lstrip(":").replace(".", "_")
    return f"{PORTAL_OBJECT_PATH}/request/{sender}/{token}"


# ── GLib main context pump ─────────────────────────────────────

class _GLibPump:
    """Drive the default GLib main context through ctypes.

    dbus.mainloop.glib already links against libglib-2.0, so it is always
    present; no PyGObject dependency required.
    """

    def __init__(self):
        name = ctypes.util.find_library("glib-2.0")
        self._glib = ctypes.CDLL(name) if name else None
        self._ctx = None
        if self._glib is not None:
            self._glib.g_main_context_default.restype = ctypes.c_void_p
            self._glib.g_main_context_iteration.argtypes = [ctypes.c_void_p, ctypes.c_int]
            self._glib.g_main_context_iteration.restype = ctypes.c_int
            self._glib.g_main_context_wakeup.argtypes = [ctypes.c_void_p]
            self._ctx = self._glib.g_main_context_default()

    @property
    def available(self) -> bool:
        return self._glib is not None

    def iterate(self, block: bool) -> None:
        self._glib.g_main_context_iteration(self._ctx, 1 if block else 0)

    def wakeup(self) -> None:
        if self._glib is not None:
            self._glib.g_main_context_wakeup(self._ctx)


# ── Session bus connection ─────────────────────────────────────

class PortalConnection:
    """A private session bus connection to the desktop portal.

    Wraps dbus-python so the provider only deals in plain Python values,
    and so tests can substitute an in-memory fake.  Every bus failure is
    re-raised as :class:`PortalProtocolError`.
    """

    def __init__(self):
        try:
            import dbus  # type: ignore[import-untyped]
            from dbus.mainloop.glib import DBusGMainLoop  # type: ignore[import-untyped]
        except ImportError as e:
            raise PortalProtocolError("dbus-python not installed") from e

        self._dbus = dbus
        self._pump = _GLibPump()
        self._closed = threading.Event()
        try:
            # Private connection: closing it must not tear down a bus other
            # parts of the process may share.
            self._bus = dbus.SessionBus(mainloop=DBusGMainLoop(), private=True)
            self._portal = self._bus.get_object(
                PORTAL_BUS_NAME, PORTAL_OBJECT_PATH, introspect=False,
            )
        except dbus.exceptions.DBusException as e:
            raise PortalProtocolError(str(e)) from e

    @property
    def unique_name(self) -> str:
        try:
            return str(self._bus.get_unique_name())
        except self._dbus.exceptions.DBusException as e:
            raise PortalProtocolError(f"cannot read unique bus name: {e}") from e

    def introspect(self) -> str:
        return str(self._call("Introspect", dbus_interface=_INTROSPECTABLE_IFACE))

    def create_session(self, options: dict) -> str:
        dbus = self._dbus
        handle = self._call(
            "CreateSession",
            dbus.Dictionary(
                {k: dbus.String(v) for k, v in options.items()}, signature="sv",
            ),
            dbus_interface=SHORTCUTS_IFACE,
        )
        return str(handle)

    def bind_shortcuts(self, session_handle: str, shortcuts: list) -> str:
        dbus = self._dbus
        payload = dbus.Array(
            [
                dbus.Struct(
                    (dbus.String(shortcut_id),
                     dbus.Dictionary(
                         {k: dbus.String(v) for k, v in data.items()}, signature="sv",
                     )),
                    signature="sa{sv}",
                )
                for shortcut_id, data in shortcuts
            ],
            signature="(sa{sv})",
        )
        handle = self._call(
            "BindShortcuts",
            dbus.ObjectPath(session_handle),
            payload,
            dbus.String(""),  # parent window
            dbus.Dictionary({}, signature="sv"),
            dbus_interface=SHORTCUTS_IFACE,
        )
        return str(handle)

    def subscribe_response(self, path: str, handler: Callable[[int, dict], None]) -> None:
        def _on_response(code, results):
            handler(int(code), {str(k): v for k, v in results.items()})

        self._add_receiver(_on_response, "Response", REQUEST_IFACE, path)

    def subscribe_activated(self, handler: Callable[[str, str], None]) -> None:
        def _on_activated(session_handle, shortcut_id, *_rest):
            handler(str(session_handle), str(shortcut_id))

        self._add_receiver(_on_activated, "Activated", SHORTCUTS_IFACE, PORTAL_OBJECT_PATH)

    def wait_for(self, event: threading.Event, timeout: float) -> bool:
        """Dispatch bus messages until *event* is set or *timeout* elapses."""
        deadline = time.monotonic() + timeout
        while not event.is_set() and time.monotonic() < deadline:
            if self._pump.available:
                self._pump.iterate(block=False)
            time.sleep(0.05)
        return event.is_set()

    def run_until_closed(self) -> None:
        """Block dispatching signals until close() is called."""
        if not self._pump.available:
            log.warning("libglib-2.0 not found — portal signals cannot be dispatched")
            self._closed.wait()
            return
        while not self._closed.is_set():
            self._pump.iterate(block=True)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._bus.close()
        except self._dbus.exceptions.DBusException as e:
            log.debug("Closing D-Bus connection: %s", e)
        # Wake a listener blocked in g_main_context_iteration().
        self._pump.wakeup()

    def _add_receiver(self, handler, signal_name: str, interface: str, path: str) -> None:
        try:
            self._bus.add_signal_receiver(
                handler, signal_name=signal_name, dbus_interface=interface, path=path,
            )
        except self._dbus.exceptions.DBusException as e:
            raise PortalProtocolError(f"cannot subscribe to {signal_name}: {e}") from e

    def _call(self, method: str, *args, **kwargs):
        try:
            return getattr(self._portal, method)(*args, **kwargs)
        except self._dbus.exceptions.DBusException as e:
            raise PortalProtocolError(f"{method} failed: {e}") from e


# ── Provider ───────────────────────────────────────────────────

class PortalKeyboardProvider(KeyboardProvider):
    """Global hotkeys through the GlobalShortcuts desktop portal."""

    name = "dbus"

    def __init__(self, connection_factory: Optional[Callable[[], PortalConnection]] = None,
                 response_timeout: float = RESPONSE_TIMEOUT,
                 stop_timeout: float = 1.0):
        super().__init__()
        self._connection_factory = connection_factory or PortalConnection
        self._response_timeout = response_timeout
        self._stop_timeout = stop_timeout
        self._connection = None
        self._session_handle: Optional[str] = None
        self._listener: Optional[threading.Thread] = None

    @property
    def session_handle(self) -> Optional[str]:
        return self._session_handle

    def is_supported(self) -> bool:
        try:
            conn = self._connection_factory()
        except PortalProtocolError as e:
            log.info("D-Bus session bus not available: %s", e)
            return False
        try:
            data = conn.introspect()
        except PortalProtocolError as e:
            log.info("D-Bus portal not available: %s", e)
            return False
        finally:
            conn.close()

        if "GlobalShortcuts" in data:
            log.info("D-Bus portal GlobalShortcuts detected")
            return True
        log.info("D-Bus portal GlobalShortcuts not available")
        return False

    def start(self) -> None:
        with self._lock:
            if self._listening:
                raise ProviderAlreadyStartedError("D-Bus keyboard provider already started")

            try:
                conn = self._connection_factory()
            except PortalProtocolError as e:
                raise PortalProtocolError(
                    f"failed to connect to session bus (D-Bus unavailable): {e}"
                ) from e

            try:
                session_handle = self._create_session(conn)
                self._bind_shortcuts(conn, session_handle, list(self._callbacks))
                conn.subscribe_activated(self._on_activated)
            except PortalProtocolError as e:
                conn.close()
                log.warning("D-Bus GlobalShortcuts binding failed: %s", e)
                log.info("Hint: in Flatpak/AppImage, global shortcuts may require consent or permissions.")
                log.info("If running as AppImage, consider provider override 'evdev' "
                         "and adding the user to the 'input' group.")
                raise

            self._connection = conn
            self._session_handle = session_handle
            self._listener = threading.Thread(
                target=conn.run_until_closed, daemon=True, name="keybridge-portal",
            )
            self._listening = True
            self._listener.start()

        log.info("D-Bus hotkey provider started (session %s)", session_handle)

    def stop(self) -> None:
        with self._lock:
            if not self._listening:
                return
            self._listening = False
            conn, self._connection = self._connection, None
            listener, self._listener = self._listener, None
            self._session_handle = None

        # Closing the connection is what unblocks the listener's receive.
        conn.close()
        if listener is not None and listener is not threading.current_thread():
            listener.join(self._stop_timeout)
            if listener.is_alive():
                log.warning("D-Bus listener did not exit within %.1fs", self._stop_timeout)
        log.info("D-Bus hotkey provider stopped")

    def register_hotkey(self, hotkey: str, callback) -> None:
        super().register_hotkey(hotkey, callback)
        if self._listening:
            log.warning("Hotkey %s will be bound to the portal on the next start", hotkey)

    def unregister_hotkey(self, hotkey: str) -> None:
        super().unregister_hotkey(hotkey)
        if self._listening:
            log.info("Hotkey %s stays bound in the portal session until the next start", hotkey)

    def _create_session(self, conn) -> str:
        token = f"keybridge_{os.getpid()}_{next(_token_counter)}"
        response = threading.Event()
        result: dict = {}

        def _on_response(code: int, results: dict) -> None:
            result["code"] = code
            result["results"] = results
            response.set()

        # Subscribe before the call so the Response cannot slip past us.
        expected_path = request_path(conn.unique_name, token)
        conn.subscribe_response(expected_path, _on_response)

        handle = conn.create_session({
            "handle_token": token,
            "session_handle_token": f"{token}_session",
        })
        if handle != expected_path:
            # Portals older than version 0.9 ignore handle_token.
            conn.subscribe_response(handle, _on_response)

        if not conn.wait_for(response, self._response_timeout):
            raise PortalProtocolError("timeout waiting for CreateSession response")

        code = result["code"]
        if code != 0:
            raise PortalProtocolError(f"CreateSession request failed with code {code}")
        session_handle = result["results"].get("session_handle")
        if not session_handle:
            raise PortalProtocolError("session_handle not found in Response results")
        return str(session_handle)

    def _bind_shortcuts(self, conn, session_handle: str, hotkeys: list[str]) -> None:
        shortcuts = []
        for hotkey in hotkeys:
            accel = hotkey_to_accelerator(hotkey)
            log.debug("D-Bus: converting hotkey '%s' to accelerator '%s'", hotkey, accel)
            shortcuts.append((hotkey, {
                "description": f"keybridge hotkey: {hotkey}",
                "preferred_trigger": accel,
            }))
        log.info("D-Bus: binding %d shortcut(s) to session %s", len(shortcuts), session_handle)
        conn.bind_shortcuts(session_handle, shortcuts)

    def _on_activated(self, session_handle: str, shortcut_id: str) -> None:
        if session_handle != self._session_handle:
            return
        callback = self._lookup_callback(shortcut_id)
        if callback is None:
            log.debug("D-Bus: activation for unknown shortcut %s", shortcut_id)
            return
        log.info("Hotkey activated: %s", shortcut_id)
        self._dispatch(shortcut_id, callback)
