"""
Pytest configuration and fixtures.

Provides in-memory stand-ins for the two system resources keybridge talks
to: evdev input devices (backed by real pipes so select() works) and the
desktop portal connection.
"""

import collections
import os
import threading

import pytest
from evdev import KeyEvent, ecodes

from keybridge.exceptions import PortalProtocolError, ProviderAlreadyStartedError
from keybridge.portal import request_path
from keybridge.provider import KeyboardProvider

FakeEvent = collections.namedtuple("FakeEvent", "type code value")

KEYBOARD_KEYS = (ecodes.KEY_Q, ecodes.KEY_A, ecodes.KEY_Z, ecodes.KEY_SPACE)


class FakeDevice:
    """A keyboard whose events are pushed by the test.

    ``fd`` is the read end of a pipe: every pushed event writes one byte so
    the provider's select() wakes up exactly as it would for a real device.
    """

    def __init__(self, name="Fake Keyboard", path="/dev/input/event99",
                 key_codes=KEYBOARD_KEYS):
        self.name = name
        self.path = path
        self._key_codes = list(key_codes)
        self._r, self._w = os.pipe()
        self.fd = self._r
        self._events = collections.deque()
        self._lock = threading.Lock()
        self.closed = False
        self.close_count = 0

    def capabilities(self):
        return {ecodes.EV_KEY: list(self._key_codes)} if self._key_codes else {}

    def push(self, code, value, event_type=ecodes.EV_KEY):
        with self._lock:
            self._events.append(FakeEvent(event_type, code, value))
        os.write(self._w, b"x")

    def press(self, code):
        self.push(code, KeyEvent.key_down)

    def release(self, code):
        self.push(code, KeyEvent.key_up)

    def read(self):
        if self.closed:
            raise OSError(9, "Bad file descriptor")
        os.read(self._r, 4096)
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    def close(self):
        self.close_count += 1
        if self.closed:
            return
        self.closed = True
        self.fd = -1
        os.close(self._r)
        os.close(self._w)


class BlockingDevice(FakeDevice):
    """A device whose read() hangs until the test releases it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reading = threading.Event()
        self.unblock = threading.Event()

    def read(self):
        self.reading.set()
        self.unblock.wait(5)
        return super().read()


class FakePortalConnection:
    """In-memory GlobalShortcuts portal.

    ``response`` is the (code, results) pair delivered to the CreateSession
    request when the provider waits for it; ``respond=False`` simulates a
    portal that never answers.
    """

    SESSION = "/org/freedesktop/portal/desktop/session/1_42/keybridge"

    def __init__(self, introspection="<interface name=\"org.freedesktop.portal.GlobalShortcuts\"/>",
                 response=None, respond=True, fail_create=False, fail_subscribe=False):
        self.unique_name = ":1.42"
        self.introspection = introspection
        self.response = response if response is not None else (0, {"session_handle": self.SESSION})
        self.respond = respond
        self.fail_create = fail_create
        self.fail_subscribe = fail_subscribe
        self.response_handlers = collections.defaultdict(list)
        self.activated_handlers = []
        self.create_options = None
        self.bound = None
        self.closed = threading.Event()
        self.close_count = 0

    def introspect(self):
        return self.introspection

    def subscribe_response(self, path, handler):
        self.response_handlers[path].append(handler)

    def create_session(self, options):
        if self.fail_create:
            raise PortalProtocolError("CreateSession failed: access denied")
        self.create_options = options
        return request_path(self.unique_name, options["handle_token"])

    def bind_shortcuts(self, session_handle, shortcuts):
        self.bound = (session_handle, shortcuts)
        return "/org/freedesktop/portal/desktop/request/1_42/bind"

    def subscribe_activated(self, handler):
        if self.fail_subscribe:
            raise PortalProtocolError("cannot subscribe to Activated: connection reset")
        self.activated_handlers.append(handler)

    def wait_for(self, event, timeout):
        if self.respond and self.create_options is not None:
            path = request_path(self.unique_name, self.create_options["handle_token"])
            for handler in self.response_handlers[path]:
                handler(*self.response)
        return event.is_set()

    def run_until_closed(self):
        self.closed.wait()

    def close(self):
        self.close_count += 1
        self.closed.set()

    def activate(self, session_handle, shortcut_id):
        for handler in self.activated_handlers:
            handler(session_handle, shortcut_id)


class FakeProvider(KeyboardProvider):
    """Scriptable provider for manager and selector tests."""

    def __init__(self, name="dbus", supported=True, start_error=None, capture_result=None):
        super().__init__()
        self.name = name
        self.supported = supported
        self.start_error = start_error
        self.capture_result = capture_result
        self.probe_count = 0
        self.start_count = 0
        self.stop_count = 0

    def is_supported(self):
        self.probe_count += 1
        return self.supported

    def start(self):
        if self._listening:
            raise ProviderAlreadyStartedError(f"{self.name} already started")
        self.start_count += 1
        if self.start_error is not None:
            raise self.start_error
        self._listening = True

    def stop(self):
        self.stop_count += 1
        self._listening = False

    def fire(self, hotkey):
        self._callbacks[hotkey]()

    def supports_capture_once(self):
        return self.capture_result is not None

    def capture_once(self, timeout):
        if self.capture_result is None:
            return super().capture_once(timeout)
        return self.capture_result


@pytest.fixture
def fake_device():
    dev = FakeDevice()
    yield dev
    dev.close()


@pytest.fixture
def portal_connection():
    return FakePortalConnection()
