"""Custom exceptions for keybridge.

Every error the hotkey subsystem reports derives from :class:`KeybridgeError`
so the host application can catch the whole family in one place.
"""


class KeybridgeError(Exception):
    """Base exception for all keybridge errors."""
    pass


class ConfigurationError(KeybridgeError):
    """Raised when configuration loading or saving fails."""
    pass


# Hotkey Exceptions
class HotkeyError(KeybridgeError):
    """Base exception for hotkey-related errors."""
    pass


class InvalidHotkeyError(HotkeyError):
    """Raised when a hotkey string is empty or malformed."""
    pass


class HotkeyAlreadyRegisteredError(HotkeyError):
    """Raised when a hotkey is registered twice on a listening provider."""
    pass


class ProviderAlreadyStartedError(HotkeyError):
    """Raised when start() is called on a provider that is already listening."""
    pass


class ProviderStartError(HotkeyError):
    """Raised when a keyboard provider cannot reach or bind its backend."""
    pass


class PortalProtocolError(ProviderStartError):
    """Raised when the GlobalShortcuts portal exchange fails."""
    pass


# Capture Exceptions
class CaptureError(HotkeyError):
    """Base exception for one-shot hotkey capture."""
    pass


class CaptureTimeoutError(CaptureError):
    """Raised when no key combination was pressed before the timeout."""
    pass


class CaptureCancelledError(CaptureError):
    """Raised when the user pressed a bare Escape to cancel a capture."""
    pass


class CaptureUnsupportedError(CaptureError):
    """Raised by providers that cannot read raw key presses."""
    pass


class NoKeyboardDevicesError(ProviderStartError, CaptureError):
    """Raised when no readable keyboard device exists under /dev/input."""
    pass
