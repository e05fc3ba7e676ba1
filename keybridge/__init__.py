"""keybridge - global hotkeys for Linux desktop applications.

Works across display servers and packaging formats by choosing between
the GlobalShortcuts desktop portal and raw evdev devices at runtime.
"""

from keybridge.config import HotkeyConfig
from keybridge.manager import HotkeyManager

__version__ = "0.1.0"

__all__ = ["HotkeyConfig", "HotkeyManager"]
