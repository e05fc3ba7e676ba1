"""Do-nothing provider used when no real hotkey backend is available.

Registration always succeeds and start() never fails, so the rest of the
application keeps working; the callbacks simply never fire.  Starting it
logs what the user can do to get real hotkeys.
"""

import logging

from keybridge.exceptions import ProviderAlreadyStartedError
from keybridge.provider import HotkeyCallback, KeyboardProvider

log = logging.getLogger(__name__)

_REMEDIATION = (
    "To enable hotkeys, try one of these solutions:",
    "",
    "Modern desktops (GNOME/KDE):",
    "   - Ensure a D-Bus session bus is running (dbus-daemon --session)",
    "   - Check that xdg-desktop-portal provides org.freedesktop.portal.GlobalShortcuts",
    "",
    "Other desktops (XFCE/i3/sway):",
    "   - Add your user to the 'input' group: sudo usermod -aG input $USER",
    "   - Then log out and back in",
    "",
    "Alternatives:",
    "   - Bind a desktop shortcut or sxhkd/xbindkeys rule to the keybridge command",
)


class NullKeyboardProvider(KeyboardProvider):
    """Always-supported provider whose hotkeys never fire."""

    name = "null"

    def is_supported(self) -> bool:
        return True

    def start(self) -> None:
        with self._lock:
            if self._listening:
                raise ProviderAlreadyStartedError("null keyboard provider already started")
            self._listening = True
        log.warning("Using null keyboard provider. Hotkeys will not be functional.")
        for line in _REMEDIATION:
            log.info(line)

    def stop(self) -> None:
        with self._lock:
            self._listening = False

    def register_hotkey(self, hotkey: str, callback: HotkeyCallback) -> None:
        with self._lock:
            self._callbacks[hotkey] = callback
        log.info("Registered hotkey: %s (inactive with the null provider)", hotkey)
