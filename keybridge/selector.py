"""Hotkey provider selection.

Picks the backend for the current runtime:

  - explicit override (``dbus`` / ``evdev``) → that provider, no probing
  - Flatpak   → portal only (raw devices are sandboxed away)
  - AppImage  → evdev first, portal as fallback
  - otherwise → portal first, evdev as fallback
  - nothing supported → the null provider
"""

import logging
from typing import Callable, Mapping

from keybridge.environment import RuntimeKind
from keybridge.provider import KeyboardProvider

log = logging.getLogger(__name__)

PROVIDER_AUTO = "auto"
PROVIDER_DBUS = "dbus"
PROVIDER_EVDEV = "evdev"

OVERRIDES = (PROVIDER_DBUS, PROVIDER_EVDEV)

# Which real provider to try when the other one fails to start.
FALLBACK_PROVIDER = {
    PROVIDER_DBUS: PROVIDER_EVDEV,
    PROVIDER_EVDEV: PROVIDER_DBUS,
}


def normalize_override(override: str) -> str:
    override = (override or PROVIDER_AUTO).strip().lower()
    if override in OVERRIDES or override == PROVIDER_AUTO:
        return override
    log.warning("Unknown hotkey provider override %r, using auto", override)
    return PROVIDER_AUTO


def provider_order(override: str, runtime: RuntimeKind) -> list[str]:
    """Return provider names to try, most preferred first."""
    override = normalize_override(override)
    if override in OVERRIDES:
        return [override]
    if runtime is RuntimeKind.FLATPAK:
        return [PROVIDER_DBUS]
    if runtime is RuntimeKind.APPIMAGE:
        return [PROVIDER_EVDEV, PROVIDER_DBUS]
    return [PROVIDER_DBUS, PROVIDER_EVDEV]


def select_provider(override: str, runtime: RuntimeKind,
                    candidates: Mapping[str, Callable[[], KeyboardProvider]],
                    null_factory: Callable[[], KeyboardProvider]) -> KeyboardProvider:
    """Build and return the provider to use.

    *candidates* maps provider names to zero-argument factories.  With an
    explicit override the named provider is returned without probing it;
    otherwise each candidate's ``is_supported()`` is checked in order.
    """
    override = normalize_override(override)
    order = provider_order(override, runtime)

    if override in OVERRIDES:
        log.info("Hotkeys provider override: %s", override)
        return candidates[override]()

    if runtime is RuntimeKind.FLATPAK:
        log.info("Flatpak detected - only the desktop portal can deliver hotkeys")
    elif runtime is RuntimeKind.APPIMAGE:
        log.info("AppImage detected - checking evdev first for better compatibility")

    for name in order:
        factory = candidates.get(name)
        if factory is None:
            continue
        provider = factory()
        if provider.is_supported():
            log.info("Using %s keyboard provider (%s)", name, runtime.value)
            return provider
        log.info("%s keyboard provider not available", name)

    log.warning("No supported keyboard provider available")
    log.info("For hotkeys to work:")
    if runtime is RuntimeKind.FLATPAK:
        log.info("  - Make sure xdg-desktop-portal with GlobalShortcuts support is installed")
    else:
        log.info("  - On GNOME/KDE: ensure the D-Bus session and xdg-desktop-portal are running")
        log.info("  - On other desktops: add your user to the 'input' group and re-login")
    log.info("  - Alternative: bind a desktop shortcut or use sxhkd")
    return null_factory()
