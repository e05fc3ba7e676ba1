"""Hotkey string and key code helpers.

Hotkey format: ``<modifier>+<modifier>+<key>``, e.g. ``ctrl+shift+r`` or
``altgr+comma``.  Tokens are case-insensitive and surrounding whitespace is
ignored.  The last token is always the key; everything before it is a
modifier.

Key names are the evdev ``KEY_*`` names lower-cased without the prefix
(``KEY_LEFTCTRL`` → ``leftctrl``, ``KEY_F13`` → ``f13``).  The code/name
maps are built from ``evdev.ecodes`` on first use, so parsing and
validating hotkey strings never imports evdev.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from keybridge.exceptions import InvalidHotkeyError


@dataclass(frozen=True)
class KeyCombination:
    """A parsed hotkey: zero or more modifiers plus one main key."""
    modifiers: tuple = ()
    key: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.key


# ── Key code maps (evdev) ──────────────────────────────────────

_key_names: Optional[dict[int, str]] = None
_key_codes: Optional[dict[str, int]] = None

# Range markers that ecodes lists alongside real key names.
_NON_KEY_NAMES = frozenset({"KEY_MIN_INTERESTING", "KEY_MAX", "KEY_CNT"})


def _build_key_maps():
    global _key_names, _key_codes
    if _key_names is not None:
        return
    from evdev import ecodes

    names: dict[int, str] = {}
    codes: dict[str, int] = {}
    for code, raw in ecodes.KEY.items():
        aliases = [raw] if isinstance(raw, str) else list(raw)
        aliases = [a for a in aliases if a.startswith("KEY_") and a not in _NON_KEY_NAMES]
        if not aliases:
            continue
        for alias in aliases:
            codes.setdefault(alias[4:].lower(), code)
        names[code] = aliases[0][4:].lower()
    _key_codes = codes
    _key_names = names


# Spellings accepted in config files that differ from the evdev names.
_KEY_ALIASES = {
    "escape": "esc",
    "return": "enter",
    "period": "dot",
    "del": "delete",
    "page_up": "pageup",
    "page_down": "pagedown",
    "print_screen": "sysrq",
    "caps_lock": "capslock",
    "num_lock": "numlock",
    "scroll_lock": "scrolllock",
}

# Keys that produce a character when pressed without modifiers.
_PRINTABLE_NAMES = frozenset({
    "space", "102nd", "minus", "equal", "leftbrace", "rightbrace", "semicolon",
    "apostrophe", "grave", "backslash", "comma", "dot", "slash",
})


# ── Modifier names ─────────────────────────────────────────────

_GENERIC_MODIFIERS = frozenset({
    "ctrl", "alt", "altgr", "shift", "super", "meta", "win", "hyper",
})

# Modifiers with no physical key on a standard keyboard.  Only the
# compositor keymap can produce them, so raw device state never holds one.
_VIRTUAL_MODIFIERS = frozenset({"hyper"})

_PHYSICAL_MODIFIERS = frozenset({
    "leftctrl", "rightctrl", "leftalt", "rightalt",
    "leftshift", "rightshift", "leftmeta", "rightmeta",
})

_MODIFIER_TO_EVDEV = {
    "ctrl": "leftctrl",
    "alt": "leftalt",
    "shift": "leftshift",
    "super": "leftmeta",
    "meta": "leftmeta",
    "win": "leftmeta",
    "altgr": "rightalt",
}

_CANONICAL_MODIFIER = {
    "win": "super",
    "meta": "super",
    "leftmeta": "super",
    "rightmeta": "super",
    "rightalt": "altgr",
    "leftalt": "alt",
    "leftctrl": "ctrl",
    "rightctrl": "ctrl",
    "leftshift": "shift",
    "rightshift": "shift",
}

_MODIFIER_ORDER = ("ctrl", "shift", "alt", "altgr", "super")


# ── Parsing ────────────────────────────────────────────────────

def parse_hotkey(hotkey_str: str) -> KeyCombination:
    """Split *hotkey_str* into modifiers and the main key.

    The last ``+``-separated token is the key; every preceding token is a
    lower-cased modifier.  An empty string yields an empty key.
    """
    parts = hotkey_str.split("+")
    key = parts[-1].strip()
    modifiers = tuple(part.strip().lower() for part in parts[:-1])
    return KeyCombination(modifiers=modifiers, key=key)


def is_modifier(name: str) -> bool:
    """Return True if *name* names a modifier (generic or side-specific)."""
    name = name.lower()
    return name in _GENERIC_MODIFIERS or name in _PHYSICAL_MODIFIERS


def is_virtual_modifier(name: str) -> bool:
    """Return True for modifiers raw key events can never report (``hyper``)."""
    return name.strip().lower() in _VIRTUAL_MODIFIERS


def is_modifier_key(name: str) -> bool:
    """Return True if a key event for *name* should update modifier state."""
    return name.lower() in _PHYSICAL_MODIFIERS or is_modifier(name)


def key_name(code: int) -> str:
    """Map an evdev key code to its name, or ``""`` if unknown."""
    _build_key_maps()
    assert _key_names is not None
    return _key_names.get(code, "")


def canonical_key(name: str) -> str:
    """Fold config spellings (``escape``, ``period``) to evdev names."""
    name = name.strip().lower()
    return _KEY_ALIASES.get(name, name)


def key_code(name: str) -> Optional[int]:
    """Map a key name (or alias) back to its evdev key code."""
    _build_key_maps()
    assert _key_codes is not None
    return _key_codes.get(canonical_key(name))


def modifier_to_evdev(modifier: str) -> str:
    """Map a generic modifier to the physical key that stands in for it."""
    modifier = modifier.lower()
    return _MODIFIER_TO_EVDEV.get(modifier, modifier)


def is_printable_key(name: str) -> bool:
    name = canonical_key(name)
    return len(name) == 1 or name in _PRINTABLE_NAMES


# ── Modifier state ─────────────────────────────────────────────

def is_modifier_pressed(modifier: str, state: Mapping[str, bool]) -> bool:
    """Return True if *modifier* is held according to *state*.

    *state* maps physical names (``leftctrl``, ``rightalt`` ...) to
    pressed/released.  Generic names match either side; ``altgr`` and
    ``rightalt`` only match the right Alt key.  Virtual modifiers such as
    ``hyper`` are never pressed.
    """
    m = modifier.lower()
    if m in _VIRTUAL_MODIFIERS:
        return False
    if m == "ctrl":
        return state.get("leftctrl", False) or state.get("rightctrl", False)
    if m == "alt":
        return state.get("leftalt", False) or state.get("rightalt", False)
    if m in ("altgr", "rightalt"):
        return state.get("rightalt", False)
    if m == "shift":
        return state.get("leftshift", False) or state.get("rightshift", False)
    if m in ("super", "meta", "win"):
        return state.get("leftmeta", False) or state.get("rightmeta", False)
    return state.get(modifier_to_evdev(m), False)


def any_modifier_pressed(state: Mapping[str, bool]) -> bool:
    return any(state.get(name, False) for name in _PHYSICAL_MODIFIERS)


def build_modifier_list(state: Mapping[str, bool]) -> list[str]:
    """Return the canonical modifiers held in *state*, in canonical order.

    Left Alt reports as ``alt`` and right Alt as ``altgr`` so a captured
    combination matches the same physical keys when it is replayed.
    """
    mods = []
    if state.get("leftctrl") or state.get("rightctrl"):
        mods.append("ctrl")
    if state.get("leftshift") or state.get("rightshift"):
        mods.append("shift")
    if state.get("leftalt"):
        mods.append("alt")
    if state.get("rightalt"):
        mods.append("altgr")
    if state.get("leftmeta") or state.get("rightmeta"):
        mods.append("super")
    return mods


def is_cancel_gesture(name: str, state: Mapping[str, bool]) -> bool:
    """Bare Escape (no modifier held) cancels an interactive capture."""
    return canonical_key(name) == "esc" and not any_modifier_pressed(state)


# ── Canonical strings ──────────────────────────────────────────

def normalize_hotkey(hotkey_str: str) -> str:
    """Return the canonical spelling of *hotkey_str*.

    Lower-cases everything, folds modifier synonyms (``win`` → ``super``,
    ``rightalt`` → ``altgr``), drops duplicates and orders modifiers as
    ``ctrl, shift, alt, altgr, super``.  Unrecognised modifiers such as
    ``hyper`` follow in their original order.
    """
    parts = [p.strip() for p in hotkey_str.strip().lower().split("+")]
    parts = [p for p in parts if p]
    if not parts:
        return ""

    key = parts[-1]
    seen: list[str] = []
    for mod in parts[:-1]:
        mod = _CANONICAL_MODIFIER.get(mod, mod)
        if mod not in seen:
            seen.append(mod)

    ordered = [m for m in _MODIFIER_ORDER if m in seen]
    ordered += [m for m in seen if m not in _MODIFIER_ORDER]
    return "+".join(ordered + [key])


def build_hotkey_string(modifiers: Iterable[str], key: str) -> str:
    return normalize_hotkey("+".join(list(modifiers) + [key.lower()]))


def validate_hotkey(hotkey_str: str) -> None:
    """Raise :class:`InvalidHotkeyError` if *hotkey_str* cannot be bound."""
    normalized = normalize_hotkey(hotkey_str)
    if not normalized:
        raise InvalidHotkeyError("empty hotkey")
    combo = parse_hotkey(normalized)
    if not combo.key:
        raise InvalidHotkeyError(f"missing key in hotkey: {hotkey_str!r}")
    if is_modifier(combo.key):
        raise InvalidHotkeyError(
            f"invalid hotkey {hotkey_str!r}: key cannot be a modifier"
        )


def validate_captured_hotkey(hotkey_str: str) -> None:
    """Validate a combination produced by an interactive capture.

    On top of :func:`validate_hotkey`, a combination without modifiers is
    rejected when its key types a character; binding a bare letter
    globally would swallow ordinary typing.
    """
    validate_hotkey(hotkey_str)
    combo = parse_hotkey(normalize_hotkey(hotkey_str))
    if not combo.modifiers and is_printable_key(combo.key):
        raise InvalidHotkeyError(
            f"hotkey {hotkey_str!r} needs a modifier (ctrl, alt, shift, super)"
        )
