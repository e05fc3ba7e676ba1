"""Tests for hotkey string and key code helpers."""

import pytest
from evdev import ecodes

from keybridge.exceptions import InvalidHotkeyError
from keybridge.keys import (
    KeyCombination,
    build_hotkey_string,
    build_modifier_list,
    canonical_key,
    is_cancel_gesture,
    is_modifier,
    is_modifier_pressed,
    is_virtual_modifier,
    key_code,
    key_name,
    modifier_to_evdev,
    normalize_hotkey,
    parse_hotkey,
    validate_captured_hotkey,
    validate_hotkey,
)


class TestParseHotkey:
    """Tests for parse_hotkey."""

    def test_modifiers_and_key(self):
        assert parse_hotkey("ctrl+shift+r") == KeyCombination(("ctrl", "shift"), "r")

    def test_modifiers_are_lowercased_and_stripped(self):
        combo = parse_hotkey(" Ctrl + ALT + x ")
        assert combo.modifiers == ("ctrl", "alt")
        assert combo.key == "x"

    def test_single_key(self):
        assert parse_hotkey("f5") == KeyCombination((), "f5")

    def test_empty_string_has_empty_key(self):
        combo = parse_hotkey("")
        assert combo.modifiers == ()
        assert combo.is_empty

    def test_trailing_plus_has_empty_key(self):
        combo = parse_hotkey("ctrl+")
        assert combo.modifiers == ("ctrl",)
        assert combo.is_empty


class TestModifiers:
    """Tests for modifier classification and state lookups."""

    @pytest.mark.parametrize("name", [
        "ctrl", "Alt", "altgr", "shift", "super", "meta", "win", "hyper",
        "leftctrl", "rightalt", "rightmeta",
    ])
    def test_is_modifier(self, name):
        assert is_modifier(name)

    @pytest.mark.parametrize("name", ["r", "space", "f1", "esc", ""])
    def test_is_not_modifier(self, name):
        assert not is_modifier(name)

    def test_modifier_to_evdev(self):
        assert modifier_to_evdev("ctrl") == "leftctrl"
        assert modifier_to_evdev("altgr") == "rightalt"
        assert modifier_to_evdev("win") == "leftmeta"
        assert modifier_to_evdev("rightshift") == "rightshift"

    def test_generic_modifier_matches_either_side(self):
        assert is_modifier_pressed("ctrl", {"rightctrl": True})
        assert is_modifier_pressed("shift", {"leftshift": True})
        assert is_modifier_pressed("super", {"rightmeta": True})

    def test_alt_accepts_right_alt(self):
        assert is_modifier_pressed("alt", {"rightalt": True})

    def test_altgr_requires_right_alt(self):
        assert not is_modifier_pressed("altgr", {"leftalt": True})
        assert is_modifier_pressed("altgr", {"rightalt": True})

    def test_released_modifier_is_not_pressed(self):
        assert not is_modifier_pressed("ctrl", {"leftctrl": False})
        assert not is_modifier_pressed("ctrl", {})

    def test_hyper_is_never_pressed(self):
        held = {name: True for name in (
            "leftctrl", "rightctrl", "leftalt", "rightalt",
            "leftshift", "rightshift", "leftmeta", "rightmeta",
        )}
        assert not is_modifier_pressed("hyper", held)

    def test_virtual_modifier(self):
        assert is_virtual_modifier("Hyper")
        assert not is_virtual_modifier("super")
        assert not is_virtual_modifier("altgr")

    def test_build_modifier_list_order(self):
        state = {"leftmeta": True, "rightalt": True, "leftshift": True, "rightctrl": True}
        assert build_modifier_list(state) == ["ctrl", "shift", "altgr", "super"]

    def test_build_modifier_list_left_alt(self):
        assert build_modifier_list({"leftalt": True}) == ["alt"]


class TestKeyCodes:
    """Tests for key code/name mapping."""

    def test_key_name(self):
        assert key_name(ecodes.KEY_R) == "r"
        assert key_name(ecodes.KEY_ESC) == "esc"
        assert key_name(ecodes.KEY_RIGHTALT) == "rightalt"

    def test_every_keyboard_key_has_a_name(self):
        assert key_name(ecodes.KEY_F13) == "f13"
        assert key_name(ecodes.KEY_F24) == "f24"
        assert key_name(ecodes.KEY_102ND) == "102nd"
        assert key_name(ecodes.KEY_MENU) == "menu"
        assert key_name(ecodes.KEY_PLAYPAUSE) == "playpause"

    def test_aliased_code_uses_key_name(self):
        assert key_name(ecodes.KEY_MUTE) == "mute"

    def test_unknown_code(self):
        assert key_name(9999) == ""

    def test_key_code_accepts_aliases(self):
        assert key_code("escape") == ecodes.KEY_ESC
        assert key_code("Return") == ecodes.KEY_ENTER
        assert key_code("period") == ecodes.KEY_DOT

    def test_key_code_round_trips_extended_keys(self):
        assert key_code("F13") == ecodes.KEY_F13
        assert key_code("102nd") == ecodes.KEY_102ND

    def test_key_code_unknown(self):
        assert key_code("nosuchkey") is None

    def test_canonical_key(self):
        assert canonical_key(" Escape ") == "esc"
        assert canonical_key("R") == "r"


class TestNormalizeHotkey:
    """Tests for canonical hotkey strings."""

    def test_orders_modifiers(self):
        assert normalize_hotkey("shift+ctrl+r") == "ctrl+shift+r"

    def test_folds_synonyms(self):
        assert normalize_hotkey("win+rightalt+x") == "altgr+super+x"

    def test_drops_duplicate_modifiers(self):
        assert normalize_hotkey("ctrl+leftctrl+r") == "ctrl+r"

    def test_unknown_modifier_kept_after_known(self):
        assert normalize_hotkey("hyper+ctrl+x") == "ctrl+hyper+x"

    def test_empty(self):
        assert normalize_hotkey("  ") == ""

    def test_build_hotkey_string(self):
        assert build_hotkey_string(["shift", "ctrl"], "K") == "ctrl+shift+k"


class TestValidation:
    """Tests for validate_hotkey and validate_captured_hotkey."""

    @pytest.mark.parametrize("hotkey", ["ctrl+r", "altgr+comma", "f5", "super+space"])
    def test_valid(self, hotkey):
        validate_hotkey(hotkey)

    @pytest.mark.parametrize("hotkey", ["", "+", "ctrl+shift", "alt"])
    def test_invalid(self, hotkey):
        with pytest.raises(InvalidHotkeyError):
            validate_hotkey(hotkey)

    @pytest.mark.parametrize("hotkey", ["a", "space", "comma", "1"])
    def test_captured_bare_printable_rejected(self, hotkey):
        with pytest.raises(InvalidHotkeyError):
            validate_captured_hotkey(hotkey)

    @pytest.mark.parametrize("hotkey", ["f5", "pageup", "ctrl+a", "shift+space"])
    def test_captured_accepted(self, hotkey):
        validate_captured_hotkey(hotkey)


class TestCancelGesture:
    """Tests for is_cancel_gesture."""

    def test_bare_escape_cancels(self):
        assert is_cancel_gesture("esc", {})

    def test_escape_with_modifier_does_not_cancel(self):
        assert not is_cancel_gesture("esc", {"leftctrl": True})

    def test_other_key_does_not_cancel(self):
        assert not is_cancel_gesture("q", {})
