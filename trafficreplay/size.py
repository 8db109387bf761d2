"""Parsing of human-readable data sizes such as ``42mb`` or ``0x12gB``."""

from __future__ import annotations

import re

KB = 1 << 10
MB = 1 << 20
GB = 1 << 30
TB = 1 << 40

_INT64_MAX = (1 << 63) - 1
_DIGITS = "0123456789abcdef"
_PREFIX_BASES = {"b": 2, "o": 8, "x": 16}

_NUMBER = r"(?:0b|0x|0o)?[0-9a-f_]+"
_PATTERNS = (
    (re.compile(_NUMBER, re.IGNORECASE), 1),
    (re.compile(_NUMBER + "kb", re.IGNORECASE), KB),
    (re.compile(_NUMBER + "mb", re.IGNORECASE), MB),
    (re.compile(_NUMBER + "gb", re.IGNORECASE), GB),
    (re.compile(_NUMBER + "tb", re.IGNORECASE), TB),
)


def _underscores_ok(text: str) -> bool:
    """Check that underscores only separate digits, as integer literals allow."""
    saw = "^"
    start = 0
    is_hex = False
    if len(text) >= 2 and text[0] == "0" and text[1].lower() in _PREFIX_BASES:
        start = 2
        saw = "0"
        is_hex = text[1].lower() == "x"
    for ch in text[start:]:
        if ch.isascii() and (ch.isdigit() or (is_hex and ch.lower() in "abcdef")):
            saw = "0"
            continue
        if ch == "_":
            if saw != "0":
                return False
            saw = "_"
            continue
        if saw == "_":
            return False
        saw = "!"
    return saw != "_"


def _parse_int(text: str) -> int:
    """Parse an integer literal whose base is given by its prefix.

    ``0b``, ``0o`` and ``0x`` select binary, octal and hexadecimal; a bare
    leading zero selects octal; underscores may separate digits.
    """
    if not text:
        raise ValueError("invalid syntax: empty number")
    base = 10
    digits = text
    if text[0] == "0":
        prefix = text[1:2].lower()
        if len(text) >= 3 and prefix in _PREFIX_BASES:
            base = _PREFIX_BASES[prefix]
            digits = text[2:]
        else:
            base = 8
            digits = text[1:]
    if not _underscores_ok(text):
        raise ValueError(f"invalid syntax: {text!r}")
    value = 0
    for ch in digits:
        if ch == "_":
            continue
        digit = _DIGITS.find(ch.lower())
        if digit < 0 or digit >= base:
            raise ValueError(f"invalid syntax: {text!r}")
        value = value * base + digit
    if value > _INT64_MAX:
        raise ValueError(f"value out of range: {text!r}")
    return value


def parse_size(text: str) -> int:
    """Return the number of bytes described by ``text``.

    An empty string means no size and gives 0. Raises ValueError on input
    that is not a valid size.
    """
    if text == "":
        return 0
    for pattern, unit in _PATTERNS:
        if pattern.fullmatch(text):
            number = text if unit == 1 else text[:-2]
            return _parse_int(number) * unit
    raise ValueError(f"invalid size {text!r}")