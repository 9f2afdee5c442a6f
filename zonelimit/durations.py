"""Parsing and formatting of duration strings such as ``1m30s`` or ``500ms``."""

from __future__ import annotations

import re
from fractions import Fraction

_NUMBER = r"(?:\d+(?:\.\d*)?|\.\d+)"
_UNIT = r"(?:ns|us|µs|μs|ms|s|m|h|d)"

_TERM = re.compile(rf"({_NUMBER})({_UNIT})")
_WHOLE = re.compile(rf"[-+]?(?:{_NUMBER}{_UNIT})+")

_UNIT_SECONDS = {
    "ns": Fraction(1, 10**9),
    "us": Fraction(1, 10**6),
    "µs": Fraction(1, 10**6),
    "μs": Fraction(1, 10**6),
    "ms": Fraction(1, 10**3),
    "s": Fraction(1),
    "m": Fraction(60),
    "h": Fraction(3600),
    "d": Fraction(86400),
}

_NANOS_PER_SECOND = 1_000_000_000
_NANOS_PER_MINUTE = 60 * _NANOS_PER_SECOND
_NANOS_PER_HOUR = 60 * _NANOS_PER_MINUTE


def parse_duration(text: str) -> float:
    """Parse a duration string into seconds.

    Accepts a sequence of decimal numbers each followed by a unit
    (``ns``, ``us``, ``µs``, ``ms``, ``s``, ``m``, ``h`` or ``d``), with an
    optional leading sign. A bare ``0`` is also accepted.
    """
    if not isinstance(text, str):
        raise TypeError(f"duration must be a string, not {type(text).__name__}")
    if text in ("0", "+0", "-0"):
        return 0.0
    if not _WHOLE.fullmatch(text):
        raise ValueError(f"invalid duration {text!r}")
    sign = -1 if text.startswith("-") else 1
    total = sum(
        (Fraction(number) * _UNIT_SECONDS[unit] for number, unit in _TERM.findall(text)),
        Fraction(0),
    )
    return float(sign * total)


def _with_fraction(value: int, scale: int) -> str:
    whole, remainder = divmod(value, scale)
    if not remainder:
        return str(whole)
    width = len(str(scale)) - 1
    digits = str(remainder).rjust(width, "0").rstrip("0")
    return f"{whole}.{digits}"


def format_duration(seconds: float) -> str:
    """Format a number of seconds the way durations are conventionally printed.

    Examples of the output: ``0s``, ``1.5s``, ``1m30s``, ``1h0m0s``, ``500ms``.
    """
    nanos = round(seconds * _NANOS_PER_SECOND)
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)

    if nanos < _NANOS_PER_SECOND:
        if nanos < 1_000:
            return f"{sign}{nanos}ns"
        if nanos < 1_000_000:
            return f"{sign}{_with_fraction(nanos, 1_000)}µs"
        return f"{sign}{_with_fraction(nanos, 1_000_000)}ms"

    hours, rest = divmod(nanos, _NANOS_PER_HOUR)
    minutes, rest = divmod(rest, _NANOS_PER_MINUTE)
    secs = f"{_with_fraction(rest, _NANOS_PER_SECOND)}s"
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}"
    if minutes:
        return f"{sign}{minutes}m{secs}"
    return f"{sign}{secs}"