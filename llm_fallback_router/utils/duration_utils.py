from __future__ import annotations

import re

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_go_duration(raw: str) -> float | None:
    """Parse a Go-style duration such as ``1m30s`` or ``250ms`` into seconds.

    Returns ``None`` when the text is not a valid duration.
    """
    text = raw.strip()
    if not text:
        return None
    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        return None

    total = 0.0
    position = 0
    while position < len(text):
        match = _COMPONENT.match(text, position)
        if match is None:
            return None
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    return sign * total


def parse_duration_seconds(raw: str | None) -> float | None:
    """Accept a Go-style duration or a bare integer number of seconds."""
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    parsed = parse_go_duration(text)
    if parsed is not None:
        return parsed
    try:
        return float(int(text))
    except ValueError:
        return None
