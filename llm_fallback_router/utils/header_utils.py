from __future__ import annotations

from collections.abc import Iterable

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "proxy-connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


def filter_raw_headers(
    items: Iterable[tuple[bytes, bytes]], excluded: Iterable[str]
) -> list[tuple[bytes, bytes]]:
    """Drop excluded names (case-insensitive), keeping repeated headers intact."""
    excluded_lower = {name.lower().encode("latin-1") for name in excluded}
    return [
        (name.lower(), value)
        for name, value in items
        if name.lower() not in excluded_lower
    ]
