from __future__ import annotations

from collections.abc import Hashable, Iterable


def dedupe_preserving_order[T: Hashable](values: Iterable[T]) -> list[T]:
    seen: set[T] = set()
    output: list[T] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        output.append(value)
    return output


def strip_non_empty(values: Iterable[str]) -> list[str]:
    stripped = (value.strip() for value in values)
    return [value for value in stripped if value]


def split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return strip_non_empty(value.split(","))
