from __future__ import annotations

from collections.abc import Iterable

from llm_fallback_router.utils.sequence_utils import (
    dedupe_preserving_order,
    strip_non_empty,
)


def build_attempt_models(primary: str, fallbacks: Iterable[str]) -> list[str]:
    """Return the requested model followed by the fallbacks, in attempt order.

    Entries are trimmed, blanks are dropped and repeats are removed keeping the
    first occurrence (case-sensitive). An empty result means no model is
    available for the request.
    """
    return dedupe_preserving_order(strip_non_empty([primary, *fallbacks]))
