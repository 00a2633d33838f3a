from __future__ import annotations

from collections.abc import Container
from enum import Enum
from typing import Any

import httpx

from llm_fallback_router.errors import UpstreamTimeout


class AttemptOutcome(str, Enum):
    TRANSPORT_ERROR = "transport_error"
    SUCCESS = "success"
    TERMINAL_STATUS = "terminal_status"
    RETRYABLE_STATUS = "retryable_status"


# Errors that end one attempt but leave the retry loop running. Cancellation
# is not one of them; it aborts the whole request.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.HTTPError,
    httpx.StreamError,
    UpstreamTimeout,
    OSError,
)


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


def classify_status(status_code: int, no_retry: Container[int]) -> AttemptOutcome:
    if is_success_status(status_code):
        return AttemptOutcome.SUCCESS
    if status_code in no_retry:
        return AttemptOutcome.TERMINAL_STATUS
    return AttemptOutcome.RETRYABLE_STATUS


def classify_error(exc: BaseException) -> AttemptOutcome | None:
    """``TRANSPORT_ERROR`` when ``exc`` ends only the current attempt.

    ``None`` means the error is not the upstream's fault and must propagate.
    """
    if isinstance(exc, TRANSPORT_ERRORS):
        return AttemptOutcome.TRANSPORT_ERROR
    return None


def transport_error_details(exc: BaseException) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "TransportError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, (httpx.TimeoutException, UpstreamTimeout)),
    }
    request = None
    if isinstance(exc, httpx.RequestError):
        try:
            request = exc.request
        except RuntimeError:
            request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details
