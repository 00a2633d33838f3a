import httpx

from llm_fallback_router.classifier import (
    AttemptOutcome,
    classify_error,
    classify_status,
    transport_error_details,
)
from llm_fallback_router.errors import AttemptCancelled, UpstreamTimeout


def test_success_range_wins_over_no_retry_set() -> None:
    assert classify_status(200, {400}) is AttemptOutcome.SUCCESS
    assert classify_status(299, {299}) is AttemptOutcome.SUCCESS


def test_no_retry_statuses_are_terminal() -> None:
    assert classify_status(400, {400}) is AttemptOutcome.TERMINAL_STATUS
    assert classify_status(401, {400, 401}) is AttemptOutcome.TERMINAL_STATUS


def test_everything_else_is_retryable() -> None:
    for status_code in (199, 300, 404, 429, 500, 503):
        assert classify_status(status_code, {400}) is AttemptOutcome.RETRYABLE_STATUS


def test_transport_error_details_describe_request_and_timeout() -> None:
    request = httpx.Request("POST", "http://upstream.test/v1/chat/completions")
    details = transport_error_details(httpx.ConnectTimeout("timed out", request=request))
    assert details["error_type"] == "ConnectTimeout"
    assert details["is_timeout"] is True
    assert details["request_method"] == "POST"
    assert details["request_url"] == "http://upstream.test/v1/chat/completions"


def test_transport_error_details_for_attempt_deadline() -> None:
    details = transport_error_details(UpstreamTimeout("response", 1.5))
    assert details["error_type"] == "UpstreamTimeout"
    assert details["is_timeout"] is True
    assert details["error"] == "upstream response exceeded 1.5s"
    assert "request_url" not in details


def test_classify_error_marks_upstream_failures_as_transport_errors() -> None:
    request = httpx.Request("POST", "http://upstream.test/v1/chat/completions")
    for exc in (
        httpx.ConnectError("refused", request=request),
        httpx.ReadError("reset", request=request),
        httpx.ReadTimeout("slow", request=request),
        UpstreamTimeout("response headers", 2.0),
        ConnectionResetError("peer reset"),
    ):
        assert classify_error(exc) is AttemptOutcome.TRANSPORT_ERROR


def test_classify_error_leaves_other_failures_to_propagate() -> None:
    for exc in (AttemptCancelled("req-1"), KeyError("model"), RuntimeError("bug")):
        assert classify_error(exc) is None
