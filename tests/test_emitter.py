from __future__ import annotations

import asyncio
from typing import Any

import httpx

from llm_fallback_router.emitter import (
    STREAM_CHUNK_SIZE,
    CachedResponse,
    streaming_response,
)
from llm_fallback_router.upstream import UpstreamAttempt
from tests.client_test_utils import ChunkedStream


def test_cached_response_drops_hop_by_hop_and_sets_length() -> None:
    cached = CachedResponse(
        status_code=500,
        headers=httpx.Headers(
            [
                ("Content-Type", "application/json"),
                ("Connection", "keep-alive"),
                ("Transfer-Encoding", "chunked"),
                ("Content-Encoding", "gzip"),
                ("Content-Length", "999"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
            ]
        ),
        body=b'{"error":"boom"}',
    )

    response = cached.to_fastapi_response()

    assert response.status_code == 500
    assert response.body == b'{"error":"boom"}'
    names = [name for name, _ in response.raw_headers]
    assert b"connection" not in names
    assert b"transfer-encoding" not in names
    assert b"content-encoding" not in names
    assert response.raw_headers.count((b"content-length", b"16")) == 1
    assert [value for name, value in response.raw_headers if name == b"set-cookie"] == [
        b"a=1",
        b"b=2",
    ]


def test_cached_response_with_empty_body_has_no_length() -> None:
    response = CachedResponse(
        status_code=502, headers=httpx.Headers({"content-length": "0"}), body=b""
    ).to_fastapi_response()

    assert response.status_code == 502
    assert all(name != b"content-length" for name, _ in response.raw_headers)


def _relay(attempt: UpstreamAttempt, **kwargs: Any) -> list[bytes]:
    async def _run() -> list[bytes]:
        response = streaming_response(attempt, request_id="req-1", **kwargs)
        return [chunk async for chunk in response.body_iterator]

    return asyncio.run(_run())


def test_streaming_response_splits_large_chunks() -> None:
    payload = b"x" * (STREAM_CHUNK_SIZE * 2 + 10)
    attempt = UpstreamAttempt(
        index=0,
        model="m1",
        stream=True,
        response=httpx.Response(200, stream=ChunkedStream([payload])),
    )

    chunks = _relay(attempt)

    assert [len(chunk) for chunk in chunks] == [STREAM_CHUNK_SIZE, STREAM_CHUNK_SIZE, 10]
    assert b"".join(chunks) == payload
    assert attempt.response.is_closed


def test_streaming_response_ends_quietly_after_upstream_drop() -> None:
    events: list[tuple[str, dict[str, Any]]] = []
    attempt = UpstreamAttempt(
        index=1,
        model="m2",
        stream=True,
        response=httpx.Response(
            200,
            headers={"content-type": "text/event-stream", "connection": "close"},
            stream=ChunkedStream([b"data: 1\n\n"], fail_after=True),
        ),
    )

    response = streaming_response(
        attempt,
        request_id="req-1",
        audit=lambda event, **fields: events.append((event, fields)),
    )

    async def _run() -> list[bytes]:
        return [chunk async for chunk in response.body_iterator]

    assert asyncio.run(_run()) == [b"data: 1\n\n"]
    assert response.status_code == 200
    assert (b"content-type", b"text/event-stream") in response.raw_headers
    assert all(name != b"connection" for name, _ in response.raw_headers)
    assert attempt.response.is_closed
    assert [event for event, _ in events] == ["proxy_stream_error"]
    assert events[0][1]["model"] == "m2"
    assert events[0][1]["attempt"] == 2
    assert events[0][1]["error_type"] == "ReadError"


def test_streaming_response_closes_attempt_even_if_body_never_starts() -> None:
    owned_client = httpx.AsyncClient()
    attempt = UpstreamAttempt(
        index=0,
        model="m1",
        stream=True,
        response=httpx.Response(200, stream=ChunkedStream([b"unread"])),
        owned_client=owned_client,
    )

    async def _run() -> None:
        response = streaming_response(attempt, request_id="req-1")
        assert response.background is not None
        await response.background()

    asyncio.run(_run())
    assert attempt.response.is_closed
    assert owned_client.is_closed
