from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from llm_fallback_router.classifier import TRANSPORT_ERRORS, transport_error_details
from llm_fallback_router.utils.header_utils import HOP_BY_HOP_HEADERS, filter_raw_headers

if TYPE_CHECKING:
    from llm_fallback_router.upstream import UpstreamAttempt

STREAM_CHUNK_SIZE = 32 * 1024

# httpx hands back decoded bodies, so the upstream encoding and length no
# longer describe what the caller receives.
RELAY_EXCLUDED_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class CachedResponse:
    status_code: int
    headers: httpx.Headers
    body: bytes

    @classmethod
    def from_upstream(cls, response: httpx.Response, body: bytes) -> CachedResponse:
        return cls(
            status_code=response.status_code,
            headers=httpx.Headers(response.headers),
            body=body,
        )

    def to_fastapi_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        raw_headers = filter_raw_headers(self.headers.raw, RELAY_EXCLUDED_HEADERS)
        if self.body:
            raw_headers.append((b"content-length", str(len(self.body)).encode("latin-1")))
        response.raw_headers = raw_headers
        return response


def streaming_response(
    attempt: UpstreamAttempt,
    *,
    request_id: str,
    audit: Callable[..., None] | None = None,
) -> StreamingResponse:
    """Relay a committed streaming attempt to the caller chunk by chunk.

    Once this response starts, the request is over as far as fallback goes:
    a failure while copying the body is logged and the stream simply ends.
    """

    async def relay() -> AsyncIterator[bytes]:
        try:
            async for chunk in attempt.response.aiter_bytes():
                for offset in range(0, len(chunk), STREAM_CHUNK_SIZE):
                    yield chunk[offset : offset + STREAM_CHUNK_SIZE]
        except TRANSPORT_ERRORS as exc:
            details: dict[str, Any] = transport_error_details(exc)
            logger.warning(
                "proxy_stream_error request_id=%s model=%s error_type=%s error=%s",
                request_id,
                attempt.model,
                details["error_type"],
                details["error"],
            )
            if audit is not None:
                audit(
                    "proxy_stream_error",
                    request_id=request_id,
                    model=attempt.model,
                    attempt=attempt.index + 1,
                    **details,
                )
        except asyncio.CancelledError:
            logger.info(
                "proxy_stream_cancelled request_id=%s model=%s",
                request_id,
                attempt.model,
            )
            raise
        finally:
            await attempt.aclose()

    # The background close also runs when the body iterator never starts.
    response = StreamingResponse(
        content=relay(),
        status_code=attempt.status_code,
        background=BackgroundTask(attempt.aclose),
    )
    response.raw_headers = filter_raw_headers(
        attempt.response.headers.raw, RELAY_EXCLUDED_HEADERS
    )
    return response
