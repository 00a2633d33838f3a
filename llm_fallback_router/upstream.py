from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

import httpx
from starlette.requests import Request

from llm_fallback_router.config import ProxyConfig
from llm_fallback_router.emitter import CachedResponse
from llm_fallback_router.errors import UpstreamTimeout
from llm_fallback_router.utils.header_utils import HOP_BY_HOP_HEADERS

# Replaced on the outbound side: the client negotiates compression itself,
# sizes the rewritten body and addresses the upstream authority.
_REWRITTEN_REQUEST_HEADERS = frozenset({"accept-encoding", "content-length", "host"})

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class InboundRequest:
    method: str
    path: str
    query: str
    headers: tuple[tuple[str, str], ...]
    host: str
    scheme: str

    @classmethod
    def from_request(cls, request: Request) -> InboundRequest:
        headers = tuple(
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in request.headers.raw
        )
        return cls(
            method=request.method,
            path=request.url.path,
            query=request.url.query,
            headers=headers,
            host=request.headers.get("host", ""),
            scheme=request.url.scheme,
        )


def single_joining_slash(base_path: str, path: str) -> str:
    base_slash = base_path.endswith("/")
    path_slash = path.startswith("/")
    if base_slash and path_slash:
        return base_path + path[1:]
    if not base_slash and not path_slash:
        return f"{base_path}/{path}"
    return base_path + path


def join_query(base_query: str, query: str) -> str:
    if not base_query:
        return query
    if not query:
        return base_query
    return f"{base_query}&{query}"


def build_upstream_url(target_url: httpx.URL, path: str, query: str) -> httpx.URL:
    joined_query = join_query(target_url.query.decode("ascii"), query)
    return target_url.copy_with(
        path=single_joining_slash(target_url.path, path),
        query=joined_query.encode("ascii") if joined_query else None,
        fragment=None,
    )


def build_upstream_headers(inbound: InboundRequest, target_url: httpx.URL) -> httpx.Headers:
    headers = httpx.Headers(list(inbound.headers))
    for name in HOP_BY_HOP_HEADERS | _REWRITTEN_REQUEST_HEADERS:
        if name in headers:
            del headers[name]
    headers["Host"] = target_url.netloc.decode("ascii")
    headers["X-Forwarded-Host"] = inbound.host
    headers["X-Forwarded-Proto"] = inbound.scheme
    return headers


def build_pooled_client(
    *,
    connect_timeout: float | None = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Connection-pooled client shared by every request; never reconfigured."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout=None, connect=connect_timeout),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
        http2=_can_enable_http2(),
        transport=transport,
    )


@dataclass(frozen=True, slots=True)
class StreamTransportTemplate:
    """Blueprint for the private client of a deadline-bound streaming attempt.

    Each attempt copies the template with its own response-header deadline and
    keep-alive disabled, then builds a client nobody else touches.
    """

    connect_timeout: float | None = 30.0
    response_header_timeout: float | None = None
    keep_alive: bool = True
    transport_factory: Callable[[], httpx.AsyncBaseTransport] | None = None

    def for_attempt(self, response_header_timeout: float) -> StreamTransportTemplate:
        return replace(
            self,
            response_header_timeout=response_header_timeout,
            keep_alive=False,
        )

    def build_client(self) -> httpx.AsyncClient:
        if self.transport_factory is not None:
            transport = self.transport_factory()
        else:
            transport = httpx.AsyncHTTPTransport(
                http2=_can_enable_http2(),
                limits=httpx.Limits(
                    max_keepalive_connections=None if self.keep_alive else 0
                ),
            )
        headers = None if self.keep_alive else {"Connection": "close"}
        return httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(timeout=None, connect=self.connect_timeout),
            headers=headers,
        )


@dataclass(slots=True)
class UpstreamAttempt:
    index: int
    model: str
    stream: bool
    response: httpx.Response
    owned_client: httpx.AsyncClient | None = None

    @property
    def status_code(self) -> int:
        return self.response.status_code

    async def aclose(self) -> None:
        try:
            await self.response.aclose()
        finally:
            if self.owned_client is not None:
                await self.owned_client.aclose()

    async def buffer(self) -> CachedResponse:
        try:
            body = await self.response.aread()
        finally:
            await self.aclose()
        return CachedResponse.from_upstream(self.response, body)


class UpstreamDispatcher:
    def __init__(
        self,
        *,
        config: ProxyConfig,
        client: httpx.AsyncClient,
        stream_template: StreamTransportTemplate,
    ) -> None:
        self._config = config
        self._client = client
        self._stream_template = stream_template

    async def dispatch(
        self,
        *,
        inbound: InboundRequest,
        body: bytes,
        attempt_index: int,
        model: str,
        stream: bool,
    ) -> UpstreamAttempt:
        timeout = self._config.timeout_for_attempt(attempt_index, model)
        url = build_upstream_url(self._config.target_url, inbound.path, inbound.query)
        headers = build_upstream_headers(inbound, self._config.target_url)

        if stream and timeout > 0:
            return await self._dispatch_stream_with_header_deadline(
                inbound=inbound,
                url=url,
                headers=headers,
                body=body,
                attempt_index=attempt_index,
                model=model,
                timeout=timeout,
            )

        request = self._client.build_request(
            method=inbound.method, url=url, headers=headers, content=body
        )
        if stream:
            response = await self._client.send(request, stream=True)
            return UpstreamAttempt(
                index=attempt_index, model=model, stream=True, response=response
            )

        # Non-streaming deadlines cover the full exchange, body included.
        response = await _bounded(self._client.send(request), timeout, "response")
        return UpstreamAttempt(
            index=attempt_index, model=model, stream=False, response=response
        )

    async def _dispatch_stream_with_header_deadline(
        self,
        *,
        inbound: InboundRequest,
        url: httpx.URL,
        headers: httpx.Headers,
        body: bytes,
        attempt_index: int,
        model: str,
        timeout: float,
    ) -> UpstreamAttempt:
        template = self._stream_template.for_attempt(timeout)
        client = template.build_client()
        try:
            request = client.build_request(
                method=inbound.method, url=url, headers=headers, content=body
            )
            response = await _bounded(
                client.send(request, stream=True),
                template.response_header_timeout or 0.0,
                "response headers",
            )
        except BaseException:
            await client.aclose()
            raise
        return UpstreamAttempt(
            index=attempt_index,
            model=model,
            stream=True,
            response=response,
            owned_client=client,
        )


async def _bounded(awaitable: Awaitable[T], timeout: float, phase: str) -> T:
    if timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        raise UpstreamTimeout(phase, timeout) from exc


def _can_enable_http2() -> bool:
    try:
        import h2  # noqa: F401
    except Exception:
        return False
    return True
