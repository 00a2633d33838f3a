from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response

from llm_fallback_router.classifier import (
    AttemptOutcome,
    classify_error,
    classify_status,
    transport_error_details,
)
from llm_fallback_router.config import ProxyConfig
from llm_fallback_router.emitter import CachedResponse, streaming_response
from llm_fallback_router.errors import AttemptCancelled, PayloadUnrepresentable
from llm_fallback_router.payload import RequestPayload
from llm_fallback_router.planner import build_attempt_models
from llm_fallback_router.upstream import (
    InboundRequest,
    StreamTransportTemplate,
    UpstreamAttempt,
    UpstreamDispatcher,
    build_pooled_client,
)

logger = logging.getLogger("uvicorn.error")

DisconnectChecker = Callable[[], Awaitable[bool]]
T = TypeVar("T")


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@dataclass(slots=True)
class ProxyAttemptRunContext:
    inbound: InboundRequest
    payload: RequestPayload
    stream: bool
    request_id: str
    attempt_models: list[str]
    disconnect_checker: DisconnectChecker | None
    request_started: float = field(default_factory=time.perf_counter)
    last_response: CachedResponse | None = None
    last_error: BaseException | None = None

    @property
    def total_attempts(self) -> int:
        return len(self.attempt_models)

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.request_started) * 1000.0, 3)


class FallbackProxy:
    """Forward one request to the upstream, falling back across models.

    Attempts run strictly one after another in planner order. A streaming
    attempt that answers 2xx commits the request; anything relayed after that
    point is final even if the upstream body later fails.
    """

    def __init__(
        self,
        *,
        config: ProxyConfig,
        client: httpx.AsyncClient | None = None,
        stream_template: StreamTransportTemplate | None = None,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
        disconnect_poll_interval_seconds: float = 0.25,
    ) -> None:
        self.config = config
        self.client = client if client is not None else build_pooled_client()
        self.stream_template = (
            stream_template if stream_template is not None else StreamTransportTemplate()
        )
        self.dispatcher = UpstreamDispatcher(
            config=config,
            client=self.client,
            stream_template=self.stream_template,
        )
        self._audit_hook = audit_hook
        self._disconnect_poll_interval = max(0.01, disconnect_poll_interval_seconds)

    async def close(self) -> None:
        await self.client.aclose()

    def audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def forward_with_fallback(
        self,
        *,
        inbound: InboundRequest,
        payload: RequestPayload,
        request_id: str,
        disconnect_checker: DisconnectChecker | None = None,
    ) -> Response:
        """Run the attempt loop and return the response for the caller.

        Raises ``AttemptCancelled`` when the caller disconnects mid-attempt.
        """
        model = payload.model
        if not model:
            return error_response(status.HTTP_400_BAD_REQUEST, "model is required")

        attempt_models = build_attempt_models(model, self.config.fallback_models)
        if not attempt_models:
            return error_response(status.HTTP_400_BAD_REQUEST, "no model available")

        context = ProxyAttemptRunContext(
            inbound=inbound,
            payload=payload,
            stream=payload.stream,
            request_id=request_id,
            attempt_models=attempt_models,
            disconnect_checker=disconnect_checker,
        )
        logger.info(
            "proxy_start request_id=%s path=%s model=%s stream=%s candidates=%s",
            request_id,
            inbound.path,
            model,
            context.stream,
            ",".join(attempt_models),
        )
        self.audit(
            "proxy_start",
            request_id=request_id,
            path=inbound.path,
            requested_model=model,
            stream=context.stream,
            attempt_models=attempt_models,
        )

        for index, candidate in enumerate(attempt_models):
            try:
                body = payload.with_model(candidate)
            except PayloadUnrepresentable as exc:
                logger.error(
                    "proxy_marshal_failed request_id=%s model=%s error=%s",
                    request_id,
                    candidate,
                    exc,
                )
                return error_response(
                    status.HTTP_503_SERVICE_UNAVAILABLE, "invalid json body"
                )

            response = await self._attempt(
                context=context, index=index, model=candidate, body=body
            )
            if response is not None:
                return response

        return self._exhausted_response(context)

    async def _attempt(
        self,
        *,
        context: ProxyAttemptRunContext,
        index: int,
        model: str,
        body: bytes,
    ) -> Response | None:
        attempt_number = index + 1
        attempt_started = time.perf_counter()
        try:
            attempt = await self._until_disconnected(
                self.dispatcher.dispatch(
                    inbound=context.inbound,
                    body=body,
                    attempt_index=index,
                    model=model,
                    stream=context.stream,
                ),
                context,
            )
        except Exception as exc:
            if classify_error(exc) is None:
                raise
            self._record_transport_error(
                context=context,
                exc=exc,
                model=model,
                attempt_number=attempt_number,
                phase="request",
            )
            return None

        self.audit(
            "proxy_upstream_connected",
            request_id=context.request_id,
            model=model,
            attempt=attempt_number,
            status=attempt.status_code,
            connect_ms=round((time.perf_counter() - attempt_started) * 1000.0, 3),
        )

        outcome = classify_status(attempt.status_code, self.config.no_retry_statuses)
        if attempt.stream and outcome is AttemptOutcome.SUCCESS:
            self._log_response(context, model, attempt_number, attempt.status_code)
            return streaming_response(
                attempt, request_id=context.request_id, audit=self.audit
            )

        # Nothing has reached the caller yet, so the body can be held back.
        try:
            cached = await self._until_disconnected(attempt.buffer(), context)
        except Exception as exc:
            if classify_error(exc) is None:
                raise
            self._record_transport_error(
                context=context,
                exc=exc,
                model=model,
                attempt_number=attempt_number,
                phase="read",
            )
            return None

        outcome = classify_status(cached.status_code, self.config.no_retry_statuses)
        if outcome in (AttemptOutcome.SUCCESS, AttemptOutcome.TERMINAL_STATUS):
            self._log_response(context, model, attempt_number, cached.status_code)
            return cached.to_fastapi_response()

        context.last_response = cached
        logger.info(
            "proxy_retry request_id=%s model=%s status=%d attempt=%d/%d",
            context.request_id,
            model,
            cached.status_code,
            attempt_number,
            context.total_attempts,
        )
        self.audit(
            "proxy_retry",
            request_id=context.request_id,
            model=model,
            status=cached.status_code,
            attempt=attempt_number,
            total_attempts=context.total_attempts,
        )
        return None

    def _exhausted_response(self, context: ProxyAttemptRunContext) -> Response:
        last_response = context.last_response
        self.audit(
            "proxy_exhausted",
            request_id=context.request_id,
            attempts=context.total_attempts,
            status=last_response.status_code if last_response is not None else None,
            last_error=repr(context.last_error) if context.last_error else None,
            request_latency_ms=context.elapsed_ms(),
        )
        if last_response is not None:
            logger.info(
                "proxy_exhausted request_id=%s attempts=%d status=%d",
                context.request_id,
                context.total_attempts,
                last_response.status_code,
            )
            return last_response.to_fastapi_response()

        if context.last_error is not None:
            logger.warning(
                "proxy_exhausted request_id=%s attempts=%d last_error=%r",
                context.request_id,
                context.total_attempts,
                context.last_error,
            )
        return error_response(status.HTTP_502_BAD_GATEWAY, "upstream error")

    def _record_transport_error(
        self,
        *,
        context: ProxyAttemptRunContext,
        exc: BaseException,
        model: str,
        attempt_number: int,
        phase: str,
    ) -> None:
        context.last_error = exc
        details = transport_error_details(exc)
        logger.warning(
            (
                "proxy_request_error request_id=%s model=%s attempt=%d/%d "
                "phase=%s error_type=%s error=%s"
            ),
            context.request_id,
            model,
            attempt_number,
            context.total_attempts,
            phase,
            details["error_type"],
            details["error"],
        )
        self.audit(
            "proxy_request_error",
            request_id=context.request_id,
            model=model,
            attempt=attempt_number,
            total_attempts=context.total_attempts,
            phase=phase,
            outcome=AttemptOutcome.TRANSPORT_ERROR.value,
            **details,
        )

    def _log_response(
        self,
        context: ProxyAttemptRunContext,
        model: str,
        attempt_number: int,
        status_code: int,
    ) -> None:
        logger.info(
            "proxy_response request_id=%s model=%s status=%d attempts=%d stream=%s",
            context.request_id,
            model,
            status_code,
            attempt_number,
            context.stream,
        )
        self.audit(
            "proxy_response",
            request_id=context.request_id,
            model=model,
            status=status_code,
            attempts=attempt_number,
            stream=context.stream,
            request_latency_ms=context.elapsed_ms(),
        )

    async def _until_disconnected(
        self, awaitable: Awaitable[T], context: ProxyAttemptRunContext
    ) -> T:
        checker = context.disconnect_checker
        if checker is None:
            return await awaitable

        attempt_task = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._wait_for_disconnect(checker))
        try:
            done, _ = await asyncio.wait(
                {attempt_task, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            attempt_task.cancel()
            watcher.cancel()
            raise

        if attempt_task in done:
            watcher.cancel()
            return attempt_task.result()

        attempt_task.cancel()
        await asyncio.wait({attempt_task})
        if not attempt_task.cancelled() and attempt_task.exception() is None:
            leftover = attempt_task.result()
            if isinstance(leftover, UpstreamAttempt):
                await leftover.aclose()
        # Surfaces a failing checker instead of reporting a disconnect.
        watcher.result()
        logger.info("proxy_cancelled request_id=%s", context.request_id)
        raise AttemptCancelled(context.request_id)

    async def _wait_for_disconnect(self, checker: DisconnectChecker) -> None:
        while not await checker():
            await asyncio.sleep(self._disconnect_poll_interval)
