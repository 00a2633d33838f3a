from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from llm_fallback_router.config import ProxyConfig
from llm_fallback_router.errors import AttemptCancelled, RequestMalformed
from llm_fallback_router.gateway.audit import JsonlAuditLogger
from llm_fallback_router.payload import RequestPayload
from llm_fallback_router.proxy import FallbackProxy, error_response
from llm_fallback_router.settings import get_settings
from llm_fallback_router.upstream import (
    InboundRequest,
    StreamTransportTemplate,
    build_pooled_client,
)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "CONNECT", "TRACE"]
CLIENT_CLOSED_REQUEST = 499

app = FastAPI(
    title="LLM Fallback Router",
    description="OpenAI-compatible chat-completions proxy with model fallback.",
    version="0.1.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    config = ProxyConfig.from_settings(settings)
    audit_logger = JsonlAuditLogger(
        path=settings.proxy_audit_log_path,
        enabled=settings.proxy_audit_log_enabled,
    )
    app.state.settings = settings
    app.state.audit_logger = audit_logger
    app.state.fallback_proxy = FallbackProxy(
        config=config,
        client=build_pooled_client(
            connect_timeout=settings.upstream_connect_timeout_seconds
        ),
        stream_template=StreamTransportTemplate(
            connect_timeout=settings.upstream_connect_timeout_seconds
        ),
        audit_hook=audit_logger if audit_logger.enabled else None,
        disconnect_poll_interval_seconds=settings.disconnect_poll_interval_seconds,
    )
    logger.info(
        (
            "startup complete target=%s fallback_models=%s default_timeout=%ss "
            "fallback_default_timeout=%ss no_retry_statuses=%s audit_log_enabled=%s"
        ),
        config.target_url,
        ",".join(config.fallback_models) or "-",
        config.default_timeout,
        config.fallback_default_timeout,
        ",".join(str(code) for code in sorted(config.no_retry_statuses)) or "-",
        audit_logger.enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    proxy: FallbackProxy | None = getattr(app.state, "fallback_proxy", None)
    if proxy is not None:
        await proxy.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


@app.api_route(CHAT_COMPLETIONS_PATH, methods=ALL_METHODS)
async def chat_completions(request: Request) -> Response:
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    try:
        body = await request.body()
    except ClientDisconnect as exc:
        logger.warning("proxy_read_body_failed request_id=%s error=%r", request_id, exc)
        raise RequestMalformed("invalid request body") from exc

    try:
        payload = RequestPayload.parse(body)
    except RequestMalformed as exc:
        logger.warning("proxy_rejected request_id=%s reason=%s", request_id, exc.message)
        raise

    proxy: FallbackProxy = app.state.fallback_proxy
    return await proxy.forward_with_fallback(
        inbound=InboundRequest.from_request(request),
        payload=payload,
        request_id=request_id,
        disconnect_checker=request.is_disconnected,
    )


@app.exception_handler(RequestMalformed)
async def request_malformed_handler(_: Request, exc: RequestMalformed) -> JSONResponse:
    return error_response(exc.status_code, exc.message)


@app.exception_handler(AttemptCancelled)
async def attempt_cancelled_handler(_: Request, exc: AttemptCancelled) -> Response:
    # The caller is gone; nothing written here is ever read.
    return Response(status_code=CLIENT_CLOSED_REQUEST)


@app.exception_handler(StarletteHTTPException)
async def not_found_handler(request: Request, exc: StarletteHTTPException) -> Response:
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return Response(status_code=status.HTTP_404_NOT_FOUND)
    return await http_exception_handler(request, exc)


def run() -> None:
    import uvicorn

    settings = get_settings()
    host, port = settings.listen_address
    uvicorn.run(
        "llm_fallback_router.main:app",
        host=host,
        port=port,
        log_level=settings.log_level.strip().lower() or "info",
        reload=False,
    )


if __name__ == "__main__":
    run()
