from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from contextvars import ContextVar

from fastapi import Request
from starlette.responses import Response

from mailsync.core.config import Settings
from mailsync.core.logging import log_event
from mailsync.core.metrics import observe_http_request
from mailsync.core.security import new_random_token

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger("mailsync.api")

CallNext = Callable[[Request], Awaitable[Response]]


def build_request_id(request: Request, *, header_name: str) -> str:
    incoming = (request.headers.get(header_name) or "").strip()
    if incoming:
        return incoming[:128]
    return new_random_token(nbytes=18)


def apply_security_headers(response: Response, *, settings: Settings) -> None:
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Content-Security-Policy", settings.CONTENT_SECURITY_POLICY)


def request_context_middleware(settings: Settings) -> Callable[[Request, CallNext], Awaitable[Response]]:
    """Tag each request with an id, harden the response, and emit access log + metrics."""

    async def middleware(request: Request, call_next: CallNext) -> Response:
        request_id = build_request_id(request, header_name=settings.REQUEST_ID_HEADER)
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[settings.REQUEST_ID_HEADER] = request_id
            apply_security_headers(response, settings=settings)
            return response
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            # Tracking URLs carry recipient-facing ids; log the route template, not the raw path.
            route = request.scope.get("route")
            route_path = getattr(route, "path", "unmatched")
            log_event(
                logger,
                "http.request.completed",
                request_id=request_id,
                method=request.method,
                path=route_path,
                status_code=status_code,
                duration_ms=duration_ms,
            )
            if settings.ENABLE_PROMETHEUS_METRICS:
                observe_http_request(
                    method=request.method,
                    path=route_path,
                    status_code=status_code,
                    duration_ms=duration_ms,
                )
            request_id_ctx.reset(token)

    return middleware
