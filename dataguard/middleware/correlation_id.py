from __future__ import annotations

import logging
import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp

from dataguard.context import reset_correlation_id, set_correlation_id
from dataguard.otel import tag_correlation_id


logger = logging.getLogger("dataguard.request")

CORRELATION_HEADER = "x-correlation-id"
_SAFE_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def resolve_correlation_id(raw: str | None) -> str:
    """Keep a caller supplied id only when it is short and log safe."""

    if raw and _SAFE_ID.fullmatch(raw):
        return raw
    if raw:
        logger.warning("request.correlation_id_rejected", extra={"error": raw[:64]})
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, header_name: str = CORRELATION_HEADER) -> None:
        super().__init__(app)
        self.header_name = header_name.lower()

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(self.header_name))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        tag_correlation_id(trace.get_current_span())
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[self.header_name] = correlation_id
        return response
