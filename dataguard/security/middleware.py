from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from dataguard.context import get_correlation_id, reset_current_user_id, set_current_user_id
from dataguard.core.config import get_settings
from dataguard.metrics import generate_metrics_payload, metrics_content_type
from dataguard.middleware.correlation_id import CorrelationIdMiddleware
from dataguard.middleware.request_logging import RequestLoggingMiddleware
from dataguard.otel import setup_otel
from dataguard.security.cache import SecurityList
from dataguard.security.context import UserContext
from dataguard.security.errors import SecurityError
from dataguard.security.interfaces import Authenticator


logger = logging.getLogger("dataguard.auth")


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticates every request and exposes the result on ``request.state``.

    Skipped paths and ``optional`` mode fall back to a guest context instead of
    answering 401.
    """

    def __init__(
        self,
        app: ASGIApp,
        authenticator: Authenticator,
        security_list: SecurityList | None = None,
        *,
        optional: bool = False,
        skip_paths: Iterable[str] = (),
    ) -> None:
        super().__init__(app)
        self.authenticator = authenticator
        self.security_list = security_list
        self.optional = optional
        self.skip_paths = frozenset(skip_paths)

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.security_list = self.security_list
        remote_id = request.client.host if request.client else ""

        if request.url.path in self.skip_paths:
            user = UserContext.guest(remote_id)
        else:
            try:
                user = await run_in_threadpool(self.authenticator.authenticate, request)
            except SecurityError as exc:
                if not self.optional:
                    return _unauthenticated(request, str(exc))
                user = UserContext.guest(remote_id)

        request.state.user = user
        token = set_current_user_id(user.user_id)
        try:
            return await call_next(request)
        finally:
            reset_current_user_id(token)


def _unauthenticated(request: Request, message: str) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    logger.info("auth.rejected", extra={"path": request.url.path, "error": message})
    response = JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={
            "code": "UNAUTHENTICATED",
            "message": message,
            "details": None,
            "correlation_id": correlation_id,
        },
    )
    response.headers["X-Correlation-Id"] = correlation_id
    return response


def get_current_user(request: Request) -> UserContext:
    user = getattr(request.state, "user", None)
    if isinstance(user, UserContext):
        return user
    remote_id = request.client.host if request.client else ""
    return UserContext.guest(remote_id)


def require_authenticated_user(request: Request) -> UserContext:
    user = get_current_user(request)
    if user.is_guest:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="authentication required")
    return user


def metrics_endpoint(user: UserContext = Depends(require_authenticated_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


def install_security(
    app: FastAPI,
    authenticator: Authenticator,
    security_list: SecurityList | None = None,
    *,
    optional: bool = False,
    skip_paths: Iterable[str] = (),
) -> FastAPI:
    """Wire authentication, request logging, correlation ids and ``/metrics`` into ``app``.

    Middleware added last runs first, so correlation ids are bound before the
    request is logged and the caller authenticated.
    """

    app.add_middleware(
        AuthMiddleware,
        authenticator=authenticator,
        security_list=security_list,
        optional=optional,
        skip_paths=tuple(skip_paths),
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], tags=["system"])

    settings = get_settings()
    if settings.otel_enabled:
        setup_otel(settings.app_name, True)
    return app
