from __future__ import annotations

import logging
from collections.abc import Callable

from dataguard.security.context import LoginRequest, LoginResponse, LogoutRequest, UserContext
from dataguard.security.errors import CapabilityNotSupported, UpstreamFailure
from dataguard.security.interfaces import (
    Authenticator,
    Cacheable,
    ColumnSecurityProvider,
    Refreshable,
    RequestLike,
    RowSecurityProvider,
    Validatable,
)
from dataguard.security.rules import ColumnSecurity, RowSecurity


logger = logging.getLogger("dataguard.rules")


class CompositeSecurityProvider:
    """Combines an authenticator with separate column and row rule providers.

    Optional capabilities are resolved once here; calling one the underlying
    providers lack raises ``CapabilityNotSupported``.
    """

    def __init__(
        self,
        auth: Authenticator,
        col_sec: ColumnSecurityProvider,
        row_sec: RowSecurityProvider,
    ) -> None:
        if auth is None:
            raise ValueError("authenticator is required")
        if col_sec is None:
            raise ValueError("column security provider is required")
        if row_sec is None:
            raise ValueError("row security provider is required")
        self.auth = auth
        self.col_sec = col_sec
        self.row_sec = row_sec

        self._refresh: Callable[[str], LoginResponse] | None = (
            auth.refresh_token if isinstance(auth, Refreshable) else None
        )
        self._validate: Callable[[str], bool] | None = auth.validate_token if isinstance(auth, Validatable) else None
        self._clear_column_cache: Callable[[int, str, str], None] | None = (
            col_sec.clear_cache if isinstance(col_sec, Cacheable) else None
        )
        self._clear_row_cache: Callable[[int, str, str], None] | None = (
            row_sec.clear_cache if isinstance(row_sec, Cacheable) and row_sec is not col_sec else None
        )

    def supports(self, capability: str) -> bool:
        available = {
            "refresh_token": self._refresh is not None,
            "validate_token": self._validate is not None,
            "clear_cache": self._clear_column_cache is not None or self._clear_row_cache is not None,
        }
        return available.get(capability, False)

    def login(self, request: LoginRequest) -> LoginResponse:
        return self.auth.login(request)

    def logout(self, request: LogoutRequest) -> None:
        self.auth.logout(request)

    def authenticate(self, request: RequestLike) -> UserContext:
        return self.auth.authenticate(request)

    def get_column_security(self, user_id: int, schema: str, table: str) -> list[ColumnSecurity]:
        return self.col_sec.get_column_security(user_id, schema, table)

    def get_row_security(self, user_id: int, schema: str, table: str) -> RowSecurity:
        return self.row_sec.get_row_security(user_id, schema, table)

    def refresh_token(self, refresh_token: str) -> LoginResponse:
        if self._refresh is None:
            raise CapabilityNotSupported("refresh_token")
        return self._refresh(refresh_token)

    def validate_token(self, token: str) -> bool:
        if self._validate is None:
            raise CapabilityNotSupported("validate_token")
        return self._validate(token)

    def clear_cache(self, user_id: int, schema: str, table: str) -> None:
        if self._clear_column_cache is None and self._clear_row_cache is None:
            raise CapabilityNotSupported("clear_cache")

        failures: list[str] = []
        for side, clear in (("column", self._clear_column_cache), ("row", self._clear_row_cache)):
            if clear is None:
                continue
            try:
                clear(user_id, schema, table)
            except Exception as exc:  # noqa: BLE001 - both sides are attempted, errors are aggregated
                logger.warning("rules.clear_cache_failed", extra={"schema": schema, "table": table, "error": str(exc)})
                failures.append(f"{side} cache: {exc}")
        if failures:
            raise UpstreamFailure("; ".join(failures))
