from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from dataguard.security.context import LoginRequest, LoginResponse, LogoutRequest, RegisterRequest, UserContext
from dataguard.security.rules import ColumnSecurity, RowSecurity


class RequestLike(Protocol):
    """Anything exposing Starlette-style ``headers`` and ``cookies`` mappings."""

    headers: Any
    cookies: Any


class Authenticator(Protocol):
    def login(self, request: LoginRequest) -> LoginResponse:
        ...

    def logout(self, request: LogoutRequest) -> None:
        ...

    def authenticate(self, request: RequestLike) -> UserContext:
        ...


class ColumnSecurityProvider(Protocol):
    def get_column_security(self, user_id: int, schema: str, table: str) -> list[ColumnSecurity]:
        ...


class RowSecurityProvider(Protocol):
    def get_row_security(self, user_id: int, schema: str, table: str) -> RowSecurity:
        ...


class SecurityProvider(Authenticator, ColumnSecurityProvider, RowSecurityProvider, Protocol):
    """Authentication plus column and row rule lookups behind one object."""


@runtime_checkable
class Registrable(Protocol):
    def register(self, request: RegisterRequest) -> LoginResponse:
        ...


@runtime_checkable
class Refreshable(Protocol):
    def refresh_token(self, refresh_token: str) -> LoginResponse:
        ...


@runtime_checkable
class Validatable(Protocol):
    def validate_token(self, token: str) -> bool:
        ...


@runtime_checkable
class Cacheable(Protocol):
    def clear_cache(self, user_id: int, schema: str, table: str) -> None:
        ...
