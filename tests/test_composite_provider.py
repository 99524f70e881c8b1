from __future__ import annotations

import pytest

from dataguard.security.authenticators import DatabaseAuthenticator, HeaderAuthenticator
from dataguard.security.composite import CompositeSecurityProvider
from dataguard.security.context import LoginRequest
from dataguard.security.errors import AuthenticationFailed, CapabilityNotSupported, UpstreamFailure
from dataguard.security.providers import ConfigColumnSecurityProvider, ConfigRowSecurityProvider
from dataguard.security.rules import ColumnSecurity, RowSecurity


class CachingColumns(ConfigColumnSecurityProvider):
    def __init__(self) -> None:
        super().__init__({})
        self.cleared: list[tuple[int, str, str]] = []

    def clear_cache(self, user_id: int, schema: str, table: str) -> None:
        self.cleared.append((user_id, schema, table))


class BrokenRows:
    def get_row_security(self, user_id: int, schema: str, table: str) -> RowSecurity:
        return RowSecurity(schema=schema, tablename=table, user_id=user_id)

    def clear_cache(self, user_id: int, schema: str, table: str) -> None:
        raise RuntimeError("row cache offline")


def test_all_parts_are_required() -> None:
    columns = ConfigColumnSecurityProvider({})
    rows = ConfigRowSecurityProvider({})

    with pytest.raises(ValueError):
        CompositeSecurityProvider(None, columns, rows)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        CompositeSecurityProvider(HeaderAuthenticator(), None, rows)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        CompositeSecurityProvider(HeaderAuthenticator(), columns, None)  # type: ignore[arg-type]


def test_delegates_to_parts(make_request) -> None:
    columns = ConfigColumnSecurityProvider({"hr.employees": [ColumnSecurity("hr", "employees", ["salary"], "mask")]})
    provider = CompositeSecurityProvider(HeaderAuthenticator(), columns, ConfigRowSecurityProvider({}))

    assert provider.authenticate(make_request(x_user_id="12")).user_id == 12
    assert provider.get_column_security(12, "hr", "employees")[0].user_id == 12
    assert provider.get_row_security(12, "hr", "employees").template == ""
    with pytest.raises(AuthenticationFailed):
        provider.login(LoginRequest(username="ada", password="pw"))


def test_missing_capabilities_raise(make_request) -> None:
    provider = CompositeSecurityProvider(
        HeaderAuthenticator(), ConfigColumnSecurityProvider({}), ConfigRowSecurityProvider({})
    )

    assert not provider.supports("refresh_token")
    assert not provider.supports("validate_token")
    assert not provider.supports("clear_cache")
    with pytest.raises(CapabilityNotSupported):
        provider.refresh_token("token")
    with pytest.raises(CapabilityNotSupported):
        provider.validate_token("token")
    with pytest.raises(CapabilityNotSupported):
        provider.clear_cache(1, "hr", "employees")


def test_detects_optional_capabilities(store, executor) -> None:
    store.sessions["good"] = {"user_id": 4}
    columns = CachingColumns()
    provider = CompositeSecurityProvider(
        DatabaseAuthenticator(store, executor=executor), columns, ConfigRowSecurityProvider({})
    )

    assert provider.supports("refresh_token")
    assert provider.supports("validate_token")
    assert provider.validate_token("good") is True

    provider.clear_cache(4, "hr", "employees")
    assert columns.cleared == [(4, "hr", "employees")]


def test_clear_cache_aggregates_failures() -> None:
    columns = CachingColumns()
    provider = CompositeSecurityProvider(HeaderAuthenticator(), columns, BrokenRows())

    with pytest.raises(UpstreamFailure, match="row cache offline"):
        provider.clear_cache(1, "hr", "employees")
    assert columns.cleared == [(1, "hr", "employees")]
