from __future__ import annotations

from collections.abc import Callable, Generator, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from dataguard import audit
from dataguard.core.config import get_settings
from dataguard.security.fields import clear_descriptor_cache
from dataguard.security.store import StoreResult
from dataguard.security.tasks import BackgroundExecutor


@dataclass
class FakeRequest:
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)


class FakeRuleStore:
    """In-memory stand-in for the stored procedure backed rule store."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.sessions: dict[str, dict[str, Any]] = {}
        self.accounts: dict[str, dict[str, Any]] = {}
        self.revoked: set[str] = set()
        self.column_rules: dict[str, list[dict[str, Any]]] = {}
        self.row_rules: dict[str, dict[str, Any]] = {}
        self.oauth_user_id = 42
        self.oauth_users: list[dict[str, Any]] = []
        self.oauth_sessions: list[dict[str, Any]] = []
        self.refresh_tokens: dict[str, dict[str, Any]] = {}
        self.refresh_updates: list[dict[str, Any]] = []
        self.fail_session_update = False

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        return [args for called, args in self.calls if called == name]

    def login(self, request: Mapping[str, Any]) -> StoreResult:
        self.calls.append(("login", (request["username"],)))
        account = self.accounts.get(request["username"])
        if account is None or account["password"] != request["password"]:
            return StoreResult.fail("invalid credentials")
        token = f"tok-{request['username']}"
        user = {"user_id": account["user_id"], "user_name": request["username"], "session_id": token}
        self.sessions[token] = user
        return StoreResult.ok({"token": token, "user": user, "expires_in": 3600})

    def register(self, request: Mapping[str, Any]) -> StoreResult:
        self.calls.append(("register", (request["username"],)))
        user = {"user_id": 99, "user_name": request["username"], "email": request.get("email", "")}
        return StoreResult.ok({"token": f"tok-{request['username']}", "user": user})

    def logout(self, token: str, user_id: int) -> StoreResult:
        self.calls.append(("logout", (token, user_id)))
        self.sessions.pop(token, None)
        return StoreResult.ok()

    def session(self, token: str, reference: str) -> StoreResult:
        self.calls.append(("session", (token, reference)))
        user = self.sessions.get(token)
        if user is None:
            return StoreResult.fail(f"unknown session {token}")
        return StoreResult.ok(dict(user))

    def session_update(self, token: str, user: Mapping[str, Any]) -> StoreResult:
        self.calls.append(("session_update", (token, user["user_id"])))
        if self.fail_session_update:
            return StoreResult.fail("session table locked")
        return StoreResult.ok(dict(user))

    def refresh_session(self, old_token: str, user: Mapping[str, Any]) -> StoreResult:
        self.calls.append(("refresh_session", (old_token,)))
        if old_token not in self.sessions:
            return StoreResult.fail("invalid refresh token")
        new_token = f"{old_token}-next"
        payload = {**user, "session_id": new_token}
        self.sessions[new_token] = payload
        del self.sessions[old_token]
        return StoreResult.ok(payload)

    def jwt_login(self, username: str, password: str) -> StoreResult:
        self.calls.append(("jwt_login", (username,)))
        account = self.accounts.get(username)
        if account is None or account["password"] != password:
            return StoreResult.fail("invalid credentials")
        return StoreResult.ok(
            {"id": account["user_id"], "username": username, "email": account.get("email", ""), "roles": "admin,user"}
        )

    def jwt_logout(self, token: str, user_id: int) -> StoreResult:
        self.calls.append(("jwt_logout", (user_id,)))
        self.revoked.add(token)
        return StoreResult.ok()

    def is_token_revoked(self, token: str) -> StoreResult:
        self.calls.append(("is_token_revoked", ()))
        return StoreResult.ok(token in self.revoked)

    def column_security(self, user_id: int, schema: str, table: str) -> StoreResult:
        self.calls.append(("column_security", (user_id, schema, table)))
        return StoreResult.ok(self.column_rules.get(f"{schema}.{table}", []))

    def row_security(self, user_id: int, schema: str, table: str) -> StoreResult:
        self.calls.append(("row_security", (user_id, schema, table)))
        return StoreResult.ok(self.row_rules.get(f"{schema}.{table}", {"template": "", "block": False}))

    def oauth_get_or_create_user(self, user: Mapping[str, Any]) -> StoreResult:
        self.calls.append(("oauth_get_or_create_user", (user["username"],)))
        self.oauth_users.append(dict(user))
        return StoreResult.ok(self.oauth_user_id)

    def oauth_create_session(self, session: Mapping[str, Any]) -> StoreResult:
        self.calls.append(("oauth_create_session", (session["user_id"],)))
        self.oauth_sessions.append(dict(session))
        return StoreResult.ok()

    def oauth_get_refresh_token(self, refresh_token: str) -> StoreResult:
        self.calls.append(("oauth_get_refresh_token", ()))
        session = self.refresh_tokens.get(refresh_token)
        if session is None:
            return StoreResult.fail("invalid or expired refresh token")
        return StoreResult.ok(dict(session))

    def oauth_update_refresh_token(self, update: Mapping[str, Any]) -> StoreResult:
        self.calls.append(("oauth_update_refresh_token", (update["user_id"],)))
        self.refresh_updates.append(dict(update))
        return StoreResult.ok()

    def oauth_get_user(self, user_id: int) -> StoreResult:
        self.calls.append(("oauth_get_user", (user_id,)))
        return StoreResult.ok({"user_id": user_id, "user_name": "ada", "email": "ada@example.com"})


@pytest.fixture(autouse=True)
def reset_state() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.clear()
    clear_descriptor_cache()
    yield
    get_settings.cache_clear()
    audit.clear()


@pytest.fixture()
def store() -> FakeRuleStore:
    return FakeRuleStore()


@pytest.fixture()
def executor() -> Generator[BackgroundExecutor, None, None]:
    background = BackgroundExecutor(workers=2, queue_size=16)
    yield background
    background.drain(timeout=5)
    background.shutdown()


@pytest.fixture()
def make_request() -> Callable[..., FakeRequest]:
    def factory(authorization: str | None = None, cookie: str | None = None, **headers: str) -> FakeRequest:
        request = FakeRequest(headers={key.replace("_", "-"): value for key, value in headers.items()})
        if authorization is not None:
            request.headers["authorization"] = authorization
        if cookie is not None:
            request.cookies["session_token"] = cookie
        return request

    return factory
