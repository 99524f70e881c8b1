from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dataguard.core.config import get_settings
from dataguard.core.database import create_session_factory
from dataguard.metrics import observe_rule_store_call
from dataguard.otel import get_tracer, tag_correlation_id
from dataguard.security.errors import SecurityError, UpstreamFailure


logger = logging.getLogger("dataguard.store")
tracer = get_tracer("dataguard.store")


@dataclass(slots=True)
class StoreResult:
    """The ``(success, error, payload)`` triple every rule store call returns."""

    success: bool
    error: str | None = None
    payload: Any = None

    @classmethod
    def ok(cls, payload: Any = None) -> "StoreResult":
        return cls(success=True, payload=payload)

    @classmethod
    def fail(cls, error: str) -> "StoreResult":
        return cls(success=False, error=error)

    def unwrap(self, default_error: str, error_cls: type[SecurityError] = UpstreamFailure) -> Any:
        if not self.success:
            raise error_cls(self.error or default_error)
        return self.payload


class RuleStore(Protocol):
    """Persistence contract for sessions, OAuth2 sessions and security rules."""

    def login(self, request: Mapping[str, Any]) -> StoreResult:
        ...

    def register(self, request: Mapping[str, Any]) -> StoreResult:
        ...

    def logout(self, token: str, user_id: int) -> StoreResult:
        ...

    def session(self, token: str, reference: str) -> StoreResult:
        ...

    def session_update(self, token: str, user: Mapping[str, Any]) -> StoreResult:
        ...

    def refresh_session(self, old_token: str, user: Mapping[str, Any]) -> StoreResult:
        ...

    def jwt_login(self, username: str, password: str) -> StoreResult:
        ...

    def jwt_logout(self, token: str, user_id: int) -> StoreResult:
        ...

    def is_token_revoked(self, token: str) -> StoreResult:
        ...

    def column_security(self, user_id: int, schema: str, table: str) -> StoreResult:
        ...

    def row_security(self, user_id: int, schema: str, table: str) -> StoreResult:
        ...

    def oauth_get_or_create_user(self, user: Mapping[str, Any]) -> StoreResult:
        ...

    def oauth_create_session(self, session: Mapping[str, Any]) -> StoreResult:
        ...

    def oauth_get_refresh_token(self, refresh_token: str) -> StoreResult:
        ...

    def oauth_update_refresh_token(self, update: Mapping[str, Any]) -> StoreResult:
        ...

    def oauth_get_user(self, user_id: int) -> StoreResult:
        ...


class TwoFactorStore(Protocol):
    """Persistence contract for two-factor secrets and hashed backup codes."""

    def totp_enable(self, user_id: int, secret: str, hashed_codes: list[str]) -> StoreResult:
        ...

    def totp_disable(self, user_id: int) -> StoreResult:
        ...

    def totp_get_status(self, user_id: int) -> StoreResult:
        ...

    def totp_get_secret(self, user_id: int) -> StoreResult:
        ...

    def totp_regenerate_backup_codes(self, user_id: int, hashed_codes: list[str]) -> StoreResult:
        ...

    def totp_validate_backup_code(self, user_id: int, code_hash: str) -> StoreResult:
        ...


def decode_json(value: Any) -> Any:
    """Decode a JSON column value. Malformed text raises ``UpstreamFailure``."""

    if value is None:
        return None
    try:
        if isinstance(value, (bytes, bytearray, memoryview)):
            value = bytes(value).decode("utf-8")
        if isinstance(value, str):
            if not value.strip():
                return None
            return json.loads(value)
    except ValueError as exc:
        raise UpstreamFailure("malformed JSON payload") from exc
    return value


class SqlRuleStore:
    """Rule store backed by the ``resolvespec_*`` stored procedures."""

    def __init__(
        self, session_factory: Callable[[], Session] | None = None, *, timeout_seconds: float | None = None
    ) -> None:
        self._session_factory = session_factory or create_session_factory()
        if timeout_seconds is None:
            timeout_seconds = get_settings().rule_store_timeout_seconds
        self._timeout_seconds = timeout_seconds

    def login(self, request: Mapping[str, Any]) -> StoreResult:
        return self._call(
            "login",
            "SELECT p_success, p_error, p_data FROM resolvespec_login(CAST(:request AS jsonb))",
            {"request": json.dumps(dict(request), default=str)},
        )

    def register(self, request: Mapping[str, Any]) -> StoreResult:
        return self._call(
            "register",
            "SELECT p_success, p_error, p_data FROM resolvespec_register(CAST(:request AS jsonb))",
            {"request": json.dumps(dict(request), default=str)},
        )

    def logout(self, token: str, user_id: int) -> StoreResult:
        return self._call(
            "logout",
            "SELECT p_success, p_error, p_data FROM resolvespec_logout(CAST(:request AS jsonb))",
            {"request": json.dumps({"token": token, "user_id": user_id})},
        )

    def session(self, token: str, reference: str) -> StoreResult:
        return self._call(
            "session",
            "SELECT p_success, p_error, p_user FROM resolvespec_session(:token, :reference)",
            {"token": token, "reference": reference},
        )

    def session_update(self, token: str, user: Mapping[str, Any]) -> StoreResult:
        return self._call(
            "session_update",
            "SELECT p_success, p_error, p_user FROM resolvespec_session_update(:token, CAST(:user AS jsonb))",
            {"token": token, "user": json.dumps(dict(user), default=str)},
        )

    def refresh_session(self, old_token: str, user: Mapping[str, Any]) -> StoreResult:
        return self._call(
            "refresh_session",
            "SELECT p_success, p_error, p_user FROM resolvespec_refresh_token(:token, CAST(:user AS jsonb))",
            {"token": old_token, "user": json.dumps(dict(user), default=str)},
        )

    def jwt_login(self, username: str, password: str) -> StoreResult:
        return self._call(
            "jwt_login",
            "SELECT p_success, p_error, p_user FROM resolvespec_jwt_login(:username, :password)",
            {"username": username, "password": password},
        )

    def jwt_logout(self, token: str, user_id: int) -> StoreResult:
        return self._call(
            "jwt_logout",
            "SELECT p_success, p_error FROM resolvespec_jwt_logout(:token, :user_id)",
            {"token": token, "user_id": user_id},
        )

    def is_token_revoked(self, token: str) -> StoreResult:
        def run(session: Session) -> StoreResult:
            row = session.execute(
                text("SELECT 1 FROM token_blacklist WHERE token = :token AND expires_at > CURRENT_TIMESTAMP"),
                {"token": token},
            ).first()
            return StoreResult.ok(row is not None)

        return self._run("is_token_revoked", run)

    def column_security(self, user_id: int, schema: str, table: str) -> StoreResult:
        return self._call(
            "column_security",
            "SELECT p_success, p_error, p_rules FROM resolvespec_column_security(:user_id, :schema, :table)",
            {"user_id": user_id, "schema": schema, "table": table},
        )

    def row_security(self, user_id: int, schema: str, table: str) -> StoreResult:
        def run(session: Session) -> StoreResult:
            row = session.execute(
                text("SELECT p_template, p_block FROM resolvespec_row_security(:schema, :table, :user_id)"),
                {"schema": schema, "table": table, "user_id": user_id},
            ).one()
            return StoreResult.ok({"template": row[0] or "", "block": bool(row[1])})

        return self._run("row_security", run)

    def oauth_get_or_create_user(self, user: Mapping[str, Any]) -> StoreResult:
        return self._call(
            "oauth_get_or_create_user",
            "SELECT p_success, p_error, p_user_id FROM resolvespec_oauth_getorcreateuser(CAST(:user AS jsonb))",
            {"user": json.dumps(dict(user), default=str)},
            decode=False,
        )

    def oauth_create_session(self, session: Mapping[str, Any]) -> StoreResult:
        return self._call(
            "oauth_create_session",
            "SELECT p_success, p_error FROM resolvespec_oauth_createsession(CAST(:session AS jsonb))",
            {"session": json.dumps(dict(session), default=str)},
        )

    def oauth_get_refresh_token(self, refresh_token: str) -> StoreResult:
        return self._call(
            "oauth_get_refresh_token",
            "SELECT p_success, p_error, p_data FROM resolvespec_oauth_getrefreshtoken(:refresh_token)",
            {"refresh_token": refresh_token},
        )

    def oauth_update_refresh_token(self, update: Mapping[str, Any]) -> StoreResult:
        return self._call(
            "oauth_update_refresh_token",
            "SELECT p_success, p_error FROM resolvespec_oauth_updaterefreshtoken(CAST(:update AS jsonb))",
            {"update": json.dumps(dict(update), default=str)},
        )

    def oauth_get_user(self, user_id: int) -> StoreResult:
        return self._call(
            "oauth_get_user",
            "SELECT p_success, p_error, p_data FROM resolvespec_oauth_getuser(:user_id)",
            {"user_id": user_id},
        )

    def totp_enable(self, user_id: int, secret: str, hashed_codes: list[str]) -> StoreResult:
        return self._call(
            "totp_enable",
            "SELECT p_success, p_error FROM resolvespec_totp_enable(:user_id, :secret, CAST(:codes AS jsonb))",
            {"user_id": user_id, "secret": secret, "codes": json.dumps(hashed_codes)},
        )

    def totp_disable(self, user_id: int) -> StoreResult:
        return self._call(
            "totp_disable",
            "SELECT p_success, p_error FROM resolvespec_totp_disable(:user_id)",
            {"user_id": user_id},
        )

    def totp_get_status(self, user_id: int) -> StoreResult:
        return self._call(
            "totp_get_status",
            "SELECT p_success, p_error, p_enabled FROM resolvespec_totp_get_status(:user_id)",
            {"user_id": user_id},
            decode=False,
        )

    def totp_get_secret(self, user_id: int) -> StoreResult:
        return self._call(
            "totp_get_secret",
            "SELECT p_success, p_error, p_secret FROM resolvespec_totp_get_secret(:user_id)",
            {"user_id": user_id},
            decode=False,
        )

    def totp_regenerate_backup_codes(self, user_id: int, hashed_codes: list[str]) -> StoreResult:
        return self._call(
            "totp_regenerate_backup_codes",
            "SELECT p_success, p_error FROM resolvespec_totp_regenerate_backup_codes(:user_id, CAST(:codes AS jsonb))",
            {"user_id": user_id, "codes": json.dumps(hashed_codes)},
        )

    def totp_validate_backup_code(self, user_id: int, code_hash: str) -> StoreResult:
        return self._call(
            "totp_validate_backup_code",
            "SELECT p_success, p_error, p_valid FROM resolvespec_totp_validate_backup_code(:user_id, :code_hash)",
            {"user_id": user_id, "code_hash": code_hash},
            decode=False,
        )

    def _call(self, operation: str, statement: str, params: dict[str, Any], *, decode: bool = True) -> StoreResult:
        def run(session: Session) -> StoreResult:
            row = session.execute(text(statement), params).one()
            success = bool(row[0])
            error = row[1]
            payload = row[2] if len(row) > 2 else None
            if not success:
                return StoreResult.fail(str(error) if error else f"{operation} failed")
            return StoreResult.ok(decode_json(payload) if decode else payload)

        return self._run(operation, run)

    def _run(self, operation: str, run: Callable[[Session], StoreResult]) -> StoreResult:
        started = time.perf_counter()
        with tracer.start_as_current_span(f"rule_store.{operation}") as span:
            tag_correlation_id(span)
            span.set_attribute("rule_store.operation", operation)
            session = self._session_factory()
            try:
                self._apply_timeout(session)
                result = run(session)
                session.commit()
                return result
            except (SQLAlchemyError, ValueError, UpstreamFailure) as exc:
                session.rollback()
                span.record_exception(exc)
                logger.warning("rule_store.call_failed", extra={"operation": operation, "error": str(exc)})
                raise UpstreamFailure(f"rule store {operation} failed") from exc
            finally:
                session.close()
                observe_rule_store_call(operation, time.perf_counter() - started)

    def _apply_timeout(self, session: Session) -> None:
        if self._timeout_seconds <= 0:
            return
        bind = session.get_bind()
        if bind.dialect.name == "postgresql":
            session.execute(text(f"SET LOCAL statement_timeout = {int(self._timeout_seconds * 1000)}"))
