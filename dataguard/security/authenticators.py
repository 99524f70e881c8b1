from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from jose import JWTError, jwt

from dataguard.core.config import get_settings
from dataguard.metrics import (
    observe_auth_failure,
    observe_background_task_failure,
    observe_session_cache_hit,
    observe_session_cache_miss,
)
from dataguard.security.context import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    RegisterRequest,
    UserContext,
)
from dataguard.security.errors import AuthenticationFailed, SecurityError, UpstreamFailure
from dataguard.security.interfaces import RequestLike
from dataguard.security.oauth2 import (
    OAuth2Config,
    OAuth2Mixin,
    facebook_oauth2_config,
    github_oauth2_config,
    google_oauth2_config,
    microsoft_oauth2_config,
)
from dataguard.security.session_cache import SessionCache
from dataguard.security.store import RuleStore, decode_json
from dataguard.security.tasks import BackgroundExecutor, get_background_executor


logger = logging.getLogger("dataguard.auth")

SESSION_COOKIE_NAME = "session_token"
SESSION_EXPIRES_SECONDS = 86400
_TOKEN_PREFIXES = ("Bearer ", "Token ")


def extract_tokens(request: RequestLike) -> tuple[list[str], str]:
    """Collect candidate session tokens and the lookup reference they came from.

    The ``Authorization`` header wins over the ``session_token`` cookie. The
    header may carry several comma separated ``Bearer``/``Token`` values.
    """

    header = request.headers.get("authorization")
    if header:
        tokens: list[str] = []
        for part in header.split(","):
            candidate = part.strip()
            for prefix in _TOKEN_PREFIXES:
                if candidate.startswith(prefix):
                    candidate = candidate[len(prefix) :].strip()
                    break
            if candidate:
                tokens.append(candidate)
        return tokens, "authenticate"

    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if cookie:
        return [cookie], "cookie"
    return [], ""


def _parse_int(value: str | None, default: int = 0) -> int:
    try:
        return int(value) if value else default
    except ValueError:
        return default


class HeaderAuthenticator:
    """Trusts identity headers set by an upstream proxy."""

    def login(self, request: LoginRequest) -> LoginResponse:
        raise AuthenticationFailed("header authentication does not support login")

    def logout(self, request: LogoutRequest) -> None:
        return None

    def authenticate(self, request: RequestLike) -> UserContext:
        raw_user_id = request.headers.get("x-user-id")
        if not raw_user_id:
            raise AuthenticationFailed("X-User-ID header required")
        try:
            user_id = int(raw_user_id)
        except ValueError as exc:
            raise AuthenticationFailed("invalid user ID") from exc

        return UserContext(
            user_id=user_id,
            user_name=request.headers.get("x-user-name", ""),
            user_level=_parse_int(request.headers.get("x-user-level")),
            session_id=request.headers.get("x-session-id", ""),
            remote_id=request.headers.get("x-remote-id", ""),
            email=request.headers.get("x-user-email", ""),
            roles=[role for role in request.headers.get("x-user-roles", "").split(",") if role],
        )


class DatabaseAuthenticator(OAuth2Mixin):
    """Session token authentication against the rule store with a TTL cache."""

    def __init__(
        self,
        store: RuleStore,
        *,
        session_cache: SessionCache | None = None,
        executor: BackgroundExecutor | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.sessions = session_cache or SessionCache(
            ttl_seconds=settings.session_cache_ttl_seconds,
            max_entries=settings.session_cache_max_entries,
        )
        self._executor = executor or get_background_executor()
        self._init_oauth2()

    def login(self, request: LoginRequest) -> LoginResponse:
        payload = self.store.login(request.to_payload()).unwrap("login failed", AuthenticationFailed)
        response = LoginResponse.from_payload(decode_json(payload) or {})
        logger.info("auth.login", extra={"user_id": response.user.user_id})
        return response

    def register(self, request: RegisterRequest) -> LoginResponse:
        payload = self.store.register(request.to_payload()).unwrap("registration failed")
        response = LoginResponse.from_payload(decode_json(payload) or {})
        logger.info("auth.register", extra={"user_id": response.user.user_id})
        return response

    def logout(self, request: LogoutRequest) -> None:
        self.store.logout(request.token, request.user_id).unwrap("logout failed")
        self.sessions.delete(request.token)
        logger.info("auth.logout", extra={"user_id": request.user_id})

    def authenticate(self, request: RequestLike) -> UserContext:
        tokens, reference = extract_tokens(request)
        if not tokens:
            observe_auth_failure("missing_token")
            raise AuthenticationFailed("session token required")
        if len(tokens) > 1:
            logger.warning("auth.multiple_tokens", extra={"token_count": len(tokens)})

        last_error: SecurityError = AuthenticationFailed("session token required")
        for token in tokens:
            try:
                user = self._lookup(token, reference)
            except SecurityError as exc:
                last_error = exc
                continue
            self._executor.submit("session_activity", self._touch_session, token, user)
            return user

        observe_auth_failure("invalid_token")
        raise last_error

    def refresh_token(self, refresh_token: str) -> LoginResponse:
        payload = self.store.session(refresh_token, "refresh").unwrap("invalid refresh token", AuthenticationFailed)
        user = UserContext.from_payload(decode_json(payload) or {})

        refreshed = self.store.refresh_session(refresh_token, user.to_payload()).unwrap("failed to refresh token")
        new_user = UserContext.from_payload(decode_json(refreshed) or {})
        if not new_user.session_id:
            raise UpstreamFailure("refresh did not return a new session")

        self.sessions.delete(refresh_token)
        return LoginResponse(token=new_user.session_id, user=new_user, expires_in=SESSION_EXPIRES_SECONDS)

    def validate_token(self, token: str) -> bool:
        try:
            self._lookup(token, "validate")
        except AuthenticationFailed:
            return False
        return True

    def clear_cache(self, token: str = "") -> None:
        if token:
            self.sessions.delete(token)
        else:
            self.sessions.clear()

    def clear_user_cache(self, user_id: int) -> int:
        removed = self.sessions.clear_user(user_id)
        logger.debug("auth.user_cache_cleared", extra={"user_id": user_id, "token_count": removed})
        return removed

    def _lookup(self, token: str, reference: str) -> UserContext:
        cached = self.sessions.get(token)
        if cached is not None:
            observe_session_cache_hit()
            return cached

        observe_session_cache_miss()
        logger.debug("auth.session_cache_miss", extra={"reference": reference})
        payload = self.store.session(token, reference).unwrap("invalid or expired session", AuthenticationFailed)
        user = UserContext.from_payload(decode_json(payload) or {})
        self.sessions.set(token, user)
        return user

    def _touch_session(self, token: str, user: UserContext) -> None:
        try:
            self.store.session_update(token, user.to_payload()).unwrap("session update failed")
        except SecurityError as exc:
            observe_background_task_failure("session_activity")
            logger.warning("auth.session_activity_failed", extra={"user_id": user.user_id, "error": str(exc)})


class JWTAuthenticator:
    """Signed JWT bearer tokens; logout revokes the token in the rule store."""

    def __init__(self, store: RuleStore, *, secret: str | None = None, algorithm: str | None = None) -> None:
        settings = get_settings()
        self.store = store
        self._secret = secret or settings.jwt_secret
        self._algorithm = algorithm or settings.jwt_algorithm
        self._expires_seconds = settings.jwt_expires_seconds

    def login(self, request: LoginRequest) -> LoginResponse:
        payload = self.store.jwt_login(request.username, request.password).unwrap(
            "invalid credentials", AuthenticationFailed
        )
        record: Mapping[str, Any] = decode_json(payload) or {}
        user = UserContext(
            user_id=int(record.get("id") or record.get("user_id") or 0),
            user_name=str(record.get("username") or record.get("user_name") or ""),
            email=str(record.get("email") or ""),
            user_level=int(record.get("user_level") or 0),
            roles=UserContext.from_payload({"roles": record.get("roles")}).roles,
        )
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._expires_seconds)
        claims = {
            "sub": str(user.user_id),
            "user_name": user.user_name,
            "email": user.email,
            "user_level": user.user_level,
            "roles": user.roles,
            "exp": expires_at,
        }
        token = jwt.encode(claims, self._secret, algorithm=self._algorithm)
        return LoginResponse(token=token, user=user, expires_in=self._expires_seconds)

    def logout(self, request: LogoutRequest) -> None:
        self.store.jwt_logout(request.token, request.user_id).unwrap("logout failed")

    def authenticate(self, request: RequestLike) -> UserContext:
        header = request.headers.get("authorization", "")
        if not header:
            raise AuthenticationFailed("authorization header required")
        if not header.startswith("Bearer "):
            raise AuthenticationFailed("bearer token required")
        token = header[len("Bearer ") :].strip()

        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as exc:
            observe_auth_failure("invalid_jwt")
            raise AuthenticationFailed("invalid token") from exc

        if self.store.is_token_revoked(token).unwrap("revocation check failed"):
            observe_auth_failure("revoked_jwt")
            raise AuthenticationFailed("token has been revoked")

        roles = claims.get("roles", [])
        return UserContext(
            user_id=int(claims.get("sub", 0)),
            user_name=str(claims.get("user_name", "")),
            email=str(claims.get("email", "")),
            user_level=int(claims.get("user_level", 0)),
            roles=[str(role) for role in roles] if isinstance(roles, list) else [],
            claims=dict(claims),
        )


def new_database_authenticator(store: RuleStore, **kwargs: Any) -> DatabaseAuthenticator:
    return DatabaseAuthenticator(store, **kwargs)


def new_google_authenticator(
    client_id: str, client_secret: str, redirect_url: str, store: RuleStore, *, http_client: httpx.Client | None = None
) -> DatabaseAuthenticator:
    config = google_oauth2_config(client_id, client_secret, redirect_url)
    return DatabaseAuthenticator(store).with_oauth2(config, http_client=http_client)


def new_github_authenticator(
    client_id: str, client_secret: str, redirect_url: str, store: RuleStore, *, http_client: httpx.Client | None = None
) -> DatabaseAuthenticator:
    config = github_oauth2_config(client_id, client_secret, redirect_url)
    return DatabaseAuthenticator(store).with_oauth2(config, http_client=http_client)


def new_microsoft_authenticator(
    client_id: str, client_secret: str, redirect_url: str, store: RuleStore, *, http_client: httpx.Client | None = None
) -> DatabaseAuthenticator:
    config = microsoft_oauth2_config(client_id, client_secret, redirect_url)
    return DatabaseAuthenticator(store).with_oauth2(config, http_client=http_client)


def new_facebook_authenticator(
    client_id: str, client_secret: str, redirect_url: str, store: RuleStore, *, http_client: httpx.Client | None = None
) -> DatabaseAuthenticator:
    config = facebook_oauth2_config(client_id, client_secret, redirect_url)
    return DatabaseAuthenticator(store).with_oauth2(config, http_client=http_client)


def new_multi_provider_authenticator(
    store: RuleStore, configs: Iterable[OAuth2Config], *, http_client: httpx.Client | None = None
) -> DatabaseAuthenticator:
    authenticator = DatabaseAuthenticator(store)
    for config in configs:
        authenticator.with_oauth2(config, http_client=http_client)
    return authenticator
