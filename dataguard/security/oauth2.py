from __future__ import annotations

import base64
import dataclasses
import logging
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from dataguard.core.config import get_settings
from dataguard.metrics import observe_oauth2_state_rejection
from dataguard.otel import get_tracer, tag_correlation_id
from dataguard.security.context import LoginResponse, UserContext
from dataguard.security.errors import AuthenticationFailed, ProviderNotFound, StateFailure, UpstreamFailure
from dataguard.security.store import RuleStore, decode_json


logger = logging.getLogger("dataguard.oauth2")
tracer = get_tracer("dataguard.oauth2")

DEFAULT_PROVIDER_NAME = "oauth2"

UserInfoParser = Callable[[dict[str, Any]], UserContext]


@dataclass(slots=True)
class OAuth2Config:
    client_id: str
    client_secret: str
    redirect_url: str
    auth_url: str
    token_url: str
    user_info_url: str
    scopes: list[str] = field(default_factory=list)
    provider_name: str = DEFAULT_PROVIDER_NAME
    user_info_parser: UserInfoParser | None = None


@dataclass(slots=True)
class OAuth2Token:
    access_token: str
    refresh_token: str = ""
    token_type: str = "Bearer"
    expires_at: datetime | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "OAuth2Token":
        access_token = data.get("access_token")
        if not access_token:
            raise UpstreamFailure(str(data.get("error_description") or data.get("error") or "no access token issued"))
        expires_at = None
        expires_in = data.get("expires_in")
        if expires_in not in (None, ""):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        return cls(
            access_token=str(access_token),
            refresh_token=str(data.get("refresh_token") or ""),
            token_type=str(data.get("token_type") or "Bearer"),
            expires_at=expires_at,
        )


def generate_token() -> str:
    """32 random bytes, URL-safe base64. Used for CSRF states and session tokens."""

    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")


def default_user_info_parser(info: dict[str, Any]) -> UserContext:
    """Map standard OIDC/GitHub user info onto a ``UserContext``.

    The user name is taken from ``login``, then ``name``, then the local part
    of ``email``.
    """

    user_name = ""
    email = info.get("email") if isinstance(info.get("email"), str) else ""
    if email:
        user_name = email.split("@")[0]
    if isinstance(info.get("name"), str) and info["name"]:
        user_name = info["name"]
    if isinstance(info.get("login"), str) and info["login"]:
        user_name = info["login"]
    if not user_name:
        raise UpstreamFailure("could not extract username from user info")

    remote_id = info.get("sub")
    return UserContext(
        user_id=0,
        user_name=user_name,
        email=email or "",
        remote_id=remote_id if isinstance(remote_id, str) else "",
        roles=["user"],
        claims=dict(info),
    )


class OAuth2Provider:
    """One registered OAuth2 client plus its private CSRF state table."""

    def __init__(
        self,
        config: OAuth2Config,
        *,
        http_client: httpx.Client | None = None,
        state_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.config = config
        self.name = config.provider_name
        self.parser: UserInfoParser = config.user_info_parser or default_user_info_parser
        self._http = http_client or httpx.Client(timeout=settings.oauth2_http_timeout_seconds)
        self._owns_http = http_client is None
        self._state_ttl = state_ttl_seconds if state_ttl_seconds is not None else settings.oauth2_state_ttl_seconds
        self._clock = clock
        self._states: dict[str, float] = {}
        self._states_lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    def auth_code_url(self, state: str) -> str:
        with self._states_lock:
            self._states[state] = self._clock() + self._state_ttl

        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_url,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "state": state,
            "access_type": "offline",
        }
        separator = "&" if "?" in self.config.auth_url else "?"
        return f"{self.config.auth_url}{separator}{urlencode(params)}"

    def consume_state(self, state: str) -> bool:
        """Atomically remove ``state`` and report whether it was still valid."""

        with self._states_lock:
            expires_at = self._states.pop(state, None)
        return expires_at is not None and self._clock() < expires_at

    def sweep_states(self) -> int:
        now = self._clock()
        with self._states_lock:
            expired = [state for state, expires_at in self._states.items() if expires_at <= now]
            for state in expired:
                del self._states[state]
        if expired:
            logger.debug("oauth2.states_swept", extra={"provider": self.name, "token_count": len(expired)})
        return len(expired)

    def pending_states(self) -> int:
        with self._states_lock:
            return len(self._states)

    def start_sweeper(self, interval_seconds: float) -> None:
        def run() -> None:
            while not self._stop.wait(interval_seconds):
                self.sweep_states()

        self._sweeper = threading.Thread(target=run, name=f"oauth2-sweeper-{self.name}", daemon=True)
        self._sweeper.start()

    def stop(self) -> None:
        self._stop.set()
        if self._owns_http:
            self._http.close()

    def exchange_code(self, code: str) -> OAuth2Token:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_url,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        return OAuth2Token.from_response(self._post_token(data, "exchange"))

    def refresh(self, refresh_token: str) -> OAuth2Token:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        token = OAuth2Token.from_response(self._post_token(data, "refresh"))
        if not token.refresh_token:
            token.refresh_token = refresh_token
        return token

    def fetch_user_info(self, token: OAuth2Token) -> dict[str, Any]:
        with tracer.start_as_current_span("oauth2.user_info") as span:
            tag_correlation_id(span)
            span.set_attribute("oauth2.provider", self.name)
            try:
                response = self._http.get(
                    self.config.user_info_url,
                    headers={"Authorization": f"Bearer {token.access_token}", "Accept": "application/json"},
                )
                response.raise_for_status()
                info = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                span.record_exception(exc)
                raise UpstreamFailure(f"failed to get user info from {self.name}") from exc
        if not isinstance(info, dict):
            raise UpstreamFailure(f"unexpected user info payload from {self.name}")
        return info

    def _post_token(self, data: dict[str, str], grant: str) -> dict[str, Any]:
        with tracer.start_as_current_span(f"oauth2.token_{grant}") as span:
            tag_correlation_id(span)
            span.set_attribute("oauth2.provider", self.name)
            try:
                response = self._http.post(
                    self.config.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                span.record_exception(exc)
                logger.warning("oauth2.token_request_failed", extra={"provider": self.name, "error": str(exc)})
                raise UpstreamFailure(f"failed to {grant} token with {self.name}") from exc
        if not isinstance(payload, dict):
            raise UpstreamFailure(f"unexpected token payload from {self.name}")
        return payload


class OAuth2Mixin:
    """Multi-provider OAuth2 login on top of a rule store backed authenticator."""

    store: RuleStore

    def _init_oauth2(self) -> None:
        self._oauth2_providers: dict[str, OAuth2Provider] = {}
        self._oauth2_lock = threading.Lock()

    def with_oauth2(self, config: OAuth2Config, *, http_client: httpx.Client | None = None) -> Any:
        """Register ``config`` (last registration per name wins) and start its state sweeper."""

        if not config.provider_name:
            config = dataclasses.replace(config, provider_name=DEFAULT_PROVIDER_NAME)
        provider = OAuth2Provider(config, http_client=http_client)

        with self._oauth2_lock:
            replaced = self._oauth2_providers.get(provider.name)
            self._oauth2_providers[provider.name] = provider
        if replaced is not None:
            replaced.stop()

        provider.start_sweeper(get_settings().oauth2_state_sweep_seconds)
        logger.info("oauth2.provider_registered", extra={"provider": provider.name})
        return self

    def oauth2_get_providers(self) -> list[str]:
        with self._oauth2_lock:
            return sorted(self._oauth2_providers)

    def oauth2_generate_state(self) -> str:
        return generate_token()

    def oauth2_get_auth_url(self, provider_name: str, state: str) -> str:
        return self._oauth2_provider(provider_name).auth_code_url(state)

    def oauth2_handle_callback(self, provider_name: str, code: str, state: str) -> LoginResponse:
        provider = self._oauth2_provider(provider_name)
        if not provider.consume_state(state):
            observe_oauth2_state_rejection(provider.name)
            logger.warning("oauth2.state_rejected", extra={"provider": provider.name})
            raise StateFailure("invalid state parameter")

        token = provider.exchange_code(code)
        info = provider.fetch_user_info(token)
        try:
            user = provider.parser(info)
        except UpstreamFailure:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamFailure("failed to parse user context") from exc

        user_id = self._oauth2_get_or_create_user(user, provider.name)
        session_token = generate_token()
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=get_settings().oauth2_default_session_seconds)
        if token.expires_at is not None and token.expires_at > now:
            expires_at = token.expires_at

        self.store.oauth_create_session(
            {
                "session_token": session_token,
                "user_id": user_id,
                "access_token": token.access_token,
                "refresh_token": token.refresh_token,
                "token_type": token.token_type,
                "expires_at": expires_at.isoformat(),
                "auth_provider": provider.name,
            }
        ).unwrap("failed to create session")

        user = dataclasses.replace(user, user_id=user_id, session_id=session_token)
        logger.info("oauth2.login", extra={"provider": provider.name, "user_id": user_id})
        return LoginResponse(
            token=session_token,
            refresh_token=token.refresh_token,
            user=user,
            expires_in=int((expires_at - now).total_seconds()),
        )

    def oauth2_refresh_token(self, refresh_token: str, provider_name: str) -> LoginResponse:
        provider = self._oauth2_provider(provider_name)
        session = decode_json(
            self.store.oauth_get_refresh_token(refresh_token).unwrap(
                "invalid or expired refresh token", AuthenticationFailed
            )
        )
        if not isinstance(session, dict):
            raise AuthenticationFailed("invalid or expired refresh token")
        user_id = int(session.get("user_id") or 0)

        token = provider.refresh(refresh_token)
        new_session_token = generate_token()
        now = datetime.now(timezone.utc)
        expires_at = token.expires_at or now + timedelta(seconds=get_settings().oauth2_default_session_seconds)

        self.store.oauth_update_refresh_token(
            {
                "user_id": user_id,
                "old_refresh_token": refresh_token,
                "new_session_token": new_session_token,
                "new_access_token": token.access_token,
                "new_refresh_token": token.refresh_token,
                "expires_at": expires_at.isoformat(),
            }
        ).unwrap("failed to update session")

        user_payload = decode_json(self.store.oauth_get_user(user_id).unwrap("failed to get user data")) or {}
        user = dataclasses.replace(UserContext.from_payload(user_payload), session_id=new_session_token)
        return LoginResponse(
            token=new_session_token,
            refresh_token=token.refresh_token,
            user=user,
            expires_in=max(int((expires_at - now).total_seconds()), 0),
        )

    def oauth2_close(self) -> None:
        with self._oauth2_lock:
            providers = list(self._oauth2_providers.values())
            self._oauth2_providers.clear()
        for provider in providers:
            provider.stop()

    def _oauth2_provider(self, provider_name: str) -> OAuth2Provider:
        with self._oauth2_lock:
            provider = self._oauth2_providers.get(provider_name)
            available = list(self._oauth2_providers)
        if provider is None:
            raise ProviderNotFound(provider_name, available)
        return provider

    def _oauth2_get_or_create_user(self, user: UserContext, provider_name: str) -> int:
        payload = self.store.oauth_get_or_create_user(
            {
                "username": user.user_name,
                "email": user.email,
                "remote_id": user.remote_id,
                "user_level": user.user_level,
                "roles": list(user.roles),
                "auth_provider": provider_name,
            }
        ).unwrap("failed to get or create user")
        if payload in (None, ""):
            raise UpstreamFailure("user ID not returned")
        return int(payload)


def google_oauth2_config(client_id: str, client_secret: str, redirect_url: str) -> OAuth2Config:
    return OAuth2Config(
        client_id=client_id,
        client_secret=client_secret,
        redirect_url=redirect_url,
        scopes=["openid", "profile", "email"],
        auth_url="https://accounts.google.com/o/oauth2/auth",
        token_url="https://oauth2.googleapis.com/token",
        user_info_url="https://www.googleapis.com/oauth2/v2/userinfo",
        provider_name="google",
    )


def github_oauth2_config(client_id: str, client_secret: str, redirect_url: str) -> OAuth2Config:
    return OAuth2Config(
        client_id=client_id,
        client_secret=client_secret,
        redirect_url=redirect_url,
        scopes=["user:email"],
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        user_info_url="https://api.github.com/user",
        provider_name="github",
    )


def microsoft_oauth2_config(client_id: str, client_secret: str, redirect_url: str) -> OAuth2Config:
    return OAuth2Config(
        client_id=client_id,
        client_secret=client_secret,
        redirect_url=redirect_url,
        scopes=["openid", "profile", "email"],
        auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        user_info_url="https://graph.microsoft.com/v1.0/me",
        provider_name="microsoft",
    )


def facebook_oauth2_config(client_id: str, client_secret: str, redirect_url: str) -> OAuth2Config:
    return OAuth2Config(
        client_id=client_id,
        client_secret=client_secret,
        redirect_url=redirect_url,
        scopes=["email"],
        auth_url="https://www.facebook.com/v12.0/dialog/oauth",
        token_url="https://graph.facebook.com/v12.0/oauth/access_token",
        user_info_url="https://graph.facebook.com/me?fields=id,name,email",
        provider_name="facebook",
    )
