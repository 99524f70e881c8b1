from __future__ import annotations

import json
from collections.abc import Generator
from urllib.parse import parse_qs, parse_qsl, urlsplit

import httpx
import pytest

from dataguard.security.authenticators import DatabaseAuthenticator, new_multi_provider_authenticator
from dataguard.security.errors import AuthenticationFailed, ProviderNotFound, StateFailure, UpstreamFailure
from dataguard.security.oauth2 import (
    OAuth2Config,
    OAuth2Provider,
    default_user_info_parser,
    github_oauth2_config,
    google_oauth2_config,
)


class IdentityProvider:
    """Answers token and user info requests like a minimal OAuth2 server."""

    def __init__(self) -> None:
        self.token_requests: list[dict[str, str]] = []
        self.user_info = {"sub": "idp-1", "email": "ada@example.com", "name": "Ada"}
        self.refresh_response: dict[str, object] = {"access_token": "access-2", "expires_in": 3600}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            form = dict(parse_qsl(request.content.decode("utf-8")))
            self.token_requests.append(form)
            if form["grant_type"] == "authorization_code":
                if form["code"] == "broken":
                    return httpx.Response(400, json={"error": "invalid_grant"})
                return httpx.Response(
                    200, json={"access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3600}
                )
            return httpx.Response(200, json=self.refresh_response)
        if request.url.path == "/userinfo":
            assert request.headers["authorization"] == "Bearer access-1"
            return httpx.Response(200, content=json.dumps(self.user_info))
        return httpx.Response(404)


def _config(name: str = "acme") -> OAuth2Config:
    return OAuth2Config(
        client_id="client-1",
        client_secret="secret-1",
        redirect_url="https://app.example.com/callback",
        auth_url="https://idp.example.com/authorize",
        token_url="https://idp.example.com/token",
        user_info_url="https://idp.example.com/userinfo",
        scopes=["openid", "email"],
        provider_name=name,
    )


@pytest.fixture()
def idp() -> IdentityProvider:
    return IdentityProvider()


@pytest.fixture()
def http_client(idp: IdentityProvider) -> Generator[httpx.Client, None, None]:
    client = httpx.Client(transport=httpx.MockTransport(idp))
    yield client
    client.close()


@pytest.fixture()
def authenticator(store, executor, http_client) -> Generator[DatabaseAuthenticator, None, None]:
    auth = DatabaseAuthenticator(store, executor=executor).with_oauth2(_config(), http_client=http_client)
    yield auth
    auth.oauth2_close()


def test_auth_url_carries_state_and_offline_access(authenticator: DatabaseAuthenticator) -> None:
    state = authenticator.oauth2_generate_state()
    url = authenticator.oauth2_get_auth_url("acme", state)

    parts = urlsplit(url)
    query = parse_qs(parts.query)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://idp.example.com/authorize"
    assert query["state"] == [state]
    assert query["client_id"] == ["client-1"]
    assert query["scope"] == ["openid email"]
    assert query["access_type"] == ["offline"]


def test_generated_states_are_unique(authenticator: DatabaseAuthenticator) -> None:
    states = {authenticator.oauth2_generate_state() for _ in range(50)}
    assert len(states) == 50


def test_callback_creates_session_and_state_is_single_use(
    authenticator: DatabaseAuthenticator, store, idp: IdentityProvider
) -> None:
    state = authenticator.oauth2_generate_state()
    authenticator.oauth2_get_auth_url("acme", state)

    response = authenticator.oauth2_handle_callback("acme", "code-1", state)

    assert response.user.user_id == 42
    assert response.user.user_name == "Ada"
    assert response.user.session_id == response.token
    assert response.refresh_token == "refresh-1"
    assert 3500 <= response.expires_in <= 3600
    assert idp.token_requests[0]["code"] == "code-1"
    assert store.oauth_users[0]["auth_provider"] == "acme"
    assert store.oauth_sessions[0]["session_token"] == response.token
    assert store.oauth_sessions[0]["access_token"] == "access-1"

    with pytest.raises(StateFailure, match="invalid state parameter"):
        authenticator.oauth2_handle_callback("acme", "code-1", state)
    assert len(idp.token_requests) == 1


def test_unknown_state_is_rejected_before_token_exchange(
    authenticator: DatabaseAuthenticator, idp: IdentityProvider
) -> None:
    with pytest.raises(StateFailure):
        authenticator.oauth2_handle_callback("acme", "code-1", "never-issued")
    assert idp.token_requests == []


def test_failed_exchange_consumes_the_state(authenticator: DatabaseAuthenticator) -> None:
    state = authenticator.oauth2_generate_state()
    authenticator.oauth2_get_auth_url("acme", state)

    with pytest.raises(UpstreamFailure):
        authenticator.oauth2_handle_callback("acme", "broken", state)
    with pytest.raises(StateFailure):
        authenticator.oauth2_handle_callback("acme", "code-1", state)


def test_unknown_provider(authenticator: DatabaseAuthenticator) -> None:
    with pytest.raises(ProviderNotFound) as exc_info:
        authenticator.oauth2_get_auth_url("missing", "state")
    assert exc_info.value.available == ["acme"]


def test_refresh_keeps_previous_refresh_token_when_none_issued(
    authenticator: DatabaseAuthenticator, store, idp: IdentityProvider
) -> None:
    store.refresh_tokens["refresh-1"] = {"user_id": 42}

    response = authenticator.oauth2_refresh_token("refresh-1", "acme")

    assert response.refresh_token == "refresh-1"
    assert response.user.user_id == 42
    assert response.user.session_id == response.token
    update = store.refresh_updates[0]
    assert update["old_refresh_token"] == "refresh-1"
    assert update["new_refresh_token"] == "refresh-1"
    assert update["new_access_token"] == "access-2"
    assert update["new_session_token"] == response.token
    assert idp.token_requests[-1]["grant_type"] == "refresh_token"


def test_refresh_with_rotated_refresh_token(
    authenticator: DatabaseAuthenticator, store, idp: IdentityProvider
) -> None:
    store.refresh_tokens["refresh-1"] = {"user_id": 42}
    idp.refresh_response = {"access_token": "access-3", "refresh_token": "refresh-2", "expires_in": 60}

    response = authenticator.oauth2_refresh_token("refresh-1", "acme")

    assert response.refresh_token == "refresh-2"
    assert 0 < response.expires_in <= 60


def test_refresh_with_unknown_refresh_token(authenticator: DatabaseAuthenticator, idp: IdentityProvider) -> None:
    with pytest.raises(AuthenticationFailed, match="invalid or expired refresh token"):
        authenticator.oauth2_refresh_token("nope", "acme")
    assert idp.token_requests == []


def test_expired_states_fail_and_are_swept(http_client: httpx.Client) -> None:
    now = [100.0]
    provider = OAuth2Provider(_config(), http_client=http_client, state_ttl_seconds=10, clock=lambda: now[0])
    provider.auth_code_url("kept")
    provider.auth_code_url("expired")
    provider.auth_code_url("swept")

    assert provider.consume_state("kept") is True
    now[0] = 111.0
    assert provider.consume_state("expired") is False
    assert provider.sweep_states() == 1
    assert provider.pending_states() == 0


def test_registering_same_name_replaces_provider(store, executor, http_client) -> None:
    auth = new_multi_provider_authenticator(store, [_config("acme"), _config("other")], http_client=http_client)
    try:
        auth.with_oauth2(_config("acme"), http_client=http_client)
        assert auth.oauth2_get_providers() == ["acme", "other"]
    finally:
        auth.oauth2_close()


def test_default_parser_prefers_login_then_name_then_email() -> None:
    assert default_user_info_parser({"login": "octo", "name": "Octo Cat", "email": "o@example.com"}).user_name == "octo"
    assert default_user_info_parser({"name": "Ada", "email": "ada@example.com"}).user_name == "Ada"
    parsed = default_user_info_parser({"email": "grace@example.com", "sub": "g-1"})
    assert parsed.user_name == "grace"
    assert parsed.remote_id == "g-1"
    assert parsed.roles == ["user"]
    with pytest.raises(UpstreamFailure):
        default_user_info_parser({"id": 5})


def test_preconfigured_providers() -> None:
    google = google_oauth2_config("id", "secret", "https://app/cb")
    github = github_oauth2_config("id", "secret", "https://app/cb")

    assert google.provider_name == "google"
    assert google.scopes == ["openid", "profile", "email"]
    assert github.token_url == "https://github.com/login/oauth/access_token"
    assert github.scopes == ["user:email"]
