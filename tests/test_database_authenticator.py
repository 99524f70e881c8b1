from __future__ import annotations

import logging

import pytest

from dataguard.security.authenticators import DatabaseAuthenticator, extract_tokens
from dataguard.security.context import LoginRequest, LogoutRequest, RegisterRequest
from dataguard.security.errors import AuthenticationFailed, UpstreamFailure
from dataguard.security.session_cache import SessionCache
from dataguard.security.store import StoreResult


def _authenticator(store, executor, **kwargs) -> DatabaseAuthenticator:
    return DatabaseAuthenticator(store, executor=executor, **kwargs)


def test_extract_tokens_prefers_header_over_cookie(make_request) -> None:
    request = make_request(authorization="Bearer aaa, Token bbb,  ccc ", cookie="cookie-token")
    assert extract_tokens(request) == (["aaa", "bbb", "ccc"], "authenticate")

    assert extract_tokens(make_request(cookie="cookie-token")) == (["cookie-token"], "cookie")
    assert extract_tokens(make_request()) == ([], "")


def test_second_authenticate_is_served_from_session_cache(store, executor, make_request) -> None:
    store.sessions["good"] = {"user_id": 7, "user_name": "ada", "session_id": "good"}
    authenticator = _authenticator(store, executor)

    first = authenticator.authenticate(make_request(authorization="Bearer good"))
    second = authenticator.authenticate(make_request(authorization="Bearer good"))

    assert first.user_id == 7
    assert second.user_name == "ada"
    assert store.calls_to("session") == [("good", "authenticate")]

    executor.drain(timeout=5)
    assert store.calls_to("session_update") == [("good", 7), ("good", 7)]


def test_multiple_tokens_are_tried_in_order(store, executor, make_request, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="dataguard.auth")
    store.sessions["good"] = {"user_id": 3, "session_id": "good"}
    authenticator = _authenticator(store, executor)

    user = authenticator.authenticate(make_request(authorization="Bearer bad, Bearer good"))

    assert user.user_id == 3
    assert store.calls_to("session") == [("bad", "authenticate"), ("good", "authenticate")]
    assert any(record.getMessage() == "auth.multiple_tokens" for record in caplog.records)


def test_all_tokens_invalid_raises_last_error(store, executor, make_request) -> None:
    authenticator = _authenticator(store, executor)

    with pytest.raises(AuthenticationFailed) as exc_info:
        authenticator.authenticate(make_request(authorization="Bearer first, Bearer second"))

    assert str(exc_info.value) == "unknown session second"


def test_missing_token_is_rejected_without_store_call(store, executor, make_request) -> None:
    authenticator = _authenticator(store, executor)

    with pytest.raises(AuthenticationFailed):
        authenticator.authenticate(make_request())
    assert store.calls == []


def test_cookie_token_uses_cookie_reference(store, executor, make_request) -> None:
    store.sessions["from-cookie"] = {"user_id": 11}
    authenticator = _authenticator(store, executor)

    assert authenticator.authenticate(make_request(cookie="from-cookie")).user_id == 11
    assert store.calls_to("session") == [("from-cookie", "cookie")]


def test_session_activity_failure_is_logged_not_raised(store, executor, make_request, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="dataguard.auth")
    store.sessions["good"] = {"user_id": 5}
    store.fail_session_update = True
    authenticator = _authenticator(store, executor)

    assert authenticator.authenticate(make_request(authorization="Bearer good")).user_id == 5
    executor.drain(timeout=5)

    assert any(record.getMessage() == "auth.session_activity_failed" for record in caplog.records)


def test_login_register_and_logout(store, executor, make_request) -> None:
    store.accounts["ada"] = {"user_id": 21, "password": "pw"}
    authenticator = _authenticator(store, executor)

    response = authenticator.login(LoginRequest(username="ada", password="pw"))
    assert response.token == "tok-ada"
    assert response.user.user_id == 21
    assert response.expires_in == 3600

    with pytest.raises(AuthenticationFailed, match="invalid credentials"):
        authenticator.login(LoginRequest(username="ada", password="wrong"))

    registered = authenticator.register(RegisterRequest(username="grace", password="pw", email="g@example.com"))
    assert registered.user.user_id == 99
    assert registered.user.email == "g@example.com"

    authenticator.authenticate(make_request(authorization="Bearer tok-ada"))
    authenticator.logout(LogoutRequest(token="tok-ada", user_id=21))
    assert authenticator.sessions.get("tok-ada") is None
    with pytest.raises(AuthenticationFailed):
        authenticator.authenticate(make_request(authorization="Bearer tok-ada"))


def test_refresh_token_swaps_session(store, executor, make_request) -> None:
    store.sessions["old"] = {"user_id": 8, "user_name": "linus", "session_id": "old"}
    authenticator = _authenticator(store, executor)
    authenticator.authenticate(make_request(authorization="Bearer old"))

    response = authenticator.refresh_token("old")

    assert response.token == "old-next"
    assert response.user.user_id == 8
    assert response.expires_in == 86400
    assert authenticator.sessions.get("old") is None
    assert store.calls_to("session")[-1] == ("old", "refresh")


def test_refresh_with_unknown_token_fails(store, executor) -> None:
    authenticator = _authenticator(store, executor)

    with pytest.raises(AuthenticationFailed):
        authenticator.refresh_token("missing")


def test_refresh_without_new_session_id_is_upstream_failure(store, executor, monkeypatch) -> None:
    store.sessions["old"] = {"user_id": 8}
    authenticator = _authenticator(store, executor)
    monkeypatch.setattr(store, "refresh_session", lambda token, user: StoreResult.ok({"user_id": 8}))

    with pytest.raises(UpstreamFailure):
        authenticator.refresh_token("old")


def test_validate_token(store, executor) -> None:
    store.sessions["good"] = {"user_id": 1}
    authenticator = _authenticator(store, executor)

    assert authenticator.validate_token("good") is True
    assert authenticator.validate_token("nope") is False
    assert ("good", "validate") in store.calls_to("session")


def test_clear_user_cache_evicts_only_that_user(store, executor, make_request) -> None:
    store.sessions.update(
        {
            "a1": {"user_id": 1},
            "a2": {"user_id": 1},
            "b1": {"user_id": 2},
        }
    )
    authenticator = _authenticator(store, executor, session_cache=SessionCache(ttl_seconds=60, max_entries=10))
    for token in ("a1", "a2", "b1"):
        authenticator.authenticate(make_request(authorization=f"Bearer {token}"))

    assert authenticator.clear_user_cache(1) == 2
    assert authenticator.sessions.get("a1") is None
    assert authenticator.sessions.get("b1") is not None

    authenticator.clear_cache()
    assert len(authenticator.sessions) == 0
