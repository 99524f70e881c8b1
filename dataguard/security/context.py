from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_roles(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


@dataclass(slots=True)
class UserContext:
    """Identity resolved by an authenticator. Treated as read-only once built."""

    user_id: int
    user_name: str = ""
    user_level: int = 0
    session_id: str = ""
    session_rid: int = 0
    remote_id: str = ""
    roles: list[str] = field(default_factory=list)
    email: str = ""
    claims: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    two_factor_enabled: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "UserContext":
        return cls(
            user_id=_as_int(payload.get("user_id")),
            user_name=str(payload.get("user_name") or ""),
            user_level=_as_int(payload.get("user_level")),
            session_id=str(payload.get("session_id") or ""),
            session_rid=_as_int(payload.get("session_rid")),
            remote_id=str(payload.get("remote_id") or ""),
            roles=_as_roles(payload.get("roles")),
            email=str(payload.get("email") or ""),
            claims=dict(payload.get("claims") or {}),
            meta=dict(payload.get("meta") or {}),
            two_factor_enabled=bool(payload.get("two_factor_enabled", False)),
        )

    @classmethod
    def guest(cls, remote_id: str = "") -> "UserContext":
        return cls(user_id=0, user_name="guest", remote_id=remote_id, roles=["guest"])

    @property
    def is_guest(self) -> bool:
        return self.user_id == 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_level": self.user_level,
            "session_id": self.session_id,
            "session_rid": self.session_rid,
            "remote_id": self.remote_id,
            "roles": list(self.roles),
            "email": self.email,
            "claims": dict(self.claims),
            "meta": dict(self.meta),
            "two_factor_enabled": self.two_factor_enabled,
        }


@dataclass(slots=True)
class LoginRequest:
    username: str
    password: str
    claims: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    two_factor_code: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"username": self.username, "password": self.password, "claims": self.claims, "meta": self.meta}


@dataclass(slots=True)
class RegisterRequest:
    username: str
    password: str
    email: str = ""
    user_level: int = 0
    roles: list[str] = field(default_factory=list)
    claims: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "password": self.password,
            "email": self.email,
            "user_level": self.user_level,
            "roles": list(self.roles),
            "claims": self.claims,
            "meta": self.meta,
        }


@dataclass(slots=True)
class LogoutRequest:
    token: str
    user_id: int = 0


@dataclass(slots=True)
class LoginResponse:
    token: str
    user: UserContext
    expires_in: int = 0
    refresh_token: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    requires_2fa: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "LoginResponse":
        user_payload = payload.get("user") or {}
        return cls(
            token=str(payload.get("token") or ""),
            refresh_token=str(payload.get("refresh_token") or ""),
            user=UserContext.from_payload(user_payload),
            expires_in=_as_int(payload.get("expires_in")),
            meta=dict(payload.get("meta") or {}),
        )
