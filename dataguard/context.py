from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
user_id_var: ContextVar[int | None] = ContextVar("user_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_current_user_id(value: int | None) -> Token[int | None]:
    return user_id_var.set(value)


def reset_current_user_id(token: Token[int | None]) -> None:
    user_id_var.reset(token)


def get_current_user_id() -> int | None:
    return user_id_var.get()


def get_log_context() -> dict[str, str | int | None]:
    return {"correlation_id": get_correlation_id(), "user_id": get_current_user_id()}
