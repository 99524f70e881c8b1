from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from dataguard import audit
from dataguard.security import rls
from dataguard.security.cache import SecurityList
from dataguard.security.errors import RuleUnavailable, SecurityError


logger = logging.getLogger("dataguard.hooks")


class SecurityContext(Protocol):
    """What a data-access adapter exposes to the security hooks."""

    user_id: int | None
    schema: str
    entity: str
    model: Any
    query: Any
    result: Any


@dataclass(slots=True)
class HookContext:
    user_id: int | None
    schema: str
    entity: str
    model: Any = None
    query: Any = None
    result: Any = None


def _model_type(model: Any) -> type | None:
    if model is None:
        return None
    return model if isinstance(model, type) else type(model)


def load_security_rules(sec_ctx: SecurityContext, security_list: SecurityList) -> None:
    """Load column and row rules for the request. Failures are logged and the read proceeds."""

    if sec_ctx.user_id is None:
        logger.warning("hooks.no_user", extra={"schema": sec_ctx.schema, "table": sec_ctx.entity})
        return

    try:
        security_list.load_column_security(sec_ctx.user_id, sec_ctx.schema, sec_ctx.entity)
    except SecurityError as exc:
        logger.warning(
            "hooks.column_rules_unavailable",
            extra={"user_id": sec_ctx.user_id, "schema": sec_ctx.schema, "table": sec_ctx.entity, "error": str(exc)},
        )
    try:
        security_list.load_row_security(sec_ctx.user_id, sec_ctx.schema, sec_ctx.entity)
    except SecurityError as exc:
        logger.warning(
            "hooks.row_rules_unavailable",
            extra={"user_id": sec_ctx.user_id, "schema": sec_ctx.schema, "table": sec_ctx.entity, "error": str(exc)},
        )


def apply_row_security(sec_ctx: SecurityContext, security_list: SecurityList) -> None:
    """Scope ``sec_ctx.query``. Raises ``AuthorizationDenied`` for blocked tables."""

    if sec_ctx.user_id is None:
        return
    sec_ctx.query = rls.apply_row_security(
        sec_ctx.query,
        sec_ctx.user_id,
        sec_ctx.schema,
        sec_ctx.entity,
        _model_type(sec_ctx.model),
        security_list,
    )


def apply_column_security(sec_ctx: SecurityContext, security_list: SecurityList) -> None:
    if sec_ctx.user_id is None or sec_ctx.result is None:
        return
    model_type = _model_type(sec_ctx.model)
    if model_type is None:
        logger.debug("hooks.no_model", extra={"schema": sec_ctx.schema, "table": sec_ctx.entity})
        return

    try:
        sec_ctx.result = security_list.apply_column_security(
            sec_ctx.result, model_type, sec_ctx.user_id, sec_ctx.schema, sec_ctx.entity
        )
    except RuleUnavailable as exc:
        logger.warning(
            "hooks.column_security_skipped",
            extra={"user_id": sec_ctx.user_id, "schema": sec_ctx.schema, "table": sec_ctx.entity, "error": str(exc)},
        )


def log_data_access(sec_ctx: SecurityContext) -> None:
    user_id = sec_ctx.user_id if sec_ctx.user_id is not None else 0
    logger.info("hooks.data_access", extra={"user_id": user_id, "schema": sec_ctx.schema, "table": sec_ctx.entity})
    audit.record(
        actor_user_id=user_id,
        entity_type="security.access",
        entity_id=f"{sec_ctx.schema}.{sec_ctx.entity}",
        action="data.read",
        before=None,
        after=None,
    )
