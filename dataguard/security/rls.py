from __future__ import annotations

import dataclasses
import logging
from typing import Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import text
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.sql import Select

from dataguard import audit
from dataguard.metrics import observe_rls_denied_read
from dataguard.security.cache import SecurityList
from dataguard.security.errors import AuthorizationDenied, RuleUnavailable


logger = logging.getLogger("dataguard.rls")

DEFAULT_PRIMARY_KEY = "id"


def primary_key_name(model_type: type | None) -> str:
    """Resolve the primary key column name of ``model_type``, defaulting to ``id``."""

    if model_type is None:
        return DEFAULT_PRIMARY_KEY
    try:
        mapper = sa_inspect(model_type)
    except NoInspectionAvailable:
        mapper = None
    if mapper is not None and mapper.primary_key:
        return str(mapper.primary_key[0].name)
    if dataclasses.is_dataclass(model_type):
        for item in dataclasses.fields(model_type):
            if item.metadata.get("primary_key"):
                return str(item.metadata.get("column", item.name))
    return DEFAULT_PRIMARY_KEY


def apply_row_security(
    query: Any,
    user_id: int,
    schema: str,
    table: str,
    model_type: type | None,
    security_list: SecurityList,
) -> Any:
    """Scope ``query`` with the cached row security predicate.

    A blocked table raises ``AuthorizationDenied`` before anything is merged
    into the query. A missing rule leaves the query unchanged.
    """

    try:
        row_security = security_list.get_row_security_template(user_id, schema, table)
    except RuleUnavailable:
        logger.debug("rls.no_rule", extra={"user_id": user_id, "schema": schema, "table": table})
        return query

    if row_security.has_block:
        observe_rls_denied_read(f"{schema}.{table}")
        audit.record(
            actor_user_id=user_id,
            entity_type="security.rls",
            entity_id=f"{schema}.{table}",
            action="rls.blocked",
            before=None,
            after={"schema": schema, "table": table},
        )
        logger.warning("rls.access_blocked", extra={"user_id": user_id, "schema": schema, "table": table})
        raise AuthorizationDenied(table)

    if not row_security.template:
        return query

    predicate = row_security.expand(primary_key_name(model_type), model_type)
    if isinstance(query, Select):
        return query.where(text(predicate))
    where = getattr(query, "where", None)
    if callable(where):
        return where(predicate)
    return query
