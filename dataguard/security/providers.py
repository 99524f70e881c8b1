from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any

from dataguard.security.errors import UpstreamFailure
from dataguard.security.rules import ColumnSecurity, RowSecurity
from dataguard.security.store import RuleStore, decode_json


logger = logging.getLogger("dataguard.rules")


def _parse_options(raw: Any) -> dict[str, Any]:
    if raw in (None, ""):
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("rules.jsonvalue_unparsed", extra={"error": str(raw)[:100]})
        return {}
    return parsed if isinstance(parsed, dict) else {}


class DatabaseColumnSecurityProvider:
    """Column rules from ``resolvespec_column_security``.

    Each row carries a dotted ``control`` of ``schema.table.path...``; rows with
    fewer than three parts are ignored. ``jsonvalue`` may hold masking options.
    """

    def __init__(self, store: RuleStore) -> None:
        self.store = store

    def get_column_security(self, user_id: int, schema: str, table: str) -> list[ColumnSecurity]:
        payload = self.store.column_security(user_id, schema, table).unwrap("failed to load column security")
        records = decode_json(payload) or []
        if not isinstance(records, list):
            raise UpstreamFailure("failed to parse security rules")

        rules: list[ColumnSecurity] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            control = str(record.get("control") or "")
            parts = control.split(".")
            if len(parts) < 3:
                continue
            options = _parse_options(record.get("jsonvalue"))
            rules.append(
                ColumnSecurity(
                    schema=schema,
                    tablename=table,
                    path=parts[2:],
                    accesstype=str(record.get("accesstype") or ""),
                    user_id=user_id,
                    mask_start=int(options.get("mask_start", 0) or 0),
                    mask_end=int(options.get("mask_end", 0) or 0),
                    mask_invert=bool(options.get("mask_invert", False)),
                    mask_char=str(options.get("mask_char") or "*"),
                    extra_filters=dict(options.get("extra_filters") or {}),
                    control=control,
                    id=int(options.get("id", 0) or 0),
                )
            )
        return rules


class DatabaseRowSecurityProvider:
    def __init__(self, store: RuleStore) -> None:
        self.store = store

    def get_row_security(self, user_id: int, schema: str, table: str) -> RowSecurity:
        raw = self.store.row_security(user_id, schema, table).unwrap("failed to load row security")
        payload = decode_json(raw) or {}
        if not isinstance(payload, dict):
            raise UpstreamFailure("failed to parse row security")
        return RowSecurity(
            schema=schema,
            tablename=table,
            template=str(payload.get("template") or ""),
            has_block=bool(payload.get("block", False)),
            user_id=user_id,
        )


class ConfigColumnSecurityProvider:
    """Static column rules keyed by ``"schema.table"``, applied to every user."""

    def __init__(self, rules: dict[str, list[ColumnSecurity]]) -> None:
        self.rules = rules

    def get_column_security(self, user_id: int, schema: str, table: str) -> list[ColumnSecurity]:
        configured = self.rules.get(f"{schema}.{table}", [])
        return [dataclasses.replace(rule, user_id=user_id, path=list(rule.path)) for rule in configured]


class ConfigRowSecurityProvider:
    def __init__(self, templates: dict[str, str], blocked: dict[str, bool] | None = None) -> None:
        self.templates = templates
        self.blocked = blocked or {}

    def get_row_security(self, user_id: int, schema: str, table: str) -> RowSecurity:
        key = f"{schema}.{table}"
        if self.blocked.get(key):
            return RowSecurity(schema=schema, tablename=table, has_block=True, user_id=user_id)
        return RowSecurity(schema=schema, tablename=table, template=self.templates.get(key, ""), user_id=user_id)
