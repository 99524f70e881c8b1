from __future__ import annotations

import logging
import threading
from typing import Any

from dataguard.metrics import observe_rule_load
from dataguard.security.errors import RuleUnavailable, SecurityError, UpstreamFailure
from dataguard.security.fls import apply_column_rules, guard_record_update
from dataguard.security.interfaces import ColumnSecurityProvider, RowSecurityProvider
from dataguard.security.rules import ColumnSecurity, RowSecurity, rule_key


logger = logging.getLogger("dataguard.rules")


class SecurityList:
    """Per ``(schema, table, user)`` cache of column and row security rules.

    Column rule lists are stored as tuples and swapped whole, so readers never
    observe a partially written list. Column and row entries use separate
    locks, independent from any authenticator state.
    """

    def __init__(self, provider: Any) -> None:
        if provider is None:
            raise ValueError("security provider is required")
        self.provider = provider
        self._column_rules: dict[str, tuple[ColumnSecurity, ...]] = {}
        self._row_rules: dict[str, RowSecurity] = {}
        self._column_lock = threading.Lock()
        self._row_lock = threading.Lock()

    def load_column_security(
        self, user_id: int, schema: str, table: str, overwrite: bool = False
    ) -> tuple[ColumnSecurity, ...]:
        """Fetch column rules from the provider and replace the cache entry.

        The provider is always called. When the entry is absent (or ``overwrite``
        is set) an empty placeholder is installed first, so a failed load still
        leaves a pass-through entry behind.
        """

        key = rule_key(schema, table, user_id)
        with self._column_lock:
            if overwrite or key not in self._column_rules:
                self._column_rules[key] = ()

        provider: ColumnSecurityProvider = self.provider
        try:
            loaded = provider.get_column_security(user_id, schema, table)
        except SecurityError as exc:
            observe_rule_load("column", "error")
            logger.warning(
                "rules.column_load_failed",
                extra={"user_id": user_id, "schema": schema, "table": table, "error": str(exc)},
            )
            raise UpstreamFailure(f"failed to load column security for {key}") from exc

        rules = tuple(loaded or ())
        with self._column_lock:
            self._column_rules[key] = rules
        observe_rule_load("column", "ok")
        logger.debug(
            "rules.column_loaded",
            extra={"user_id": user_id, "schema": schema, "table": table, "rule_count": len(rules)},
        )
        return rules

    def load_row_security(self, user_id: int, schema: str, table: str, overwrite: bool = False) -> RowSecurity:
        key = rule_key(schema, table, user_id)
        provider: RowSecurityProvider = self.provider
        try:
            record = provider.get_row_security(user_id, schema, table)
        except SecurityError as exc:
            observe_rule_load("row", "error")
            logger.warning(
                "rules.row_load_failed",
                extra={"user_id": user_id, "schema": schema, "table": table, "error": str(exc)},
            )
            raise UpstreamFailure(f"failed to load row security for {key}") from exc

        with self._row_lock:
            self._row_rules[key] = record
        observe_rule_load("row", "ok")
        return record

    def column_rules(self, user_id: int, schema: str, table: str) -> tuple[ColumnSecurity, ...]:
        key = rule_key(schema, table, user_id)
        with self._column_lock:
            rules = self._column_rules.get(key)
        if rules is None:
            raise RuleUnavailable("column", key)
        return rules

    def get_row_security_template(self, user_id: int, schema: str, table: str) -> RowSecurity:
        key = rule_key(schema, table, user_id)
        with self._row_lock:
            record = self._row_rules.get(key)
        if record is None:
            raise RuleUnavailable("row", key)
        return record

    def clear_security(self, user_id: int, schema: str, table: str) -> None:
        key = rule_key(schema, table, user_id)
        with self._column_lock:
            self._column_rules.pop(key, None)
        with self._row_lock:
            self._row_rules.pop(key, None)

    def clear_cache(self, user_id: int, schema: str, table: str) -> None:
        self.clear_security(user_id, schema, table)

    def has_column_rules(self, user_id: int, schema: str, table: str) -> bool:
        with self._column_lock:
            return rule_key(schema, table, user_id) in self._column_rules

    def apply_column_security(
        self, records: Any, model_type: type | None, user_id: int, schema: str, table: str
    ) -> Any:
        """Mask the cached column rules onto ``records`` in place.

        Raises ``RuleUnavailable`` when nothing was loaded for the key. An entry
        holding zero rules is a pass-through.
        """

        rules = self.column_rules(user_id, schema, table)
        return apply_column_rules(records, rules, model_type=model_type, resource=f"{schema}.{table}", user_id=user_id)

    def apply_on_record(
        self, prev: Any, new: Any, model_type: type | None, user_id: int, schema: str, table: str
    ) -> list[str]:
        rules = self.column_rules(user_id, schema, table)
        return guard_record_update(prev, new, rules, resource=f"{schema}.{table}")
