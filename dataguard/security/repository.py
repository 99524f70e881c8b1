from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from dataguard.security.cache import SecurityList
from dataguard.security.hooks import HookContext, load_security_rules
from dataguard.security.rls import apply_row_security


class SecuredRepository:
    """Binds one table's rule lookups to a model type."""

    def __init__(self, schema: str, table: str, model_type: type, security_list: SecurityList) -> None:
        self.schema = schema
        self.table = table
        self.model_type = model_type
        self.security_list = security_list

    def load_rules(self, user_id: int) -> None:
        load_security_rules(
            HookContext(user_id=user_id, schema=self.schema, entity=self.table, model=self.model_type),
            self.security_list,
        )

    def apply_scope_query(self, query: Select[Any], user_id: int) -> Select[Any]:
        return apply_row_security(query, user_id, self.schema, self.table, self.model_type, self.security_list)

    def apply_read_security(self, record: Any, user_id: int) -> Any:
        return self.security_list.apply_column_security(record, self.model_type, user_id, self.schema, self.table)

    def apply_read_security_many(self, records: list[Any], user_id: int) -> list[Any]:
        return self.security_list.apply_column_security(records, self.model_type, user_id, self.schema, self.table)

    def guard_update(self, previous: Any, updated: Any, user_id: int) -> list[str]:
        return self.security_list.apply_on_record(
            previous, updated, self.model_type, user_id, self.schema, self.table
        )
