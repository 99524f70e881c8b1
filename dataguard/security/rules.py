from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


ENFORCED_ACCESS_TYPES = frozenset({"mask", "hide"})


def rule_key(schema: str, table: str, user_id: int) -> str:
    return f"{schema}.{table}@{user_id}"


@dataclass(slots=True)
class ColumnSecurity:
    """Mask or hide instruction for one (possibly nested) field path."""

    schema: str
    tablename: str
    path: list[str]
    accesstype: str
    user_id: int = 0
    mask_start: int = 0
    mask_end: int = 0
    mask_invert: bool = False
    mask_char: str = "*"
    extra_filters: dict[str, Any] = field(default_factory=dict)
    control: str = ""
    id: int = 0

    @property
    def is_enforced(self) -> bool:
        return self.accesstype.strip().lower() in ENFORCED_ACCESS_TYPES

    @property
    def is_hide(self) -> bool:
        return self.accesstype.strip().lower() == "hide"

    @property
    def dotted_path(self) -> str:
        return ".".join(self.path)


@dataclass(slots=True)
class RowSecurity:
    schema: str
    tablename: str
    template: str = ""
    has_block: bool = False
    user_id: int = 0

    def expand(self, primary_key_name: str, model_type: type | None = None) -> str:
        """Substitute the placeholders of the predicate template.

        Values are inserted verbatim without any SQL escaping; only ``user_id``
        is server controlled, so callers must not feed untrusted names here.
        """

        expanded = self.template.replace("{PrimaryKeyName}", primary_key_name)
        expanded = expanded.replace("{TableName}", self.tablename)
        expanded = expanded.replace("{SchemaName}", self.schema)
        return expanded.replace("{UserID}", str(self.user_id))
