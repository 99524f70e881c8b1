from __future__ import annotations

import dataclasses
import datetime as dt
import decimal
import threading
import types
import typing
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import types as sa_types
from sqlalchemy.exc import NoInspectionAvailable


class FieldKind(StrEnum):
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    TEMPORAL = "temporal"
    STRING = "string"
    JSON = "json"
    BYTES = "bytes"
    NESTED = "nested"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class FieldDescriptor:
    """One addressable field of a model: attribute name, column alias and kind.

    ``model_type`` is set for nested fields whose element type is known ahead
    of time. ``None`` means the nested value is described when it is visited.
    """

    name: str
    sql_name: str
    kind: FieldKind
    model_type: type | None = None


_descriptor_cache: dict[type, tuple[FieldDescriptor, ...]] = {}
_descriptor_lock = threading.Lock()


def describe_model(model_type: type) -> tuple[FieldDescriptor, ...]:
    """Return the field descriptors of ``model_type``, built once per type."""

    cached = _descriptor_cache.get(model_type)
    if cached is not None:
        return cached

    descriptors = _build_descriptors(model_type)
    with _descriptor_lock:
        return _descriptor_cache.setdefault(model_type, descriptors)


def describe_value(value: Any) -> tuple[FieldDescriptor, ...]:
    """Describe a record instance. Mappings are described from their own keys."""

    if isinstance(value, Mapping):
        return tuple(
            FieldDescriptor(name=str(key), sql_name=str(key), kind=_by_name(str(key), _kind_of_value(item)))
            for key, item in value.items()
        )
    return describe_model(type(value))


def find_field(descriptors: tuple[FieldDescriptor, ...], segment: str) -> FieldDescriptor | None:
    lowered = segment.lower()
    for descriptor in descriptors:
        if descriptor.sql_name.lower() == lowered:
            return descriptor
    for descriptor in descriptors:
        if descriptor.name.lower() == lowered:
            return descriptor
    return None


def is_describable(model_type: Any) -> bool:
    """True for record-like classes whose fields can be described."""

    if not isinstance(model_type, type) or issubclass(model_type, Mapping):
        return False
    if _kind_of_python_type(model_type) is not FieldKind.OTHER:
        return False
    if dataclasses.is_dataclass(model_type) or issubclass(model_type, BaseModel):
        return True
    if _sqlalchemy_mapper(model_type) is not None:
        return True
    return bool(getattr(model_type, "__annotations__", None))


def clear_descriptor_cache() -> None:
    with _descriptor_lock:
        _descriptor_cache.clear()


def _build_descriptors(model_type: type) -> tuple[FieldDescriptor, ...]:
    mapper = _sqlalchemy_mapper(model_type)
    if mapper is not None:
        return _describe_sqlalchemy(mapper)
    if dataclasses.is_dataclass(model_type):
        return _describe_dataclass(model_type)
    if isinstance(model_type, type) and issubclass(model_type, BaseModel):
        return _describe_pydantic(model_type)
    if isinstance(model_type, type) and issubclass(model_type, Mapping):
        return ()
    return _describe_annotations(model_type)


def _sqlalchemy_mapper(model_type: type) -> Any:
    try:
        return sa_inspect(model_type)
    except NoInspectionAvailable:
        return None


def _describe_sqlalchemy(mapper: Any) -> tuple[FieldDescriptor, ...]:
    descriptors: list[FieldDescriptor] = []
    for attr in mapper.column_attrs:
        column = attr.columns[0]
        descriptors.append(
            FieldDescriptor(name=attr.key, sql_name=str(column.name), kind=_kind_of_sql_type(column.type, column.name))
        )
    for relationship in mapper.relationships:
        descriptors.append(
            FieldDescriptor(
                name=relationship.key,
                sql_name=relationship.key,
                kind=FieldKind.NESTED,
                model_type=relationship.mapper.class_,
            )
        )
    return tuple(descriptors)


def _describe_dataclass(model_type: type) -> tuple[FieldDescriptor, ...]:
    hints = _type_hints(model_type)
    descriptors: list[FieldDescriptor] = []
    for item in dataclasses.fields(model_type):
        annotation = hints.get(item.name, item.type)
        kind, nested = _kind_of_annotation(annotation)
        kind = _by_name(item.name, kind)
        descriptors.append(
            FieldDescriptor(
                name=item.name,
                sql_name=str(item.metadata.get("column", item.name)),
                kind=kind,
                model_type=nested,
            )
        )
    return tuple(descriptors)


def _describe_pydantic(model_type: type[BaseModel]) -> tuple[FieldDescriptor, ...]:
    descriptors: list[FieldDescriptor] = []
    for name, info in model_type.model_fields.items():
        kind, nested = _kind_of_annotation(info.annotation)
        kind = _by_name(name, kind)
        descriptors.append(FieldDescriptor(name=name, sql_name=info.alias or name, kind=kind, model_type=nested))
    return tuple(descriptors)


def _describe_annotations(model_type: type) -> tuple[FieldDescriptor, ...]:
    descriptors: list[FieldDescriptor] = []
    for name, annotation in _type_hints(model_type).items():
        if name.startswith("_") or typing.get_origin(annotation) is typing.ClassVar:
            continue
        kind, nested = _kind_of_annotation(annotation)
        kind = _by_name(name, kind)
        descriptors.append(FieldDescriptor(name=name, sql_name=name, kind=kind, model_type=nested))
    return tuple(descriptors)


def _type_hints(model_type: type) -> dict[str, Any]:
    try:
        return typing.get_type_hints(model_type, include_extras=False)
    except (NameError, TypeError):
        return dict(getattr(model_type, "__annotations__", {}))


def _kind_of_annotation(annotation: Any) -> tuple[FieldKind, type | None]:
    annotation = _unwrap_optional(annotation)
    origin = typing.get_origin(annotation)

    if origin in (list, tuple, set, frozenset, Sequence):
        args = [arg for arg in typing.get_args(annotation) if arg is not Ellipsis]
        element = _unwrap_optional(args[0]) if args else None
        if isinstance(element, type) and is_describable(element):
            return FieldKind.NESTED, element
        return FieldKind.NESTED, None
    if origin in (dict, Mapping) or annotation in (dict, Mapping):
        return FieldKind.JSON, None
    if not isinstance(annotation, type):
        return FieldKind.OTHER, None
    if "json" in annotation.__name__.lower():
        return FieldKind.JSON, None

    kind = _kind_of_python_type(annotation)
    if kind is not FieldKind.OTHER:
        return kind, None
    if is_describable(annotation):
        return FieldKind.NESTED, annotation
    return FieldKind.OTHER, None


def _by_name(name: str, kind: FieldKind) -> FieldKind:
    if kind in (FieldKind.STRING, FieldKind.BYTES) and "json" in name.lower():
        return FieldKind.JSON
    return kind


def _unwrap_optional(annotation: Any) -> Any:
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        return args[0] if args else annotation
    return annotation


def _kind_of_python_type(value_type: type) -> FieldKind:
    if issubclass(value_type, bool):
        return FieldKind.BOOL
    if issubclass(value_type, int):
        return FieldKind.INT
    if issubclass(value_type, (float, decimal.Decimal)):
        return FieldKind.FLOAT
    if issubclass(value_type, (dt.datetime, dt.date, dt.time, dt.timedelta)):
        return FieldKind.TEMPORAL
    if issubclass(value_type, str):
        return FieldKind.STRING
    if issubclass(value_type, (bytes, bytearray)):
        return FieldKind.BYTES
    return FieldKind.OTHER


def _kind_of_value(value: Any) -> FieldKind:
    if isinstance(value, (Mapping, list, tuple)):
        return FieldKind.NESTED
    if value is None:
        return FieldKind.OTHER
    kind = _kind_of_python_type(type(value))
    if kind is FieldKind.OTHER and is_describable(type(value)):
        return FieldKind.NESTED
    return kind


def _kind_of_sql_type(column_type: Any, column_name: str) -> FieldKind:
    if isinstance(column_type, sa_types.JSON) or "json" in type(column_type).__name__.lower():
        return FieldKind.JSON
    if "json" in str(column_name).lower() and isinstance(column_type, (sa_types.String, sa_types.LargeBinary)):
        return FieldKind.JSON
    if isinstance(column_type, sa_types.Boolean):
        return FieldKind.BOOL
    if isinstance(column_type, sa_types.Integer):
        return FieldKind.INT
    if isinstance(column_type, (sa_types.Float, sa_types.Numeric)):
        return FieldKind.FLOAT
    if isinstance(column_type, (sa_types.DateTime, sa_types.Date, sa_types.Time, sa_types.Interval)):
        return FieldKind.TEMPORAL
    if isinstance(column_type, sa_types.String):
        return FieldKind.STRING
    if isinstance(column_type, sa_types.LargeBinary):
        return FieldKind.BYTES
    return FieldKind.OTHER
