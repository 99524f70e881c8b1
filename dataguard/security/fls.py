from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping, MutableMapping
from typing import Any

from dataguard import audit
from dataguard.metrics import observe_fls_masked_fields, observe_fls_masking_failure
from dataguard.security.errors import MaskingFailure
from dataguard.security.fields import FieldDescriptor, FieldKind, describe_value, find_field
from dataguard.security.rules import ColumnSecurity


logger = logging.getLogger("dataguard.fls")

DEFAULT_MASK_CHAR = "*"

_SCALAR_KINDS = frozenset(
    {FieldKind.INT, FieldKind.FLOAT, FieldKind.BOOL, FieldKind.TEMPORAL, FieldKind.STRING, FieldKind.BYTES}
)


def mask_string(
    value: str, mask_start: int, mask_end: int, mask_char: str = DEFAULT_MASK_CHAR, invert: bool = False
) -> str:
    """Mask ``value`` character by character.

    With both bounds zero the whole string is masked. Otherwise the leading
    window covers indices ``0..mask_start`` (inclusive) and the trailing window
    covers ``n-1-mask_end..n-1``. With ``invert`` the band around the midpoint
    ``n // 2`` is masked instead: ``mid-mask_start..mid`` and
    ``mid..mid+mask_end``.
    """

    length = len(value)
    middle = length // 2
    if mask_start == 0 and mask_end == 0:
        mask_start = length
        mask_end = length
    mask_end = min(mask_end, length)
    mask_start = min(mask_start, length)
    mask_char = mask_char or DEFAULT_MASK_CHAR

    chars: list[str] = []
    for index, char in enumerate(value):
        if invert:
            masked = middle - mask_start <= index <= middle or middle <= index <= middle + mask_end
        else:
            masked = index <= mask_start or index >= length - 1 - mask_end
        chars.append(mask_char if masked else char)
    return "".join(chars)


def iter_records(records: Any) -> Iterator[Any]:
    """Flatten lists/tuples of records, skipping ``None``."""

    if records is None:
        return
    if isinstance(records, (list, tuple)):
        for item in records:
            yield from iter_records(item)
        return
    yield records


def apply_column_rules(
    records: Any,
    rules: Iterable[ColumnSecurity],
    *,
    model_type: type | None = None,
    resource: str = "",
    user_id: int = 0,
) -> Any:
    """Mask or hide every enforced rule's field on ``records`` in place.

    A rule that cannot be resolved against a record is skipped for that record
    only. Returns ``records`` so callers can chain.
    """

    masked_paths: list[str] = []
    for rule in rules:
        if not rule.is_enforced or not rule.path:
            continue
        for record in iter_records(records):
            try:
                if model_type is not None and not isinstance(record, (Mapping, model_type)):
                    raise MaskingFailure(f"record of type {type(record).__name__} is not a {model_type.__name__}")
                if _apply_rule(record, rule):
                    masked_paths.append(rule.dotted_path)
            except MaskingFailure as exc:
                _report_failure(resource, rule, exc)

    if masked_paths:
        observe_fls_masked_fields(resource=resource, operation="read", masked_count=len(masked_paths))
        audit.record(
            actor_user_id=user_id,
            entity_type="security.fls",
            entity_id=resource or "unknown",
            action="fls.read",
            before=None,
            after={
                "resource": resource,
                "masked_fields": sorted(set(masked_paths)),
                "masked_count": len(masked_paths),
            },
        )
    return records


def guard_record_update(prev: Any, new: Any, rules: Iterable[ColumnSecurity], *, resource: str = "") -> list[str]:
    """Restore every masked/hidden field of ``new`` from ``prev``.

    Returns the dotted paths that were blocked. Applying it twice yields the
    same paths and leaves already restored values untouched.
    """

    if type(prev) is not type(new):
        logger.error(
            "fls.record_type_mismatch",
            extra={"table": resource, "error": f"{type(prev).__name__} != {type(new).__name__}"},
        )
        raise MaskingFailure("prev and new record type mismatch")

    blocked: list[str] = []
    for rule in rules:
        if not rule.is_enforced or not rule.path:
            continue
        try:
            if _restore_rule(prev, new, rule):
                blocked.append(rule.dotted_path)
        except MaskingFailure as exc:
            _report_failure(resource, rule, exc)
    return blocked


def _apply_rule(record: Any, rule: ColumnSecurity) -> bool:
    path = rule.path
    targets = [record]
    applied = False
    for index, segment in enumerate(path):
        is_last = index == len(path) - 1
        next_targets: list[Any] = []
        for target in targets:
            field = _resolve(target, segment)
            value = _get(target, field)
            if field.kind is FieldKind.JSON:
                pointer = path[index + 1 :]
                if not pointer:
                    raise MaskingFailure(f"json field '{segment}' needs a sub-path")
                _set(target, field, _mask_json(value, pointer, rule))
                applied = True
                continue
            if is_last:
                if value is None:
                    continue
                _set(target, field, _masked_value(field, value, rule))
                applied = True
                continue
            if field.kind in _SCALAR_KINDS:
                raise MaskingFailure(f"cannot descend into {field.kind} field '{segment}'")
            next_targets.extend(iter_records(value))
        targets = next_targets
        if not targets:
            break
    return applied


def _restore_rule(prev: Any, new: Any, rule: ColumnSecurity) -> bool:
    path = rule.path
    pairs = [(prev, new)]
    restored = False
    for index, segment in enumerate(path):
        is_last = index == len(path) - 1
        next_pairs: list[tuple[Any, Any]] = []
        for prev_target, new_target in pairs:
            field = _resolve(new_target, segment)
            prev_field = _resolve(prev_target, segment)
            prev_value = _get(prev_target, prev_field)
            if field.kind is FieldKind.JSON and index + 1 < len(path):
                new_value = _get(new_target, field)
                _set(new_target, field, _restore_json(prev_value, new_value, path[index + 1 :]))
                restored = True
                continue
            if is_last:
                _set(new_target, field, prev_value)
                restored = True
                continue
            new_value = _get(new_target, field)
            if prev_value is None or new_value is None:
                continue
            next_pairs.extend(zip(iter_records(prev_value), iter_records(new_value)))
        pairs = next_pairs
        if not pairs:
            break
    return restored


def _resolve(target: Any, segment: str) -> FieldDescriptor:
    field = find_field(describe_value(target), segment)
    if field is None:
        raise MaskingFailure(f"field '{segment}' not found on {type(target).__name__}")
    return field


def _get(target: Any, field: FieldDescriptor) -> Any:
    if isinstance(target, Mapping):
        return target.get(field.name)
    try:
        return getattr(target, field.name)
    except AttributeError as exc:
        raise MaskingFailure(f"field '{field.name}' not readable on {type(target).__name__}") from exc


def _set(target: Any, field: FieldDescriptor, value: Any) -> None:
    if isinstance(target, Mapping):
        if not isinstance(target, MutableMapping):
            raise MaskingFailure(f"mapping {type(target).__name__} is read-only")
        target[field.name] = value
        return
    try:
        setattr(target, field.name, value)
    except (AttributeError, TypeError, ValueError) as exc:
        raise MaskingFailure(f"field '{field.name}' not settable on {type(target).__name__}") from exc


def _masked_value(field: FieldDescriptor, value: Any, rule: ColumnSecurity) -> Any:
    if field.kind is FieldKind.INT:
        return 0
    if field.kind is FieldKind.FLOAT:
        return type(value)(0)
    if field.kind is FieldKind.TEMPORAL:
        return None
    if field.kind is FieldKind.STRING:
        if rule.is_hide:
            return ""
        return mask_string(str(value), rule.mask_start, rule.mask_end, rule.mask_char, rule.mask_invert)
    raise MaskingFailure(f"unsupported field kind {field.kind} for '{field.name}'")


def _decode_blob(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str):
        try:
            return json.loads(value) if value.strip() else {}
        except ValueError as exc:
            raise MaskingFailure("json field does not hold valid JSON") from exc
    raise MaskingFailure(f"unsupported json value of type {type(value).__name__}")


def _encode_blob(document: Any, original: Any) -> Any:
    if isinstance(original, (dict, list)):
        return document
    text = json.dumps(document)
    if isinstance(original, bytearray):
        return bytearray(text.encode("utf-8"))
    if isinstance(original, bytes):
        return text.encode("utf-8")
    return text


def _pointer_parent(document: Any, pointer: list[str], *, create: bool = False) -> tuple[Any, str | int]:
    node = document
    for segment in pointer[:-1]:
        if isinstance(node, list):
            try:
                node = node[int(segment)]
            except (ValueError, IndexError) as exc:
                raise MaskingFailure(f"json path segment '{segment}' not found") from exc
            continue
        if not isinstance(node, dict):
            raise MaskingFailure(f"json path segment '{segment}' is not an object")
        if segment not in node:
            if not create:
                raise MaskingFailure(f"json path segment '{segment}' not found")
            node[segment] = {}
        node = node[segment]

    leaf = pointer[-1]
    if isinstance(node, list):
        try:
            index = int(leaf)
        except ValueError as exc:
            raise MaskingFailure(f"json path segment '{leaf}' is not an index") from exc
        if not -len(node) <= index < len(node):
            raise MaskingFailure(f"json path index '{leaf}' out of range")
        return node, index
    if not isinstance(node, dict):
        raise MaskingFailure(f"json path segment '{leaf}' is not an object")
    return node, leaf


def _json_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value)


def _mask_json(blob: Any, pointer: list[str], rule: ColumnSecurity) -> Any:
    if blob is None:
        return None
    document = _decode_blob(blob)
    parent, key = _pointer_parent(document, pointer)
    if isinstance(parent, dict) and key not in parent:
        raise MaskingFailure(f"json path '{'/'.join(pointer)}' not found")
    current = _json_text(parent[key])
    if rule.is_hide:
        parent[key] = ""
    else:
        parent[key] = mask_string(current, rule.mask_start, rule.mask_end, rule.mask_char, rule.mask_invert)
    return _encode_blob(document, blob)


def _restore_json(prev_blob: Any, new_blob: Any, pointer: list[str]) -> Any:
    if new_blob is None:
        return new_blob
    new_document = _decode_blob(new_blob)
    prev_document = _decode_blob(prev_blob) if prev_blob is not None else {}

    try:
        prev_parent, prev_key = _pointer_parent(prev_document, pointer)
        has_prev = not isinstance(prev_parent, dict) or prev_key in prev_parent
    except MaskingFailure:
        has_prev = False

    new_parent, new_key = _pointer_parent(new_document, pointer, create=has_prev)
    if has_prev:
        new_parent[new_key] = prev_parent[prev_key]
    elif isinstance(new_parent, dict):
        new_parent.pop(new_key, None)
    return _encode_blob(new_document, new_blob)


def _report_failure(resource: str, rule: ColumnSecurity, exc: MaskingFailure) -> None:
    observe_fls_masking_failure(resource)
    logger.debug(
        "fls.rule_skipped",
        extra={"table": resource, "rule_path": rule.dotted_path, "error": str(exc)},
    )
