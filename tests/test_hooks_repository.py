from __future__ import annotations

import logging
from dataclasses import dataclass

import pytest
from sqlalchemy import Integer, String, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dataguard import audit
from dataguard.security.authenticators import HeaderAuthenticator
from dataguard.security.cache import SecurityList
from dataguard.security.composite import CompositeSecurityProvider
from dataguard.security.errors import AuthorizationDenied
from dataguard.security.hooks import (
    HookContext,
    apply_column_security,
    apply_row_security,
    load_security_rules,
    log_data_access,
)
from dataguard.security.providers import DatabaseColumnSecurityProvider, DatabaseRowSecurityProvider
from dataguard.security.repository import SecuredRepository


class Base(DeclarativeBase):
    pass


class Patient(Base):
    __tablename__ = "patients"

    patient_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(80))
    diagnosis: Mapped[str] = mapped_column(String(200))


@dataclass
class Note:
    id: int
    body: str


@pytest.fixture()
def security_list(store) -> SecurityList:
    store.column_rules["clinic.patients"] = [{"control": "clinic.patients.diagnosis", "accesstype": "hide"}]
    store.row_rules["clinic.patients"] = {"template": "{PrimaryKeyName} = {UserID}", "block": False}
    store.row_rules["clinic.audit_log"] = {"template": "", "block": True}
    provider = CompositeSecurityProvider(
        HeaderAuthenticator(), DatabaseColumnSecurityProvider(store), DatabaseRowSecurityProvider(store)
    )
    return SecurityList(provider)


def test_hooks_load_scope_and_mask(security_list: SecurityList) -> None:
    ctx = HookContext(user_id=3, schema="clinic", entity="patients", model=Patient, query=select(Patient))

    load_security_rules(ctx, security_list)
    apply_row_security(ctx, security_list)
    ctx.result = [Patient(patient_id=3, name="Ada", diagnosis="flu")]
    apply_column_security(ctx, security_list)
    log_data_access(ctx)

    assert "WHERE patient_id = 3" in str(ctx.query)
    assert ctx.result[0].diagnosis == ""
    assert ctx.result[0].name == "Ada"
    assert audit.audit_entries[-1]["action"] == "data.read"
    assert audit.audit_entries[-1]["entity_id"] == "clinic.patients"


def test_load_failures_are_logged_not_raised(store, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="dataguard.hooks")
    store.column_rules["clinic.patients"] = "{broken"  # type: ignore[assignment]
    provider = CompositeSecurityProvider(
        HeaderAuthenticator(), DatabaseColumnSecurityProvider(store), DatabaseRowSecurityProvider(store)
    )
    security_list = SecurityList(provider)
    ctx = HookContext(user_id=3, schema="clinic", entity="patients", model=Patient)

    load_security_rules(ctx, security_list)

    assert any(record.getMessage() == "hooks.column_rules_unavailable" for record in caplog.records)


def test_missing_user_skips_enforcement(security_list: SecurityList, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="dataguard.hooks")
    query = select(Patient)
    ctx = HookContext(user_id=None, schema="clinic", entity="patients", model=Patient, query=query)

    load_security_rules(ctx, security_list)
    apply_row_security(ctx, security_list)

    assert ctx.query is query
    assert any(record.getMessage() == "hooks.no_user" for record in caplog.records)


def test_blocked_entity_fails_closed(security_list: SecurityList) -> None:
    ctx = HookContext(user_id=3, schema="clinic", entity="audit_log", query=select(Patient))
    load_security_rules(ctx, security_list)

    with pytest.raises(AuthorizationDenied):
        apply_row_security(ctx, security_list)


def test_column_hook_without_loaded_rules_leaves_result(security_list: SecurityList, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="dataguard.hooks")
    ctx = HookContext(user_id=3, schema="clinic", entity="notes", model=Note, result=[Note(1, "private")])

    apply_column_security(ctx, security_list)

    assert ctx.result[0].body == "private"
    assert any(record.getMessage() == "hooks.column_security_skipped" for record in caplog.records)


def test_secured_repository_round_trip(security_list: SecurityList) -> None:
    repository = SecuredRepository("clinic", "patients", Patient, security_list)
    repository.load_rules(5)

    query = repository.apply_scope_query(select(Patient), 5)
    single = repository.apply_read_security(Patient(patient_id=5, name="Ada", diagnosis="flu"), 5)
    many = repository.apply_read_security_many(
        [Patient(patient_id=5, name="Ada", diagnosis="flu"), Patient(patient_id=6, name="Bo", diagnosis="cold")], 5
    )
    previous = Patient(patient_id=5, name="Ada", diagnosis="flu")
    updated = Patient(patient_id=5, name="Ada L.", diagnosis="")
    blocked = repository.guard_update(previous, updated, 5)

    assert "patient_id = 5" in str(query)
    assert single.diagnosis == ""
    assert [patient.diagnosis for patient in many] == ["", ""]
    assert blocked == ["diagnosis"]
    assert updated.diagnosis == "flu"
    assert updated.name == "Ada L."
