from __future__ import annotations

import pytest
from sqlalchemy.dialects import sqlite

from tenantguard.core.errors import InvalidAttributeContext
from tenantguard.domain.models import WorkOrder
from tenantguard.services.authz.predicates import (
    ALWAYS,
    NEVER,
    AllOf,
    AnyOf,
    AttrEq,
    AttrIn,
    TenantEq,
    all_of,
    any_of,
    describe,
    evaluate,
    to_clause,
)


def _sql(predicate) -> str:
    clause = to_clause(predicate, WorkOrder)
    return str(clause.compile(dialect=sqlite.dialect(), compile_kwargs={"literal_binds": True}))


def test_all_of_folds_constants() -> None:
    tenant = TenantEq("t1")
    assert all_of(ALWAYS, tenant) == tenant
    assert all_of(tenant, NEVER) is NEVER
    assert all_of() is ALWAYS
    assert all_of(tenant, AttrEq("status", "open")) == AllOf((tenant, AttrEq("status", "open")))


def test_any_of_folds_constants() -> None:
    cond = AttrEq("assigned_to", "u1")
    assert any_of(NEVER, cond) == cond
    assert any_of(cond, ALWAYS) is ALWAYS
    assert any_of() is NEVER
    assert any_of(cond, AttrIn("id", ("a",))) == AnyOf((cond, AttrIn("id", ("a",))))


def test_evaluate_against_row_snapshot() -> None:
    predicate = all_of(TenantEq("t1"), any_of(AttrEq("assigned_to", "u1"), AttrIn("id", ("w2", "w3"))))
    assert evaluate(predicate, {"tenant_id": "t1", "assigned_to": "u1", "id": "w1"})
    assert evaluate(predicate, {"tenant_id": "t1", "assigned_to": "u9", "id": "w3"})
    assert not evaluate(predicate, {"tenant_id": "t2", "assigned_to": "u1", "id": "w1"})
    assert not evaluate(predicate, {"tenant_id": "t1", "assigned_to": "u9", "id": "w1"})


def test_evaluate_missing_field_never_matches() -> None:
    assert not evaluate(AttrEq("assigned_to", None), {"tenant_id": "t1"})
    assert not evaluate(TenantEq("t1"), {})


def test_to_clause_compiles_to_sql() -> None:
    sql = _sql(all_of(TenantEq("t1"), AttrEq("assigned_to", "u1")))
    assert "workorders.tenant_id = 't1'" in sql
    assert "workorders.assigned_to = 'u1'" in sql
    assert " AND " in sql


def test_to_clause_constants_and_empty_in() -> None:
    assert _sql(ALWAYS) in {"1", "true"}
    assert _sql(NEVER) in {"0", "false"}
    assert _sql(AttrIn("id", ())) in {"0", "false"}


def test_to_clause_rejects_unknown_field() -> None:
    with pytest.raises(InvalidAttributeContext):
        to_clause(AttrEq("no_such_column", 1), WorkOrder)


def test_describe_is_stable() -> None:
    predicate = all_of(TenantEq("t1"), any_of(AttrEq("assigned_to", "u1"), AttrIn("id", ("a", "b"))))
    assert describe(predicate) == "(tenant_id=t1 AND (assigned_to=u1 OR id in ['a', 'b']))"
