from __future__ import annotations

from typing import Any

from sqlalchemy.sql.elements import ColumnElement

from tenantguard.core.errors import TenantScopeError


def require_tenant_id(tenant_id: str | None) -> str:
    # Identity and audit queries run without a bound scope and must name their tenant.
    if not tenant_id:
        raise TenantScopeError("Tenant predicate required but tenant_id is missing")
    return tenant_id


def tenant_predicate(model: Any, tenant_id: str | None) -> ColumnElement[bool]:
    return model.tenant_id == require_tenant_id(tenant_id)


def tenant_or_unowned(model: Any, tenant_id: str | None) -> ColumnElement[bool]:
    # Tenantless audit events (unauthenticated attempts, policy installs) form their own chain.
    if tenant_id is None:
        return model.tenant_id.is_(None)
    return tenant_predicate(model, tenant_id)
