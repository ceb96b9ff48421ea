"""Tenant scope binding for database sessions.

A scope is attached to one ``AsyncSession`` for the duration of one operation.
While bound, every ORM select/update/delete against a tenant-scoped model is
rewritten with ``tenant_id = <scope tenant>`` and every flush is checked so
rows cannot be created in, moved to, or deleted from another tenant. On
Postgres the scope is also mirrored into a transaction-local setting consumed
by row-level security policies.

The scope lives in ``session.info``; nothing here is process global.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
import logging
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy import event, inspect, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from tenantguard.core.config import get_settings
from tenantguard.core.errors import TenantScopeError
from tenantguard.domain.models import TenantScopedMixin
from tenantguard.domain.principal import Principal
from tenantguard.persistence.db import is_postgres


logger = logging.getLogger(__name__)

_SCOPE_KEY = "tenantguard.tenant_scope"

T = TypeVar("T")


@dataclass(frozen=True)
class TenantScope:
    tenant_id: str | None
    unrestricted: bool = False
    principal_id: str | None = None

    def allows(self, tenant_id: str | None) -> bool:
        return self.unrestricted or (tenant_id is not None and tenant_id == self.tenant_id)


# Sentinel scope for service principals; never bound to one tenant.
UNRESTRICTED = TenantScope(tenant_id=None, unrestricted=True)


def scope_for(principal: Principal) -> TenantScope:
    # Service principals get the unrestricted sentinel; everyone else is pinned to their tenant.
    if principal.is_service:
        return replace(UNRESTRICTED, principal_id=principal.user_id)
    return TenantScope(tenant_id=principal.tenant_id, principal_id=principal.user_id)


def current_scope(session: AsyncSession | Session) -> TenantScope | None:
    return session.info.get(_SCOPE_KEY)


async def _apply_db_setting(session: AsyncSession, scope: TenantScope) -> None:
    settings = get_settings()
    await session.execute(
        text("SELECT set_config(:name, :value, true), set_config(:bypass_name, :bypass, true)"),
        {
            "name": settings.tenant_scope_setting,
            "value": scope.tenant_id or "",
            "bypass_name": settings.tenant_scope_bypass_setting,
            "bypass": "on" if scope.unrestricted else "off",
        },
    )


async def _clear_db_setting(session: AsyncSession) -> None:
    settings = get_settings()
    await session.execute(
        text("SELECT set_config(:name, '', true), set_config(:bypass_name, 'off', true)"),
        {"name": settings.tenant_scope_setting, "bypass_name": settings.tenant_scope_bypass_setting},
    )


@asynccontextmanager
async def tenant_scope(session: AsyncSession, principal: Principal) -> AsyncIterator[TenantScope]:
    # Bind the scope, then clear it on every exit path including cancellation.
    if current_scope(session) is not None:
        raise TenantScopeError("Session already carries a tenant scope")
    scope = scope_for(principal)
    session.info[_SCOPE_KEY] = scope
    if scope.unrestricted:
        logger.warning("tenant_scope_unrestricted principal_id=%s", principal.user_id)
    try:
        if is_postgres(session):
            await _apply_db_setting(session, scope)
        yield scope
    except BaseException:
        # Rolling back also discards transaction-local settings on Postgres.
        await session.rollback()
        raise
    else:
        if is_postgres(session) and session.in_transaction():
            await _clear_db_setting(session)
    finally:
        session.info.pop(_SCOPE_KEY, None)


async def with_tenant_scope(
    session: AsyncSession,
    principal: Principal,
    fn: Callable[[TenantScope], Awaitable[T]],
) -> T:
    async with tenant_scope(session, principal) as scope:
        return await fn(scope)


def _touches_scoped_models(state: ORMExecuteState) -> bool:
    return any(issubclass(mapper.class_, TenantScopedMixin) for mapper in state.all_mappers)


@event.listens_for(Session, "do_orm_execute")
def _enforce_scope_on_queries(state: ORMExecuteState) -> None:
    if not (state.is_select or state.is_update or state.is_delete):
        return
    if state.is_column_load or state.is_relationship_load:
        return
    if not _touches_scoped_models(state):
        return
    scope = current_scope(state.session)
    if scope is None:
        if get_settings().tenant_scope_required:
            raise TenantScopeError("Tenant-scoped query executed outside a tenant scope")
        return
    if scope.unrestricted:
        return
    tenant_id = scope.tenant_id
    state.statement = state.statement.options(
        with_loader_criteria(
            TenantScopedMixin,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


@event.listens_for(Session, "before_flush")
def _enforce_scope_on_flush(session: Session, flush_context, instances) -> None:
    scope = current_scope(session)
    required = get_settings().tenant_scope_required

    def _check_bound() -> TenantScope | None:
        if scope is None and required:
            raise TenantScopeError("Tenant-scoped write executed outside a tenant scope")
        return scope

    for obj in session.new:
        if not isinstance(obj, TenantScopedMixin):
            continue
        bound = _check_bound()
        if bound is None:
            continue
        if obj.tenant_id is None:
            if bound.unrestricted:
                raise TenantScopeError("Unrestricted scope requires an explicit tenant_id on insert")
            obj.tenant_id = bound.tenant_id
        elif not bound.allows(obj.tenant_id):
            raise TenantScopeError("Insert targets a tenant outside the bound scope")

    for obj in session.dirty:
        if not isinstance(obj, TenantScopedMixin):
            continue
        if inspect(obj).attrs.tenant_id.history.has_changes():
            raise TenantScopeError("tenant_id is immutable")
        bound = _check_bound()
        if bound is not None and not bound.allows(obj.tenant_id):
            raise TenantScopeError("Update targets a tenant outside the bound scope")

    for obj in session.deleted:
        if not isinstance(obj, TenantScopedMixin):
            continue
        bound = _check_bound()
        if bound is not None and not bound.allows(obj.tenant_id):
            raise TenantScopeError("Delete targets a tenant outside the bound scope")
