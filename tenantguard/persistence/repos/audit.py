from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from tenantguard.domain.models import AuditEvent
from tenantguard.persistence.guards import tenant_or_unowned, tenant_predicate


# Append-only: this module exposes inserts and selects, never updates or deletes.


def append_events(session: AsyncSession, events: Iterable[AuditEvent]) -> None:
    session.add_all(list(events))


async def last_hash_for_tenant(session: AsyncSession, *, tenant_id: str | None) -> str | None:
    stmt = select(AuditEvent.event_hash).where(tenant_or_unowned(AuditEvent, tenant_id))
    result = await session.execute(stmt.order_by(AuditEvent.id.desc()).limit(1))
    return result.scalar_one_or_none()


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    principal_id: str | None = None,
    resource_type: str | None = None,
    action: str | None = None,
    decision: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    criteria: ColumnElement[bool] | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Callers must pass a tenant unless they hold an unrestricted scope.
    stmt = select(AuditEvent)
    if criteria is not None:
        stmt = stmt.where(criteria)
    if tenant_id is not None:
        stmt = stmt.where(tenant_predicate(AuditEvent, tenant_id))
    if principal_id:
        stmt = stmt.where(AuditEvent.principal_id == principal_id)
    if resource_type:
        stmt = stmt.where(AuditEvent.resource_type == resource_type)
    if action:
        stmt = stmt.where(AuditEvent.action == action)
    if decision:
        stmt = stmt.where(AuditEvent.decision == decision)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def chain_for_tenant(session: AsyncSession, *, tenant_id: str | None) -> list[AuditEvent]:
    # Full chain in insertion order for integrity verification.
    stmt = select(AuditEvent).where(tenant_or_unowned(AuditEvent, tenant_id))
    result = await session.execute(stmt.order_by(AuditEvent.id.asc()))
    return list(result.scalars().all())
