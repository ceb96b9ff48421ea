from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.domain.models import AuthorizationPolicy


async def list_active_policies(session: AsyncSession) -> list[AuthorizationPolicy]:
    # Load every active policy for registry refreshes.
    result = await session.execute(
        select(AuthorizationPolicy)
        .where(AuthorizationPolicy.is_active.is_(True))
        .order_by(AuthorizationPolicy.resource_type.asc(), AuthorizationPolicy.action.asc())
    )
    return list(result.scalars().all())


async def active_policies_for_resource(
    session: AsyncSession,
    *,
    resource_type: str,
) -> dict[str, AuthorizationPolicy]:
    # Index active rows by action for installer diffing.
    result = await session.execute(
        select(AuthorizationPolicy).where(
            AuthorizationPolicy.resource_type == resource_type,
            AuthorizationPolicy.is_active.is_(True),
        )
    )
    return {row.action: row for row in result.scalars().all()}


async def policy_history(
    session: AsyncSession,
    *,
    resource_type: str,
    action: str,
) -> list[AuthorizationPolicy]:
    # Return every version, newest first, including superseded rows.
    result = await session.execute(
        select(AuthorizationPolicy)
        .where(
            AuthorizationPolicy.resource_type == resource_type,
            AuthorizationPolicy.action == action,
        )
        .order_by(AuthorizationPolicy.version.desc())
    )
    return list(result.scalars().all())


def supersede_policy(row: AuthorizationPolicy, *, now: datetime) -> None:
    # Superseded rows stay for history; policies are never deleted.
    row.is_active = False
    row.superseded_at = now


def add_policy_version(
    session: AsyncSession,
    *,
    resource_type: str,
    action: str,
    version: int,
    allowed_roles: list[str],
    conditional_rules: list[dict],
    redact_fields: list[str],
    checksum: str,
    created_by: str | None,
    now: datetime,
) -> AuthorizationPolicy:
    row = AuthorizationPolicy(
        id=uuid4().hex,
        resource_type=resource_type,
        action=action,
        version=version,
        allowed_roles_json=allowed_roles,
        conditional_rules_json=conditional_rules,
        redact_fields_json=redact_fields,
        checksum=checksum,
        is_active=True,
        created_by=created_by,
        created_at=now,
    )
    session.add(row)
    return row
