from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any, Callable, Sequence

from sqlalchemy import inspect as sa_inspect, text
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import get_settings
from tenantguard.core.errors import InstallError
from tenantguard.domain.models import AuthorizationPolicy, utc_now
from tenantguard.domain.resources import get_resource
from tenantguard.persistence.db import SessionLocal, is_postgres
from tenantguard.persistence.repos import authz as authz_repo
from tenantguard.services.audit import (
    DECISION_ALLOWED,
    OUTCOME_SUCCESS,
    AuditRecorder,
    get_audit_recorder,
)
from tenantguard.services.authz.definitions import Policy, PolicyDefinition, group_by_resource
from tenantguard.services.authz.registry import PolicyRegistry, get_policy_registry


logger = logging.getLogger(__name__)

INSTALLED = "installed"
UPDATED = "updated"
UNCHANGED = "unchanged"

POLICY_AUDIT_RESOURCE = "authorization_policies"
RLS_POLICY_NAME = "tenantguard_tenant_isolation"
_SETTING_NAME = re.compile(r"^[a-z_][a-z0-9_.]*$")


@dataclass(frozen=True)
class InstallResult:
    resource_type: str
    # action -> installed | updated | unchanged
    transitions: dict[str, str] = field(default_factory=dict)
    versions: dict[str, int] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return any(state != UNCHANGED for state in self.transitions.values())


def _table_columns(sync_session, table_name: str) -> set[str]:
    inspector = sa_inspect(sync_session.connection())
    return {column["name"] for column in inspector.get_columns(table_name)}


async def _validate(
    session: AsyncSession,
    resource_type: str,
    policy_set: Sequence[PolicyDefinition],
) -> str:
    # Check the live schema, not only the ORM metadata, before touching any policy row.
    resource = get_resource(resource_type)
    table_name = resource.table_name if resource is not None else resource_type
    try:
        columns = await session.run_sync(_table_columns, table_name)
    except NoSuchTableError as exc:
        raise InstallError(f"Resource table {table_name} does not exist") from exc
    if not columns:
        raise InstallError(f"Resource table {table_name} does not exist")
    if "tenant_id" not in columns:
        raise InstallError(f"Resource table {table_name} has no tenant_id column")

    seen: set[str] = set()
    for definition in policy_set:
        if definition.resource_type != resource_type:
            raise InstallError(
                f"Policy {definition.resource_type}:{definition.action} does not belong to {resource_type}"
            )
        if definition.action in seen:
            raise InstallError(f"Duplicate policy for {resource_type}:{definition.action}")
        seen.add(definition.action)
        missing = definition.condition_fields() - columns
        if missing:
            raise InstallError(
                f"Policy {resource_type}:{definition.action} references unknown fields {sorted(missing)}"
            )
    return table_name


async def _apply_row_security(session: AsyncSession, table_name: str) -> None:
    settings = get_settings()
    for name in (settings.tenant_scope_setting, settings.tenant_scope_bypass_setting):
        if not _SETTING_NAME.match(name):
            raise InstallError(f"Invalid tenant scope setting name {name}")
    table = session.get_bind().dialect.identifier_preparer.quote(table_name)
    predicate = (
        f"(current_setting('{settings.tenant_scope_bypass_setting}', true) = 'on' "
        f"OR tenant_id = current_setting('{settings.tenant_scope_setting}', true))"
    )
    await session.execute(text(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY"))
    await session.execute(text(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY"))
    await session.execute(text(f"DROP POLICY IF EXISTS {RLS_POLICY_NAME} ON {table}"))
    await session.execute(
        text(f"CREATE POLICY {RLS_POLICY_NAME} ON {table} USING {predicate} WITH CHECK {predicate}")
    )


def _body(row: AuthorizationPolicy | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {
        "version": row.version,
        "allowed_roles": row.allowed_roles_json,
        "conditional_rules": row.conditional_rules_json,
        "redact_fields": row.redact_fields_json,
        "checksum": row.checksum,
    }


async def ensure_policies(
    session: AsyncSession,
    resource_type: str,
    policy_set: Sequence[PolicyDefinition],
    *,
    registry: PolicyRegistry | None = None,
    recorder: AuditRecorder | None = None,
    created_by: str | None = None,
) -> InstallResult:
    """Install or update one resource type's policies in a single transaction.

    Identical definitions are left alone, changed ones supersede the active
    version with ``version + 1``. The registry only sees the new policies after
    the transaction commits; on any failure the previous versions stay active
    and ``InstallError`` is raised.
    """
    registry = registry or get_policy_registry()
    recorder = recorder or get_audit_recorder()
    transitions: dict[str, str] = {}
    versions: dict[str, int] = {}
    previous: dict[str, AuthorizationPolicy | None] = {}
    active: list[Policy] = []
    try:
        table_name = await _validate(session, resource_type, policy_set)
        existing = await authz_repo.active_policies_for_resource(session, resource_type=resource_type)
        now = utc_now()
        for definition in policy_set:
            checksum = definition.checksum()
            row = existing.get(definition.action)
            if row is not None and row.checksum == checksum:
                transitions[definition.action] = UNCHANGED
                versions[definition.action] = row.version
                active.append(Policy.from_row(row))
                continue
            if row is not None:
                authz_repo.supersede_policy(row, now=now)
                version = row.version + 1
                transitions[definition.action] = UPDATED
            else:
                history = await authz_repo.policy_history(
                    session, resource_type=resource_type, action=definition.action
                )
                version = history[0].version + 1 if history else 1
                transitions[definition.action] = INSTALLED
            body = definition.body_json()
            authz_repo.add_policy_version(
                session,
                resource_type=resource_type,
                action=definition.action,
                version=version,
                allowed_roles=body["allowed_roles"],
                conditional_rules=body["conditional_rules"],
                redact_fields=body["redact_fields"],
                checksum=checksum,
                created_by=created_by,
                now=now,
            )
            previous[definition.action] = row
            versions[definition.action] = version
            active.append(Policy.from_definition(definition, version=version))

        result = InstallResult(resource_type=resource_type, transitions=transitions, versions=versions)
        if not result.changed:
            await session.rollback()
            registry.replace_resource(resource_type, active)
            logger.info("policy_install_unchanged resource_type=%s", resource_type)
            return result

        if is_postgres(session) and get_resource(resource_type) is not None:
            await _apply_row_security(session, table_name)
        await session.commit()
    except InstallError:
        await session.rollback()
        raise
    except (SQLAlchemyError, ValueError) as exc:
        await session.rollback()
        logger.error("policy_install_failed resource_type=%s", resource_type, exc_info=exc)
        raise InstallError(f"Policy install failed for {resource_type}: {exc}") from exc

    # Visible to readers only after the durable write succeeded.
    registry.replace_resource(resource_type, active)

    for action, state in transitions.items():
        if state == UNCHANGED:
            continue
        logger.info(
            "policy_%s resource_type=%s action=%s version=%s",
            state,
            resource_type,
            action,
            versions[action],
        )
        new_body = next(policy for policy in active if policy.action == action)
        await recorder.record(
            resource_type=POLICY_AUDIT_RESOURCE,
            resource_id=f"{resource_type}:{action}",
            action=f"policy_{state}",
            decision=DECISION_ALLOWED,
            outcome=OUTCOME_SUCCESS,
            principal_id=created_by,
            before=_body(previous.get(action)),
            after={"version": new_body.version, "checksum": new_body.checksum},
        )
    return result


async def install_definitions(
    definitions: Sequence[PolicyDefinition],
    *,
    session_factory: Callable[[], AsyncSession] | None = None,
    registry: PolicyRegistry | None = None,
    recorder: AuditRecorder | None = None,
    created_by: str | None = None,
) -> list[InstallResult]:
    # One transaction per resource type; a failure stops the run.
    try:
        grouped = group_by_resource(list(definitions))
    except ValueError as exc:
        raise InstallError(str(exc)) from exc
    factory = session_factory or SessionLocal
    results: list[InstallResult] = []
    for resource_type, policy_set in grouped.items():
        async with factory() as session:
            results.append(
                await ensure_policies(
                    session,
                    resource_type,
                    policy_set,
                    registry=registry,
                    recorder=recorder,
                    created_by=created_by,
                )
            )
    return results
