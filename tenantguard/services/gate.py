"""Single entry point for business operations on protected resources.

``AccessGate.execute`` runs every attempt through the same sequence: resolve
the principal, refresh policies when stale, authorize, bind the tenant scope,
run the action and record one audit event. The audit write happens after the
operation's session is closed so it never shares a transaction with the
business write.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable, Mapping, NoReturn
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.config import csv_values, get_settings
from tenantguard.core.errors import (
    AuthenticationError,
    Forbidden,
    InvalidAttributeContext,
    InvalidOperation,
    NotFound,
)
from tenantguard.domain.models import Base, Tenant
from tenantguard.domain.principal import Principal
from tenantguard.domain.resources import ResourceType, get_resource, snapshot
from tenantguard.persistence.db import SessionLocal
from tenantguard.persistence.scope import TenantScope, tenant_scope
from tenantguard.services.audit import (
    DECISION_ALLOWED,
    DECISION_CANCELLED,
    DECISION_DENIED,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    AuditRecorder,
    get_audit_recorder,
    should_audit,
)
from tenantguard.services.auth.identity import IdentityResolver
from tenantguard.services.authz.evaluator import AccessEvaluator, Decision
from tenantguard.services.authz.predicates import to_clause
from tenantguard.services.authz.registry import PolicyRegistry, get_policy_registry


logger = logging.getLogger(__name__)

BUILTIN_ACTIONS = frozenset({"list", "read", "create", "update", "delete"})


@dataclass(frozen=True)
class ResourceSelector:
    resource_id: str | None = None
    filters: Mapping[str, Any] = field(default_factory=dict)
    payload: Mapping[str, Any] = field(default_factory=dict)
    offset: int = 0
    limit: int | None = None


@dataclass(frozen=True)
class OperationRequest:
    credential: str | None
    resource_type: str
    action: str
    selector: ResourceSelector = field(default_factory=ResourceSelector)
    attribute_context: Mapping[str, Any] = field(default_factory=dict)
    claimed_tenant: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class OperationResult:
    principal: Principal
    decision: Decision
    data: Any = None
    has_more: bool = False
    next_offset: int | None = None


@dataclass(frozen=True)
class OperationContext:
    session: AsyncSession
    principal: Principal
    scope: TenantScope
    decision: Decision
    evaluator: AccessEvaluator
    request: OperationRequest


@dataclass(frozen=True)
class HandlerOutcome:
    data: Any = None
    resource_id: str | None = None
    tenant_id: str | None = None
    before: Mapping[str, Any] | None = None
    after: Mapping[str, Any] | None = None


Handler = Callable[[OperationContext], Awaitable[HandlerOutcome]]


@dataclass
class _Attempt:
    # Collects what the single audit event for one attempt will say.
    request: OperationRequest
    principal: Principal | None = None
    decision: str = DECISION_DENIED
    outcome: str = OUTCOME_FAILURE
    reason: str | None = None
    tenant_id: str | None = None
    resource_id: str | None = None
    before: Mapping[str, Any] | None = None
    after: Mapping[str, Any] | None = None
    redact_fields: frozenset[str] = frozenset()
    settled: bool = False

    def settle(self, decision: str, outcome: str, reason: str | None) -> None:
        if self.settled:
            return
        self.decision = decision
        self.outcome = outcome
        self.reason = reason
        self.settled = True

    def audit_tenant(self) -> str | None:
        if self.principal is None:
            return None
        if not self.principal.is_service:
            return self.principal.tenant_id
        for state in (self.after, self.before):
            if state and state.get("tenant_id"):
                return state["tenant_id"]
        return self.tenant_id or self.request.attribute_context.get("tenant_id")


def _present(resource: ResourceType, row: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in row.items() if key not in resource.redact_fields}


class AccessGate:
    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] | None = None,
        resolver: IdentityResolver | None = None,
        registry: PolicyRegistry | None = None,
        recorder: AuditRecorder | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._resolver = resolver or IdentityResolver()
        self._registry = registry or get_policy_registry()
        self._recorder = recorder or get_audit_recorder()
        self._evaluator = AccessEvaluator(self._registry)
        self._handlers: dict[tuple[str, str], Handler] = {}

    @property
    def evaluator(self) -> AccessEvaluator:
        return self._evaluator

    def register_handler(self, resource_type: str, action: str, handler: Handler) -> None:
        # Catalog resources keep their built-in actions; handlers add to them.
        if get_resource(resource_type) is not None and action in BUILTIN_ACTIONS:
            raise ValueError(f"{action} is a built-in action for {resource_type}")
        self._handlers[(resource_type, action)] = handler

    async def execute(self, request: OperationRequest) -> OperationResult:
        attempt = _Attempt(request=request, resource_id=request.selector.resource_id)
        try:
            async with self._session_factory() as session:
                return await self._run(session, request, attempt)
        except asyncio.CancelledError:
            attempt.settle(DECISION_CANCELLED, OUTCOME_FAILURE, "cancelled")
            raise
        except AuthenticationError:
            attempt.settle(DECISION_DENIED, OUTCOME_FAILURE, "unauthenticated")
            raise
        except InvalidOperation:
            attempt.settle(DECISION_DENIED, OUTCOME_FAILURE, "invalid_operation")
            raise
        except (Forbidden, NotFound):
            raise
        except Exception as exc:
            attempt.settle(attempt.decision, OUTCOME_FAILURE, type(exc).__name__)
            logger.warning(
                "gate_operation_failed resource_type=%s action=%s request_id=%s",
                request.resource_type,
                request.action,
                request.request_id,
                exc_info=exc,
            )
            raise
        finally:
            await self._audit(attempt)

    async def _audit(self, attempt: _Attempt) -> None:
        request = attempt.request
        unrestricted = attempt.principal is not None and attempt.principal.is_service
        if not should_audit(
            action=request.action,
            decision=attempt.decision,
            resource_type=request.resource_type,
            unrestricted=unrestricted,
        ):
            return
        await self._recorder.record(
            principal=attempt.principal,
            tenant_id=attempt.audit_tenant(),
            resource_type=request.resource_type,
            resource_id=attempt.resource_id,
            action=request.action,
            decision=attempt.decision,
            outcome=attempt.outcome,
            reason=attempt.reason,
            before=attempt.before,
            after=attempt.after,
            redact_fields=attempt.redact_fields,
            request_id=request.request_id,
        )

    async def _run(
        self,
        session: AsyncSession,
        request: OperationRequest,
        attempt: _Attempt,
    ) -> OperationResult:
        principal = await self._resolver.resolve(session, request.credential, request.claimed_tenant)
        attempt.principal = principal
        await self._registry.ensure_fresh(session)

        handler = self._handlers.get((request.resource_type, request.action))
        resource = get_resource(request.resource_type)
        single = request.selector.resource_id is not None
        if handler is None and (resource is None or request.action not in BUILTIN_ACTIONS):
            # Unknown pairs look exactly like a pair without a policy.
            logger.info(
                "gate_unknown_operation resource_type=%s action=%s",
                request.resource_type,
                request.action,
            )
            self._deny(attempt, "unknown_operation", single=single)
        if "tenant_id" in request.selector.payload:
            raise InvalidOperation("tenant_id must be derived from the credential")

        decision = self._evaluator.authorize(
            principal, request.resource_type, request.action, request.attribute_context
        )
        policy = self._registry.get(request.resource_type, request.action)
        if policy is not None:
            attempt.redact_fields = policy.redact_fields
        if not decision.allowed:
            self._deny(attempt, decision.reason, single=single)
        attempt.decision = DECISION_ALLOWED
        logger.debug(
            "gate_authorized resource_type=%s action=%s basis=%s filter=%s",
            request.resource_type,
            request.action,
            decision.reason,
            decision.describe_filter(),
        )

        async with tenant_scope(session, principal) as scope:
            if handler is not None:
                context = OperationContext(
                    session=session,
                    principal=principal,
                    scope=scope,
                    decision=decision,
                    evaluator=self._evaluator,
                    request=request,
                )
                outcome = await handler(context)
                await session.commit()
                attempt.resource_id = outcome.resource_id or attempt.resource_id
                attempt.tenant_id = outcome.tenant_id
                attempt.before = outcome.before
                attempt.after = outcome.after
                attempt.settle(DECISION_ALLOWED, OUTCOME_SUCCESS, decision.reason)
                return OperationResult(principal=principal, decision=decision, data=outcome.data)

            if resource is None:
                self._deny(attempt, "unknown_operation", single=single)
            action = request.action
            if action == "list":
                result = await self._list(session, resource, request, decision, attempt)
            elif action == "read":
                row = await self._load_visible(session, resource, request, decision, attempt)
                result = OperationResult(principal, decision, _present(resource, snapshot(row)))
            elif action == "create":
                result = await self._create(session, resource, request, principal, decision, attempt)
            elif action == "update":
                result = await self._update(session, resource, request, decision, attempt)
            else:
                result = await self._delete(session, resource, request, decision, attempt)
            await session.commit()

        attempt.settle(DECISION_ALLOWED, OUTCOME_SUCCESS, decision.reason)
        return result

    def _deny(self, attempt: _Attempt, reason: str, *, single: bool) -> NoReturn:
        # Every denial leaves the same public shape whatever the cause.
        attempt.settle(DECISION_DENIED, OUTCOME_FAILURE, reason)
        if single:
            raise NotFound("Resource not found")
        raise Forbidden("Access denied")

    async def _load_visible(
        self,
        session: AsyncSession,
        resource: ResourceType,
        request: OperationRequest,
        decision: Decision,
        attempt: _Attempt,
    ) -> Base:
        resource_id = request.selector.resource_id
        if not resource_id:
            raise InvalidOperation("resource_id is required")
        model = resource.model
        result = await session.execute(select(model).where(model.id == resource_id))
        row = result.scalar_one_or_none()
        if row is None:
            self._deny(attempt, "not_found", single=True)
        if not self._evaluator.check_resource(decision, snapshot(row)):
            self._deny(attempt, "deny_condition", single=True)
        return row

    def _writable(self, resource: ResourceType, payload: Mapping[str, Any]) -> dict[str, Any]:
        unknown = set(payload) - resource.writable_fields()
        if unknown:
            raise InvalidOperation(f"Unknown or read-only fields: {sorted(unknown)}")
        return dict(payload)

    async def _list(
        self,
        session: AsyncSession,
        resource: ResourceType,
        request: OperationRequest,
        decision: Decision,
        attempt: _Attempt,
    ) -> OperationResult:
        settings = get_settings()
        selector = request.selector
        limit = selector.limit or settings.list_default_limit
        limit = max(1, min(limit, settings.list_max_limit))
        offset = max(0, selector.offset)
        model = resource.model
        try:
            stmt = select(model).where(to_clause(decision.filter, model))
        except InvalidAttributeContext:
            logger.warning("gate_filter_unusable resource_type=%s", resource.name)
            self._deny(attempt, "deny_attributes", single=False)
        # Redacted columns are never filterable.
        hidden = resource.redact_fields | attempt.redact_fields | csv_values(settings.audit_redact_fields)
        columns = resource.column_names() - hidden
        for key, value in selector.filters.items():
            if key not in columns:
                raise InvalidOperation(f"Unknown filter field {key}")
            stmt = stmt.where(getattr(model, key) == value)
        # Fetch one extra row to compute has_more without an extra count query.
        stmt = stmt.order_by(model.created_at.desc(), model.id.asc()).offset(offset).limit(limit + 1)
        rows = list((await session.execute(stmt)).scalars().all())
        has_more = len(rows) > limit
        rows = rows[:limit]
        return OperationResult(
            principal=attempt.principal,
            decision=decision,
            data=[_present(resource, snapshot(row)) for row in rows],
            has_more=has_more,
            next_offset=offset + limit if has_more else None,
        )

    async def _create(
        self,
        session: AsyncSession,
        resource: ResourceType,
        request: OperationRequest,
        principal: Principal,
        decision: Decision,
        attempt: _Attempt,
    ) -> OperationResult:
        values = self._writable(resource, request.selector.payload)
        tenant_id = principal.tenant_id
        if principal.is_service:
            tenant_id = request.attribute_context.get("tenant_id")
            if not tenant_id:
                raise InvalidOperation("Service creates must name the target tenant")
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None or tenant.status != "active":
                raise InvalidOperation("Target tenant is not active")
        # The new row must itself satisfy the caller's filter.
        if not self._evaluator.check_resource(decision, {**values, "tenant_id": tenant_id}):
            self._deny(attempt, "deny_condition", single=False)
        row = resource.model(id=uuid4().hex, **values)
        if principal.is_service:
            row.tenant_id = tenant_id
        session.add(row)
        await session.flush()
        await session.refresh(row)
        attempt.resource_id = row.id
        attempt.after = snapshot(row)
        return OperationResult(principal, decision, _present(resource, attempt.after))

    async def _update(
        self,
        session: AsyncSession,
        resource: ResourceType,
        request: OperationRequest,
        decision: Decision,
        attempt: _Attempt,
    ) -> OperationResult:
        values = self._writable(resource, request.selector.payload)
        row = await self._load_visible(session, resource, request, decision, attempt)
        attempt.before = snapshot(row)
        for key, value in values.items():
            setattr(row, key, value)
        # Updates may not move a row outside what the caller is allowed to see.
        if not self._evaluator.check_resource(decision, snapshot(row)):
            self._deny(attempt, "deny_condition", single=False)
        await session.flush()
        await session.refresh(row)
        attempt.after = snapshot(row)
        return OperationResult(attempt.principal, decision, _present(resource, attempt.after))

    async def _delete(
        self,
        session: AsyncSession,
        resource: ResourceType,
        request: OperationRequest,
        decision: Decision,
        attempt: _Attempt,
    ) -> OperationResult:
        row = await self._load_visible(session, resource, request, decision, attempt)
        attempt.before = snapshot(row)
        await session.delete(row)
        await session.flush()
        return OperationResult(attempt.principal, decision, None)
