from __future__ import annotations

from datetime import datetime
from typing import Any

from tenantguard.core.config import get_settings
from tenantguard.domain.models import AuditEvent
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.services.authz.predicates import to_clause
from tenantguard.services.gate import AccessGate, HandlerOutcome, OperationContext


AUDIT_RESOURCE = "audit_events"
_FILTER_KEYS = ("principal_id", "resource_type", "action", "decision", "occurred_from", "occurred_to")


def serialize_event(event: AuditEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "event_id": event.event_id,
        "occurred_at": event.occurred_at.isoformat() if event.occurred_at else None,
        "tenant_id": event.tenant_id,
        "principal_id": event.principal_id,
        "principal_role": event.principal_role,
        "resource_type": event.resource_type,
        "resource_id": event.resource_id,
        "action": event.action,
        "decision": event.decision,
        "outcome": event.outcome,
        "reason": event.reason,
        "before": event.before_json,
        "after": event.after_json,
        "request_id": event.request_id,
        "prev_hash": event.prev_hash,
        "event_hash": event.event_hash,
    }


async def list_audit_events(context: OperationContext) -> HandlerOutcome:
    # The decision filter pins non-service principals to their tenant.
    selector = context.request.selector
    limit = max(1, min(selector.limit or 50, get_settings().audit_page_max))
    offset = max(0, selector.offset)
    filters = {key: selector.filters.get(key) for key in _FILTER_KEYS}
    for key in ("occurred_from", "occurred_to"):
        if isinstance(filters[key], str):
            filters[key] = datetime.fromisoformat(filters[key])
    events = await audit_repo.list_events(
        context.session,
        tenant_id=None,
        criteria=to_clause(context.decision.filter, AuditEvent),
        offset=offset,
        limit=limit + 1,
        **filters,
    )
    has_more = len(events) > limit
    items = [serialize_event(event) for event in events[:limit]]
    return HandlerOutcome(
        data={"items": items, "next_offset": offset + limit if has_more else None},
    )


def register_audit_export(gate: AccessGate) -> None:
    gate.register_handler(AUDIT_RESOURCE, "list", list_audit_events)
