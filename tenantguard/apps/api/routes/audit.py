from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request

from tenantguard.apps.api.deps import CallerContext, get_caller, get_gate
from tenantguard.apps.api.response import success_response
from tenantguard.services.audit_export import AUDIT_RESOURCE
from tenantguard.services.gate import AccessGate, OperationRequest, ResourceSelector


router = APIRouter(prefix="/audit", tags=["audit"])


# Read-only export; audit events have no mutation routes.
@router.get("/events")
async def list_audit_events(
    request: Request,
    principal_id: str | None = Query(default=None),
    resource_type: str | None = Query(default=None),
    action: str | None = Query(default=None),
    decision: str | None = Query(default=None),
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    tenant_id: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1),
    caller: CallerContext = Depends(get_caller),
    gate: AccessGate = Depends(get_gate),
) -> dict:
    filters = {
        "principal_id": principal_id,
        "resource_type": resource_type,
        "action": action,
        "decision": decision,
        "occurred_from": occurred_from,
        "occurred_to": occurred_to,
    }
    result = await gate.execute(
        OperationRequest(
            credential=caller.credential,
            resource_type=AUDIT_RESOURCE,
            action="list",
            selector=ResourceSelector(
                filters={key: value for key, value in filters.items() if value is not None},
                offset=offset,
                limit=limit,
            ),
            # Only service principals may name another tenant; others are denied.
            attribute_context={"tenant_id": tenant_id} if tenant_id else {},
            claimed_tenant=caller.claimed_tenant,
            request_id=caller.request_id,
        )
    )
    return success_response(
        request=request,
        data=result.data["items"],
        page={"next_offset": result.data["next_offset"]},
    )
