from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, status

from tenantguard.apps.api.deps import CallerContext, get_caller, get_gate
from tenantguard.apps.api.response import success_response
from tenantguard.services.gate import AccessGate, OperationRequest, ResourceSelector


router = APIRouter(prefix="/resources", tags=["resources"])

# Query parameters consumed by the route itself rather than used as column filters.
_RESERVED_PARAMS = {"offset", "limit", "tenant_id"}


def _operation(
    caller: CallerContext,
    resource_type: str,
    action: str,
    *,
    selector: ResourceSelector,
    target_tenant: str | None = None,
) -> OperationRequest:
    attribute_context: dict[str, Any] = {}
    if target_tenant:
        attribute_context["tenant_id"] = target_tenant
    return OperationRequest(
        credential=caller.credential,
        resource_type=resource_type,
        action=action,
        selector=selector,
        attribute_context=attribute_context,
        claimed_tenant=caller.claimed_tenant,
        request_id=caller.request_id,
    )


@router.get("/{resource_type}")
async def list_resources(
    request: Request,
    resource_type: str,
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    tenant_id: str | None = Query(default=None),
    caller: CallerContext = Depends(get_caller),
    gate: AccessGate = Depends(get_gate),
) -> dict:
    filters = {key: value for key, value in request.query_params.items() if key not in _RESERVED_PARAMS}
    result = await gate.execute(
        _operation(
            caller,
            resource_type,
            "list",
            selector=ResourceSelector(filters=filters, offset=offset, limit=limit),
            target_tenant=tenant_id,
        )
    )
    return success_response(
        request=request,
        data=result.data,
        page={"has_more": result.has_more, "next_offset": result.next_offset},
    )


@router.post("/{resource_type}", status_code=status.HTTP_201_CREATED)
async def create_resource(
    request: Request,
    resource_type: str,
    payload: dict[str, Any] = Body(...),
    tenant_id: str | None = Query(default=None),
    caller: CallerContext = Depends(get_caller),
    gate: AccessGate = Depends(get_gate),
) -> dict:
    result = await gate.execute(
        _operation(
            caller,
            resource_type,
            "create",
            selector=ResourceSelector(payload=payload),
            target_tenant=tenant_id,
        )
    )
    return success_response(request=request, data=result.data)


@router.get("/{resource_type}/{resource_id}")
async def read_resource(
    request: Request,
    resource_type: str,
    resource_id: str,
    caller: CallerContext = Depends(get_caller),
    gate: AccessGate = Depends(get_gate),
) -> dict:
    result = await gate.execute(
        _operation(caller, resource_type, "read", selector=ResourceSelector(resource_id=resource_id))
    )
    return success_response(request=request, data=result.data)


@router.patch("/{resource_type}/{resource_id}")
async def update_resource(
    request: Request,
    resource_type: str,
    resource_id: str,
    payload: dict[str, Any] = Body(...),
    caller: CallerContext = Depends(get_caller),
    gate: AccessGate = Depends(get_gate),
) -> dict:
    result = await gate.execute(
        _operation(
            caller,
            resource_type,
            "update",
            selector=ResourceSelector(resource_id=resource_id, payload=payload),
        )
    )
    return success_response(request=request, data=result.data)


@router.delete("/{resource_type}/{resource_id}")
async def delete_resource(
    request: Request,
    resource_type: str,
    resource_id: str,
    caller: CallerContext = Depends(get_caller),
    gate: AccessGate = Depends(get_gate),
) -> dict:
    await gate.execute(
        _operation(caller, resource_type, "delete", selector=ResourceSelector(resource_id=resource_id))
    )
    return success_response(request=request, data={"id": resource_id, "deleted": True})
