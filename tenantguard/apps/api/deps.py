from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from tenantguard.apps.api.response import get_request_id
from tenantguard.services.gate import AccessGate


@dataclass(frozen=True)
class CallerContext:
    credential: str | None
    claimed_tenant: str | None
    request_id: str


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Malformed headers become an empty credential so the gate audits the failure.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1]


def get_caller(request: Request) -> CallerContext:
    return CallerContext(
        credential=_parse_bearer_token(request.headers.get("Authorization")),
        claimed_tenant=request.headers.get("X-Tenant-Id") or None,
        request_id=get_request_id(request),
    )


def get_gate(request: Request) -> AccessGate:
    return request.app.state.gate
