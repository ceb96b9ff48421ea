from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def get_request_id(request: Request) -> str:
    # The middleware id is also stamped on the audit event for this request.
    current = getattr(request.state, "request_id", None)
    if not current:
        current = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = current
    return current


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any, page: dict[str, Any] | None = None) -> dict[str, Any]:
    envelope: dict[str, Any] = {"data": data, "meta": _meta(request)}
    if page is not None:
        envelope["page"] = page
    return envelope


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details)
    return {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}
