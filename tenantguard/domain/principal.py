from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    STAFF = "staff"
    VIEWER = "viewer"
    SERVICE = "service"


def normalize_role(role: str) -> Role:
    # Enforce the closed, lowercased role vocabulary.
    try:
        return Role(role.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


def capability_matches(granted: str, requested: str) -> bool:
    # Match "resource:action" capabilities with "*" wildcards on either segment.
    if granted == "*" or granted == requested:
        return True
    granted_resource, _, granted_action = granted.partition(":")
    requested_resource, _, requested_action = requested.partition(":")
    if not granted_action or not requested_action:
        return False
    resource_ok = granted_resource in {"*", requested_resource}
    action_ok = granted_action in {"*", requested_action}
    return resource_ok and action_ok


class Principal(BaseModel):
    # Resolved caller for one operation; built per request and never persisted.
    model_config = ConfigDict(frozen=True)

    user_id: str
    tenant_id: str
    role: Role
    permissions: tuple[str, ...] = ()
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_service(self) -> bool:
        return self.role is Role.SERVICE

    def has(self, capability: str) -> bool:
        return any(capability_matches(granted, capability) for granted in self.permissions)
