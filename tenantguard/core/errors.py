from __future__ import annotations


class TenantGuardError(Exception):
    """Base error for tenantguard."""


class AuthenticationError(TenantGuardError):
    """Caller could not be resolved to an active principal."""


class Unauthenticated(AuthenticationError):
    """Credential missing, malformed, badly signed or expired."""


class TenantInactive(AuthenticationError):
    """Resolved tenant is suspended or cancelled."""


class TenantMismatch(AuthenticationError):
    """Principal has no membership in the claimed tenant."""


class PolicyNotFound(TenantGuardError):
    """No active policy for a resource type/action pair; always treated as deny."""

    def __init__(self, resource_type: str, action: str) -> None:
        super().__init__(f"No policy registered for {resource_type}:{action}")
        self.resource_type = resource_type
        self.action = action


class InvalidAttributeContext(TenantGuardError):
    """A conditional predicate needs an attribute the caller did not provide."""


class Forbidden(TenantGuardError):
    """Decision was deny for a collection or create operation."""


class NotFound(TenantGuardError):
    """Single resource missing or not visible to the principal."""


class InvalidOperation(TenantGuardError):
    """Request is malformed for the gate (unknown action, forbidden payload keys)."""


class TenantScopeError(TenantGuardError):
    """Storage access violated the bound tenant scope."""


class InstallError(TenantGuardError):
    """Policy installation failed; previously active policies stay in place."""


class AuditWriteFailure(TenantGuardError):
    """Audit event could not be persisted; never surfaced to callers."""
