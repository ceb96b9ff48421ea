from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Mapping

from tenantguard.core.errors import InvalidAttributeContext, PolicyNotFound
from tenantguard.domain.principal import Principal, Role
from tenantguard.services.authz.definitions import Condition, ConditionalRule, Policy
from tenantguard.services.authz.predicates import (
    ALWAYS,
    NEVER,
    AttrEq,
    AttrIn,
    Predicate,
    TenantEq,
    all_of,
    any_of,
    describe,
    evaluate,
)
from tenantguard.services.authz.registry import PolicyRegistry


logger = logging.getLogger(__name__)


class RoleGrant(str, Enum):
    # Every role's baseline capability, enumerated instead of implied.
    TENANT_ADMIN = "tenant_admin"
    POLICY_BOUND = "policy_bound"
    CROSS_TENANT = "cross_tenant"


ROLE_GRANTS: dict[Role, RoleGrant] = {
    # Owners pass the role check for any action that has a policy, inside their own tenant only.
    Role.OWNER: RoleGrant.TENANT_ADMIN,
    Role.MANAGER: RoleGrant.POLICY_BOUND,
    Role.STAFF: RoleGrant.POLICY_BOUND,
    Role.VIEWER: RoleGrant.POLICY_BOUND,
    # Service identities skip tenant scoping but still need a role or capability match.
    Role.SERVICE: RoleGrant.CROSS_TENANT,
}


class DecisionBasis(str, Enum):
    OWNER_GRANT = "owner_grant"
    ROLE_GRANT = "role_grant"
    CAPABILITY_GRANT = "capability_grant"
    SERVICE_GRANT = "service_grant"
    DENY_NO_POLICY = "deny_no_policy"
    DENY_TENANT = "deny_tenant"
    DENY_ROLE = "deny_role"
    DENY_ATTRIBUTES = "deny_attributes"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    basis: DecisionBasis
    # Caller must apply this to every read/write against the resource.
    filter: Predicate
    policy_version: int | None = None

    @property
    def reason(self) -> str:
        return self.basis.value

    def describe_filter(self) -> str:
        return describe(self.filter)


def _deny(basis: DecisionBasis, policy: Policy | None = None) -> Decision:
    return Decision(
        allowed=False,
        basis=basis,
        filter=NEVER,
        policy_version=policy.version if policy else None,
    )


def _bind_condition(condition: Condition, principal: Principal) -> Predicate:
    kind = condition.kind
    if kind == "permission":
        return ALWAYS if principal.has(condition.permission or "") else NEVER
    field = condition.field or ""
    if kind == "equals_principal":
        return AttrEq(field, getattr(principal, condition.equals_principal or ""))
    if kind == "in_principal_attribute":
        name = condition.in_principal_attribute or ""
        if name not in principal.attributes:
            raise InvalidAttributeContext(f"Principal attribute {name} is required")
        raw = principal.attributes[name]
        values = tuple(raw) if isinstance(raw, (list, tuple, set, frozenset)) else (raw,)
        return AttrIn(field, values)
    return AttrEq(field, condition.equals)


def _bind_rules(rules: tuple[ConditionalRule, ...], principal: Principal) -> Predicate:
    # Matching rules are OR'd together, and so are the conditions inside each rule.
    return any_of(
        *(
            any_of(*(_bind_condition(condition, principal) for condition in rule.any_of))
            for rule in rules
        )
    )


class AccessEvaluator:
    def __init__(self, registry: PolicyRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> PolicyRegistry:
        return self._registry

    def _lookup(self, resource_type: str, action: str) -> Policy:
        policy = self._registry.get(resource_type, action)
        if policy is None:
            raise PolicyNotFound(resource_type, action)
        return policy

    def authorize(
        self,
        principal: Principal,
        resource_type: str,
        action: str,
        attribute_context: Mapping[str, Any] | None = None,
    ) -> Decision:
        context = attribute_context or {}
        try:
            policy = self._lookup(resource_type, action)
        except PolicyNotFound as exc:
            # Missing policy is a configuration defect; the caller only sees a deny.
            logger.warning(
                "policy_not_found resource_type=%s action=%s principal_id=%s",
                exc.resource_type,
                exc.action,
                principal.user_id,
            )
            return _deny(DecisionBasis.DENY_NO_POLICY)

        # Tenant scope first; never skipped for a non-service role.
        expected_tenant = context.get("tenant_id")
        if principal.is_service:
            tenant_filter: Predicate = TenantEq(expected_tenant) if expected_tenant else ALWAYS
        else:
            if expected_tenant is not None and expected_tenant != principal.tenant_id:
                return _deny(DecisionBasis.DENY_TENANT, policy)
            tenant_filter = TenantEq(principal.tenant_id)

        grant = ROLE_GRANTS[principal.role]
        if grant is RoleGrant.TENANT_ADMIN:
            basis = DecisionBasis.OWNER_GRANT
        elif principal.role in policy.allowed_roles:
            basis = DecisionBasis.SERVICE_GRANT if grant is RoleGrant.CROSS_TENANT else DecisionBasis.ROLE_GRANT
        elif principal.has(f"{resource_type}:{action}"):
            basis = DecisionBasis.CAPABILITY_GRANT
        else:
            return _deny(DecisionBasis.DENY_ROLE, policy)

        condition: Predicate = ALWAYS
        rules = policy.rules_for(principal.role)
        if rules:
            try:
                condition = _bind_rules(rules, principal)
            except InvalidAttributeContext as exc:
                logger.info(
                    "authz_attribute_missing resource_type=%s action=%s principal_id=%s detail=%s",
                    resource_type,
                    action,
                    principal.user_id,
                    exc,
                )
                return _deny(DecisionBasis.DENY_ATTRIBUTES, policy)

        return Decision(
            allowed=True,
            basis=basis,
            filter=all_of(tenant_filter, condition),
            policy_version=policy.version,
        )

    def check_resource(self, decision: Decision, resource: Mapping[str, Any]) -> bool:
        # Single-resource operations re-check the filter against the loaded row.
        return decision.allowed and evaluate(decision.filter, resource)
