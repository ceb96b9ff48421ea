from __future__ import annotations

import logging

import pytest

from tenantguard.domain.principal import Principal, Role
from tenantguard.services.authz.definitions import Policy, parse_definitions
from tenantguard.services.authz.evaluator import (
    ROLE_GRANTS,
    AccessEvaluator,
    DecisionBasis,
    RoleGrant,
)
from tenantguard.services.authz.predicates import ALWAYS, NEVER, AttrEq, TenantEq, all_of
from tenantguard.services.authz.registry import PolicyRegistry


WORKORDER_POLICIES = [
    {"resource_type": "customers", "action": "read", "allowed_roles": ["manager", "staff", "viewer"]},
    {"resource_type": "customers", "action": "delete", "allowed_roles": ["manager"]},
    {
        "resource_type": "workorders",
        "action": "read",
        "allowed_roles": ["manager", "staff", "service"],
        "conditional_rules": [
            {
                "roles": ["staff"],
                "any_of": [
                    {"field": "assigned_to", "equals_principal": "user_id"},
                    {"permission": "workorders:read_all"},
                ],
            }
        ],
    },
    {
        "resource_type": "workorders",
        "action": "list",
        "allowed_roles": ["viewer"],
        "conditional_rules": [
            {"roles": ["viewer"], "any_of": [{"field": "customer_id", "in_principal_attribute": "customer_ids"}]}
        ],
    },
]


def _evaluator(raw: list[dict] = WORKORDER_POLICIES) -> AccessEvaluator:
    registry = PolicyRegistry(refresh_interval_s=3600)
    for definition in parse_definitions(raw):
        registry.upsert(
            definition.resource_type,
            definition.action,
            Policy.from_definition(definition, version=1),
        )
    return AccessEvaluator(registry)


def _principal(role: Role, **kwargs) -> Principal:
    return Principal(user_id=kwargs.pop("user_id", "u1"), tenant_id=kwargs.pop("tenant_id", "t1"), role=role, **kwargs)


def test_every_role_has_an_explicit_grant() -> None:
    assert set(ROLE_GRANTS) == set(Role)
    assert ROLE_GRANTS[Role.OWNER] is RoleGrant.TENANT_ADMIN
    assert ROLE_GRANTS[Role.SERVICE] is RoleGrant.CROSS_TENANT
    assert {ROLE_GRANTS[role] for role in (Role.MANAGER, Role.STAFF, Role.VIEWER)} == {RoleGrant.POLICY_BOUND}


@pytest.mark.parametrize("role", list(Role))
def test_missing_policy_denies_every_role(role: Role, caplog) -> None:
    evaluator = _evaluator()
    with caplog.at_level(logging.WARNING, logger="tenantguard.services.authz.evaluator"):
        decision = evaluator.authorize(_principal(role), "invoices", "read", {})
    assert decision.allowed is False
    assert decision.basis is DecisionBasis.DENY_NO_POLICY
    assert decision.filter is NEVER
    assert "policy_not_found" in caplog.text


def test_tenant_check_runs_before_role_grants() -> None:
    decision = _evaluator().authorize(_principal(Role.OWNER), "customers", "read", {"tenant_id": "t2"})
    assert decision.allowed is False
    assert decision.basis is DecisionBasis.DENY_TENANT


def test_owner_grant_is_tenant_bound() -> None:
    decision = _evaluator().authorize(_principal(Role.OWNER), "customers", "delete", {})
    assert decision.allowed is True
    assert decision.basis is DecisionBasis.OWNER_GRANT
    assert decision.filter == TenantEq("t1")
    assert decision.policy_version == 1


def test_role_grant_and_role_denial() -> None:
    evaluator = _evaluator()
    allowed = evaluator.authorize(_principal(Role.MANAGER), "customers", "delete", {})
    denied = evaluator.authorize(_principal(Role.STAFF), "customers", "delete", {})
    assert allowed.basis is DecisionBasis.ROLE_GRANT
    assert denied.allowed is False
    assert denied.basis is DecisionBasis.DENY_ROLE


@pytest.mark.parametrize("capability", ["customers:delete", "customers:*", "*:delete", "*"])
def test_capability_grant_with_wildcards(capability: str) -> None:
    principal = _principal(Role.STAFF, permissions=(capability,))
    decision = _evaluator().authorize(principal, "customers", "delete", {})
    assert decision.allowed is True
    assert decision.basis is DecisionBasis.CAPABILITY_GRANT


def test_staff_conditional_filter_limits_to_assigned() -> None:
    decision = _evaluator().authorize(_principal(Role.STAFF, user_id="alice"), "workorders", "read", {})
    assert decision.allowed is True
    assert decision.filter == all_of(TenantEq("t1"), AttrEq("assigned_to", "alice"))


def test_staff_read_all_permission_short_circuits_condition() -> None:
    principal = _principal(Role.STAFF, permissions=("workorders:read_all",))
    decision = _evaluator().authorize(principal, "workorders", "read", {})
    assert decision.filter == TenantEq("t1")


def test_missing_principal_attribute_denies() -> None:
    decision = _evaluator().authorize(_principal(Role.VIEWER), "workorders", "list", {})
    assert decision.allowed is False
    assert decision.basis is DecisionBasis.DENY_ATTRIBUTES


def test_principal_attribute_list_becomes_in_filter() -> None:
    principal = _principal(Role.VIEWER, attributes={"customer_ids": ["c1", "c2"]})
    decision = _evaluator().authorize(principal, "workorders", "list", {})
    assert decision.allowed is True
    evaluator = _evaluator()
    assert evaluator.check_resource(decision, {"tenant_id": "t1", "customer_id": "c2"})
    assert not evaluator.check_resource(decision, {"tenant_id": "t1", "customer_id": "c9"})


def test_service_principal_is_not_tenant_bound() -> None:
    evaluator = _evaluator()
    service = _principal(Role.SERVICE, tenant_id="ops")
    anywhere = evaluator.authorize(service, "workorders", "read", {})
    targeted = evaluator.authorize(service, "workorders", "read", {"tenant_id": "t2"})
    assert anywhere.basis is DecisionBasis.SERVICE_GRANT
    assert anywhere.filter is ALWAYS
    assert targeted.filter == TenantEq("t2")


def test_service_principal_still_needs_role_match() -> None:
    decision = _evaluator().authorize(_principal(Role.SERVICE), "customers", "delete", {})
    assert decision.allowed is False
    assert decision.basis is DecisionBasis.DENY_ROLE


def test_check_resource_rejects_other_tenant_rows() -> None:
    evaluator = _evaluator()
    decision = evaluator.authorize(_principal(Role.MANAGER), "customers", "read", {})
    assert evaluator.check_resource(decision, {"tenant_id": "t1", "id": "c1"})
    assert not evaluator.check_resource(decision, {"tenant_id": "t2", "id": "c1"})


def test_denials_share_one_public_reason_shape() -> None:
    evaluator = _evaluator()
    reasons = {
        evaluator.authorize(_principal(Role.STAFF), "invoices", "read", {}).filter,
        evaluator.authorize(_principal(Role.STAFF), "customers", "read", {"tenant_id": "t9"}).filter,
        evaluator.authorize(_principal(Role.STAFF), "customers", "delete", {}).filter,
    }
    assert reasons == {NEVER}


def test_rules_for_other_roles_do_not_apply() -> None:
    decision = _evaluator().authorize(_principal(Role.MANAGER), "workorders", "read", {})
    assert decision.filter == TenantEq("t1")
