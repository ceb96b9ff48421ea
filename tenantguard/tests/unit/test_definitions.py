from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from tenantguard.domain.principal import Role
from tenantguard.services.authz.definitions import (
    Condition,
    Policy,
    PolicyDefinition,
    group_by_resource,
    load_definitions,
    parse_definitions,
)


def test_condition_requires_exactly_one_kind() -> None:
    with pytest.raises(ValidationError):
        Condition(field="assigned_to")
    with pytest.raises(ValidationError):
        Condition(field="assigned_to", equals_principal="user_id", equals="x")


def test_condition_shapes() -> None:
    assert Condition(field="assigned_to", equals_principal="user_id").kind == "equals_principal"
    assert Condition(permission="workorders:read_all").kind == "permission"
    with pytest.raises(ValidationError):
        Condition(field="assigned_to", permission="workorders:read_all")
    with pytest.raises(ValidationError):
        Condition(field="assigned_to", equals_principal="email")
    with pytest.raises(ValidationError):
        Condition(equals="open")


def test_camel_case_keys_are_accepted() -> None:
    [definition] = parse_definitions(
        [
            {
                "resourceType": "workorders",
                "action": "read",
                "allowedRoles": ["staff"],
                "conditionalRules": [
                    {"roles": ["staff"], "anyOf": [{"field": "assigned_to", "equalsPrincipal": "user_id"}]}
                ],
            }
        ]
    )
    assert definition.allowed_roles == (Role.STAFF,)
    assert definition.condition_fields() == {"assigned_to"}


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_definitions([{"resource_type": "customers", "action": "read", "allow_all": True}])


def test_checksum_ignores_role_order() -> None:
    first = PolicyDefinition(resource_type="customers", action="read", allowed_roles=("staff", "manager"))
    second = PolicyDefinition(resource_type="customers", action="read", allowed_roles=("manager", "staff"))
    changed = PolicyDefinition(resource_type="customers", action="read", allowed_roles=("manager",))
    assert first.checksum() == second.checksum()
    assert first.checksum() != changed.checksum()


def test_policy_rules_for_role() -> None:
    definition = parse_definitions(
        [
            {
                "resource_type": "workorders",
                "action": "list",
                "allowed_roles": ["staff", "manager"],
                "conditional_rules": [
                    {"roles": ["staff"], "any_of": [{"permission": "workorders:read_all"}]}
                ],
            }
        ]
    )[0]
    policy = Policy.from_definition(definition, version=3)
    assert policy.version == 3
    assert len(policy.rules_for(Role.STAFF)) == 1
    assert policy.rules_for(Role.MANAGER) == ()


def test_group_by_resource_rejects_duplicates() -> None:
    definitions = parse_definitions(
        [
            {"resource_type": "customers", "action": "read"},
            {"resource_type": "customers", "action": "read", "allowed_roles": ["viewer"]},
        ]
    )
    with pytest.raises(ValueError):
        group_by_resource(definitions)


def test_load_definitions_from_file(tmp_path) -> None:
    path = tmp_path / "policies.json"
    path.write_text(
        json.dumps(
            [
                {"resource_type": "customers", "action": "read", "allowed_roles": ["viewer"]},
                {"resource_type": "workorders", "action": "read", "allowed_roles": ["staff"]},
            ]
        ),
        encoding="utf-8",
    )
    grouped = group_by_resource(load_definitions(path))
    assert sorted(grouped) == ["customers", "workorders"]
