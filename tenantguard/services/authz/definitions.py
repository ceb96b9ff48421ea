from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

from tenantguard.domain.models import AuthorizationPolicy
from tenantguard.domain.principal import Role


# Principal fields a condition may compare a resource field against.
PRINCIPAL_FIELDS = frozenset({"user_id", "tenant_id"})
_CONDITION_KINDS = ("equals_principal", "in_principal_attribute", "equals", "permission")


class _DefinitionModel(BaseModel):
    # Accept snake_case and camelCase keys in deployment files.
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Condition(_DefinitionModel):
    field: str | None = None
    equals_principal: str | None = None
    in_principal_attribute: str | None = None
    equals: Any = None
    permission: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "Condition":
        kinds = [kind for kind in _CONDITION_KINDS if kind in self.model_fields_set]
        if len(kinds) != 1:
            raise ValueError(f"Condition must set exactly one of {', '.join(_CONDITION_KINDS)}")
        kind = kinds[0]
        if kind == "permission":
            if self.field is not None:
                raise ValueError("permission conditions do not take a field")
            if not self.permission:
                raise ValueError("permission must be a non-empty capability")
            return self
        if not self.field:
            raise ValueError(f"{kind} conditions require a field")
        if kind == "equals_principal" and self.equals_principal not in PRINCIPAL_FIELDS:
            raise ValueError(f"equals_principal must be one of {sorted(PRINCIPAL_FIELDS)}")
        if kind == "in_principal_attribute" and not self.in_principal_attribute:
            raise ValueError("in_principal_attribute must name an attribute")
        return self

    @property
    def kind(self) -> str:
        return next(kind for kind in _CONDITION_KINDS if kind in self.model_fields_set)

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.field is not None:
            payload["field"] = self.field
        payload[self.kind] = getattr(self, self.kind)
        return payload


class ConditionalRule(_DefinitionModel):
    roles: tuple[Role, ...] = Field(min_length=1)
    any_of: tuple[Condition, ...] = Field(min_length=1)

    def applies_to(self, role: Role) -> bool:
        return role in self.roles

    def to_json(self) -> dict[str, Any]:
        return {
            "roles": sorted(role.value for role in self.roles),
            "any_of": [condition.to_json() for condition in self.any_of],
        }


class PolicyDefinition(_DefinitionModel):
    resource_type: str = Field(min_length=1)
    action: str = Field(min_length=1)
    allowed_roles: tuple[Role, ...] = ()
    conditional_rules: tuple[ConditionalRule, ...] = ()
    redact_fields: tuple[str, ...] = ()

    def body_json(self) -> dict[str, Any]:
        return {
            "allowed_roles": sorted(role.value for role in self.allowed_roles),
            "conditional_rules": [rule.to_json() for rule in self.conditional_rules],
            "redact_fields": sorted(set(self.redact_fields)),
        }

    def checksum(self) -> str:
        # Stable fingerprint so re-installing an identical definition is a no-op.
        canonical = json.dumps(
            {"resource_type": self.resource_type, "action": self.action, **self.body_json()},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def condition_fields(self) -> set[str]:
        return {
            condition.field
            for rule in self.conditional_rules
            for condition in rule.any_of
            if condition.field is not None
        }


@dataclass(frozen=True)
class Policy:
    # Runtime view of one active policy version, shared read-only across requests.
    resource_type: str
    action: str
    version: int
    allowed_roles: frozenset[Role]
    conditional_rules: tuple[ConditionalRule, ...]
    redact_fields: frozenset[str]
    checksum: str

    def rules_for(self, role: Role) -> tuple[ConditionalRule, ...]:
        return tuple(rule for rule in self.conditional_rules if rule.applies_to(role))

    @classmethod
    def from_definition(cls, definition: PolicyDefinition, *, version: int) -> "Policy":
        return cls(
            resource_type=definition.resource_type,
            action=definition.action,
            version=version,
            allowed_roles=frozenset(definition.allowed_roles),
            conditional_rules=tuple(definition.conditional_rules),
            redact_fields=frozenset(definition.redact_fields),
            checksum=definition.checksum(),
        )

    @classmethod
    def from_row(cls, row: AuthorizationPolicy) -> "Policy":
        definition = PolicyDefinition(
            resource_type=row.resource_type,
            action=row.action,
            allowed_roles=tuple(row.allowed_roles_json or ()),
            conditional_rules=tuple(row.conditional_rules_json or ()),
            redact_fields=tuple(row.redact_fields_json or ()),
        )
        return cls.from_definition(definition, version=row.version)


_definitions_adapter = TypeAdapter(list[PolicyDefinition])


def parse_definitions(payload: Any) -> list[PolicyDefinition]:
    return _definitions_adapter.validate_python(payload)


def load_definitions(path: str | Path) -> list[PolicyDefinition]:
    # Deployment-time policy file: a JSON list of definitions.
    with Path(path).open("r", encoding="utf-8") as handle:
        return parse_definitions(json.load(handle))


def group_by_resource(definitions: list[PolicyDefinition]) -> dict[str, list[PolicyDefinition]]:
    grouped: dict[str, list[PolicyDefinition]] = {}
    seen: set[tuple[str, str]] = set()
    for definition in definitions:
        key = (definition.resource_type, definition.action)
        if key in seen:
            raise ValueError(f"Duplicate policy for {key[0]}:{key[1]}")
        seen.add(key)
        grouped.setdefault(definition.resource_type, []).append(definition)
    return grouped
