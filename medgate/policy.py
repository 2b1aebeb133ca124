"""
Role override rules.

Some roles bypass consent for specific purposes: administrators for
operational access, auditors for reading audit material. These rules are a
versioned rule set of tagged variants, so adding a role means registering a
new rule type rather than editing the access algorithm.

Rule set document format::

    {
      "version": "1.0.0",
      "rules": [
        {"type": "administrative_override"},
        {"type": "auditor_read", "parameters": {"resource_types": ["audit_log"]}}
      ]
    }
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Type

from .errors import ValidationError
from .models import (
    AUDIT_RESOURCE_TYPES,
    AccessLevel,
    AccessValidationResult,
    ResourceType,
    Role,
)

VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")
DEFAULT_POLICY_VERSION = "1.0.0"


@dataclass(frozen=True)
class AccessRequest:
    provider_id: str
    patient_id: str
    resource_type: ResourceType
    access_level: AccessLevel
    provider_role: Role


class RolePolicy(ABC):
    """A rule that may decide an access request for one role."""
    rule_type: str = "abstract"
    role: Role

    @abstractmethod
    def evaluate(self, request: AccessRequest, version: str) -> Optional[AccessValidationResult]:
        """Return a decision, or None to defer to consent lookup."""
        pass

    def parameters(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.rule_type}
        params = self.parameters()
        if params:
            d["parameters"] = params
        return d


def _result(request: AccessRequest, granted: bool, reason: str, message: str,
            version: str, sensitivity: str = "normal") -> AccessValidationResult:
    return AccessValidationResult(
        access_granted=granted,
        provider_id=request.provider_id,
        patient_id=request.patient_id,
        resource_type=request.resource_type.value,
        access_level=request.access_level.value,
        reason=reason,
        message=message,
        policy_version=version,
        sensitivity=sensitivity,
    )


class AdministrativeOverride(RolePolicy):
    """System administrators may access any resource; flagged high sensitivity."""
    rule_type = "administrative_override"
    role = Role.SYSTEM_ADMIN

    def evaluate(self, request: AccessRequest, version: str) -> Optional[AccessValidationResult]:
        return _result(
            request, True, "administrative-override",
            "Access granted by administrative override",
            version, sensitivity="high",
        )


class AuditorReadAccess(RolePolicy):
    """Auditors may read audit material; anything else falls through to consent."""
    rule_type = "auditor_read"
    role = Role.AUDITOR

    def __init__(self, resource_types: Optional[Iterable[Any]] = None):
        if resource_types is None:
            self.resource_types: FrozenSet[ResourceType] = AUDIT_RESOURCE_TYPES
        else:
            try:
                self.resource_types = frozenset(ResourceType(r) for r in resource_types)
            except ValueError:
                raise ValidationError("rules.parameters.resource_types", "unknown resource type")

    def evaluate(self, request: AccessRequest, version: str) -> Optional[AccessValidationResult]:
        if request.access_level == AccessLevel.READ and request.resource_type in self.resource_types:
            return _result(request, True, "auditor-read", "Access granted for audit review", version)
        return None

    def parameters(self) -> Dict[str, Any]:
        return {"resource_types": sorted(r.value for r in self.resource_types)}


POLICY_TYPES: Dict[str, Type[RolePolicy]] = {
    "administrative_override": AdministrativeOverride,
    "auditor_read": AuditorReadAccess,
}


def create_rule(definition: Dict[str, Any]) -> RolePolicy:
    """Factory: build a rule from its ``{"type", "parameters"}`` form."""
    rule_type = definition.get("type") if isinstance(definition, dict) else None
    if rule_type not in POLICY_TYPES:
        raise ValidationError("rules.type", f"unknown rule type: {rule_type}")
    params = definition.get("parameters") or {}
    if not isinstance(params, dict):
        raise ValidationError("rules.parameters", "must be an object")
    try:
        return POLICY_TYPES[rule_type](**params)
    except TypeError:
        raise ValidationError("rules.parameters", f"invalid parameters for {rule_type}")


class PolicyRuleSet:
    """Versioned mapping from role to its override rule (at most one per role)."""

    def __init__(self, version: str, rules: Iterable[RolePolicy]):
        if not isinstance(version, str) or not VERSION_PATTERN.match(version):
            raise ValidationError("version", "must be MAJOR.MINOR.PATCH")
        self.version = version
        self._rules: Dict[Role, RolePolicy] = {}
        for rule in rules:
            if rule.role in self._rules:
                raise ValidationError("rules", f"duplicate rule for role {rule.role.value}")
            self._rules[rule.role] = rule

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolicyRuleSet":
        if not isinstance(data, dict):
            raise ValidationError("policy", "must be an object")
        rules = data.get("rules")
        if not isinstance(rules, list):
            raise ValidationError("rules", "must be a list")
        return cls(data.get("version"), [create_rule(r) for r in rules])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "rules": [r.to_dict() for r in self.rules()],
        }

    def rules(self) -> Tuple[RolePolicy, ...]:
        return tuple(self._rules.values())

    def rule_for(self, role: Role) -> Optional[RolePolicy]:
        return self._rules.get(role)


def default_rule_set() -> PolicyRuleSet:
    return PolicyRuleSet(DEFAULT_POLICY_VERSION, [AdministrativeOverride(), AuditorReadAccess()])
