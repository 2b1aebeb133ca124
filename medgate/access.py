"""
MedGate AccessValidator

The single decision point consulted before any data is released or written.

Evaluation order:
    1. Self-access: a patient always reaches their own records.
    2. The provider must be a registered, approved, active identity.
    3. The role override rule for the provider's role, if any.
    4. An effective consent token covering exactly the requested
       resource type and access level.

``check_access`` never raises. Any error while evaluating is a denial.
Decisions are never cached; each call reads the current registry state.
"""

import logging
from typing import Any, Optional

from .consent import ConsentRegistry
from .identity import IdentityDirectory
from .models import AccessLevel, AccessValidationResult, ResourceType
from .policy import AccessRequest, PolicyRuleSet, default_rule_set

logger = logging.getLogger(__name__)


class AccessValidator:

    def __init__(
        self,
        consents: ConsentRegistry,
        identities: IdentityDirectory,
        rule_set: Optional[PolicyRuleSet] = None
    ):
        self._consents = consents
        self._identities = identities
        self.rule_set = rule_set or default_rule_set()

    def check_access(self, provider_id: str, patient_id: str,
                     resource_type: Any, access_level: Any) -> AccessValidationResult:
        try:
            return self._evaluate(provider_id, patient_id, resource_type, access_level)
        except Exception:
            logger.exception("Access evaluation failed; denying")
            return self._deny(provider_id, patient_id, resource_type, access_level,
                              "evaluation-error", "Access denied: evaluation error")

    def _deny(self, provider_id: Any, patient_id: Any, resource_type: Any, access_level: Any,
              reason: str, message: str) -> AccessValidationResult:
        return AccessValidationResult(
            access_granted=False,
            provider_id=str(provider_id),
            patient_id=str(patient_id),
            resource_type=str(getattr(resource_type, "value", resource_type)),
            access_level=str(getattr(access_level, "value", access_level)),
            reason=reason,
            message=message,
            policy_version=self.rule_set.version,
        )

    def _evaluate(self, provider_id: str, patient_id: str,
                  resource_type: Any, access_level: Any) -> AccessValidationResult:
        if not isinstance(provider_id, str) or not isinstance(patient_id, str) or not provider_id or not patient_id:
            return self._deny(provider_id, patient_id, resource_type, access_level,
                              "invalid-request", "Access denied: invalid request")
        if provider_id == patient_id:
            return AccessValidationResult(
                access_granted=True,
                provider_id=provider_id,
                patient_id=patient_id,
                resource_type=str(getattr(resource_type, "value", resource_type)),
                access_level=str(getattr(access_level, "value", access_level)),
                reason="self-access",
                message="Patients may access their own records",
                policy_version=self.rule_set.version,
            )

        try:
            resource_type = ResourceType(resource_type)
            access_level = AccessLevel(access_level)
        except ValueError:
            return self._deny(provider_id, patient_id, resource_type, access_level,
                              "invalid-request", "Access denied: unknown resource type or access level")

        provider = self._identities.get(provider_id)
        if provider is None or not provider.is_approved():
            return self._deny(provider_id, patient_id, resource_type, access_level,
                              "provider-not-approved", "Access denied: provider is not an approved identity")

        rule = self.rule_set.rule_for(provider.role)
        if rule is not None:
            request = AccessRequest(provider_id, patient_id, resource_type, access_level, provider.role)
            decision = rule.evaluate(request, self.rule_set.version)
            if decision is not None:
                return decision

        found = self._consents.lookup(patient_id, provider_id, resource_type, access_level)
        if found.token is None:
            return self._deny(provider_id, patient_id, resource_type, access_level,
                              found.reason, f"Access denied: {found.reason}")
        return AccessValidationResult(
            access_granted=True,
            provider_id=provider_id,
            patient_id=patient_id,
            resource_type=resource_type.value,
            access_level=access_level.value,
            reason=f"consent-token:{found.token.token_id}",
            message=f"Access granted by consent token {found.token.token_id}",
            consent_token_id=found.token.token_id,
            permissions=found.token.permissions,
            policy_version=self.rule_set.version,
        )
