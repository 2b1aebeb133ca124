"""
MedGate ConsentRegistry

System of record for consent tokens. A patient grants a provider scoped,
optionally time-limited access by signing the grant; only that patient can
revoke it.

Tokens are immutable snapshots. Grant and revoke swap records under the
registry lock, so lookups never see a half-revoked token and two concurrent
revocations resolve to one ``revoked`` and one ``already_revoked``.
"""

import logging
import re
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import Forbidden, MedGateError, NotFound, ValidationError
from .identity import IdentityDirectory, validate_user_id
from .logging_config import security_log
from .messages import grant_message, revocation_message
from .models import (
    AccessLevel,
    AuditEventType,
    ConsentPermission,
    ConsentToken,
    ResourceType,
    Role,
)
from .signing import Ed25519Verifier, SignatureVerifier
from .util import generate_id, parse_rfc3339, to_rfc3339, utc_now

logger = logging.getLogger(__name__)

REASON_ACTIVE = "active-consent"
REASON_NONE = "no-active-consent"
REASON_EXPIRED = "expired"
REASON_REVOKED = "revoked"

# A signed grant is accepted only this close to its issued_at, and only once.
DEFAULT_GRANT_WINDOW = timedelta(minutes=5)

_REQUEST_NONCE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


class RevocationOutcome(str, Enum):
    REVOKED = "revoked"
    ALREADY_REVOKED = "already_revoked"


@dataclass(frozen=True)
class ConsentGrantRequest:
    patient_id: str
    provider_id: str
    permissions: Tuple[Dict[str, Any], ...]
    patient_signature: str
    expiration_time: Optional[str] = None
    request_nonce: str = ""
    issued_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsentGrantRequest":
        permissions = data.get("permissions")
        if not isinstance(permissions, (list, tuple)):
            raise ValidationError("permissions", "must be a list")
        expiration = data.get("expiration_time")
        if isinstance(expiration, datetime):
            expiration = to_rfc3339(expiration)
        issued_at = data.get("issued_at")
        if isinstance(issued_at, datetime):
            issued_at = to_rfc3339(issued_at)
        return cls(
            patient_id=data.get("patient_id"),
            provider_id=data.get("provider_id"),
            permissions=tuple(permissions),
            patient_signature=data.get("patient_signature") or "",
            expiration_time=expiration,
            request_nonce=data.get("request_nonce") or "",
            issued_at=issued_at,
        )


@dataclass(frozen=True)
class ConsentRevocationRequest:
    consent_token_id: str
    patient_signature: str


@dataclass(frozen=True)
class RevocationResult:
    outcome: RevocationOutcome
    token: ConsentToken

    @property
    def revoked(self) -> bool:
        return self.outcome == RevocationOutcome.REVOKED

    def to_dict(self) -> Dict[str, Any]:
        return {"outcome": self.outcome.value, "token": self.token.to_dict()}


@dataclass(frozen=True)
class ConsentLookup:
    token: Optional[ConsentToken]
    reason: str


class ConsentRegistry:

    def __init__(
        self,
        identities: IdentityDirectory,
        audit,
        verifier: Optional[SignatureVerifier] = None,
        clock: Callable[[], datetime] = utc_now,
        grant_window: timedelta = DEFAULT_GRANT_WINDOW
    ):
        self._identities = identities
        self._audit = audit
        self._verifier = verifier or Ed25519Verifier()
        self._clock = clock
        self._grant_window = grant_window
        # (patient_id, request_nonce) -> issued_at of grants already accepted
        self._used_requests: Dict[Tuple[str, str], datetime] = {}
        self._tokens: Dict[str, ConsentToken] = {}
        self._order: Dict[str, int] = {}
        self._by_patient: Dict[str, List[str]] = {}
        self._by_provider: Dict[str, List[str]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Grant
    # ------------------------------------------------------------------

    def grant(self, request: Union[ConsentGrantRequest, Dict[str, Any]],
              requester_id: Optional[str] = None) -> ConsentToken:
        """
        Create a consent token from a patient-signed request.

        ``request`` may be the raw request body. When ``requester_id`` is given
        (the authenticated caller) it must be the granting patient. Every
        outcome, including a body that does not parse, is audited once.

        Raises:
            ValidationError: malformed ids, permissions, expiration, request
                nonce or a stale ``issued_at``
            NotFound: unknown patient or provider
            Forbidden: requester is not the patient, patient not approved,
                signature does not verify, or the signed request was already used
        """
        patient_id = _field(request, "patient_id")
        provider_id = _field(request, "provider_id")
        actor = requester_id if requester_id is not None else patient_id
        actor = "unknown" if actor is None else str(actor)
        try:
            if not isinstance(request, ConsentGrantRequest):
                request = ConsentGrantRequest.from_dict(request if isinstance(request, dict) else {})
            if requester_id is not None and requester_id != request.patient_id:
                raise Forbidden("Consent can only be granted by the patient")
            token = self._grant(request)
        except MedGateError as e:
            self._audit.record_event(AuditEventType.CONSENT_GRANTED, actor, {
                "outcome": "rejected",
                "error": e.code.value,
                "patient_id": patient_id,
                "provider_id": provider_id,
            })
            security_log.consent_change("grant", None, actor, "rejected", provider_id)
            raise
        self._audit.record_event(AuditEventType.CONSENT_GRANTED, token.patient_id, {
            "outcome": "success",
            "provider_id": token.provider_id,
            "permissions": [p.to_dict() for p in token.permissions],
            "expiration_time": token.expiration_time,
        }, token.token_id)
        security_log.consent_change("grant", token.token_id, token.patient_id, "success", token.provider_id)
        return token

    def _grant(self, request: ConsentGrantRequest) -> ConsentToken:
        patient_id = validate_user_id(request.patient_id, "patient_id")
        provider_id = validate_user_id(request.provider_id, "provider_id")
        if patient_id == provider_id:
            raise ValidationError("provider_id", "must differ from patient_id")
        if not request.permissions:
            raise ValidationError("permissions", "at least one permission is required")
        permissions = tuple(ConsentPermission.from_dict(p) for p in request.permissions)

        now = self._clock()
        expiration = None
        if request.expiration_time is not None:
            try:
                expiration = parse_rfc3339(request.expiration_time)
            except ValueError:
                raise ValidationError("expiration_time", "must be an RFC 3339 timestamp")
            if expiration <= now:
                raise ValidationError("expiration_time", "must be in the future")

        request_nonce = request.request_nonce
        if not isinstance(request_nonce, str) or not _REQUEST_NONCE.match(request_nonce):
            raise ValidationError("request_nonce", "must be 16-128 characters of [A-Za-z0-9_-]")
        if request.issued_at is None:
            raise ValidationError("issued_at", "required")
        try:
            issued_at = parse_rfc3339(request.issued_at)
        except ValueError:
            raise ValidationError("issued_at", "must be an RFC 3339 timestamp")
        if abs(now - issued_at) > self._grant_window:
            raise ValidationError("issued_at", "outside the accepted window")

        patient = self._identities.require(patient_id)
        if patient.role != Role.PATIENT or not patient.is_approved():
            raise Forbidden("Only an approved patient may grant consent")
        self._identities.require(provider_id)

        message = grant_message(patient_id, provider_id, permissions, expiration,
                                request_nonce=request_nonce, issued_at=issued_at)
        if not self._verifier.verify(patient.public_keys.signing_key, message, request.patient_signature):
            raise Forbidden("Patient signature does not verify")

        token = ConsentToken(
            token_id=generate_id("consent"),
            patient_id=patient_id,
            provider_id=provider_id,
            permissions=permissions,
            created_at=now,
            signature=request.patient_signature,
            expiration_time=expiration,
        )
        with self._lock:
            self._forget_stale_requests(now)
            if (patient_id, request_nonce) in self._used_requests:
                raise Forbidden("Grant request already used")
            self._used_requests[(patient_id, request_nonce)] = issued_at
            self._order[token.token_id] = len(self._tokens)
            self._tokens[token.token_id] = token
            self._by_patient.setdefault(patient_id, []).append(token.token_id)
            self._by_provider.setdefault(provider_id, []).append(token.token_id)
        logger.info("Consent %s granted by %s to %s", token.token_id, patient_id, provider_id)
        return token

    def _forget_stale_requests(self, now: datetime) -> None:
        """Drop replay markers for requests the window already rejects."""
        cutoff = now - self._grant_window
        stale = [k for k, issued in self._used_requests.items() if issued < cutoff]
        for k in stale:
            del self._used_requests[k]

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, request: ConsentRevocationRequest, requester_id: Optional[str] = None) -> RevocationResult:
        """
        Revoke a token on behalf of its patient.

        A second revocation is not an error: it returns ``already_revoked``
        and leaves the token unchanged.

        Raises:
            NotFound: unknown token id
            Forbidden: requester is not the patient of record, or the
                signature does not verify under the patient's key
        """
        patient_id = str(requester_id) if requester_id is not None else "unknown"
        try:
            result = self._revoke(request, requester_id)
        except MedGateError as e:
            self._audit.record_event(AuditEventType.CONSENT_REVOKED, patient_id, {
                "outcome": "rejected",
                "error": e.code.value,
            }, request.consent_token_id)
            security_log.consent_change("revoke", request.consent_token_id, patient_id, "rejected")
            raise
        self._audit.record_event(AuditEventType.CONSENT_REVOKED, result.token.patient_id, {
            "outcome": result.outcome.value,
            "provider_id": result.token.provider_id,
        }, result.token.token_id)
        security_log.consent_change("revoke", result.token.token_id, result.token.patient_id,
                                    result.outcome.value, result.token.provider_id)
        return result

    def _revoke(self, request: ConsentRevocationRequest, requester_id: Optional[str]) -> RevocationResult:
        token = self.get(request.consent_token_id)
        if requester_id is not None and requester_id != token.patient_id:
            raise Forbidden("Only the patient who granted consent may revoke it")
        patient = self._identities.get(token.patient_id)
        message = revocation_message(token.token_id)
        if patient is None or not self._verifier.verify(patient.public_keys.signing_key, message,
                                                        request.patient_signature):
            raise Forbidden("Patient signature does not verify")

        with self._lock:
            current = self._tokens[token.token_id]
            if not current.is_active:
                return RevocationResult(RevocationOutcome.ALREADY_REVOKED, current)
            revoked = replace(current, is_active=False, revoked_at=self._clock())
            self._tokens[token.token_id] = revoked
        logger.info("Consent %s revoked by %s", token.token_id, token.patient_id)
        return RevocationResult(RevocationOutcome.REVOKED, revoked)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, token_id: str) -> ConsentToken:
        with self._lock:
            token = self._tokens.get(token_id)
        if token is None:
            raise NotFound(f"consent token {token_id} not found")
        return token

    def lookup(self, patient_id: str, provider_id: str, resource_type: Any, access_level: Any) -> ConsentLookup:
        """
        Find the effective token covering exactly ``resource_type`` at
        ``access_level``, or explain why there is none.

        Newest token wins (creation time, then insertion order).
        """
        try:
            resource_type = ResourceType(resource_type)
            access_level = AccessLevel(access_level)
        except ValueError:
            return ConsentLookup(None, REASON_NONE)

        now = self._clock()
        with self._lock:
            candidates = [
                self._tokens[t] for t in self._by_patient.get(patient_id, ())
                if self._tokens[t].provider_id == provider_id
                and self._tokens[t].covers(resource_type, access_level)
            ]
            order = dict(self._order)

        effective = [t for t in candidates if t.is_effective(now)]
        if effective:
            newest = max(effective, key=lambda t: (t.created_at, order[t.token_id]))
            return ConsentLookup(newest, REASON_ACTIVE)
        if any(t.is_active and t.is_expired(now) for t in candidates):
            return ConsentLookup(None, REASON_EXPIRED)
        if candidates:
            return ConsentLookup(None, REASON_REVOKED)
        return ConsentLookup(None, REASON_NONE)

    def find_active(self, patient_id: str, provider_id: str, resource_type: Any,
                    access_level: Any) -> Optional[ConsentToken]:
        return self.lookup(patient_id, provider_id, resource_type, access_level).token

    def list_for_patient(self, patient_id: str) -> List[ConsentToken]:
        with self._lock:
            return [self._tokens[t] for t in self._by_patient.get(patient_id, ())]

    def list_for_provider(self, provider_id: str) -> List[ConsentToken]:
        with self._lock:
            return [self._tokens[t] for t in self._by_provider.get(provider_id, ())]

    def status_summary(self, patient_id: str, provider_id: str) -> Dict[str, Any]:
        """
        Consent between one patient and one provider.

        "Active" uses the same rule as ``find_active``: active and unexpired.
        """
        now = self._clock()
        tokens = [t for t in self.list_for_patient(patient_id) if t.provider_id == provider_id]
        effective = [t for t in tokens if t.is_effective(now)]
        resource_permissions: Dict[str, List[str]] = {}
        for t in effective:
            for p in t.permissions:
                levels = resource_permissions.setdefault(p.resource_type.value, [])
                if p.access_level.value not in levels:
                    levels.append(p.access_level.value)
        for levels in resource_permissions.values():
            levels.sort()
        return {
            "patient_id": patient_id,
            "provider_id": provider_id,
            "total_consents": len(tokens),
            "active_consents": len(effective),
            "revoked_consents": sum(1 for t in tokens if not t.is_active),
            "expired_consents": sum(1 for t in tokens if t.is_active and t.is_expired(now)),
            "resource_permissions": resource_permissions,
            "consents": [
                {
                    "token_id": t.token_id,
                    "created_at": to_rfc3339(t.created_at),
                    "expiration_time": to_rfc3339(t.expiration_time) if t.expiration_time else None,
                    "permissions": [p.to_dict() for p in t.permissions],
                }
                for t in effective
            ],
        }


def _field(request: Any, name: str) -> Any:
    if isinstance(request, dict):
        return request.get(name)
    return getattr(request, name, None)
