"""
MedGate data model.

Identities, nonces, consent tokens, audit entries and access decisions.
Records are frozen dataclasses: state changes (approval, revocation, ledger
commit) replace the record instead of mutating it, so a reader holding a
reference always sees a consistent snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .errors import ValidationError
from .util import to_rfc3339


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    LABORATORY = "laboratory"
    INSURER = "insurer"
    AUDITOR = "auditor"
    SYSTEM_ADMIN = "system_admin"


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ResourceType(str, Enum):
    DIAGNOSIS = "diagnosis"
    PRESCRIPTION = "prescription"
    LAB_RESULT = "lab_result"
    IMAGING = "imaging"
    CONSULTATION_NOTE = "consultation_note"
    AUDIT_LOG = "audit_log"
    COMPLIANCE_REPORT = "compliance_report"


CLINICAL_RESOURCE_TYPES: FrozenSet[ResourceType] = frozenset({
    ResourceType.DIAGNOSIS,
    ResourceType.PRESCRIPTION,
    ResourceType.LAB_RESULT,
    ResourceType.IMAGING,
    ResourceType.CONSULTATION_NOTE,
})

AUDIT_RESOURCE_TYPES: FrozenSet[ResourceType] = frozenset({
    ResourceType.AUDIT_LOG,
    ResourceType.COMPLIANCE_REPORT,
})


class AccessLevel(str, Enum):
    READ = "read"
    WRITE = "write"


class AuditEventType(str, Enum):
    USER_REGISTRATION = "USER_REGISTRATION"
    USER_APPROVAL = "USER_APPROVAL"
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    CONSENT_GRANTED = "CONSENT_GRANTED"
    CONSENT_REVOKED = "CONSENT_REVOKED"
    RECORD_CREATED = "RECORD_CREATED"
    RECORD_ACCESSED = "RECORD_ACCESSED"
    ACCESS_DENIED = "ACCESS_DENIED"
    AUDIT_QUERY = "AUDIT_QUERY"
    DATA_EXPORT = "DATA_EXPORT"
    COMPLIANCE_REPORT = "COMPLIANCE_REPORT"
    SYSTEM_ACCESS = "SYSTEM_ACCESS"


# Entries the trail writes about itself.
META_EVENT_TYPES: FrozenSet[AuditEventType] = frozenset({
    AuditEventType.AUDIT_QUERY,
    AuditEventType.DATA_EXPORT,
    AuditEventType.COMPLIANCE_REPORT,
})


def _ts(dt: Optional[datetime]) -> Optional[str]:
    return to_rfc3339(dt) if dt is not None else None


def parse_enum(enum_cls, value: Any, field_name: str):
    """Coerce ``value`` into ``enum_cls`` or raise ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(field_name, f"must be one of: {allowed}")


@dataclass(frozen=True)
class PublicKeys:
    """Base64 X25519 encryption key and Ed25519 signing key."""
    encryption_key: str
    signing_key: str

    def to_dict(self) -> Dict[str, str]:
        return {"encryption_key": self.encryption_key, "signing_key": self.signing_key}


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Role
    public_keys: PublicKeys
    registration_status: RegistrationStatus
    created_at: datetime
    is_active: bool = True
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    def is_approved(self) -> bool:
        """Approved and not deactivated."""
        return self.registration_status == RegistrationStatus.APPROVED and self.is_active

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "public_keys": self.public_keys.to_dict(),
            "registration_status": self.registration_status.value,
            "created_at": _ts(self.created_at),
            "is_active": self.is_active,
            "approved_by": self.approved_by,
            "approved_at": _ts(self.approved_at),
        }


@dataclass(frozen=True)
class Nonce:
    value: str
    owner: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonce": self.value,
            "user_id": self.owner,
            "issued_at": _ts(self.issued_at),
            "expires_at": _ts(self.expires_at),
        }


@dataclass(frozen=True)
class ConsentPermission:
    resource_type: ResourceType
    access_level: AccessLevel
    conditions: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsentPermission":
        if not isinstance(data, dict):
            raise ValidationError("permissions", "each permission must be an object")
        resource_type = parse_enum(ResourceType, data.get("resource_type"), "permissions.resource_type")
        if resource_type not in CLINICAL_RESOURCE_TYPES:
            raise ValidationError("permissions.resource_type",
                                  f"{resource_type.value} cannot be granted by consent")
        access_level = parse_enum(AccessLevel, data.get("access_level"), "permissions.access_level")
        conditions = data.get("conditions") or ()
        if not isinstance(conditions, (list, tuple)) or not all(isinstance(c, str) for c in conditions):
            raise ValidationError("permissions.conditions", "must be a list of strings")
        return cls(resource_type, access_level, tuple(conditions))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type.value,
            "access_level": self.access_level.value,
            "conditions": list(self.conditions),
        }


@dataclass(frozen=True)
class ConsentToken:
    """
    A patient's signed grant of scoped access to one provider.

    Permissions never change after creation. Revocation replaces the token
    with ``is_active=False``; a past ``expiration_time`` makes the token
    ineffective even while ``is_active`` is still true.
    """
    token_id: str
    patient_id: str
    provider_id: str
    permissions: Tuple[ConsentPermission, ...]
    created_at: datetime
    signature: str
    expiration_time: Optional[datetime] = None
    is_active: bool = True
    revoked_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expiration_time is not None and self.expiration_time <= now

    def is_effective(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired(now)

    def covers(self, resource_type: ResourceType, access_level: AccessLevel) -> bool:
        """Exact match: ``write`` does not imply ``read``."""
        return any(
            p.resource_type == resource_type and p.access_level == access_level
            for p in self.permissions
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "patient_id": self.patient_id,
            "provider_id": self.provider_id,
            "permissions": [p.to_dict() for p in self.permissions],
            "expiration_time": _ts(self.expiration_time),
            "is_active": self.is_active,
            "created_at": _ts(self.created_at),
            "revoked_at": _ts(self.revoked_at),
            "signature": self.signature,
        }


@dataclass(frozen=True)
class AuditEntry:
    """
    One signed, hash-chained audit record.

    The signed body (``signed_body()``) never changes. The ledger commit
    fields start empty and are filled once, when the ledger accepts the
    entry; ``is_immutable`` becomes true at that point.
    """
    entry_id: str
    sequence: int
    event_type: AuditEventType
    user_id: str
    timestamp: datetime
    details: Dict[str, Any]
    previous_hash: Optional[str]
    payload_hash: str
    entry_hash: str
    signature: Dict[str, str]
    resource_id: Optional[str] = None
    ledger_transaction_id: Optional[str] = None
    block_number: Optional[int] = None
    is_immutable: bool = False

    def signed_body(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "user_id": self.user_id,
            "resource_id": self.resource_id,
            "timestamp": _ts(self.timestamp),
            "details": self.details,
            "previous_hash": self.previous_hash,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.signed_body()
        d.update({
            "payload_hash": self.payload_hash,
            "entry_hash": self.entry_hash,
            "signature": dict(self.signature),
            "ledger_transaction_id": self.ledger_transaction_id,
            "block_number": self.block_number,
            "is_immutable": self.is_immutable,
        })
        return d


@dataclass(frozen=True)
class AccessValidationResult:
    """Outcome of one access decision. Never persisted."""
    access_granted: bool
    provider_id: str
    patient_id: str
    resource_type: str
    access_level: str
    reason: str
    message: str
    consent_token_id: Optional[str] = None
    permissions: Tuple[ConsentPermission, ...] = field(default_factory=tuple)
    policy_version: Optional[str] = None
    sensitivity: str = "normal"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_granted": self.access_granted,
            "provider_id": self.provider_id,
            "patient_id": self.patient_id,
            "resource_type": self.resource_type,
            "access_level": self.access_level,
            "reason": self.reason,
            "message": self.message,
            "consent_token_id": self.consent_token_id,
            "permissions": [p.to_dict() for p in self.permissions],
            "policy_version": self.policy_version,
            "sensitivity": self.sensitivity,
        }
