"""
MedGate IdentityDirectory

Registered identities and their approval lifecycle. New registrations start
``pending`` and change state only through a signed decision by an approved
system administrator. Identities are never deleted, only deactivated.

Trust anchors (the first administrators) come from externally supplied
bootstrap records; nothing is built in.
"""

import logging
import re
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import ErrorCode, Forbidden, MedGateError, NotFound, ValidationError
from .logging_config import security_log
from .messages import deactivation_message, registration_decision_message
from .models import AuditEventType, Identity, PublicKeys, RegistrationStatus, Role, parse_enum
from .signing import Ed25519Verifier, SignatureVerifier, is_valid_public_key
from .util import utc_now

logger = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,100}$")

BOOTSTRAP_APPROVER = "bootstrap"


def validate_user_id(user_id: Any, field_name: str = "user_id") -> str:
    if not isinstance(user_id, str) or not USER_ID_PATTERN.match(user_id):
        raise ValidationError(field_name, "must be 1-100 characters of letters, digits, '_' or '-'")
    return user_id


def parse_public_keys(data: Any) -> PublicKeys:
    if isinstance(data, PublicKeys):
        keys = data
    elif isinstance(data, dict):
        keys = PublicKeys(data.get("encryption_key"), data.get("signing_key"))
    else:
        raise ValidationError("public_keys", "must be an object")
    if not is_valid_public_key(keys.signing_key):
        raise ValidationError("public_keys.signing_key", "must be a base64 Ed25519 public key")
    if not is_valid_public_key(keys.encryption_key):
        raise ValidationError("public_keys.encryption_key", "must be a base64 X25519 public key")
    return keys


class IdentityDirectory:
    """Registered identities, keyed by user id."""

    def __init__(
        self,
        audit=None,
        verifier: Optional[SignatureVerifier] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self._audit = audit
        self._verifier = verifier or Ed25519Verifier()
        self._clock = clock
        self._identities: Dict[str, Identity] = {}
        self._lock = threading.RLock()

    def _record(self, event_type: AuditEventType, user_id: str, details: Dict[str, Any],
                resource_id: Optional[str] = None) -> None:
        if self._audit is not None:
            self._audit.record_event(event_type, user_id, details, resource_id)

    def register(self, user_id: str, role: Any, public_keys: Any) -> Identity:
        try:
            identity = self._register(user_id, role, public_keys)
        except MedGateError as e:
            self._record(AuditEventType.USER_REGISTRATION, str(user_id), {
                "outcome": "rejected",
                "error": e.code.value,
            })
            raise
        self._record(AuditEventType.USER_REGISTRATION, identity.user_id, {
            "outcome": "pending",
            "role": identity.role,
        }, identity.user_id)
        logger.info("Registered %s as %s (pending approval)", identity.user_id, identity.role.value)
        return identity

    def _register(self, user_id: str, role: Any, public_keys: Any) -> Identity:
        validate_user_id(user_id)
        role = parse_enum(Role, role, "role")
        keys = parse_public_keys(public_keys)
        with self._lock:
            if user_id in self._identities:
                raise ValidationError("user_id", "already registered")
            identity = Identity(
                user_id=user_id,
                role=role,
                public_keys=keys,
                registration_status=RegistrationStatus.PENDING,
                created_at=self._clock(),
            )
            self._identities[user_id] = identity
        return identity

    def bootstrap(self, records: Iterable[Dict[str, Any]]) -> List[Identity]:
        """
        Install pre-approved identities from configuration.

        Each record: ``{"user_id", "role", "public_keys": {...}}``. Records
        whose user id is already present are skipped.
        """
        installed = []
        for raw in records:
            user_id = validate_user_id(raw.get("user_id"))
            role = parse_enum(Role, raw.get("role"), "role")
            keys = parse_public_keys(raw.get("public_keys"))
            now = self._clock()
            with self._lock:
                if user_id in self._identities:
                    logger.warning("Bootstrap identity %s already present; skipped", user_id)
                    continue
                identity = Identity(
                    user_id=user_id,
                    role=role,
                    public_keys=keys,
                    registration_status=RegistrationStatus.APPROVED,
                    created_at=now,
                    approved_by=BOOTSTRAP_APPROVER,
                    approved_at=now,
                )
                self._identities[user_id] = identity
            self._record(AuditEventType.USER_REGISTRATION, user_id, {
                "outcome": "approved",
                "role": role,
                "bootstrap": True,
            }, user_id)
            installed.append(identity)
        if installed:
            logger.info("Installed %d bootstrap identities", len(installed))
        return installed

    def _require_admin(self, admin_id: str, message: bytes, admin_signature: str) -> Identity:
        admin = self.get(admin_id)
        if admin is None or not admin.is_approved() or admin.role != Role.SYSTEM_ADMIN:
            raise Forbidden("Only an approved system administrator may do this")
        if not self._verifier.verify(admin.public_keys.signing_key, message, admin_signature or ""):
            raise Forbidden("Administrator signature does not verify")
        return admin

    def decide(self, admin_id: str, user_id: str, decision: Any, admin_signature: str) -> Identity:
        """Approve or reject a pending registration."""
        try:
            decision = parse_enum(RegistrationStatus, decision, "decision")
            if decision == RegistrationStatus.PENDING:
                raise ValidationError("decision", "must be approved or rejected")
            self._require_admin(admin_id, registration_decision_message(user_id, decision.value),
                                admin_signature)
            with self._lock:
                target = self._identities.get(user_id)
                if target is None:
                    raise NotFound(f"user {user_id} not found")
                if target.registration_status != RegistrationStatus.PENDING:
                    raise ValidationError("user_id", f"registration is already {target.registration_status.value}")
                now = self._clock()
                updated = replace(
                    target,
                    registration_status=decision,
                    approved_by=admin_id,
                    approved_at=now,
                )
                self._identities[user_id] = updated
        except MedGateError as e:
            self._record(AuditEventType.USER_APPROVAL, str(admin_id), {
                "outcome": "failed",
                "error": e.code.value,
                "target_user_id": user_id,
            }, user_id)
            if e.code == ErrorCode.FORBIDDEN:
                security_log.security_event("unauthorized_registration_decision", "high",
                                            admin_id=admin_id, target_user_id=user_id)
            raise
        self._record(AuditEventType.USER_APPROVAL, admin_id, {
            "outcome": decision.value,
            "target_user_id": user_id,
            "role": updated.role,
        }, user_id)
        logger.info("Registration of %s %s by %s", user_id, decision.value, admin_id)
        return updated

    def deactivate(self, admin_id: str, user_id: str, admin_signature: str) -> Identity:
        try:
            self._require_admin(admin_id, deactivation_message(user_id), admin_signature)
            with self._lock:
                target = self._identities.get(user_id)
                if target is None:
                    raise NotFound(f"user {user_id} not found")
                updated = replace(target, is_active=False)
                self._identities[user_id] = updated
        except MedGateError as e:
            self._record(AuditEventType.SYSTEM_ACCESS, str(admin_id), {
                "action": "deactivate_identity",
                "outcome": "failed",
                "error": e.code.value,
                "target_user_id": user_id,
            }, user_id)
            raise
        self._record(AuditEventType.SYSTEM_ACCESS, admin_id, {
            "action": "deactivate_identity",
            "outcome": "success",
            "target_user_id": user_id,
        }, user_id)
        security_log.security_event("identity_deactivated", "medium", admin_id=admin_id, user_id=user_id)
        return updated

    def get(self, user_id: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(user_id)

    def require(self, user_id: str) -> Identity:
        identity = self.get(user_id)
        if identity is None:
            raise NotFound(f"user {user_id} not found")
        return identity

    def pending(self) -> List[Identity]:
        return self.list(status=RegistrationStatus.PENDING)

    def list(self, role: Optional[Role] = None,
             status: Optional[RegistrationStatus] = None) -> List[Identity]:
        with self._lock:
            identities = list(self._identities.values())
        return [
            i for i in identities
            if (role is None or i.role == role) and (status is None or i.registration_status == status)
        ]
