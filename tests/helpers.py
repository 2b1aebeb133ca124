"""Shared fixtures for MedGate tests: a controllable clock and signing actors."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from medgate.audit import RetryPolicy
from medgate.consent import ConsentGrantRequest, ConsentRevocationRequest
from medgate.content_store import InMemoryContentStore
from medgate.hashing import sha256_hash
from medgate.ledger import InMemoryLedger
from medgate.messages import (
    compliance_report_message,
    export_message,
    grant_message,
    nonce_message,
    registration_decision_message,
    revocation_message,
    upload_message,
)
from medgate.models import Role
from medgate.signing import generate_identity_keys, sign_message
from medgate.system import MedGate
from medgate.util import generate_nonce, to_rfc3339

T0 = datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)

FAST_RETRY = RetryPolicy(max_attempts=3, initial_backoff=0, max_backoff=0, interval=0.01, submit_timeout=2.0)

DEFAULT_ACTORS = (
    ("admin", Role.SYSTEM_ADMIN),
    ("auditor", Role.AUDITOR),
    ("p1", Role.PATIENT),
    ("p2", Role.PATIENT),
    ("d1", Role.DOCTOR),
    ("d2", Role.DOCTOR),
    ("lab1", Role.LABORATORY),
)

METADATA = {
    "resource_type": "lab_result",
    "filename": "cbc.pdf.enc",
    "mime_type": "application/pdf",
    "original_size": 2048,
    "encryption_algorithm": "AES-256-GCM",
    "original_file_hash": "sha256:" + "ab" * 32,
}


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Actor:
    """A user with locally held key material."""

    def __init__(self, user_id: str, role: Role):
        self.user_id = user_id
        self.role = role
        self.keys = generate_identity_keys()

    @property
    def public_keys(self) -> Dict[str, str]:
        return {"signing_key": self.keys["signing_key"], "encryption_key": self.keys["encryption_key"]}

    def bootstrap_record(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "role": self.role.value, "public_keys": self.public_keys}

    def sign(self, message: bytes) -> str:
        return sign_message(self.keys["signing_private_key"], message)


def permissions(*pairs: Iterable[str]):
    return [{"resource_type": r, "access_level": a} for r, a in pairs]


class Env:
    """A fully wired MedGate system with bootstrap actors."""

    def __init__(self, clock: Optional[FakeClock] = None, ledger=None, content_store=None,
                 retry_policy: Optional[RetryPolicy] = None, **build_kwargs):
        self.clock = clock or FakeClock()
        self.ledger = ledger if ledger is not None else InMemoryLedger()
        self.store = content_store if content_store is not None else InMemoryContentStore()
        self.actors = {user_id: Actor(user_id, role) for user_id, role in DEFAULT_ACTORS}
        self.system = MedGate.build(
            ledger=self.ledger,
            content_store=self.store,
            retry_policy=retry_policy or FAST_RETRY,
            bootstrap=[a.bootstrap_record() for a in self.actors.values()],
            clock=self.clock,
            **build_kwargs
        )

    def __getitem__(self, user_id: str) -> Actor:
        return self.actors[user_id]

    def new_actor(self, user_id: str, role: Role) -> Actor:
        actor = Actor(user_id, role)
        self.actors[user_id] = actor
        return actor

    def grant_body(self, patient: str, provider: str, perms, expiration_time=None,
                   signer: Optional[str] = None, request_nonce: Optional[str] = None,
                   issued_at: Optional[str] = None) -> Dict[str, Any]:
        request_nonce = request_nonce or generate_nonce(16)
        issued_at = issued_at or to_rfc3339(self.clock())
        message = grant_message(patient, provider, perms, expiration_time,
                                request_nonce=request_nonce, issued_at=issued_at)
        return {
            "patient_id": patient,
            "provider_id": provider,
            "permissions": perms,
            "expiration_time": expiration_time,
            "request_nonce": request_nonce,
            "issued_at": issued_at,
            "patient_signature": self.actors[signer or patient].sign(message),
        }

    def grant_request(self, patient: str, provider: str, perms, expiration_time=None,
                      signer: Optional[str] = None, **kwargs) -> ConsentGrantRequest:
        return ConsentGrantRequest.from_dict(
            self.grant_body(patient, provider, perms, expiration_time, signer, **kwargs))

    def grant(self, patient: str, provider: str, perms, expiration_time=None):
        return self.system.consents.grant(self.grant_request(patient, provider, perms, expiration_time))

    def revoke(self, patient: str, token_id: str, requester_id: Optional[str] = None):
        request = ConsentRevocationRequest(token_id, self.actors[patient].sign(revocation_message(token_id)))
        return self.system.consents.revoke(request, requester_id=requester_id)

    def authenticate(self, user_id: str):
        nonce = self.system.nonces.issue(user_id)
        return self.system.verifier.verify(user_id, nonce.value, self.actors[user_id].sign(nonce_message(nonce.value)))

    def upload_signature(self, provider: str, patient: str, blob: bytes, resource_type: str) -> str:
        message = upload_message(patient, provider, sha256_hash(blob), resource_type)
        return self.actors[provider].sign(message)

    def upload(self, provider: str, patient: str, blob: bytes, metadata: Optional[Dict[str, Any]] = None):
        meta = dict(metadata or METADATA)
        signature = self.upload_signature(provider, patient, blob, meta["resource_type"])
        return self.system.storage.upload(patient, provider, blob, meta, signature)

    def export_signature(self, user_id: str, export_format: str, criteria: Dict[str, Any]) -> str:
        return self.actors[user_id].sign(export_message(export_format, criteria))

    def compliance_signature(self, user_id: str, report_type: str, start: str, end: str) -> str:
        return self.actors[user_id].sign(compliance_report_message(report_type, start, end))

    def decision_signature(self, admin: str, user_id: str, decision: str) -> str:
        return self.actors[admin].sign(registration_decision_message(user_id, decision))

    def events(self, event_type) -> list:
        return [e for e in self.system.audit.entries() if e.event_type == event_type]
