"""
MedGate StorageOrchestrator

The only path to the content store. Each upload or download runs a small
state machine:

    validating -> executing -> auditing -> done
         \\            \\
          +-> failed    +-> failed

and writes exactly one audit entry whatever the outcome. Content-store calls
run under a timeout on the orchestrator's own executor; a failure or timeout
after access was granted surfaces as STORAGE_UNAVAILABLE, and a retry by the
caller re-validates consent.

Ownership comes from the record catalog, never from the content store. A
content id with no catalogued owner is not released to anyone.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .access import AccessValidator
from .errors import (
    AuthenticationFailed,
    Forbidden,
    MedGateError,
    NotFound,
    StorageUnavailable,
    ValidationError,
)
from .hashing import sha256_hash
from .identity import IdentityDirectory, validate_user_id
from .logging_config import security_log
from .messages import upload_message
from .models import (
    CLINICAL_RESOURCE_TYPES,
    AccessLevel,
    AccessValidationResult,
    AuditEventType,
    ResourceType,
    parse_enum,
)
from .content_store import ContentStore
from .signing import Ed25519Verifier, SignatureVerifier
from .util import b64d, call_with_timeout, generate_id, parse_rfc3339, to_rfc3339, utc_now

logger = logging.getLogger(__name__)

SUPPORTED_ENCRYPTION_ALGORITHMS = ("AES-256-GCM", "ChaCha20-Poly1305")
MAX_BLOB_SIZE = 100 * 1024 * 1024
DEFAULT_STORAGE_TIMEOUT = 10.0
DEFAULT_STORAGE_WORKERS = 8


class OperationState(str, Enum):
    VALIDATING = "validating"
    EXECUTING = "executing"
    AUDITING = "auditing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    OperationState.VALIDATING: {OperationState.EXECUTING, OperationState.FAILED},
    OperationState.EXECUTING: {OperationState.AUDITING, OperationState.FAILED},
    OperationState.AUDITING: {OperationState.DONE, OperationState.FAILED},
    OperationState.DONE: set(),
    OperationState.FAILED: set(),
}


@dataclass
class StorageOperation:
    """Progress of one upload or download."""
    kind: str
    requester_id: str
    patient_id: str
    operation_id: str = field(default_factory=lambda: generate_id("op", 8))
    state: OperationState = OperationState.VALIDATING
    history: List[OperationState] = field(default_factory=lambda: [OperationState.VALIDATING])
    content_id: Optional[str] = None
    error_code: Optional[str] = None
    audited: bool = False

    def advance(self, state: OperationState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        security_log.storage_operation(self.operation_id, self.kind, state.value,
                                       self.content_id, self.error_code)

    def fail(self, error_code: str) -> None:
        self.error_code = error_code
        if self.state != OperationState.FAILED:
            self.advance(OperationState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "content_id": self.content_id,
            "error_code": self.error_code,
        }


@dataclass(frozen=True)
class RecordMetadata:
    resource_type: ResourceType
    filename: str
    mime_type: str
    original_size: int
    encryption_algorithm: str
    original_file_hash: str
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordMetadata":
        if not isinstance(data, dict):
            raise ValidationError("metadata", "must be an object")
        resource_type = parse_enum(ResourceType, data.get("resource_type"), "metadata.resource_type")
        if resource_type not in CLINICAL_RESOURCE_TYPES:
            raise ValidationError("metadata.resource_type", "must be a clinical resource type")
        filename = data.get("filename")
        if not isinstance(filename, str) or not filename.strip() or len(filename) > 255:
            raise ValidationError("metadata.filename", "required, at most 255 characters")
        mime_type = data.get("mime_type")
        if not isinstance(mime_type, str) or "/" not in mime_type:
            raise ValidationError("metadata.mime_type", "must be a MIME type")
        original_size = data.get("original_size", 0)
        if not isinstance(original_size, int) or isinstance(original_size, bool) or original_size < 0:
            raise ValidationError("metadata.original_size", "must be a non-negative integer")
        algorithm = data.get("encryption_algorithm")
        if algorithm not in SUPPORTED_ENCRYPTION_ALGORITHMS:
            raise ValidationError("metadata.encryption_algorithm",
                                  f"must be one of: {', '.join(SUPPORTED_ENCRYPTION_ALGORITHMS)}")
        original_hash = data.get("original_file_hash")
        if not isinstance(original_hash, str) or not original_hash:
            raise ValidationError("metadata.original_file_hash", "required")
        description = data.get("description")
        if description is not None and not isinstance(description, str):
            raise ValidationError("metadata.description", "must be a string")
        return cls(resource_type, filename, mime_type, original_size, algorithm, original_hash, description)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type.value,
            "filename": self.filename,
            "mime_type": self.mime_type,
            "original_size": self.original_size,
            "encryption_algorithm": self.encryption_algorithm,
            "original_file_hash": self.original_file_hash,
            "description": self.description,
        }


@dataclass(frozen=True)
class StoredRecord:
    content_id: str
    patient_id: str
    uploaded_by: str
    metadata: RecordMetadata
    size: int
    uploaded_at: datetime
    pinned: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "patient_id": self.patient_id,
            "uploaded_by": self.uploaded_by,
            "metadata": self.metadata.to_dict(),
            "size": self.size,
            "uploaded_at": to_rfc3339(self.uploaded_at),
            "pinned": self.pinned,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredRecord":
        return cls(
            content_id=data["content_id"],
            patient_id=data["patient_id"],
            uploaded_by=data["uploaded_by"],
            metadata=RecordMetadata.from_dict(data["metadata"]),
            size=int(data["size"]),
            uploaded_at=parse_rfc3339(data["uploaded_at"]),
            pinned=bool(data["pinned"]),
        )


class RecordCatalog(ABC):
    """
    Who owns which stored content.

    Keyed by (content_id, patient_id): the same ciphertext catalogued for two
    patients is two records, and neither upload rebinds the other.
    """

    @abstractmethod
    def add(self, record: StoredRecord) -> None:
        """Insert or replace the record for ``(content_id, patient_id)``."""

    @abstractmethod
    def get(self, content_id: str, patient_id: str) -> Optional[StoredRecord]:
        pass

    @abstractmethod
    def owners(self, content_id: str) -> List[str]:
        """Patient ids with a catalogued record for ``content_id``."""

    @abstractmethod
    def for_patient(self, patient_id: str) -> List[StoredRecord]:
        pass


class InMemoryRecordCatalog(RecordCatalog):

    def __init__(self):
        self._records: Dict[Tuple[str, str], StoredRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: StoredRecord) -> None:
        with self._lock:
            self._records[(record.content_id, record.patient_id)] = record

    def get(self, content_id: str, patient_id: str) -> Optional[StoredRecord]:
        with self._lock:
            return self._records.get((content_id, patient_id))

    def owners(self, content_id: str) -> List[str]:
        with self._lock:
            return [patient for cid, patient in self._records if cid == content_id]

    def for_patient(self, patient_id: str) -> List[StoredRecord]:
        with self._lock:
            return [r for r in self._records.values() if r.patient_id == patient_id]


@dataclass(frozen=True)
class UploadReceipt:
    record: StoredRecord
    audit_entry_id: str
    operation: Dict[str, Any]
    consent_token_id: Optional[str] = None

    @property
    def content_id(self) -> str:
        return self.record.content_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.record.content_id,
            "record": self.record.to_dict(),
            "audit_entry_id": self.audit_entry_id,
            "consent_token_id": self.consent_token_id,
            "operation": self.operation,
        }


@dataclass(frozen=True)
class DownloadResult:
    content_id: str
    data: bytes
    accessed_at: datetime
    audit_entry_id: str
    operation: Dict[str, Any]
    record: Optional[StoredRecord] = None
    consent_token_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "size": len(self.data),
            "accessed_at": to_rfc3339(self.accessed_at),
            "audit_entry_id": self.audit_entry_id,
            "consent_token_id": self.consent_token_id,
            "record": self.record.to_dict() if self.record else None,
            "operation": self.operation,
        }


def _decode_blob(blob: Union[bytes, bytearray, str]) -> bytes:
    """Blob bytes, or strict base64 text as sent over HTTP."""
    if isinstance(blob, str):
        try:
            blob = b64d(blob.strip())
        except ValueError:
            raise ValidationError("encrypted_data", "must be valid base64")
    if not isinstance(blob, (bytes, bytearray)) or not blob:
        raise ValidationError("encrypted_data", "must be non-empty bytes")
    if len(blob) > MAX_BLOB_SIZE:
        raise ValidationError("encrypted_data", "exceeds maximum record size")
    return bytes(blob)


class StorageOrchestrator:

    def __init__(
        self,
        store: ContentStore,
        access: AccessValidator,
        identities: IdentityDirectory,
        audit,
        verifier: Optional[SignatureVerifier] = None,
        timeout: float = DEFAULT_STORAGE_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
        catalog: Optional[RecordCatalog] = None,
        workers: int = DEFAULT_STORAGE_WORKERS
    ):
        self._store = store
        self._access = access
        self._identities = identities
        self._audit = audit
        self._verifier = verifier or Ed25519Verifier()
        self._timeout = timeout
        self._clock = clock
        self.catalog = catalog if catalog is not None else InMemoryRecordCatalog()
        # Separate from the ledger executor: a stalled ledger cannot starve storage.
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="medgate-storage")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Content store calls
    # ------------------------------------------------------------------

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return call_with_timeout(self._executor, fn, self._timeout, StorageUnavailable, *args)
        except MedGateError:
            raise
        except Exception as e:
            raise StorageUnavailable(f"content store raised {type(e).__name__}: {e}") from e

    def _denial(self, op: StorageOperation, decision: AccessValidationResult,
                resource_id: Optional[str], extra: Dict[str, Any]) -> None:
        op.fail("FORBIDDEN")
        details = {
            "outcome": "denied",
            "operation": op.kind,
            "operation_id": op.operation_id,
            "patient_id": op.patient_id,
            "reason": decision.reason,
            "resource_type": decision.resource_type,
            "access_level": decision.access_level,
        }
        details.update(extra)
        self._audit.record_event(AuditEventType.ACCESS_DENIED, op.requester_id, details, resource_id)
        op.audited = True

    def _failure(self, op: StorageOperation, event_type: AuditEventType, error: MedGateError,
                 extra: Dict[str, Any]) -> None:
        op.fail(error.code.value)
        if op.audited:
            return
        details = {
            "outcome": "failed",
            "error": error.code.value,
            "operation_id": op.operation_id,
            "patient_id": op.patient_id,
        }
        details.update(extra)
        self._audit.record_event(event_type, op.requester_id, details, op.content_id)
        op.audited = True

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload(
        self,
        patient_id: str,
        provider_id: str,
        encrypted_blob: Union[bytes, str],
        metadata: Any,
        provider_signature: str,
        requester_id: Optional[str] = None
    ) -> UploadReceipt:
        """
        Store a client-encrypted record after checking write access.

        ``encrypted_blob`` is raw bytes or base64 text. When ``requester_id``
        is given (the authenticated caller) it must be the provider.

        Raises:
            ValidationError: bad metadata or empty blob
            AuthenticationFailed: provider signature does not verify
            Forbidden: no write access, or the requester is not the provider
            StorageUnavailable: content store failed or timed out
        """
        actor = requester_id if requester_id is not None else provider_id
        op = StorageOperation("upload", str(actor), str(patient_id))
        try:
            return self._upload(op, patient_id, provider_id, encrypted_blob, metadata,
                                provider_signature, requester_id)
        except MedGateError as e:
            self._failure(op, AuditEventType.RECORD_CREATED, e, {"provider_id": provider_id})
            raise

    def _upload(self, op: StorageOperation, patient_id: str, provider_id: str,
                encrypted_blob: Union[bytes, str], metadata: Any, provider_signature: str,
                requester_id: Optional[str]) -> UploadReceipt:
        validate_user_id(patient_id, "patient_id")
        validate_user_id(provider_id, "provider_id")
        if requester_id is not None and requester_id != provider_id:
            raise Forbidden("Uploads must be made by the signing provider")
        blob = _decode_blob(encrypted_blob)
        meta = metadata if isinstance(metadata, RecordMetadata) else RecordMetadata.from_dict(metadata)

        provider = self._identities.get(provider_id)
        content_hash = sha256_hash(blob)
        message = upload_message(patient_id, provider_id, content_hash, meta.resource_type.value)
        if provider is None or not self._verifier.verify(provider.public_keys.signing_key, message,
                                                         provider_signature or ""):
            raise AuthenticationFailed()

        decision = self._access.check_access(provider_id, patient_id, meta.resource_type, AccessLevel.WRITE)
        security_log.access_decision(decision.to_dict())
        if not decision.access_granted:
            self._denial(op, decision, None, {"filename": meta.filename})
            raise Forbidden(decision.message)

        op.advance(OperationState.EXECUTING)
        content_id = self._call(self._store.put, blob)
        op.content_id = content_id
        try:
            pinned = bool(self._call(self._store.pin, content_id))
        except StorageUnavailable as e:
            logger.warning("Pin failed for %s: %s", content_id, e.message)
            pinned = False

        record = StoredRecord(
            content_id=content_id,
            patient_id=patient_id,
            uploaded_by=provider_id,
            metadata=meta,
            size=len(blob),
            uploaded_at=self._clock(),
            pinned=pinned,
        )
        try:
            self.catalog.add(record)
        except MedGateError:
            raise
        except Exception as e:
            raise StorageUnavailable(f"record catalog raised {type(e).__name__}: {e}") from e

        op.advance(OperationState.AUDITING)
        entry = self._audit.record_event(AuditEventType.RECORD_CREATED, provider_id, {
            "outcome": "success",
            "operation_id": op.operation_id,
            "patient_id": patient_id,
            "resource_type": meta.resource_type,
            "size": record.size,
            "pinned": pinned,
            "access_reason": decision.reason,
            "consent_token_id": decision.consent_token_id,
            "sensitivity": decision.sensitivity,
        }, content_id)
        op.audited = True
        op.advance(OperationState.DONE)
        return UploadReceipt(record, entry.entry_id, op.to_dict(), decision.consent_token_id)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download(self, requester_id: str, patient_id: str, content_id: str,
                 access_reason: str) -> DownloadResult:
        """
        Release an encrypted record after checking read access.

        Raises:
            ValidationError: malformed ids or missing access reason
            Forbidden: no read access, or the record belongs to another patient
            NotFound: no catalogued record, or content missing from the store
            StorageUnavailable: content store failed or timed out
        """
        op = StorageOperation("download", str(requester_id), str(patient_id))
        op.content_id = content_id if isinstance(content_id, str) else None
        try:
            return self._download(op, requester_id, patient_id, content_id, access_reason)
        except MedGateError as e:
            self._failure(op, AuditEventType.RECORD_ACCESSED, e, {"access_reason": access_reason})
            raise

    def _download(self, op: StorageOperation, requester_id: str, patient_id: str,
                  content_id: str, access_reason: str) -> DownloadResult:
        validate_user_id(requester_id, "requester_id")
        validate_user_id(patient_id, "patient_id")
        if not isinstance(content_id, str) or not content_id:
            raise ValidationError("content_id", "required")
        if not isinstance(access_reason, str) or not access_reason.strip():
            raise ValidationError("access_reason", "required")

        record = self.catalog.get(content_id, patient_id)
        if record is None:
            if not self.catalog.owners(content_id):
                raise NotFound(f"record {content_id} not found")
            decision = AccessValidationResult(
                access_granted=False,
                provider_id=requester_id,
                patient_id=patient_id,
                resource_type="unknown",
                access_level=AccessLevel.READ.value,
                reason="patient-mismatch",
                message="Access denied: record does not belong to this patient",
            )
        else:
            decision = self._access.check_access(
                requester_id, patient_id, record.metadata.resource_type, AccessLevel.READ)
        security_log.access_decision(decision.to_dict())
        if not decision.access_granted:
            self._denial(op, decision, content_id, {"access_reason": access_reason})
            raise Forbidden(decision.message)

        op.advance(OperationState.EXECUTING)
        data = self._call(self._store.get, content_id)

        op.advance(OperationState.AUDITING)
        accessed_at = self._clock()
        entry = self._audit.record_event(AuditEventType.RECORD_ACCESSED, requester_id, {
            "outcome": "success",
            "operation_id": op.operation_id,
            "patient_id": patient_id,
            "access_reason": access_reason,
            "decision_reason": decision.reason,
            "consent_token_id": decision.consent_token_id,
            "size": len(data),
            "sensitivity": decision.sensitivity,
        }, content_id)
        op.audited = True
        op.advance(OperationState.DONE)
        return DownloadResult(content_id, data, accessed_at, entry.entry_id, op.to_dict(),
                              record, decision.consent_token_id)

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def get_record(self, content_id: str, patient_id: str) -> Optional[StoredRecord]:
        return self.catalog.get(content_id, patient_id)

    def records_for_patient(self, patient_id: str) -> List[StoredRecord]:
        return self.catalog.for_patient(patient_id)

    def content_exists(self, content_id: str) -> bool:
        return bool(self._call(self._store.exists, content_id))
