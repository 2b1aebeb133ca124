"""
MedGate - consent-gated access control and audit for medical records.

Patients grant, scope and revoke provider access with signed consent tokens;
every storage operation is checked against those tokens and every privileged
action is written to a signed, hash-chained, ledger-backed audit trail.
"""

__version__ = "1.0.0"

from .access import AccessValidator
from .audit import (
    AuditEntryInput,
    AuditFilters,
    AuditQueryResult,
    AuditTrail,
    ExportFormat,
    ExportResult,
    IntegrityReport,
    RetryPolicy,
    verify_entry_dicts,
)
from .auth import IdentityVerifier
from .consent import (
    ConsentGrantRequest,
    ConsentLookup,
    ConsentRegistry,
    ConsentRevocationRequest,
    RevocationOutcome,
    RevocationResult,
)
from .content_store import (
    ContentStore,
    FileSystemContentStore,
    InMemoryContentStore,
    IpfsHttpContentStore,
)
from .errors import (
    AlreadyRevoked,
    AuthenticationFailed,
    ErrorCode,
    Forbidden,
    LedgerUnavailable,
    MedGateError,
    NotFound,
    StorageUnavailable,
    ValidationError,
)
from .identity import IdentityDirectory
from .ledger import HttpLedgerClient, InMemoryLedger, Ledger, LedgerReceipt
from .models import (
    AccessLevel,
    AccessValidationResult,
    AuditEntry,
    AuditEventType,
    ConsentPermission,
    ConsentToken,
    Identity,
    Nonce,
    PublicKeys,
    RegistrationStatus,
    ResourceType,
    Role,
)
from .nonces import InMemoryNonceStore, NonceAuthority, NonceStore
from .policy import PolicyRuleSet, default_rule_set
from .sessions import Session, SessionManager
from .signing import AuditSigner, Ed25519Verifier, SignatureVerifier, generate_identity_keys, sign_message
from .storage import OperationState, RecordMetadata, StorageOrchestrator
from .system import MedGate

__all__ = [
    "AccessLevel", "AccessValidationResult", "AccessValidator", "AlreadyRevoked",
    "AuditEntry", "AuditEntryInput", "AuditEventType", "AuditFilters", "AuditQueryResult",
    "AuditSigner", "AuditTrail", "AuthenticationFailed", "ConsentGrantRequest",
    "ConsentLookup", "ConsentPermission", "ConsentRegistry", "ConsentRevocationRequest",
    "ConsentToken", "ContentStore", "Ed25519Verifier", "ErrorCode", "ExportFormat",
    "ExportResult", "FileSystemContentStore", "Forbidden", "HttpLedgerClient", "Identity",
    "IdentityDirectory", "IdentityVerifier", "InMemoryContentStore", "InMemoryLedger",
    "InMemoryNonceStore", "IntegrityReport", "IpfsHttpContentStore", "Ledger",
    "LedgerReceipt", "LedgerUnavailable", "MedGate", "MedGateError", "Nonce",
    "NonceAuthority", "NonceStore", "NotFound", "OperationState", "PolicyRuleSet",
    "PublicKeys", "RecordMetadata", "RegistrationStatus", "ResourceType", "RetryPolicy",
    "RevocationOutcome", "RevocationResult", "Role", "Session", "SessionManager",
    "SignatureVerifier", "StorageOrchestrator", "StorageUnavailable", "ValidationError",
    "default_rule_set", "generate_identity_keys", "sign_message", "verify_entry_dicts",
]
