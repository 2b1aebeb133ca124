"""
MedGate error taxonomy.

Every failure a caller can observe carries one ``ErrorCode``. The HTTP layer
maps codes to status codes; the core only raises these exceptions.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable, caller-visible failure codes."""
    AUTH_FAILED = "AUTH_FAILED"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ALREADY_REVOKED = "ALREADY_REVOKED"
    NOT_FOUND = "NOT_FOUND"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class MedGateError(Exception):
    """Base class for all MedGate errors."""
    code = ErrorCode.INTERNAL_ERROR
    retryable = False
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        d = {"code": self.code.value, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


class AuthenticationFailed(MedGateError):
    """
    Identity could not be established.

    The message never says which check failed (unknown user, stale nonce,
    bad signature) so the response cannot be used as an oracle.
    """
    code = ErrorCode.AUTH_FAILED
    default_message = "Authentication failed"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(self.default_message, None)


class Forbidden(MedGateError):
    code = ErrorCode.FORBIDDEN
    default_message = "Access denied"


class ValidationError(MedGateError):
    """Input failed validation."""
    code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid request"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}", {"field": field})


class AlreadyRevoked(MedGateError):
    code = ErrorCode.ALREADY_REVOKED
    default_message = "Consent token already revoked"


class NotFound(MedGateError):
    code = ErrorCode.NOT_FOUND
    default_message = "Not found"


class StorageUnavailable(MedGateError):
    """The content store failed or timed out. Safe to retry."""
    code = ErrorCode.STORAGE_UNAVAILABLE
    retryable = True
    default_message = "Content store unavailable"


class LedgerUnavailable(MedGateError):
    """The ledger failed or timed out. Safe to retry."""
    code = ErrorCode.LEDGER_UNAVAILABLE
    retryable = True
    default_message = "Ledger unavailable"
