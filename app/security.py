"""
Security helpers for the MedGate HTTP service.

Bearer token extraction, request ids and log sanitization. Domain
validation lives in the ``medgate`` package.
"""

import uuid
from typing import Any, Dict, Optional

from medgate.errors import AuthenticationFailed

BEARER_PREFIX = "bearer "

SENSITIVE_KEYS = {
    "signature", "patient_signature", "provider_signature", "admin_signature",
    "requester_signature", "nonce", "session_token", "encrypted_data",
    "private_key", "signing_private_key", "encryption_private_key",
}


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
        raise AuthenticationFailed()
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationFailed()
    return token


def sanitize_for_logging(data: Dict[str, Any], max_length: int = 100) -> Dict[str, Any]:
    """
    Sanitize a request body for logging.

    Signatures, nonces, tokens and record payloads are redacted; long
    strings are truncated.
    """
    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in SENSITIVE_KEYS:
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_for_logging(value, max_length)
        elif isinstance(value, str) and len(value) > max_length:
            sanitized[key] = value[:max_length] + "...[truncated]"
        else:
            sanitized[key] = value
    return sanitized


def generate_request_id() -> str:
    return str(uuid.uuid4())
