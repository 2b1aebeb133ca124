"""
Signed payload builders.

Clients sign, and the server verifies, the canonical JSON of these payloads.
Each payload carries an ``action`` field so a signature made for one purpose
cannot be replayed as another.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from .canonicalization import canonicalize
from .models import ConsentPermission
from .util import parse_rfc3339, to_rfc3339


def _permission_dict(p: Union[ConsentPermission, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(p, ConsentPermission):
        return p.to_dict()
    return {
        "resource_type": p.get("resource_type"),
        "access_level": p.get("access_level"),
        "conditions": list(p.get("conditions") or []),
    }


def _timestamp(value: Optional[Union[str, datetime]]) -> Optional[str]:
    if value is None:
        return None
    return to_rfc3339(parse_rfc3339(value))


def nonce_message(nonce: str) -> bytes:
    """Authentication signs the exact nonce bytes."""
    return nonce.encode('utf-8')


def grant_message(
    patient_id: str,
    provider_id: str,
    permissions: Iterable[Union[ConsentPermission, Dict[str, Any]]],
    expiration_time: Optional[Union[str, datetime]] = None,
    *,
    request_nonce: str,
    issued_at: Union[str, datetime]
) -> bytes:
    """
    ``request_nonce`` is chosen by the patient's client and ``issued_at`` is
    when it signed; together they make every signed grant single-use.
    """
    return canonicalize({
        "action": "grant_consent",
        "patient_id": patient_id,
        "provider_id": provider_id,
        "permissions": [_permission_dict(p) for p in permissions],
        "expiration_time": _timestamp(expiration_time),
        "request_nonce": request_nonce,
        "issued_at": _timestamp(issued_at),
    })


def revocation_message(consent_token_id: str) -> bytes:
    return canonicalize({"action": "revoke_consent", "consent_token_id": consent_token_id})


def upload_message(patient_id: str, provider_id: str, content_hash: str, resource_type: str) -> bytes:
    """``content_hash`` is the prefixed SHA-256 of the encrypted blob."""
    return canonicalize({
        "action": "upload_record",
        "patient_id": patient_id,
        "provider_id": provider_id,
        "content_hash": content_hash,
        "resource_type": resource_type,
    })


def export_message(export_format: str, filters: Dict[str, Any]) -> bytes:
    return canonicalize({
        "action": "export_audit",
        "format": export_format,
        "filters": filters,
    })


def compliance_report_message(report_type: str, start_date: Union[str, datetime],
                              end_date: Union[str, datetime]) -> bytes:
    return canonicalize({
        "action": "compliance_report",
        "report_type": report_type,
        "start_date": _timestamp(start_date),
        "end_date": _timestamp(end_date),
    })


def registration_decision_message(user_id: str, decision: str) -> bytes:
    return canonicalize({
        "action": "registration_decision",
        "user_id": user_id,
        "decision": decision,
    })


def deactivation_message(user_id: str) -> bytes:
    return canonicalize({"action": "deactivate_identity", "user_id": user_id})
