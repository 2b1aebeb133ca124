"""
MedGate hashing helpers.

All hashes are SHA-256 with lowercase hexadecimal output. Content addresses
and audit payload hashes carry a ``sha256:`` prefix so the algorithm is
visible in stored data.
"""

import hashlib
from typing import Optional, Union

from .canonicalization import canonicalize

CONTENT_ID_PREFIX = "sha256:"


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 and return the bare lowercase hex digest."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def sha256_hash(data: Union[bytes, str]) -> str:
    """Compute SHA-256 in prefixed form, ``sha256:abcdef...``."""
    return f"{CONTENT_ID_PREFIX}{sha256_hex(data)}"


def payload_hash(payload: dict) -> str:
    """Hash of the canonical JSON encoding of ``payload``."""
    return sha256_hash(canonicalize(payload))


def content_id_for(data: bytes) -> str:
    """Content address for a blob."""
    return sha256_hash(data)


def chain_entry_hash(previous_hash: Optional[str], entry_payload_hash: str) -> str:
    """
    Link one audit entry to its predecessor.

    entry_hash = SHA-256(previous_hash || payload_hash), with an empty string
    standing in for the predecessor of the first entry.
    """
    return sha256_hash((previous_hash or "") + entry_payload_hash)


def verify_hash(declared_hash: str, data: Union[bytes, str]) -> bool:
    """Recompute and compare a prefixed hash."""
    if not declared_hash.startswith(CONTENT_ID_PREFIX):
        return False
    return sha256_hash(data) == declared_hash
