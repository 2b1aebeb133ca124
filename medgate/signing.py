"""
MedGate signing and verification.

Ed25519 (PyNaCl) for user signatures and for the audit trail's own key.
X25519 encryption keys are only generated and carried; record encryption
happens on the client.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.public import PrivateKey
from nacl.signing import SigningKey, VerifyKey

from .util import b64d, b64e

KEY_LENGTH = 32
SIGNATURE_ALGORITHM = "ed25519"


class SignatureVerifier(ABC):
    """Signature primitive consulted by the verifier, registry and orchestrator."""

    @abstractmethod
    def verify(self, public_key_b64: str, message: bytes, signature_b64: str) -> bool:
        """Return True iff ``signature_b64`` is valid for ``message``. Never raises."""
        pass


class Ed25519Verifier(SignatureVerifier):

    def verify(self, public_key_b64: str, message: bytes, signature_b64: str) -> bool:
        try:
            vk = VerifyKey(b64d(public_key_b64))
            vk.verify(message, b64d(signature_b64))
            return True
        except (BadSignatureError, CryptoError, ValueError, TypeError, AttributeError):
            return False


def is_valid_public_key(value: Any) -> bool:
    """True iff ``value`` is base64 of exactly 32 bytes."""
    if not isinstance(value, str):
        return False
    try:
        return len(b64d(value)) == KEY_LENGTH
    except ValueError:
        return False


def sign_message(private_key_b64: str, message: bytes) -> str:
    """Client-side helper: Ed25519-sign ``message`` and return base64."""
    sk = SigningKey(b64d(private_key_b64))
    return b64e(sk.sign(message).signature)


def generate_identity_keys() -> Dict[str, str]:
    """
    Generate the key material a user registers with.

    Returns private halves too; callers keep those client-side.
    """
    signing = SigningKey.generate()
    encryption = PrivateKey.generate()
    return {
        "signing_private_key": b64e(bytes(signing)),
        "signing_key": b64e(bytes(signing.verify_key)),
        "encryption_private_key": b64e(bytes(encryption)),
        "encryption_key": b64e(bytes(encryption.public_key)),
    }


class AuditSigner:
    """
    Holds the audit trail's Ed25519 key, distinct from every user key.

    Key files use ``{"kid": ..., "private_key_b64": ...}``.
    """

    def __init__(self, signing_key: SigningKey, kid: str = "medgate-audit-001"):
        self._sk = signing_key
        self.kid = kid

    @classmethod
    def generate(cls, kid: str = "medgate-audit-ephemeral") -> "AuditSigner":
        return cls(SigningKey.generate(), kid)

    @classmethod
    def from_file(cls, path: str) -> "AuditSigner":
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return cls(SigningKey(b64d(raw["private_key_b64"])), raw["kid"])

    def to_key_file(self) -> Dict[str, str]:
        return {
            "kid": self.kid,
            "alg": SIGNATURE_ALGORITHM,
            "private_key_b64": b64e(bytes(self._sk)),
            "public_key_b64": self.public_key_b64,
        }

    @property
    def public_key_b64(self) -> str:
        return b64e(bytes(self._sk.verify_key))

    def sign(self, payload: bytes) -> Dict[str, str]:
        """Sign ``payload`` and return ``{kid, alg, sig_b64}``."""
        sig = self._sk.sign(payload).signature
        return {"kid": self.kid, "alg": SIGNATURE_ALGORITHM, "sig_b64": b64e(sig)}


def verify_audit_signature(
    signature: Dict[str, str],
    payload: bytes,
    public_key_b64: str,
    verifier: Optional[SignatureVerifier] = None
) -> bool:
    """Check an audit entry signature dict against the audit public key."""
    if not isinstance(signature, dict) or signature.get("alg") != SIGNATURE_ALGORITHM:
        return False
    verifier = verifier or Ed25519Verifier()
    return verifier.verify(public_key_b64, payload, signature.get("sig_b64", ""))
