"""
MedGate IdentityVerifier

Challenge-response authentication: the caller signs a server-issued nonce
with the Ed25519 key registered for their identity.

Every check runs on every call and the nonce is always burned, so a failed
attempt cannot be retried with the same nonce and the response never says
which check failed.
"""

import logging
from typing import Optional

from .errors import AuthenticationFailed
from .identity import IdentityDirectory
from .logging_config import security_log
from .messages import nonce_message
from .models import AuditEventType, Identity
from .nonces import NonceAuthority
from .signing import Ed25519Verifier, SignatureVerifier
from .util import mask_sensitive

logger = logging.getLogger(__name__)


class IdentityVerifier:

    def __init__(
        self,
        identities: IdentityDirectory,
        nonces: NonceAuthority,
        audit,
        verifier: Optional[SignatureVerifier] = None
    ):
        self._identities = identities
        self._nonces = nonces
        self._audit = audit
        self._verifier = verifier or Ed25519Verifier()

    def verify(self, user_id: str, nonce: str, signature: str) -> Identity:
        """
        Authenticate ``user_id``.

        Raises:
            AuthenticationFailed: unknown, unapproved or deactivated identity,
                nonce missing/expired/foreign/reused, or bad signature
        """
        identity = self._identities.get(user_id) if isinstance(user_id, str) else None
        nonce_ok = self._nonces.consume(user_id, nonce)
        approved = identity is not None and identity.is_approved()
        signature_ok = (
            approved
            and nonce_ok
            and isinstance(nonce, str)
            and self._verifier.verify(identity.public_keys.signing_key, nonce_message(nonce), signature)
        )

        success = bool(approved and nonce_ok and signature_ok)
        self._audit.record_event(AuditEventType.LOGIN_ATTEMPT, str(user_id), {
            "outcome": "success" if success else "failure",
        }, str(user_id))
        security_log.authentication(str(user_id), success)

        if not success:
            logger.debug(
                "Authentication failed for %s (nonce %s): approved=%s nonce_ok=%s signature_ok=%s",
                user_id, mask_sensitive(nonce if isinstance(nonce, str) else ""),
                approved, nonce_ok, signature_ok,
            )
            raise AuthenticationFailed()
        return identity
