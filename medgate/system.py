"""
Component wiring.

Builds one consistent set of MedGate components around a ledger, a content
store and the audit signing key. The HTTP service, the CLI and the tests all
construct the system through ``MedGate.build``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from .access import AccessValidator
from .audit import AuditTrail, MAX_PAGE_SIZE, RetryPolicy
from .auth import IdentityVerifier
from .consent import DEFAULT_GRANT_WINDOW, ConsentRegistry
from .content_store import ContentStore, InMemoryContentStore
from .identity import IdentityDirectory
from .ledger import InMemoryLedger, Ledger
from .nonces import DEFAULT_NONCE_TTL, NonceAuthority, NonceStore
from .policy import PolicyRuleSet
from .sessions import DEFAULT_SESSION_TTL, SessionManager
from .signing import AuditSigner, Ed25519Verifier, SignatureVerifier
from .storage import DEFAULT_STORAGE_TIMEOUT, DEFAULT_STORAGE_WORKERS, RecordCatalog, StorageOrchestrator
from .util import utc_now


@dataclass
class MedGate:
    identities: IdentityDirectory
    nonces: NonceAuthority
    verifier: IdentityVerifier
    sessions: SessionManager
    consents: ConsentRegistry
    access: AccessValidator
    audit: AuditTrail
    storage: StorageOrchestrator
    ledger: Ledger
    content_store: ContentStore

    @classmethod
    def build(
        cls,
        ledger: Optional[Ledger] = None,
        content_store: Optional[ContentStore] = None,
        audit_signer: Optional[AuditSigner] = None,
        nonce_store: Optional[NonceStore] = None,
        rule_set: Optional[PolicyRuleSet] = None,
        retry_policy: Optional[RetryPolicy] = None,
        signature_verifier: Optional[SignatureVerifier] = None,
        bootstrap: Iterable[Dict[str, Any]] = (),
        nonce_ttl: timedelta = DEFAULT_NONCE_TTL,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        storage_timeout: float = DEFAULT_STORAGE_TIMEOUT,
        storage_workers: int = DEFAULT_STORAGE_WORKERS,
        record_catalog: Optional[RecordCatalog] = None,
        grant_window: timedelta = DEFAULT_GRANT_WINDOW,
        max_page_size: int = MAX_PAGE_SIZE,
        clock: Callable[[], datetime] = utc_now
    ) -> "MedGate":
        ledger = ledger or InMemoryLedger()
        content_store = content_store or InMemoryContentStore()
        sig = signature_verifier or Ed25519Verifier()

        audit = AuditTrail(
            ledger,
            audit_signer or AuditSigner.generate(),
            verifier=sig,
            retry_policy=retry_policy,
            clock=clock,
            max_page_size=max_page_size,
        )
        identities = IdentityDirectory(audit=audit, verifier=sig, clock=clock)
        audit.identities = identities
        identities.bootstrap(bootstrap)

        nonces = NonceAuthority(nonce_store, ttl=nonce_ttl, clock=clock)
        consents = ConsentRegistry(identities, audit, verifier=sig, clock=clock, grant_window=grant_window)
        access = AccessValidator(consents, identities, rule_set)
        storage = StorageOrchestrator(
            content_store, access, identities, audit,
            verifier=sig, timeout=storage_timeout, clock=clock,
            catalog=record_catalog, workers=storage_workers,
        )
        return cls(
            identities=identities,
            nonces=nonces,
            verifier=IdentityVerifier(identities, nonces, audit, sig),
            sessions=SessionManager(session_ttl, clock),
            consents=consents,
            access=access,
            audit=audit,
            storage=storage,
            ledger=ledger,
            content_store=content_store,
        )

    def start(self) -> None:
        self.audit.start()

    def stop(self) -> None:
        self.audit.stop()

    def close(self) -> None:
        """Stop background work and release the ledger and storage executors."""
        self.audit.close()
        self.storage.close()
