"""
MedGate NonceAuthority

Issues single-use challenge nonces and consumes them atomically. A nonce is
valid for exactly one successful ``consume`` by its owner before
``expires_at``; every other call returns False and leaves state untouched.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .errors import ValidationError
from .models import Nonce
from .util import generate_nonce, mask_sensitive, utc_now

logger = logging.getLogger(__name__)

DEFAULT_NONCE_TTL = timedelta(minutes=5)
NONCE_BYTES = 32


class NonceStore(ABC):
    """
    Storage for pending nonces.

    Implementations must make ``take`` a single atomic check-and-delete so
    that at most one concurrent caller observes success.
    """

    @abstractmethod
    def put(self, nonce: Nonce) -> None:
        pass

    @abstractmethod
    def take(self, owner: str, value: str, now: datetime) -> bool:
        """
        Remove and report the nonce iff it exists, belongs to ``owner`` and
        ``now <= expires_at``. Otherwise return False without side effects.
        """
        pass

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """Remove expired nonces. Returns count removed."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass


class InMemoryNonceStore(NonceStore):
    """In-memory nonce store for development/testing."""

    def __init__(self):
        self._nonces: Dict[str, Nonce] = {}
        self._lock = threading.Lock()

    def put(self, nonce: Nonce) -> None:
        with self._lock:
            self._nonces[nonce.value] = nonce

    def take(self, owner: str, value: str, now: datetime) -> bool:
        with self._lock:
            nonce = self._nonces.get(value)
            if nonce is None or nonce.owner != owner or nonce.is_expired(now):
                return False
            del self._nonces[value]
            return True

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [v for v, n in self._nonces.items() if n.is_expired(now)]
            for v in expired:
                del self._nonces[v]
            return len(expired)

    def count(self) -> int:
        with self._lock:
            return len(self._nonces)


class NonceAuthority:
    """Issues and consumes authentication nonces."""

    def __init__(
        self,
        store: Optional[NonceStore] = None,
        ttl: timedelta = DEFAULT_NONCE_TTL,
        clock: Callable[[], datetime] = utc_now
    ):
        self._store = store or InMemoryNonceStore()
        self._ttl = ttl
        self._clock = clock

    def issue(self, user_id: str) -> Nonce:
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id", "required")
        now = self._clock()
        nonce = Nonce(
            value=generate_nonce(NONCE_BYTES),
            owner=user_id,
            issued_at=now,
            expires_at=now + self._ttl,
        )
        self._store.put(nonce)
        logger.debug("Issued nonce %s for %s", mask_sensitive(nonce.value), user_id)
        return nonce

    def consume(self, user_id: str, value: str) -> bool:
        if not isinstance(user_id, str) or not isinstance(value, str):
            return False
        try:
            return self._store.take(user_id, value, self._clock())
        except Exception:
            # Store failures must surface as an ordinary authentication failure.
            logger.exception("Nonce store failure while consuming nonce for %s", user_id)
            return False

    def purge_expired(self) -> int:
        return self._store.purge_expired(self._clock())

    def pending_count(self) -> int:
        return self._store.count()
