"""
Session principals.

After a successful challenge-response the caller gets an opaque bearer token.
Only its SHA-256 is kept, so a leaked session table does not leak tokens.
"""

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .errors import AuthenticationFailed
from .hashing import sha256_hex
from .models import Identity, Role
from .util import to_rfc3339, utc_now

DEFAULT_SESSION_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class Session:
    user_id: str
    role: Role
    issued_at: datetime
    expires_at: datetime
    token: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "session_token": self.token,
            "user_id": self.user_id,
            "role": self.role.value,
            "issued_at": to_rfc3339(self.issued_at),
            "expires_at": to_rfc3339(self.expires_at),
        }


class SessionManager:

    def __init__(self, ttl: timedelta = DEFAULT_SESSION_TTL, clock: Callable[[], datetime] = utc_now):
        self._ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def issue(self, identity: Identity) -> Session:
        token = secrets.token_urlsafe(32)
        now = self._clock()
        stored = Session(identity.user_id, identity.role, now, now + self._ttl)
        with self._lock:
            self._sessions[sha256_hex(token)] = stored
        return Session(stored.user_id, stored.role, stored.issued_at, stored.expires_at, token)

    def resolve(self, token: Optional[str]) -> Session:
        if not token:
            raise AuthenticationFailed()
        key = sha256_hex(token)
        now = self._clock()
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                raise AuthenticationFailed()
            if now > session.expires_at:
                del self._sessions[key]
                raise AuthenticationFailed()
        return session

    def revoke(self, token: str) -> bool:
        with self._lock:
            return self._sessions.pop(sha256_hex(token), None) is not None

    def revoke_user(self, user_id: str) -> int:
        """Drop every session held by ``user_id`` (used on deactivation)."""
        with self._lock:
            keys = [k for k, s in self._sessions.items() if s.user_id == user_id]
            for k in keys:
                del self._sessions[k]
            return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, s in self._sessions.items() if now > s.expires_at]
            for k in expired:
                del self._sessions[k]
            return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"active_sessions": len(self._sessions)}
