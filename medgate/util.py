"""
Utility functions for MedGate.

Time handling, encoding helpers, identifiers and bounded calls into external
collaborators.
"""

import base64
import hmac
import re
import secrets
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

_RFC3339 = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,6})?(Z|[+-]\d{2}:\d{2})$"
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_rfc3339(dt: datetime) -> str:
    """
    Render an aware datetime as RFC 3339 UTC with a ``Z`` suffix.

    Whole seconds are rendered without a fraction so that clients signing
    ``2026-01-01T00:00:00Z`` produce the same bytes the server re-encodes.
    """
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    dt = dt.astimezone(timezone.utc)
    if dt.microsecond:
        return dt.strftime('%Y-%m-%dT%H:%M:%S.%fZ')
    return dt.strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_rfc3339(value: Union[str, datetime]) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValueError("datetime must be timezone-aware")
        return value.astimezone(timezone.utc)
    if not isinstance(value, str) or not _RFC3339.match(value):
        raise ValueError(f"Not an RFC 3339 timestamp: {value!r}")
    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    return datetime.fromisoformat(normalized).astimezone(timezone.utc)


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes, rejecting non-alphabet characters."""
    return base64.b64decode(s.encode('ascii'), validate=True)


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Compare two strings/bytes in constant time."""
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def generate_nonce(length: int = 32) -> str:
    """Generate a cryptographically secure random nonce (hex)."""
    return secrets.token_hex(length)


def generate_id(prefix: str = "", length: int = 16) -> str:
    """Generate a random identifier, optionally prefixed (``consent_ab12...``)."""
    token = secrets.token_hex(length)
    return f"{prefix}_{token}" if prefix else token


def mask_sensitive(value: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Used when nonces, signatures or session tokens reach a log line.
    """
    if not value:
        return ""
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]


def call_with_timeout(
    executor: Executor,
    fn: Callable[..., Any],
    timeout: float,
    on_timeout: Callable[[str], Exception],
    *args: Any,
    **kwargs: Any
) -> Any:
    """
    Run ``fn`` on ``executor`` and wait at most ``timeout`` seconds.

    A timeout is converted into the exception built by ``on_timeout``; any
    exception raised by ``fn`` propagates unchanged. The worker thread of a
    timed-out call is abandoned, not interrupted.
    """
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise on_timeout(f"{getattr(fn, '__name__', 'call')} timed out after {timeout}s")
