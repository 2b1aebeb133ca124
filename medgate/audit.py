"""
MedGate AuditTrail

Append-only record of every privileged action. Each entry is:

    1. linked into a local SHA-256 hash chain
       (entry_hash = SHA-256(previous_hash || payload_hash)),
    2. signed with the audit Ed25519 key,
    3. submitted to the external ledger on the trail's own executor, outside
       any lock and under a timeout.

A ledger failure never fails the business operation that produced the entry.
The entry stays buffered with ``is_immutable=False``. Each retry sweep makes
at most one attempt per buffered entry; the next attempt is scheduled with
exponential backoff until the entry commits or exhausts its attempts, at
which point ``health()`` reports it as abandoned. Abandoned entries are
retried on a slower cadence or by an explicit ``flush(include_abandoned=True)``.

At most ``max_in_flight`` ledger submissions run at once. A stalled ledger
therefore holds a bounded number of threads, and callers beyond that bound
buffer their entries immediately instead of waiting.
"""

import csv
import io
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from tenacity import RetryCallState, stop_after_attempt, wait_exponential

from .canonicalization import canonicalize, canonicalize_str
from .errors import AuthenticationFailed, Forbidden, LedgerUnavailable, MedGateError, NotFound, ValidationError
from .hashing import chain_entry_hash, payload_hash, sha256_hash
from .ledger import Ledger, LedgerReceipt
from .logging_config import security_log
from .messages import compliance_report_message, export_message
from .models import (
    META_EVENT_TYPES,
    AuditEntry,
    AuditEventType,
    Role,
    parse_enum,
)
from .signing import AuditSigner, Ed25519Verifier, SignatureVerifier, verify_audit_signature
from .util import generate_id, parse_rfc3339, to_rfc3339, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 1000

SIGNED_FIELDS = (
    "entry_id", "sequence", "event_type", "user_id", "resource_id",
    "timestamp", "details", "previous_hash",
)

EXPORT_COLUMNS = (
    "entry_id", "sequence", "timestamp", "event_type", "user_id", "resource_id",
    "details", "previous_hash", "payload_hash", "entry_hash", "signature_kid",
    "signature", "ledger_transaction_id", "block_number", "is_immutable",
)

EXPORT_ROLES = (Role.AUDITOR, Role.SYSTEM_ADMIN)

ADMIN_OVERRIDE_REASON = "administrative-override"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


class ComplianceReportType(str, Enum):
    HIPAA_COMPLIANCE = "HIPAA_COMPLIANCE"
    ACCESS_CONTROL = "ACCESS_CONTROL"
    DATA_INTEGRITY = "DATA_INTEGRITY"
    USER_ACTIVITY = "USER_ACTIVITY"
    CONSENT_MANAGEMENT = "CONSENT_MANAGEMENT"
    SYSTEM_SECURITY = "SYSTEM_SECURITY"


# Sections each report type carries besides the summary.
REPORT_SECTIONS = {
    ComplianceReportType.HIPAA_COMPLIANCE: ("access_control", "consent_management", "data_integrity",
                                            "user_activity", "system_security"),
    ComplianceReportType.ACCESS_CONTROL: ("access_control",),
    ComplianceReportType.DATA_INTEGRITY: ("data_integrity",),
    ComplianceReportType.USER_ACTIVITY: ("user_activity",),
    ComplianceReportType.CONSENT_MANAGEMENT: ("consent_management",),
    ComplianceReportType.SYSTEM_SECURITY: ("system_security",),
}


@dataclass(frozen=True)
class AuditEntryInput:
    event_type: AuditEventType
    user_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    resource_id: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Ledger submission policy.

    Attempts include the inline attempt made by ``record``. Backoff doubles
    from ``initial_backoff`` up to ``max_backoff``; the background sweep runs
    every ``interval`` seconds and revisits abandoned entries every
    ``abandoned_interval`` seconds. ``max_in_flight`` bounds concurrent
    ledger submissions.
    """
    max_attempts: int = 8
    initial_backoff: float = 0.5
    max_backoff: float = 30.0
    interval: float = 10.0
    submit_timeout: float = 5.0
    max_in_flight: int = 4
    abandoned_interval: float = 300.0

    def exhausted(self, attempts: int) -> bool:
        return stop_after_attempt(self.max_attempts)(_attempt_state(attempts))

    def backoff(self, attempts: int) -> float:
        return wait_exponential(multiplier=self.initial_backoff, max=self.max_backoff)(_attempt_state(attempts))


def _attempt_state(attempts: int) -> RetryCallState:
    state = RetryCallState(None, None, (), {})
    state.attempt_number = max(1, attempts)
    return state


@dataclass
class _Backlog:
    attempts: int
    next_attempt: float


class _BacklogFull(LedgerUnavailable):
    """Every submission slot is taken. Not counted as an attempt."""
@dataclass(frozen=True)
class AuditFilters:
    event_type: Optional[AuditEventType] = None
    user_id: Optional[str] = None
    resource_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AuditFilters":
        data = data or {}
        event_type = data.get("event_type")
        try:
            page = int(data.get("page") or 1)
            limit = int(data.get("limit") or DEFAULT_PAGE_SIZE)
        except (TypeError, ValueError):
            raise ValidationError("page", "page and limit must be integers")
        filters = cls(
            event_type=parse_enum(AuditEventType, event_type, "event_type") if event_type else None,
            user_id=data.get("user_id") or None,
            resource_id=data.get("resource_id") or None,
            start_date=_parse_date(data.get("start_date"), "start_date"),
            end_date=_parse_date(data.get("end_date"), "end_date"),
            page=page,
            limit=limit,
        )
        filters.validate()
        return filters

    def validate(self) -> None:
        if self.page < 1:
            raise ValidationError("page", "must be >= 1")
        if self.limit < 1:
            raise ValidationError("limit", "must be >= 1")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError("start_date", "must not be after end_date")

    def criteria(self) -> Dict[str, Any]:
        """Selection criteria only (no paging), as signed for exports."""
        d = {
            "event_type": self.event_type.value if self.event_type else None,
            "user_id": self.user_id,
            "resource_id": self.resource_id,
            "start_date": to_rfc3339(self.start_date) if self.start_date else None,
            "end_date": to_rfc3339(self.end_date) if self.end_date else None,
        }
        return {k: v for k, v in d.items() if v is not None}

    def matches(self, entry: AuditEntry) -> bool:
        if self.event_type and entry.event_type != self.event_type:
            return False
        if self.user_id and entry.user_id != self.user_id:
            return False
        if self.resource_id and entry.resource_id != self.resource_id:
            return False
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        return True


def _parse_date(value: Any, field_name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return parse_rfc3339(value)
    except ValueError:
        raise ValidationError(field_name, "must be an RFC 3339 timestamp")


@dataclass(frozen=True)
class AuditQueryResult:
    entries: List[AuditEntry]
    total_count: int
    filtered_count: int
    page: int
    limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "total_count": self.total_count,
            "filtered_count": self.filtered_count,
            "page": self.page,
            "limit": self.limit,
        }


@dataclass(frozen=True)
class ExportResult:
    export_id: str
    format: ExportFormat
    record_count: int
    data: str
    data_hash: str
    exported_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "export_id": self.export_id,
            "format": self.format.value,
            "record_count": self.record_count,
            "data": self.data,
            "data_hash": self.data_hash,
            "exported_at": to_rfc3339(self.exported_at),
        }


@dataclass(frozen=True)
class IntegrityReport:
    total_entries: int
    hash_mismatches: List[str]
    broken_links: List[str]
    invalid_signatures: List[str]

    @property
    def verified(self) -> bool:
        return not (self.hash_mismatches or self.broken_links or self.invalid_signatures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "total_entries": self.total_entries,
            "hash_mismatches": list(self.hash_mismatches),
            "broken_links": list(self.broken_links),
            "invalid_signatures": list(self.invalid_signatures),
        }


@dataclass(frozen=True)
class ComplianceReport:
    """
    Auditor-facing summary of the trail over a time window.

    ``report_hash`` covers every field but the signature; the signature is
    the audit key's over the same canonical body.
    """
    report_id: str
    report_type: ComplianceReportType
    start_date: datetime
    end_date: datetime
    generated_at: datetime
    generated_by: str
    sections: Dict[str, Any]
    report_hash: str = ""
    signature: Dict[str, str] = field(default_factory=dict)

    def signed_body(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "report_type": self.report_type.value,
            "start_date": to_rfc3339(self.start_date),
            "end_date": to_rfc3339(self.end_date),
            "generated_at": to_rfc3339(self.generated_at),
            "generated_by": self.generated_by,
            "sections": self.sections,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.signed_body()
        d["report_hash"] = self.report_hash
        d["signature"] = dict(self.signature)
        return d


def verify_report_dict(report: Dict[str, Any], public_key_b64: str,
                       verifier: Optional[SignatureVerifier] = None) -> bool:
    """Check a serialized compliance report's hash and audit signature."""
    body = {k: v for k, v in report.items() if k not in ("report_hash", "signature")}
    try:
        encoded = canonicalize(body)
    except ValueError:
        return False
    if sha256_hash(encoded) != report.get("report_hash"):
        return False
    return verify_audit_signature(report.get("signature") or {}, encoded, public_key_b64, verifier)


def _tally(entries: Iterable[AuditEntry], key: Callable[[AuditEntry], Any]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for e in entries:
        k = str(key(e))
        counts[k] = counts.get(k, 0) + 1
    return dict(sorted(counts.items()))


def _outcome(entry: AuditEntry) -> str:
    return str(entry.details.get("outcome", "unknown"))


def _jsonable(value: Any) -> Any:
    """Reduce audit details to JSON-native values."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_rfc3339(value)
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_jsonable(v) for v in value]
        return sorted(items, key=str) if isinstance(value, (set, frozenset)) else items
    if hasattr(value, "to_dict"):
        return _jsonable(value.to_dict())
    return str(value)


def verify_entry_dicts(entries: Iterable[Dict[str, Any]], public_key_b64: str,
                       verifier: Optional[SignatureVerifier] = None) -> IntegrityReport:
    """
    Verify serialized audit entries (as held in memory or as exported).

    Entries must be in sequence order and form one contiguous chain.
    """
    verifier = verifier or Ed25519Verifier()
    hash_mismatches: List[str] = []
    broken_links: List[str] = []
    invalid_signatures: List[str] = []
    prev: Optional[str] = None
    count = 0
    for d in entries:
        count += 1
        entry_id = str(d.get("entry_id"))
        body = {k: d.get(k) for k in SIGNED_FIELDS}
        try:
            ph = payload_hash(body)
        except ValueError:
            hash_mismatches.append(entry_id)
            prev = d.get("entry_hash")
            continue
        if ph != d.get("payload_hash") or chain_entry_hash(d.get("previous_hash"), ph) != d.get("entry_hash"):
            hash_mismatches.append(entry_id)
        if d.get("previous_hash") != prev:
            broken_links.append(entry_id)
        if not verify_audit_signature(d.get("signature") or {}, canonicalize(body), public_key_b64, verifier):
            invalid_signatures.append(entry_id)
        prev = d.get("entry_hash")
    return IntegrityReport(count, hash_mismatches, broken_links, invalid_signatures)



class AuditTrail:
    """Signed, hash-chained, ledger-backed audit log."""

    def __init__(
        self,
        ledger: Ledger,
        signer: AuditSigner,
        identities=None,
        verifier: Optional[SignatureVerifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        max_page_size: int = MAX_PAGE_SIZE
    ):
        self._ledger = ledger
        self._signer = signer
        # IdentityDirectory, bound after construction (it audits through us).
        self.identities = identities
        self._verifier = verifier or Ed25519Verifier()
        self._retry = retry_policy or RetryPolicy()
        self._clock = clock
        self._max_page_size = max_page_size

        self._lock = threading.RLock()
        self._entries: List[AuditEntry] = []
        self._index: Dict[str, int] = {}
        self._pending: Dict[str, _Backlog] = {}
        self._abandoned: Set[str] = set()
        self._in_flight: Set[str] = set()
        # Timed out but still running on the ledger executor.
        self._late: Set[str] = set()
        self._last_error: Optional[str] = None
        self._last_commit_at: Optional[datetime] = None

        self._pool = ThreadPoolExecutor(max_workers=self._retry.max_in_flight,
                                        thread_name_prefix="medgate-ledger")
        self._slots = threading.BoundedSemaphore(self._retry.max_in_flight)

        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    @property
    def public_key_b64(self) -> str:
        return self._signer.public_key_b64

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def record(self, entry_input: AuditEntryInput) -> AuditEntry:
        """
        Append, sign and submit one entry.

        Returns the entry as it stands after the inline ledger attempt:
        committed (``is_immutable=True``) or buffered for retry.
        """
        event_type = parse_enum(AuditEventType, entry_input.event_type, "event_type")
        details = _jsonable(entry_input.details or {})

        with self._lock:
            previous = self._entries[-1].entry_hash if self._entries else None
            draft = AuditEntry(
                entry_id=generate_id("audit"),
                sequence=len(self._entries) + 1,
                event_type=event_type,
                user_id=entry_input.user_id or "unknown",
                timestamp=self._clock(),
                details=details,
                previous_hash=previous,
                payload_hash="",
                entry_hash="",
                signature={},
                resource_id=entry_input.resource_id,
            )
            body = draft.signed_body()
            p_hash = payload_hash(body)
            entry = replace(
                draft,
                payload_hash=p_hash,
                entry_hash=chain_entry_hash(previous, p_hash),
                signature=self._signer.sign(canonicalize(body)),
            )
            self._index[entry.entry_id] = len(self._entries)
            self._entries.append(entry)
            self._in_flight.add(entry.entry_id)

        try:
            self._attempt(entry)
        finally:
            with self._lock:
                self._in_flight.discard(entry.entry_id)

        logger.debug("Recorded audit entry %s (%s)", entry.entry_id, event_type.value)
        return self.get(entry.entry_id)

    def record_event(self, event_type: AuditEventType, user_id: str,
                     details: Optional[Dict[str, Any]] = None,
                     resource_id: Optional[str] = None) -> AuditEntry:
        return self.record(AuditEntryInput(event_type, user_id, details or {}, resource_id))

    def _ledger_record(self, entry: AuditEntry) -> Dict[str, Any]:
        d = entry.signed_body()
        d.update({
            "payload_hash": entry.payload_hash,
            "entry_hash": entry.entry_hash,
            "signature": dict(entry.signature),
        })
        return d

    def _attempt(self, entry: AuditEntry) -> bool:
        """One ledger attempt. Returns True when the entry committed."""
        try:
            receipt = self._submit(entry)
        except _BacklogFull as e:
            self._note_failure(entry.entry_id, str(e), attempted=False)
            return False
        except LedgerUnavailable as e:
            self._note_failure(entry.entry_id, str(e))
            return False
        self._mark_committed(entry.entry_id, receipt)
        return True

    def _submit(self, entry: AuditEntry) -> LedgerReceipt:
        if not self._slots.acquire(blocking=False):
            raise _BacklogFull(f"{self._retry.max_in_flight} ledger submissions already in flight")
        try:
            future = self._pool.submit(self._ledger_call, self._ledger_record(entry))
        except RuntimeError as e:
            self._slots.release()
            raise LedgerUnavailable(f"ledger executor unavailable: {e}") from e
        try:
            return future.result(timeout=self._retry.submit_timeout)
        except FutureTimeout:
            with self._lock:
                self._late.add(entry.entry_id)
            future.add_done_callback(partial(self._late_result, entry.entry_id))
            raise LedgerUnavailable(f"ledger submit timed out after {self._retry.submit_timeout}s")
        except LedgerUnavailable:
            raise
        except Exception as e:
            raise LedgerUnavailable(f"ledger submit raised {type(e).__name__}: {e}") from e

    def _ledger_call(self, record: Dict[str, Any]) -> LedgerReceipt:
        try:
            return self._ledger.submit(record)
        finally:
            self._slots.release()

    def _late_result(self, entry_id: str, future: Future) -> None:
        with self._lock:
            self._late.discard(entry_id)
        if future.cancelled() or future.exception() is not None:
            return
        self._mark_committed(entry_id, future.result())
        logger.info("Audit entry %s committed after its submit timed out", entry_id)

    def _mark_committed(self, entry_id: str, receipt: LedgerReceipt) -> None:
        with self._lock:
            pos = self._index[entry_id]
            if self._entries[pos].is_immutable:
                return
            self._entries[pos] = replace(
                self._entries[pos],
                ledger_transaction_id=receipt.transaction_id,
                block_number=receipt.block_number,
                is_immutable=True,
            )
            self._pending.pop(entry_id, None)
            self._abandoned.discard(entry_id)
            self._last_error = None
            self._last_commit_at = self._clock()

    def _note_failure(self, entry_id: str, error: str, attempted: bool = True) -> None:
        with self._lock:
            if self._entries[self._index[entry_id]].is_immutable:
                return
            self._last_error = error
            if entry_id in self._abandoned:
                return
            backlog = self._pending.pop(entry_id, None) or _Backlog(0, time.monotonic())
            if attempted:
                backlog.attempts += 1
                backlog.next_attempt = time.monotonic() + self._retry.backoff(backlog.attempts)
            attempts = backlog.attempts
            if attempted and self._retry.exhausted(attempts):
                self._abandoned.add(entry_id)
            else:
                self._pending[entry_id] = backlog
        security_log.ledger_degraded(entry_id, error, attempts)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def flush(self, include_abandoned: bool = False) -> int:
        """
        Make one ledger attempt for every buffered entry now, ignoring backoff.
        Returns how many committed.

        Entries already being submitted by another caller are skipped.
        """
        return self._sweep(due_only=False, include_abandoned=include_abandoned)

    def _sweep(self, due_only: bool, include_abandoned: bool) -> int:
        now = time.monotonic()
        with self._lock:
            busy = self._in_flight | self._late
            ids = [
                i for i, backlog in self._pending.items()
                if i not in busy and (not due_only or backlog.next_attempt <= now)
            ]
            if include_abandoned:
                ids.extend(i for i in self._abandoned if i not in busy)
            ids.sort(key=self._index.__getitem__)
            self._in_flight.update(ids)
            batch = [self._entries[self._index[i]] for i in ids]

        committed = 0
        try:
            for entry in batch:
                if self._attempt(entry):
                    committed += 1
        finally:
            with self._lock:
                self._in_flight.difference_update(ids)
        if committed:
            logger.info("Committed %d buffered audit entries to ledger", committed)
        return committed

    def start(self) -> None:
        """Start the background retry worker."""
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stop.clear()
            self._worker = threading.Thread(target=self._run, name="medgate-audit-retry", daemon=True)
            self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        self._worker = None

    def close(self) -> None:
        """Stop the worker and release the ledger executor. Later submits buffer."""
        self.stop()
        self._pool.shutdown(wait=False)

    def _run(self) -> None:
        last_abandoned_sweep = time.monotonic()
        while not self._stop.wait(self._retry.interval):
            now = time.monotonic()
            include_abandoned = now - last_abandoned_sweep >= self._retry.abandoned_interval
            if include_abandoned:
                last_abandoned_sweep = now
            try:
                self._sweep(due_only=True, include_abandoned=include_abandoned)
            except Exception:
                logger.exception("Audit retry sweep failed")
    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> AuditEntry:
        with self._lock:
            pos = self._index.get(entry_id)
            if pos is None:
                raise NotFound(f"audit entry {entry_id} not found")
            return self._entries[pos]

    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def query(self, filters: Optional[AuditFilters] = None) -> AuditQueryResult:
        """Filtered, paginated view, newest first."""
        filters = filters or AuditFilters()
        filters.validate()
        limit = min(filters.limit, self._max_page_size)
        snapshot = self.entries()
        matched = [e for e in reversed(snapshot) if filters.matches(e)]
        start = (filters.page - 1) * limit
        return AuditQueryResult(
            entries=matched[start:start + limit],
            total_count=len(snapshot),
            filtered_count=len(matched),
            page=filters.page,
            limit=limit,
        )

    def export(
        self,
        export_format: Any,
        filters: Optional[AuditFilters],
        requester_id: str,
        requester_signature: str
    ) -> ExportResult:
        """
        Export the filtered trail for an auditor or administrator.

        Output is deterministic for a given entry set: JSON is canonical JSON
        in sequence order, CSV has fixed columns. Entries the trail writes
        about itself (queries, exports) are included only when the filter
        asks for that event type.
        """
        filters = filters or AuditFilters()
        try:
            fmt = parse_enum(ExportFormat, export_format, "format")
            filters.validate()
            self._authorize_export(fmt, filters, requester_id, requester_signature)
        except MedGateError as e:
            self.record_event(AuditEventType.DATA_EXPORT, requester_id, {
                "outcome": "denied",
                "error": e.code.value,
                "filters": filters.criteria(),
            })
            raise

        selected = self._select_for_export(filters)
        if fmt == ExportFormat.JSON:
            data = canonicalize_str([e.to_dict() for e in selected])
        else:
            data = _render_csv(selected)

        result = ExportResult(
            export_id=generate_id("export"),
            format=fmt,
            record_count=len(selected),
            data=data,
            data_hash=sha256_hash(data),
            exported_at=self._clock(),
        )
        self.record_event(AuditEventType.DATA_EXPORT, requester_id, {
            "outcome": "success",
            "export_id": result.export_id,
            "format": fmt.value,
            "record_count": result.record_count,
            "data_hash": result.data_hash,
            "filters": filters.criteria(),
        })
        return result

    def _authorize_export(self, fmt: ExportFormat, filters: AuditFilters,
                          requester_id: str, requester_signature: str) -> None:
        self._authorize_auditor(requester_id, export_message(fmt.value, filters.criteria()),
                                requester_signature, "Audit export requires an auditor or system administrator")

    def _authorize_auditor(self, requester_id: str, message: bytes, requester_signature: str,
                           refusal: str) -> None:
        requester = self.identities.get(requester_id) if self.identities is not None else None
        if requester is None or not requester.is_approved() or requester.role not in EXPORT_ROLES:
            raise Forbidden(refusal)
        if not self._verifier.verify(requester.public_keys.signing_key, message, requester_signature or ""):
            raise AuthenticationFailed()

    def _select_for_export(self, filters: AuditFilters) -> List[AuditEntry]:
        include_meta = filters.event_type in META_EVENT_TYPES
        return [
            e for e in self.entries()
            if filters.matches(e) and (include_meta or e.event_type not in META_EVENT_TYPES)
        ]

    def verify_integrity(self) -> IntegrityReport:
        """Recompute every hash, chain link and signature."""
        return verify_entry_dicts([e.to_dict() for e in self.entries()],
                                  self._signer.public_key_b64, self._verifier)

    def statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        by_user: Dict[str, int] = {}
        total = 0
        for e in self.entries():
            if start and e.timestamp < start:
                continue
            if end and e.timestamp > end:
                continue
            total += 1
            by_type[e.event_type.value] = by_type.get(e.event_type.value, 0) + 1
            by_user[e.user_id] = by_user.get(e.user_id, 0) + 1
        return {
            "total": total,
            "by_event_type": by_type,
            "by_user": by_user,
            "start": to_rfc3339(start) if start else None,
            "end": to_rfc3339(end) if end else None,
        }


    def compliance_report(
        self,
        report_type: Any,
        start: Union[str, datetime],
        end: Union[str, datetime],
        requester_id: str,
        requester_signature: str
    ) -> ComplianceReport:
        """
        Build a signed compliance report over ``[start, end]``.

        The requester must be an approved auditor or system administrator and
        sign ``compliance_report_message`` for the same type and window. The
        report (or its refusal) is itself recorded as a COMPLIANCE_REPORT
        entry, which later reports do not count.
        """
        window = {"start_date": _date_text(start), "end_date": _date_text(end)}
        try:
            rtype = parse_enum(ComplianceReportType, report_type, "report_type")
            start = _require_date(start, "start_date")
            end = _require_date(end, "end_date")
            if start > end:
                raise ValidationError("start_date", "must not be after end_date")
            self._authorize_auditor(
                requester_id,
                compliance_report_message(rtype.value, start, end),
                requester_signature,
                "Compliance reports require an auditor or system administrator",
            )
        except MedGateError as e:
            details = {
                "outcome": "denied",
                "error": e.code.value,
                "report_type": str(getattr(report_type, "value", report_type)),
            }
            details.update(window)
            self.record_event(AuditEventType.COMPLIANCE_REPORT, requester_id, details)
            raise

        report = ComplianceReport(
            report_id=generate_id("report"),
            report_type=rtype,
            start_date=start,
            end_date=end,
            generated_at=self._clock(),
            generated_by=requester_id,
            sections=self._report_sections(rtype, start, end),
        )
        encoded = canonicalize(report.signed_body())
        report = replace(report, report_hash=sha256_hash(encoded), signature=self._signer.sign(encoded))
        self.record_event(AuditEventType.COMPLIANCE_REPORT, requester_id, {
            "outcome": "success",
            "report_type": rtype.value,
            "start_date": to_rfc3339(start),
            "end_date": to_rfc3339(end),
            "report_hash": report.report_hash,
        }, report.report_id)
        security_log.security_event("COMPLIANCE_REPORT", severity="low",
                                    report_id=report.report_id, report_type=rtype.value,
                                    requester_id=requester_id)
        return report

    def _report_sections(self, rtype: ComplianceReportType, start: datetime, end: datetime) -> Dict[str, Any]:
        window = [
            e for e in self.entries()
            if start <= e.timestamp <= end and e.event_type not in META_EVENT_TYPES
        ]

        def of(*types: AuditEventType) -> List[AuditEntry]:
            return [e for e in window if e.event_type in types]

        stats = self.statistics(start, end)
        sections: Dict[str, Any] = {"summary": stats}
        for name in REPORT_SECTIONS[rtype]:
            if name == "access_control":
                overrides = [
                    e for e in of(AuditEventType.RECORD_ACCESSED, AuditEventType.RECORD_CREATED)
                    if ADMIN_OVERRIDE_REASON in (e.details.get("decision_reason"), e.details.get("access_reason"))
                ]
                sections[name] = {
                    "record_reads": _tally(of(AuditEventType.RECORD_ACCESSED), _outcome),
                    "record_writes": _tally(of(AuditEventType.RECORD_CREATED), _outcome),
                    "denials_by_reason": _tally(of(AuditEventType.ACCESS_DENIED),
                                                lambda e: e.details.get("reason", "unknown")),
                    "administrative_overrides": len(overrides),
                }
            elif name == "consent_management":
                sections[name] = {
                    "grants": _tally(of(AuditEventType.CONSENT_GRANTED), _outcome),
                    "revocations": _tally(of(AuditEventType.CONSENT_REVOKED), _outcome),
                }
            elif name == "data_integrity":
                integrity = self.verify_integrity()
                health = self.health()
                sections[name] = {
                    "chain": integrity.to_dict(),
                    "uncommitted_entries": health["uncommitted_entries"],
                    "abandoned_commits": health["abandoned_commits"],
                }
            elif name == "user_activity":
                sections[name] = {
                    "active_users": len(stats["by_user"]),
                    "events_by_user": stats["by_user"],
                    "logins": _tally(of(AuditEventType.LOGIN_ATTEMPT), _outcome),
                }
            elif name == "system_security":
                sections[name] = {
                    "failed_logins_by_user": _tally(
                        [e for e in of(AuditEventType.LOGIN_ATTEMPT) if _outcome(e) == "failure"],
                        lambda e: e.user_id),
                    "access_denials": len(of(AuditEventType.ACCESS_DENIED)),
                    "identity_decisions": _tally(of(AuditEventType.USER_APPROVAL, AuditEventType.USER_REGISTRATION),
                                                 _outcome),
                    "exports": _tally([e for e in self.entries()
                                       if e.event_type == AuditEventType.DATA_EXPORT
                                       and start <= e.timestamp <= end], _outcome),
                }
        return sections

    def health(self) -> Dict[str, Any]:
        with self._lock:
            uncommitted = sum(1 for e in self._entries if not e.is_immutable)
            pending = len(self._pending)
            abandoned = len(self._abandoned)
            late = len(self._late)
            last_error = self._last_error
            last_commit = self._last_commit_at
            total = len(self._entries)
        ledger_available = last_error is None
        worker = self._worker
        return {
            "status": "ok" if ledger_available and uncommitted == 0 else "degraded",
            "ledger_available": ledger_available,
            "total_entries": total,
            "uncommitted_entries": uncommitted,
            "pending_commits": pending,
            "abandoned_commits": abandoned,
            "stalled_submits": late,
            "last_error": last_error,
            "last_commit_at": to_rfc3339(last_commit) if last_commit else None,
            "retry_worker_running": worker is not None and worker.is_alive(),
        }


def _date_text(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return to_rfc3339(value) if value.tzinfo is not None else value.isoformat()
    return None if value is None else str(value)


def _require_date(value: Any, field_name: str) -> datetime:
    parsed = _parse_date(value, field_name)
    if parsed is None:
        raise ValidationError(field_name, "required")
    return parsed


def _render_csv(entries: List[AuditEntry]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for e in entries:
        writer.writerow([
            e.entry_id,
            e.sequence,
            to_rfc3339(e.timestamp),
            e.event_type.value,
            e.user_id,
            e.resource_id or "",
            canonicalize_str(e.details),
            e.previous_hash or "",
            e.payload_hash,
            e.entry_hash,
            e.signature.get("kid", ""),
            e.signature.get("sig_b64", ""),
            e.ledger_transaction_id or "",
            "" if e.block_number is None else e.block_number,
            "true" if e.is_immutable else "false",
        ])
    return buf.getvalue()
