import csv
import io
import json
import time
import unittest
from datetime import timedelta

from medgate.audit import (
    EXPORT_COLUMNS,
    AuditEntryInput,
    AuditFilters,
    ComplianceReportType,
    RetryPolicy,
    verify_entry_dicts,
    verify_report_dict,
)
from medgate.canonicalization import canonicalize
from medgate.errors import AuthenticationFailed, Forbidden, NotFound, ValidationError
from medgate.hashing import chain_entry_hash, sha256_hash
from medgate.ledger import InMemoryLedger
from medgate.models import AuditEventType
from medgate.signing import verify_audit_signature

from helpers import T0, Env, permissions


class TestAuditChain(unittest.TestCase):

    def setUp(self):
        self.env = Env()
        self.audit = self.env.system.audit

    def test_entries_form_a_signed_chain(self):
        self.env.grant("p1", "d1", permissions(("lab_result", "read")))
        entries = self.audit.entries()
        self.assertIsNone(entries[0].previous_hash)
        for prev, entry in zip(entries, entries[1:]):
            self.assertEqual(entry.previous_hash, prev.entry_hash)
            self.assertEqual(entry.sequence, prev.sequence + 1)
            self.assertEqual(entry.entry_hash, chain_entry_hash(prev.entry_hash, entry.payload_hash))
        last = entries[-1]
        self.assertTrue(verify_audit_signature(last.signature, canonicalize(last.signed_body()),
                                               self.audit.public_key_b64))
        self.assertTrue(self.audit.verify_integrity().verified)

    def test_tampering_is_detected(self):
        self.audit.record_event(AuditEventType.SYSTEM_ACCESS, "admin", {"action": "maintenance"})
        dicts = [e.to_dict() for e in self.audit.entries()]
        dicts[-1]["details"] = {"action": "nothing to see"}
        report = verify_entry_dicts(dicts, self.audit.public_key_b64)
        self.assertFalse(report.verified)
        self.assertEqual(report.hash_mismatches, [dicts[-1]["entry_id"]])
        self.assertEqual(report.invalid_signatures, [dicts[-1]["entry_id"]])

        dicts = [e.to_dict() for e in self.audit.entries()]
        del dicts[1]
        report = verify_entry_dicts(dicts, self.audit.public_key_b64)
        self.assertEqual(report.broken_links, [dicts[1]["entry_id"]])

    def test_committed_entries_are_immutable(self):
        entry = self.audit.record(AuditEntryInput(AuditEventType.SYSTEM_ACCESS, "admin", {"k": "v"}, "res-1"))
        self.assertTrue(entry.is_immutable)
        self.assertIsNotNone(entry.ledger_transaction_id)
        self.assertEqual(entry.block_number, len(self.env.ledger.blocks()))
        self.assertEqual(len(self.env.ledger.blocks()), len(self.audit))
        self.assertEqual(self.env.ledger.query({"entry_id": entry.entry_id})[0]["entry_hash"], entry.entry_hash)

    def test_get_unknown_entry(self):
        with self.assertRaises(NotFound):
            self.audit.get("audit_missing")


class TestLedgerOutage(unittest.TestCase):

    def setUp(self):
        self.env = Env()
        self.audit = self.env.system.audit
        self.ledger = self.env.ledger

    def tearDown(self):
        self.audit.stop()

    def test_outage_does_not_fail_business_operation(self):
        self.ledger.available = False
        token = self.env.grant("p1", "d1", permissions(("lab_result", "read")))
        entry = self.env.events(AuditEventType.CONSENT_GRANTED)[-1]
        self.assertEqual(entry.resource_id, token.token_id)
        self.assertFalse(entry.is_immutable)
        self.assertIsNone(entry.ledger_transaction_id)

        health = self.audit.health()
        self.assertEqual(health["status"], "degraded")
        self.assertFalse(health["ledger_available"])
        self.assertEqual(health["pending_commits"], 1)

        self.ledger.available = True
        self.assertEqual(self.audit.flush(), 1)
        self.assertTrue(self.audit.get(entry.entry_id).is_immutable)
        self.assertEqual(self.audit.health()["status"], "ok")
        self.assertTrue(self.audit.verify_integrity().verified)

    def test_exhausted_retries_are_abandoned(self):
        self.ledger.available = False
        entry = self.audit.record_event(AuditEventType.SYSTEM_ACCESS, "admin", {})
        self.assertEqual(self.audit.flush(), 0)
        self.assertEqual(self.audit.health()["pending_commits"], 1)
        self.assertEqual(self.audit.flush(), 0)
        health = self.audit.health()
        self.assertEqual(health["abandoned_commits"], 1)
        self.assertEqual(health["pending_commits"], 0)

        self.ledger.available = True
        self.assertEqual(self.audit.flush(), 0)
        self.assertEqual(self.audit.flush(include_abandoned=True), 1)
        self.assertTrue(self.audit.get(entry.entry_id).is_immutable)
        self.assertEqual(self.audit.health()["abandoned_commits"], 0)

    def test_background_worker_commits(self):
        self.ledger.available = False
        entry = self.audit.record_event(AuditEventType.SYSTEM_ACCESS, "admin", {})
        self.ledger.available = True
        self.audit.start()
        self.assertTrue(self.audit.health()["retry_worker_running"])
        deadline = time.monotonic() + 5
        while not self.audit.get(entry.entry_id).is_immutable and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertTrue(self.audit.get(entry.entry_id).is_immutable)
        self.audit.stop()
        self.assertFalse(self.audit.health()["retry_worker_running"])


class CountingLedger(InMemoryLedger):

    def __init__(self):
        super().__init__()
        self.attempts = 0

    def submit(self, record):
        self.attempts += 1
        return super().submit(record)


class TestLedgerRetrySchedule(unittest.TestCase):

    def make(self, **policy):
        self.ledger = CountingLedger()
        self.env = Env(ledger=self.ledger, retry_policy=RetryPolicy(**policy))
        self.audit = self.env.system.audit
        self.addCleanup(self.audit.stop)

    def wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while not predicate() and time.monotonic() < deadline:
            time.sleep(0.01)
        return predicate()

    def test_flush_makes_one_attempt_per_entry(self):
        self.make(max_attempts=5, initial_backoff=0, max_backoff=0, interval=60)
        self.ledger.available = False
        for _ in range(3):
            self.audit.record_event(AuditEventType.SYSTEM_ACCESS, "admin", {})
        before = self.ledger.attempts
        self.assertEqual(self.audit.flush(), 0)
        self.assertEqual(self.ledger.attempts, before + 3)
        self.assertEqual(self.audit.health()["pending_commits"], 3)

    def test_worker_waits_for_backoff(self):
        self.make(max_attempts=5, initial_backoff=60, max_backoff=60, interval=0.01)
        self.ledger.available = False
        entry = self.audit.record_event(AuditEventType.SYSTEM_ACCESS, "admin", {})
        self.ledger.available = True
        before = self.ledger.attempts
        self.audit.start()
        time.sleep(0.2)
        self.assertEqual(self.ledger.attempts, before)
        self.assertFalse(self.audit.get(entry.entry_id).is_immutable)
        self.assertEqual(self.audit.flush(), 1)

    def test_worker_revisits_abandoned_entries(self):
        self.make(max_attempts=1, initial_backoff=0, max_backoff=0, interval=0.01, abandoned_interval=0.05)
        self.ledger.available = False
        entry = self.audit.record_event(AuditEventType.SYSTEM_ACCESS, "admin", {})
        self.assertEqual(self.audit.health()["abandoned_commits"], 1)
        self.ledger.available = True
        self.audit.start()
        self.assertTrue(self.wait_for(lambda: self.audit.get(entry.entry_id).is_immutable))
        self.assertEqual(self.audit.health()["abandoned_commits"], 0)

    def test_abandoned_entries_wait_for_their_cadence(self):
        self.make(max_attempts=1, initial_backoff=0, max_backoff=0, interval=0.01, abandoned_interval=3600)
        self.ledger.available = False
        entry = self.audit.record_event(AuditEventType.SYSTEM_ACCESS, "admin", {})
        self.ledger.available = True
        self.audit.start()
        time.sleep(0.2)
        self.assertFalse(self.audit.get(entry.entry_id).is_immutable)
        self.assertEqual(self.audit.health()["abandoned_commits"], 1)


class TestComplianceReport(unittest.TestCase):

    START = "2026-01-01T00:00:00Z"
    END = "2026-01-02T00:00:00Z"

    def setUp(self):
        self.env = Env()
        self.audit = self.env.system.audit
        lab_write = permissions(("lab_result", "write"))
        self.env.grant("p1", "lab1", lab_write)
        self.env.upload("lab1", "p1", b"\x01ciphertext")
        with self.assertRaises(Forbidden):
            self.env.upload("lab1", "p2", b"\x02ciphertext")

    def report(self, user="auditor", report_type="HIPAA_COMPLIANCE", start=START, end=END, signature=None):
        signature = signature or self.env.compliance_signature(user, report_type, start, end)
        return self.audit.compliance_report(report_type, start, end, user, signature)

    def test_report_is_signed_and_audited(self):
        report = self.report()
        data = report.to_dict()
        self.assertTrue(verify_report_dict(data, self.audit.public_key_b64))
        data["sections"]["summary"]["total"] += 1
        self.assertFalse(verify_report_dict(data, self.audit.public_key_b64))

        entry = self.env.events(AuditEventType.COMPLIANCE_REPORT)[-1]
        self.assertEqual(entry.resource_id, report.report_id)
        self.assertEqual(entry.details["report_hash"], report.report_hash)
        self.assertEqual(entry.user_id, "auditor")

    def test_sections(self):
        sections = self.report().sections
        self.assertEqual(set(sections), {"summary", "access_control", "consent_management",
                                         "data_integrity", "user_activity", "system_security"})
        self.assertEqual(sections["consent_management"]["grants"], {"success": 1})
        self.assertEqual(sections["access_control"]["record_writes"], {"success": 1})
        self.assertEqual(sections["access_control"]["denials_by_reason"], {"no-active-consent": 1})
        self.assertTrue(sections["data_integrity"]["chain"]["verified"])

        access_only = self.report(report_type="ACCESS_CONTROL").sections
        self.assertEqual(set(access_only), {"summary", "access_control"})

    def test_window_excludes_later_activity(self):
        sections = self.report(report_type=ComplianceReportType.CONSENT_MANAGEMENT.value,
                               start="2025-12-01T00:00:00Z", end="2025-12-31T00:00:00Z").sections
        self.assertEqual(sections["consent_management"], {"grants": {}, "revocations": {}})

    def test_requires_auditor_or_admin(self):
        with self.assertRaises(Forbidden):
            self.report(user="d1")
        self.report(user="admin")
        outcomes = [e.details["outcome"] for e in self.env.events(AuditEventType.COMPLIANCE_REPORT)]
        self.assertEqual(outcomes, ["denied", "success"])

    def test_signature_must_cover_type_and_window(self):
        sig = self.env.compliance_signature("auditor", "HIPAA_COMPLIANCE", self.START, self.END)
        with self.assertRaises(AuthenticationFailed):
            self.report(report_type="USER_ACTIVITY", signature=sig)
        with self.assertRaises(ValidationError):
            self.report(start=self.END, end=self.START)
        with self.assertRaises(ValidationError):
            self.report(report_type="VIBES")
        self.assertEqual(len(self.env.events(AuditEventType.COMPLIANCE_REPORT)), 3)


class TestAuditQuery(unittest.TestCase):

    def setUp(self):
        self.env = Env(max_page_size=5)
        self.audit = self.env.system.audit
        self.baseline = len(self.audit)
        for i in range(12):
            self.env.clock.advance(minutes=1)
            self.audit.record_event(AuditEventType.RECORD_ACCESSED, "d1" if i % 2 else "d2", {"i": i}, f"res-{i}")

    def test_newest_first_with_paging(self):
        result = self.audit.query(AuditFilters(event_type=AuditEventType.RECORD_ACCESSED, limit=4, page=1))
        self.assertEqual([e.details["i"] for e in result.entries], [11, 10, 9, 8])
        self.assertEqual(result.filtered_count, 12)
        self.assertEqual(result.total_count, self.baseline + 12)
        page3 = self.audit.query(AuditFilters(event_type=AuditEventType.RECORD_ACCESSED, limit=4, page=3))
        self.assertEqual([e.details["i"] for e in page3.entries], [3, 2, 1, 0])

    def test_limit_is_clamped(self):
        result = self.audit.query(AuditFilters(limit=500))
        self.assertEqual(result.limit, 5)
        self.assertEqual(len(result.entries), 5)

    def test_filters(self):
        by_user = self.audit.query(AuditFilters.from_dict({"user_id": "d1", "limit": "100"}))
        self.assertEqual(by_user.filtered_count, 6)
        by_resource = self.audit.query(AuditFilters.from_dict({"resource_id": "res-3"}))
        self.assertEqual([e.details["i"] for e in by_resource.entries], [3])
        window = self.audit.query(AuditFilters.from_dict({
            "start_date": "2026-01-01T09:03:00Z",
            "end_date": "2026-01-01T09:05:00Z",
        }))
        self.assertEqual(sorted(e.details["i"] for e in window.entries), [2, 3, 4])

    def test_invalid_filters(self):
        with self.assertRaises(ValidationError):
            AuditFilters.from_dict({"page": "0"})
        with self.assertRaises(ValidationError):
            AuditFilters.from_dict({"event_type": "COFFEE_BREAK"})
        with self.assertRaises(ValidationError):
            AuditFilters.from_dict({"start_date": "2026-02-01T00:00:00Z", "end_date": "2026-01-01T00:00:00Z"})

    def test_statistics(self):
        stats = self.audit.statistics(start=T0 + timedelta(minutes=1))
        self.assertEqual(stats["total"], 12)
        self.assertEqual(stats["by_event_type"], {"RECORD_ACCESSED": 12})
        self.assertEqual(stats["by_user"], {"d1": 6, "d2": 6})


class TestAuditExport(unittest.TestCase):

    def setUp(self):
        self.env = Env()
        self.audit = self.env.system.audit
        self.env.grant("p1", "d1", permissions(("lab_result", "read")))

    def export(self, user="auditor", fmt="json", criteria=None):
        criteria = criteria or {}
        filters = AuditFilters.from_dict(criteria)
        sig = self.env.export_signature(user, fmt, filters.criteria())
        return self.audit.export(fmt, filters, user, sig)

    def test_json_export_is_deterministic_and_verifiable(self):
        first = self.export()
        second = self.export()
        self.assertEqual(first.data, second.data)
        self.assertEqual(first.data_hash, sha256_hash(first.data))
        entries = json.loads(first.data)
        self.assertEqual(first.record_count, len(entries))
        self.assertEqual([e["sequence"] for e in entries], sorted(e["sequence"] for e in entries))
        self.assertNotIn("DATA_EXPORT", {e["event_type"] for e in entries})
        self.assertTrue(verify_entry_dicts(entries, self.audit.public_key_b64).verified)

        exports = self.env.events(AuditEventType.DATA_EXPORT)
        self.assertEqual(len(exports), 2)
        self.assertEqual(exports[-1].details["data_hash"], second.data_hash)

    def test_meta_events_exported_when_asked_for(self):
        self.export()
        result = self.export(criteria={"event_type": "DATA_EXPORT"})
        self.assertEqual(result.record_count, 1)

    def test_csv_export(self):
        result = self.export(fmt="csv", criteria={"event_type": "CONSENT_GRANTED"})
        rows = list(csv.reader(io.StringIO(result.data)))
        self.assertEqual(tuple(rows[0]), EXPORT_COLUMNS)
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[1][3], "CONSENT_GRANTED")

    def test_export_requires_auditor_or_admin(self):
        with self.assertRaises(Forbidden):
            self.export(user="d1")
        self.export(user="admin")
        outcomes = [e.details["outcome"] for e in self.env.events(AuditEventType.DATA_EXPORT)]
        self.assertEqual(outcomes, ["denied", "success"])

    def test_export_signature_must_match_filters(self):
        filters = AuditFilters.from_dict({"user_id": "p1"})
        sig = self.env.export_signature("auditor", "json", {})
        with self.assertRaises(AuthenticationFailed):
            self.audit.export("json", filters, "auditor", sig)
        with self.assertRaises(ValidationError):
            self.audit.export("xml", filters, "auditor", sig)


if __name__ == "__main__":
    unittest.main()
