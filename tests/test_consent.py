import threading
import unittest
from dataclasses import replace
from datetime import timedelta

from medgate.consent import (
    REASON_EXPIRED,
    REASON_NONE,
    REASON_REVOKED,
    ConsentRevocationRequest,
    RevocationOutcome,
)
from medgate.errors import Forbidden, NotFound, ValidationError
from medgate.messages import revocation_message
from medgate.models import AccessLevel, AuditEventType, ResourceType
from medgate.util import to_rfc3339

from helpers import T0, Env, permissions


LAB_READ = permissions(("lab_result", "read"))


class TestGrant(unittest.TestCase):

    def setUp(self):
        self.env = Env()
        self.consents = self.env.system.consents

    def test_grant_creates_active_token(self):
        token = self.env.grant("p1", "d1", permissions(("lab_result", "read"), ("diagnosis", "write")))
        self.assertTrue(token.token_id.startswith("consent_"))
        self.assertTrue(token.is_active)
        self.assertIsNone(token.expiration_time)
        self.assertEqual(token.created_at, T0)
        self.assertEqual(len(token.permissions), 2)
        self.assertEqual(self.consents.get(token.token_id), token)

        entry = self.env.events(AuditEventType.CONSENT_GRANTED)[-1]
        self.assertEqual(entry.user_id, "p1")
        self.assertEqual(entry.resource_id, token.token_id)
        self.assertEqual(entry.details["outcome"], "success")
        self.assertEqual(entry.details["provider_id"], "d1")

    def test_grant_with_expiration(self):
        expires = to_rfc3339(T0 + timedelta(days=30))
        token = self.env.grant("p1", "d1", LAB_READ, expiration_time=expires)
        self.assertEqual(token.expiration_time, T0 + timedelta(days=30))

    def test_signature_by_someone_else_is_forbidden(self):
        request = self.env.grant_request("p1", "d1", LAB_READ, signer="p2")
        with self.assertRaises(Forbidden):
            self.consents.grant(request)
        self.assertEqual(self.consents.list_for_patient("p1"), [])
        entry = self.env.events(AuditEventType.CONSENT_GRANTED)[-1]
        self.assertEqual(entry.details["outcome"], "rejected")
        self.assertEqual(entry.details["error"], "FORBIDDEN")

    def test_tampered_permissions_do_not_verify(self):
        request = self.env.grant_request("p1", "d1", LAB_READ)
        widened = replace(request, permissions=tuple(permissions(("lab_result", "read"), ("imaging", "read"))))
        with self.assertRaises(Forbidden):
            self.consents.grant(widened)

    def test_validation_failures(self):
        with self.assertRaises(ValidationError):
            self.env.grant("p1", "p1", LAB_READ)
        with self.assertRaises(ValidationError):
            self.env.grant("p1", "d1", [])
        with self.assertRaises(ValidationError):
            self.env.grant("p1", "d1", permissions(("audit_log", "read")))
        with self.assertRaises(ValidationError):
            self.env.grant("p1", "d1", permissions(("lab_result", "delete")))
        with self.assertRaises(ValidationError):
            self.env.grant("p1", "d1", LAB_READ, expiration_time=to_rfc3339(T0 - timedelta(seconds=1)))
        request = replace(self.env.grant_request("p1", "d1", LAB_READ), expiration_time="next tuesday")
        with self.assertRaises(ValidationError):
            self.consents.grant(request)

    def test_replayed_grant_is_rejected_after_revocation(self):
        body = self.env.grant_body("p1", "d1", LAB_READ)
        token = self.consents.grant(body)
        self.env.revoke("p1", token.token_id)
        with self.assertRaises(Forbidden):
            self.consents.grant(body)
        self.assertEqual([t.token_id for t in self.consents.list_for_patient("p1")], [token.token_id])
        self.assertIsNone(self.consents.find_active("p1", "d1", ResourceType.LAB_RESULT, AccessLevel.READ))
        entry = self.env.events(AuditEventType.CONSENT_GRANTED)[-1]
        self.assertEqual(entry.details["outcome"], "rejected")
        self.assertEqual(entry.details["error"], "FORBIDDEN")

    def test_fresh_request_nonce_grants_again(self):
        first = self.env.grant("p1", "d1", LAB_READ)
        self.env.revoke("p1", first.token_id)
        second = self.env.grant("p1", "d1", LAB_READ)
        self.assertNotEqual(first.token_id, second.token_id)
        self.assertTrue(second.is_active)

    def test_request_freshness(self):
        stale = to_rfc3339(T0 - timedelta(minutes=10))
        early = to_rfc3339(T0 + timedelta(minutes=10))
        for kwargs in ({"issued_at": stale}, {"issued_at": early}, {"request_nonce": "short"}):
            with self.assertRaises(ValidationError):
                self.consents.grant(self.env.grant_body("p1", "d1", LAB_READ, **kwargs))
        body = self.env.grant_body("p1", "d1", LAB_READ)
        del body["issued_at"]
        with self.assertRaises(ValidationError):
            self.consents.grant(body)

        body = self.env.grant_body("p1", "d1", LAB_READ)
        self.env.clock.advance(minutes=6)
        with self.assertRaises(ValidationError):
            self.consents.grant(body)

    def test_requester_must_be_the_patient(self):
        before = len(self.env.events(AuditEventType.CONSENT_GRANTED))
        with self.assertRaises(Forbidden):
            self.consents.grant(self.env.grant_body("p1", "d1", LAB_READ), requester_id="p2")
        entries = self.env.events(AuditEventType.CONSENT_GRANTED)
        self.assertEqual(len(entries), before + 1)
        self.assertEqual(entries[-1].user_id, "p2")
        self.assertEqual(entries[-1].details["patient_id"], "p1")
        self.assertEqual(self.consents.list_for_patient("p1"), [])

    def test_unparseable_body_is_audited(self):
        with self.assertRaises(ValidationError):
            self.consents.grant({"patient_id": "p1", "provider_id": "d1", "permissions": "all"}, requester_id="p1")
        entry = self.env.events(AuditEventType.CONSENT_GRANTED)[-1]
        self.assertEqual(entry.user_id, "p1")
        self.assertEqual(entry.details["error"], "VALIDATION_ERROR")

    def test_unknown_parties(self):
        with self.assertRaises(NotFound):
            self.env.grant("p1", "nobody", LAB_READ)

    def test_only_patients_grant(self):
        with self.assertRaises(Forbidden):
            self.env.grant("d1", "d2", LAB_READ)


class TestRevoke(unittest.TestCase):

    def setUp(self):
        self.env = Env()
        self.consents = self.env.system.consents
        self.token = self.env.grant("p1", "d1", LAB_READ)

    def test_revoke_then_already_revoked(self):
        self.env.clock.advance(hours=1)
        first = self.env.revoke("p1", self.token.token_id)
        self.assertEqual(first.outcome, RevocationOutcome.REVOKED)
        self.assertFalse(first.token.is_active)
        self.assertEqual(first.token.revoked_at, T0 + timedelta(hours=1))

        self.env.clock.advance(hours=1)
        second = self.env.revoke("p1", self.token.token_id)
        self.assertEqual(second.outcome, RevocationOutcome.ALREADY_REVOKED)
        self.assertEqual(second.token.revoked_at, T0 + timedelta(hours=1))

        outcomes = [e.details["outcome"] for e in self.env.events(AuditEventType.CONSENT_REVOKED)]
        self.assertEqual(outcomes, ["revoked", "already_revoked"])

    def test_revocation_is_visible_immediately(self):
        self.assertIsNotNone(self.consents.find_active("p1", "d1", "lab_result", "read"))
        self.env.revoke("p1", self.token.token_id)
        self.assertIsNone(self.consents.find_active("p1", "d1", "lab_result", "read"))

    def test_only_the_patient_may_revoke(self):
        with self.assertRaises(Forbidden):
            self.env.revoke("p1", self.token.token_id, requester_id="d1")
        request = ConsentRevocationRequest(self.token.token_id,
                                           self.env["p2"].sign(revocation_message(self.token.token_id)))
        with self.assertRaises(Forbidden):
            self.consents.revoke(request)
        self.assertTrue(self.consents.get(self.token.token_id).is_active)

    def test_unknown_token(self):
        with self.assertRaises(NotFound):
            self.env.revoke("p1", "consent_missing")

    def test_concurrent_revocations_resolve_once(self):
        outcomes = []
        barrier = threading.Barrier(2)

        def worker():
            barrier.wait()
            outcomes.append(self.env.revoke("p1", self.token.token_id).outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(sorted(o.value for o in outcomes), ["already_revoked", "revoked"])

    def test_expired_token_can_still_be_revoked(self):
        token = self.env.grant("p1", "d2", LAB_READ, expiration_time=to_rfc3339(T0 + timedelta(hours=1)))
        self.env.clock.advance(hours=2)
        self.assertTrue(self.env.revoke("p1", token.token_id).revoked)


class TestLookup(unittest.TestCase):

    def setUp(self):
        self.env = Env()
        self.consents = self.env.system.consents

    def test_exact_match_write_does_not_imply_read(self):
        self.env.grant("p1", "d1", permissions(("lab_result", "write")))
        self.assertIsNone(self.consents.find_active("p1", "d1", ResourceType.LAB_RESULT, AccessLevel.READ))
        self.assertIsNotNone(self.consents.find_active("p1", "d1", ResourceType.LAB_RESULT, AccessLevel.WRITE))
        self.assertIsNone(self.consents.find_active("p1", "d1", ResourceType.IMAGING, AccessLevel.WRITE))

    def test_denial_reasons(self):
        self.assertEqual(self.consents.lookup("p1", "d1", "lab_result", "read").reason, REASON_NONE)

        expiring = self.env.grant("p1", "d1", LAB_READ, expiration_time=to_rfc3339(T0 + timedelta(minutes=10)))
        self.env.clock.advance(minutes=10)
        self.assertEqual(self.consents.lookup("p1", "d1", "lab_result", "read").reason, REASON_EXPIRED)

        token = self.env.grant("p1", "d2", LAB_READ)
        self.env.revoke("p1", token.token_id)
        self.assertEqual(self.consents.lookup("p1", "d2", "lab_result", "read").reason, REASON_REVOKED)
        self.assertTrue(self.consents.get(expiring.token_id).is_active)

    def test_newest_effective_token_wins(self):
        older = self.env.grant("p1", "d1", LAB_READ)
        self.env.clock.advance(minutes=1)
        newer = self.env.grant("p1", "d1", LAB_READ)
        self.assertEqual(self.consents.find_active("p1", "d1", "lab_result", "read").token_id, newer.token_id)
        self.env.revoke("p1", newer.token_id)
        self.assertEqual(self.consents.find_active("p1", "d1", "lab_result", "read").token_id, older.token_id)

    def test_listing_and_status_summary(self):
        a = self.env.grant("p1", "d1", permissions(("lab_result", "read"), ("lab_result", "write")))
        b = self.env.grant("p1", "d1", permissions(("imaging", "read")),
                           expiration_time=to_rfc3339(T0 + timedelta(hours=1)))
        c = self.env.grant("p1", "d1", permissions(("diagnosis", "read")))
        self.env.grant("p1", "d2", LAB_READ)
        self.env.revoke("p1", c.token_id)
        self.env.clock.advance(hours=2)

        self.assertEqual([t.token_id for t in self.consents.list_for_provider("d1")],
                         [a.token_id, b.token_id, c.token_id])
        summary = self.consents.status_summary("p1", "d1")
        self.assertEqual(summary["total_consents"], 3)
        self.assertEqual(summary["active_consents"], 1)
        self.assertEqual(summary["revoked_consents"], 1)
        self.assertEqual(summary["expired_consents"], 1)
        self.assertEqual(summary["resource_permissions"], {"lab_result": ["read", "write"]})
        self.assertEqual([c["token_id"] for c in summary["consents"]], [a.token_id])


if __name__ == "__main__":
    unittest.main()
