"""Every grant, revoke, upload and download writes exactly one audit entry, whatever its outcome."""

import unittest

from medgate.consent import ConsentRevocationRequest
from medgate.errors import AuthenticationFailed, Forbidden, MedGateError, NotFound, ValidationError
from medgate.hashing import content_id_for
from medgate.models import AuditEventType

from helpers import METADATA, Env, permissions

BLOB = b"\x8f\x02ciphertext-of-a-lab-report"
LAB_READ = permissions(("lab_result", "read"))
LAB_WRITE = permissions(("lab_result", "write"))


class TestOneEntryPerOperation(unittest.TestCase):

    def setUp(self):
        self.env = Env()
        self.mg = self.env.system

    def assertOneEntry(self, call, expected_error=None, event_types=()):
        """Run ``call`` and check it appended exactly one entry of one of ``event_types``."""
        before = len(self.mg.audit)
        if expected_error is None:
            call()
        else:
            with self.assertRaises(expected_error):
                call()
        added = self.mg.audit.entries()[before:]
        self.assertEqual(len(added), 1, [e.event_type.value for e in added])
        self.assertIn(added[0].event_type, event_types)
        return added[0]

    def test_grant(self):
        grant = (AuditEventType.CONSENT_GRANTED,)
        self.assertOneEntry(lambda: self.env.grant("p1", "d1", LAB_READ), event_types=grant)
        self.assertOneEntry(lambda: self.mg.consents.grant(self.env.grant_request("p1", "d1", LAB_READ, signer="p2")),
                            Forbidden, grant)
        self.assertOneEntry(lambda: self.env.grant("p1", "d1", []), ValidationError, grant)
        self.assertOneEntry(lambda: self.mg.consents.grant({"permissions": None}), ValidationError, grant)
        self.assertOneEntry(lambda: self.mg.consents.grant(self.env.grant_body("p1", "d1", LAB_READ),
                                                           requester_id="p2"), Forbidden, grant)
        self.assertOneEntry(lambda: self.env.grant("p1", "nobody", LAB_READ), NotFound, grant)

    def test_revoke(self):
        revoke = (AuditEventType.CONSENT_REVOKED,)
        token = self.env.grant("p1", "d1", LAB_READ)
        self.assertOneEntry(lambda: self.env.revoke("p1", token.token_id, requester_id="p2"), Forbidden, revoke)
        self.assertOneEntry(
            lambda: self.mg.consents.revoke(ConsentRevocationRequest(token.token_id, "not-a-signature"), "p1"),
            Forbidden, revoke)
        self.assertOneEntry(lambda: self.env.revoke("p1", "consent_missing", requester_id="p1"), NotFound, revoke)
        self.assertOneEntry(lambda: self.env.revoke("p1", token.token_id, requester_id="p1"), event_types=revoke)
        self.assertOneEntry(lambda: self.env.revoke("p1", token.token_id, requester_id="p1"), event_types=revoke)

    def test_upload(self):
        upload = (AuditEventType.RECORD_CREATED, AuditEventType.ACCESS_DENIED)
        self.assertOneEntry(lambda: self.env.upload("lab1", "p1", BLOB), Forbidden, upload)
        self.env.grant("p1", "lab1", LAB_WRITE)
        sig = self.env.upload_signature("lab1", "p1", BLOB, "lab_result")
        storage = self.mg.storage
        self.assertOneEntry(lambda: storage.upload("p1", "lab1", "***", METADATA, sig), ValidationError, upload)
        self.assertOneEntry(lambda: storage.upload("p1", "lab1", BLOB, {}, sig), ValidationError, upload)
        self.assertOneEntry(lambda: storage.upload("p1", "lab1", BLOB, METADATA, "bad"), AuthenticationFailed,
                            upload)
        self.assertOneEntry(lambda: storage.upload("p1", "lab1", BLOB, METADATA, sig, requester_id="d1"),
                            Forbidden, upload)
        entry = self.assertOneEntry(lambda: storage.upload("p1", "lab1", BLOB, METADATA, sig, requester_id="lab1"),
                                    event_types=upload)
        self.assertEqual(entry.details["outcome"], "success")

    def test_download(self):
        download = (AuditEventType.RECORD_ACCESSED, AuditEventType.ACCESS_DENIED)
        self.env.grant("p1", "lab1", LAB_WRITE)
        content_id = self.env.upload("lab1", "p1", BLOB).content_id
        storage = self.mg.storage
        self.assertOneEntry(lambda: storage.download("p1", "p1", content_id, "copy"), event_types=download)
        self.assertOneEntry(lambda: storage.download("d1", "p1", content_id, "follow-up"), Forbidden, download)
        self.assertOneEntry(lambda: storage.download("p2", "p2", content_id, "curiosity"), Forbidden, download)
        self.assertOneEntry(lambda: storage.download("p1", "p1", content_id_for(b"nothing"), "copy"),
                            NotFound, download)
        self.assertOneEntry(lambda: storage.download("p1", "p1", content_id, " "), ValidationError, download)
        self.assertOneEntry(lambda: storage.download("p1", "p1", None, "copy"), ValidationError, download)

        self.env.store.available = False
        self.assertOneEntry(lambda: storage.download("p1", "p1", content_id, "copy"), MedGateError, download)


if __name__ == "__main__":
    unittest.main()
