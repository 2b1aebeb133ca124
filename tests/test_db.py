import threading
from datetime import timedelta

import pytest

from app.db import SqliteDatabase, SqliteLedger, SqliteNonceStore, SqliteRecordCatalog
from medgate.errors import Forbidden, NotFound
from medgate.hashing import content_id_for
from medgate.models import AuditEventType, Nonce
from medgate.nonces import NonceAuthority
from medgate.storage import StorageOrchestrator

from helpers import T0, Env, FakeClock, permissions


@pytest.fixture
def db(tmp_path):
    database = SqliteDatabase(str(tmp_path / "medgate.db"))
    database.init_schema()
    yield database
    database.close()


def test_nonce_store_single_use(db):
    clock = FakeClock()
    nonces = NonceAuthority(SqliteNonceStore(db), clock=clock)
    nonce = nonces.issue("d1")
    assert not nonces.consume("d2", nonce.value)
    assert nonces.consume("d1", nonce.value)
    assert not nonces.consume("d1", nonce.value)


def test_nonce_store_expiry_and_purge(db):
    store = SqliteNonceStore(db)
    store.put(Nonce("aa" * 32, "d1", T0, T0 + timedelta(minutes=5)))
    store.put(Nonce("bb" * 32, "d1", T0, T0 + timedelta(minutes=1)))
    assert store.count() == 2
    assert not store.take("d1", "bb" * 32, T0 + timedelta(minutes=2))
    assert store.purge_expired(T0 + timedelta(minutes=2)) == 1
    assert store.take("d1", "aa" * 32, T0 + timedelta(minutes=5))
    assert store.count() == 0


def test_nonce_store_concurrent_take(db):
    store = SqliteNonceStore(db)
    store.put(Nonce("cc" * 32, "d1", T0, T0 + timedelta(minutes=5)))
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(store.take("d1", "cc" * 32, T0))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1


def test_ledger_chain_and_query(db):
    ledger = SqliteLedger(db)
    first = ledger.submit({"entry_id": "audit_1", "event_type": "LOGIN_ATTEMPT"})
    second = ledger.submit({"entry_id": "audit_2", "event_type": "CONSENT_GRANTED"})
    assert second.block_number == first.block_number + 1
    assert first.transaction_id != second.transaction_id
    assert ledger.query({"event_type": "CONSENT_GRANTED"}) == [{"entry_id": "audit_2", "event_type": "CONSENT_GRANTED"}]
    assert ledger.verify_chain()
    assert db.stats() == {"nonces_count": 0, "ledger_blocks_count": 2, "records_count": 0}


def test_ledger_detects_rewritten_block(db):
    ledger = SqliteLedger(db)
    ledger.submit({"entry_id": "audit_1"})
    ledger.submit({"entry_id": "audit_2"})
    with db.transaction() as conn:
        conn.execute("UPDATE ledger_blocks SET record_hash='sha256:00' WHERE block_number=1")
    assert not ledger.verify_chain()


def test_reset_keeps_schema(db):
    SqliteLedger(db).submit({"entry_id": "audit_1"})
    db.reset()
    assert db.stats()["ledger_blocks_count"] == 0
    db.init_schema()


def test_audit_trail_over_sqlite_ledger(db):
    ledger = SqliteLedger(db)
    env = Env(ledger=ledger)
    env.grant("p1", "d1", permissions(("lab_result", "read")))
    entries = env.system.audit.entries()
    assert all(e.is_immutable for e in entries)
    assert db.stats()["ledger_blocks_count"] == len(entries)
    committed = ledger.query({"event_type": AuditEventType.CONSENT_GRANTED.value})
    assert committed[0]["entry_hash"] == env.events(AuditEventType.CONSENT_GRANTED)[0].entry_hash


def test_record_ownership_survives_restart(db):
    env = Env(record_catalog=SqliteRecordCatalog(db))
    env.grant("p1", "lab1", permissions(("lab_result", "write")))
    content_id = env.upload("lab1", "p1", b"\x8fciphertext").content_id
    assert db.stats()["records_count"] == 1

    mg = env.system
    restarted = StorageOrchestrator(env.store, mg.access, mg.identities, mg.audit,
                                    catalog=SqliteRecordCatalog(db))
    assert restarted.get_record(content_id, "p1").uploaded_by == "lab1"
    assert restarted.download("p1", "p1", content_id, "personal copy").data == b"\x8fciphertext"
    with pytest.raises(Forbidden):
        restarted.download("p2", "p2", content_id, "curiosity")
    assert env.events(AuditEventType.ACCESS_DENIED)[-1].details["reason"] == "patient-mismatch"
    with pytest.raises(NotFound):
        restarted.download("p2", "p2", content_id_for(b"never catalogued"), "curiosity")


def test_record_catalog_keeps_one_row_per_owner(db):
    env = Env(record_catalog=SqliteRecordCatalog(db))
    for patient in ("p1", "p2"):
        env.grant(patient, "lab1", permissions(("lab_result", "write")))
        env.upload("lab1", patient, b"\x8fshared ciphertext")
    catalog = SqliteRecordCatalog(db)
    content_id = content_id_for(b"\x8fshared ciphertext")
    assert catalog.owners(content_id) == ["p1", "p2"]
    assert [r.patient_id for r in catalog.for_patient("p2")] == ["p2"]
