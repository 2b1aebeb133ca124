"""
Database module for the MedGate service.

SQLite-backed nonce store, record catalog and local hash-chained ledger.
Connections are thread-local and reused; every write runs in a transaction.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from medgate.canonicalization import canonicalize
from medgate.errors import LedgerUnavailable
from medgate.hashing import chain_entry_hash, sha256_hash
from medgate.ledger import Ledger, LedgerReceipt
from medgate.models import Nonce
from medgate.nonces import NonceStore
from medgate.storage import RecordCatalog, StoredRecord
from medgate.util import generate_id

TABLES = ("nonces", "ledger_blocks", "records")


class SqliteDatabase:
    """One SQLite file, with a connection per thread."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._local = threading.local()

    def connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA busy_timeout=5000;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Commits on success, rolls back on failure.
        """
        conn = self.connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_schema(self) -> None:
        """Safe to call multiple times (uses IF NOT EXISTS)."""
        with self.transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS nonces (
                nonce TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                issued_at REAL NOT NULL,
                expires_at REAL NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_nonces_expires
            ON nonces(expires_at);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS ledger_blocks (
                block_number INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id TEXT NOT NULL UNIQUE,
                record_json TEXT NOT NULL,
                record_hash TEXT NOT NULL,
                prev_block_hash TEXT,
                block_hash TEXT NOT NULL,
                committed_at REAL DEFAULT (strftime('%s', 'now'))
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                content_id TEXT NOT NULL,
                patient_id TEXT NOT NULL,
                record_json TEXT NOT NULL,
                uploaded_at TEXT NOT NULL,
                PRIMARY KEY (content_id, patient_id)
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_patient
            ON records(patient_id);""")

    def stats(self) -> Dict[str, int]:
        conn = self.connection()
        return {
            f"{table}_count": conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()["cnt"]
            for table in TABLES
        }

    def reset(self) -> None:
        """Clear all tables, keeping the schema. Test support."""
        with self.transaction() as conn:
            for table in TABLES:
                conn.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


class SqliteNonceStore(NonceStore):
    """
    Nonces in SQLite.

    ``take`` is a single conditional DELETE, so concurrent consumers across
    threads or processes cannot both succeed.
    """

    def __init__(self, db: SqliteDatabase):
        self._db = db

    def put(self, nonce: Nonce) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO nonces(nonce, owner, issued_at, expires_at) VALUES(?,?,?,?)",
                (nonce.value, nonce.owner, nonce.issued_at.timestamp(), nonce.expires_at.timestamp())
            )

    def take(self, owner: str, value: str, now: datetime) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM nonces WHERE nonce=? AND owner=? AND expires_at>=?",
                (value, owner, now.timestamp())
            )
            return cur.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM nonces WHERE expires_at<?", (now.timestamp(),))
            return cur.rowcount

    def count(self) -> int:
        cur = self._db.connection().execute("SELECT COUNT(*) AS cnt FROM nonces")
        return cur.fetchone()["cnt"]


class SqliteRecordCatalog(RecordCatalog):
    """
    Record ownership in SQLite, so a restarted service still knows which
    patient each stored blob belongs to.
    """

    def __init__(self, db: SqliteDatabase):
        self._db = db

    def add(self, record: StoredRecord) -> None:
        data = record.to_dict()
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO records(content_id, patient_id, record_json, uploaded_at) VALUES(?,?,?,?)",
                (record.content_id, record.patient_id, json.dumps(data, sort_keys=True), data["uploaded_at"])
            )

    def get(self, content_id: str, patient_id: str) -> Optional[StoredRecord]:
        row = self._db.connection().execute(
            "SELECT record_json FROM records WHERE content_id=? AND patient_id=?", (content_id, patient_id)
        ).fetchone()
        return StoredRecord.from_dict(json.loads(row["record_json"])) if row else None

    def owners(self, content_id: str) -> List[str]:
        rows = self._db.connection().execute(
            "SELECT patient_id FROM records WHERE content_id=? ORDER BY patient_id", (content_id,)
        ).fetchall()
        return [r["patient_id"] for r in rows]

    def for_patient(self, patient_id: str) -> List[StoredRecord]:
        rows = self._db.connection().execute(
            "SELECT record_json FROM records WHERE patient_id=? ORDER BY uploaded_at, rowid", (patient_id,)
        ).fetchall()
        return [StoredRecord.from_dict(json.loads(r["record_json"])) for r in rows]


class SqliteLedger(Ledger):
    """
    Local append-only ledger: one hash-chained block per record.

    Stands in for an external ledger in single-node deployments.
    """

    def __init__(self, db: SqliteDatabase):
        self._db = db
        self._write_lock = threading.Lock()

    def submit(self, record: Dict[str, Any]) -> LedgerReceipt:
        record_json = json.dumps(record, sort_keys=True)
        record_hash = sha256_hash(canonicalize(record))
        tx_id = generate_id("tx")
        try:
            with self._write_lock, self._db.transaction() as conn:
                row = conn.execute(
                    "SELECT block_hash FROM ledger_blocks ORDER BY block_number DESC LIMIT 1"
                ).fetchone()
                prev = row["block_hash"] if row else None
                cur = conn.execute(
                    "INSERT INTO ledger_blocks(transaction_id, record_json, record_hash, "
                    "prev_block_hash, block_hash) VALUES(?,?,?,?,?)",
                    (tx_id, record_json, record_hash, prev, chain_entry_hash(prev, record_hash))
                )
                block_number = cur.lastrowid
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"sqlite ledger write failed: {e}") from e
        return LedgerReceipt(tx_id, block_number)

    def query(self, criteria: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            rows = self._db.connection().execute(
                "SELECT record_json FROM ledger_blocks ORDER BY block_number ASC"
            ).fetchall()
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"sqlite ledger read failed: {e}") from e
        records = [json.loads(r["record_json"]) for r in rows]
        return [r for r in records if all(r.get(k) == v for k, v in criteria.items())]

    def verify_chain(self) -> bool:
        """Recompute every block hash and link."""
        rows = self._db.connection().execute(
            "SELECT record_hash, prev_block_hash, block_hash FROM ledger_blocks ORDER BY block_number ASC"
        ).fetchall()
        prev = None
        for r in rows:
            if r["prev_block_hash"] != prev or chain_entry_hash(prev, r["record_hash"]) != r["block_hash"]:
                return False
            prev = r["block_hash"]
        return True
