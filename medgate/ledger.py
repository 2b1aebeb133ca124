"""
Ledger interface and clients.

The ledger is an external, append-only store the AuditTrail submits signed
entries to. MedGate never relies on its consensus details, only on
``submit`` returning a transaction id once the record is durable.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from .canonicalization import canonicalize
from .errors import LedgerUnavailable
from .hashing import chain_entry_hash, sha256_hash
from .util import generate_id


@dataclass(frozen=True)
class LedgerReceipt:
    transaction_id: str
    block_number: Optional[int] = None


class Ledger(ABC):
    """Append-only external ledger."""

    @abstractmethod
    def submit(self, record: Dict[str, Any]) -> LedgerReceipt:
        """
        Durably append ``record``.

        Raises:
            LedgerUnavailable: on any transport or ledger-side failure
        """
        pass

    @abstractmethod
    def query(self, criteria: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Return committed records whose fields equal every key in ``criteria``."""
        pass


def _matches(record: Dict[str, Any], criteria: Dict[str, Any]) -> bool:
    return all(record.get(k) == v for k, v in criteria.items())


class InMemoryLedger(Ledger):
    """
    In-process hash-chained ledger for development/testing.

    Setting ``available = False`` simulates an outage.
    """

    def __init__(self):
        self._blocks: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self.available = True

    def submit(self, record: Dict[str, Any]) -> LedgerReceipt:
        if not self.available:
            raise LedgerUnavailable("ledger offline")
        with self._lock:
            prev = self._blocks[-1]["block_hash"] if self._blocks else None
            block_hash = chain_entry_hash(prev, sha256_hash(canonicalize(record)))
            block = {
                "block_number": len(self._blocks) + 1,
                "transaction_id": generate_id("tx"),
                "prev_block_hash": prev,
                "block_hash": block_hash,
                "record": dict(record),
            }
            self._blocks.append(block)
        return LedgerReceipt(block["transaction_id"], block["block_number"])

    def query(self, criteria: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not self.available:
            raise LedgerUnavailable("ledger offline")
        with self._lock:
            return [dict(b["record"]) for b in self._blocks if _matches(b["record"], criteria)]

    def blocks(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(b) for b in self._blocks]


class HttpLedgerClient(Ledger):
    """
    Client for a ledger gateway exposing a small JSON API.

    POST {base_url}/transactions   {"record": {...}} -> {"transaction_id", "block_number"}
    GET  {base_url}/transactions?k=v                 -> {"records": [...]}
    """

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def submit(self, record: Dict[str, Any]) -> LedgerReceipt:
        try:
            resp = self._session.post(
                f"{self._base_url}/transactions",
                json={"record": record},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            data = resp.json()
            return LedgerReceipt(str(data["transaction_id"]), data.get("block_number"))
        except (requests.RequestException, ValueError, KeyError) as e:
            raise LedgerUnavailable(f"ledger submit failed: {e}") from e

    def query(self, criteria: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            resp = self._session.get(
                f"{self._base_url}/transactions",
                params=criteria,
                timeout=self._timeout,
            )
            resp.raise_for_status()
            return list(resp.json().get("records", []))
        except (requests.RequestException, ValueError) as e:
            raise LedgerUnavailable(f"ledger query failed: {e}") from e
