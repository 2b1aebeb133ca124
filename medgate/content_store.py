"""
Content-addressed blob storage.

Blobs arrive already encrypted by the client. Only the StorageOrchestrator
talks to a ContentStore.
"""

import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Set

import requests

from .errors import NotFound, StorageUnavailable
from .hashing import CONTENT_ID_PREFIX, content_id_for


class ContentStore(ABC):

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store ``data`` and return its content id."""
        pass

    @abstractmethod
    def get(self, content_id: str) -> bytes:
        """
        Raises:
            NotFound: no blob with that id
            StorageUnavailable: transport failure
        """
        pass

    @abstractmethod
    def pin(self, content_id: str) -> bool:
        pass

    @abstractmethod
    def exists(self, content_id: str) -> bool:
        pass


class InMemoryContentStore(ContentStore):
    """Dictionary-backed store. ``available = False`` simulates an outage."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._pins: Set[str] = set()
        self._lock = threading.Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StorageUnavailable("content store offline")

    def put(self, data: bytes) -> str:
        self._check()
        cid = content_id_for(data)
        with self._lock:
            self._blobs[cid] = bytes(data)
        return cid

    def get(self, content_id: str) -> bytes:
        self._check()
        with self._lock:
            data = self._blobs.get(content_id)
        if data is None:
            raise NotFound(f"content {content_id} not found")
        return data

    def pin(self, content_id: str) -> bool:
        self._check()
        with self._lock:
            if content_id not in self._blobs:
                return False
            self._pins.add(content_id)
            return True

    def exists(self, content_id: str) -> bool:
        self._check()
        with self._lock:
            return content_id in self._blobs

    def is_pinned(self, content_id: str) -> bool:
        with self._lock:
            return content_id in self._pins


class FileSystemContentStore(ContentStore):
    """
    Blobs on local disk, sharded by the first two hex characters of the digest.

    Pins are marker files next to the blob.
    """

    def __init__(self, root: str):
        self._root = Path(root)

    def _path(self, content_id: str) -> Path:
        if not content_id.startswith(CONTENT_ID_PREFIX):
            raise NotFound(f"content {content_id} not found")
        digest = content_id[len(CONTENT_ID_PREFIX):]
        if len(digest) != 64 or not all(c in "0123456789abcdef" for c in digest):
            raise NotFound(f"content {content_id} not found")
        return self._root / digest[:2] / digest

    def put(self, data: bytes) -> str:
        cid = content_id_for(data)
        path = self._path(cid)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                tmp = path.with_suffix(".tmp")
                tmp.write_bytes(data)
                tmp.replace(path)
        except OSError as e:
            raise StorageUnavailable(f"write failed: {e}") from e
        return cid

    def get(self, content_id: str) -> bytes:
        path = self._path(content_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"content {content_id} not found")
        except OSError as e:
            raise StorageUnavailable(f"read failed: {e}") from e

    def pin(self, content_id: str) -> bool:
        path = self._path(content_id)
        if not path.exists():
            return False
        try:
            path.with_suffix(".pin").touch()
        except OSError as e:
            raise StorageUnavailable(f"pin failed: {e}") from e
        return True

    def exists(self, content_id: str) -> bool:
        try:
            return self._path(content_id).exists()
        except NotFound:
            return False


class IpfsHttpContentStore(ContentStore):
    """
    IPFS node reached through its HTTP RPC API (``/api/v0``).

    IPFS assigns its own CIDs; the returned id is the IPFS CID, not a
    ``sha256:`` address.
    """

    def __init__(self, api_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self._api = api_url.rstrip("/") + "/api/v0"
        self._timeout = timeout
        self._session = session or requests.Session()

    def _post(self, path: str, **kwargs) -> requests.Response:
        try:
            resp = self._session.post(f"{self._api}/{path}", timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            raise StorageUnavailable(f"ipfs {path} failed: {e}") from e
        return resp

    def put(self, data: bytes) -> str:
        resp = self._post("add", params={"pin": "false"}, files={"file": ("record.bin", data)})
        if resp.status_code != 200:
            raise StorageUnavailable(f"ipfs add returned {resp.status_code}")
        try:
            return resp.json()["Hash"]
        except (ValueError, KeyError) as e:
            raise StorageUnavailable(f"ipfs add returned malformed body: {e}") from e

    def get(self, content_id: str) -> bytes:
        resp = self._post("cat", params={"arg": content_id})
        if resp.status_code == 500 and "not found" in resp.text.lower():
            raise NotFound(f"content {content_id} not found")
        if resp.status_code != 200:
            raise StorageUnavailable(f"ipfs cat returned {resp.status_code}")
        return resp.content

    def pin(self, content_id: str) -> bool:
        resp = self._post("pin/add", params={"arg": content_id})
        return resp.status_code == 200

    def exists(self, content_id: str) -> bool:
        resp = self._post("block/stat", params={"arg": content_id, "offline": "true"})
        return resp.status_code == 200
