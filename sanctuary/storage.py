"""
Sanctuary - Blob Storage Collaborator

Content-addressed storage for encrypted backup archives. upload() returns
an opaque transaction id; find() queries by tags so an agent can locate its
archives without the service of record.
"""

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, List

import httpx

from .errors import DependencyError, NotFoundError

logger = logging.getLogger("sanctuary.storage")


class BlobStore(ABC):

    @abstractmethod
    def upload(self, payload: bytes, tags: Optional[Dict[str, str]] = None) -> str:
        ...

    @abstractmethod
    def fetch(self, tx_id: str) -> bytes:
        ...

    @abstractmethod
    def find(self, tags: Dict[str, str]) -> List[str]:
        """Transaction ids whose tags include all of `tags`, in upload order."""
        ...


def blob_id(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class MemoryBlobStore(BlobStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._blobs: Dict[str, bytes] = {}
        self._tags: Dict[str, Dict[str, str]] = {}
        self._order: List[str] = []
        self.available = True

    def _check(self):
        if not self.available:
            raise DependencyError("Blob store unavailable", dependency="blob_store")

    def upload(self, payload, tags=None):
        self._check()
        tx_id = blob_id(payload)
        with self._lock:
            if tx_id not in self._blobs:
                self._order.append(tx_id)
            self._blobs[tx_id] = bytes(payload)
            self._tags[tx_id] = dict(tags or {})
        return tx_id

    def fetch(self, tx_id):
        self._check()
        with self._lock:
            if tx_id not in self._blobs:
                raise NotFoundError(f"Blob {tx_id} not found")
            return self._blobs[tx_id]

    def find(self, tags):
        self._check()
        with self._lock:
            return [
                tx for tx in self._order
                if all(self._tags[tx].get(k) == v for k, v in tags.items())
            ]


class DirectoryBlobStore(BlobStore):
    """
    Blobs as files named by their SHA-256, tags in a sidecar JSON.

    Layout:
        <root>/<tx_id>.bin
        <root>/<tx_id>.json
    """

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def upload(self, payload, tags=None):
        tx_id = blob_id(payload)
        try:
            with self._lock:
                (self.root / f"{tx_id}.bin").write_bytes(payload)
                meta = {"tags": dict(tags or {}), "seq": len(list(self.root.glob("*.json")))}
                meta_file = self.root / f"{tx_id}.json"
                if not meta_file.exists():
                    meta_file.write_text(json.dumps(meta))
        except OSError as e:
            raise DependencyError(f"Blob write failed: {e}", dependency="blob_store")
        return tx_id

    def fetch(self, tx_id):
        if len(tx_id) != 64 or not all(c in "0123456789abcdef" for c in tx_id):
            raise NotFoundError(f"Blob {tx_id} not found")
        path = self.root / f"{tx_id}.bin"
        if not path.exists():
            raise NotFoundError(f"Blob {tx_id} not found")
        try:
            return path.read_bytes()
        except OSError as e:
            raise DependencyError(f"Blob read failed: {e}", dependency="blob_store")

    def find(self, tags):
        matches = []
        for meta_file in self.root.glob("*.json"):
            meta = json.loads(meta_file.read_text())
            if all(meta["tags"].get(k) == v for k, v in tags.items()):
                matches.append((meta["seq"], meta_file.stem))
        return [tx for _, tx in sorted(matches)]


class HttpBlobStore(BlobStore):
    """Gateway client for a remote permanent store. Bounded by `timeout`."""

    def __init__(self, base_url: str, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, f"{self.base_url}{path}",
                                            timeout=self.timeout, **kwargs)
        except httpx.TimeoutException:
            logger.error("Blob store %s %s timed out after %ss", method, path, self.timeout)
            raise DependencyError("Blob store request timed out", dependency="blob_store")
        except httpx.HTTPError as e:
            raise DependencyError(f"Blob store unavailable: {e}", dependency="blob_store")
        if response.status_code == 404:
            raise NotFoundError(f"Blob not found: {path}")
        if response.status_code >= 400:
            raise DependencyError(f"Blob store error: {response.status_code}", dependency="blob_store")
        return response

    def upload(self, payload, tags=None):
        response = self._request(
            "POST", "/upload",
            content=payload,
            headers={"Content-Type": "application/octet-stream",
                     "X-Tags": json.dumps(tags or {}, sort_keys=True)},
        )
        return response.json()["id"]

    def fetch(self, tx_id):
        return self._request("GET", f"/tx/{tx_id}").content

    def find(self, tags):
        return self._request("GET", "/find", params=tags).json()["ids"]
