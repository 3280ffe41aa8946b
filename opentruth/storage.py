"""
Blob-store collaborator.

The protocol only needs put/get by opaque locator. Transport to a real
immutable store lives outside this package; `InMemoryBlobStore` is the
in-process implementation used by tooling and tests.
"""

import hashlib
import threading
from abc import ABC, abstractmethod
from typing import Dict

from .errors import NotFoundError

LOCATOR_PREFIX = "BLOB:"


class BlobStore(ABC):
    """Abstract interface for an immutable blob store."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store `data` and return an opaque locator."""
        pass

    @abstractmethod
    def get(self, locator: str) -> bytes:
        """
        Raises:
            NotFoundError: if the object is absent or expired
        """
        pass


class InMemoryBlobStore(BlobStore):
    """Content-addressed store: the locator is "BLOB:" + sha256 hex."""

    def __init__(self):
        self._lock = threading.Lock()
        self._blobs: Dict[str, bytes] = {}

    def put(self, data: bytes) -> str:
        locator = LOCATOR_PREFIX + hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[locator] = bytes(data)
        return locator

    def get(self, locator: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[locator]
            except KeyError:
                raise NotFoundError(locator) from None

    def delete(self, locator: str) -> None:
        """Simulate expiry."""
        with self._lock:
            self._blobs.pop(locator, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)
