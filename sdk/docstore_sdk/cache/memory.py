"""
In-memory cache backend.

Documents live in an LRU-ordered dict bounded by max_capacity; an auxiliary
index maps each collection path to the paths it contains.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

from ..errors import ValidationError
from ..protocol import Document
from .backend import collection_of

logger = logging.getLogger(__name__)

DEFAULT_MAX_CAPACITY = 50_000


class InMemoryCacheBackend:
    """Process-local cache with least-recently-used eviction.

    Args:
        max_capacity: Maximum number of cached documents

    Thread safety:
        All operations take an internal lock.
    """

    def __init__(self, max_capacity: int = DEFAULT_MAX_CAPACITY) -> None:
        if max_capacity < 1:
            raise ValidationError("max_capacity must be positive", field_name="max_capacity")
        self.max_capacity = max_capacity
        self._documents: OrderedDict[str, Document] = OrderedDict()
        self._by_collection: dict[str, set[str]] = {}
        self._tokens: dict[int, bytes] = {}
        self._lock = threading.Lock()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._documents)

    def _discard(self, path: str) -> bool:
        if self._documents.pop(path, None) is None:
            return False
        collection = collection_of(path)
        members = self._by_collection.get(collection)
        if members is not None:
            members.discard(path)
            if not members:
                del self._by_collection[collection]
        return True

    async def get(self, document_path: str) -> Document | None:
        with self._lock:
            document = self._documents.get(document_path)
            if document is not None:
                self._documents.move_to_end(document_path)
            return document

    async def put(self, document_path: str, document: Document) -> None:
        with self._lock:
            self._documents[document_path] = document
            self._documents.move_to_end(document_path)
            self._by_collection.setdefault(collection_of(document_path), set()).add(document_path)
            while len(self._documents) > self.max_capacity:
                oldest = next(iter(self._documents))
                self._discard(oldest)
                self.evictions += 1
                logger.debug("Evicted cached document", extra={"document_path": oldest})

    async def remove(self, document_path: str) -> None:
        with self._lock:
            self._discard(document_path)

    async def scan(self, collection_path: str) -> list[Document]:
        with self._lock:
            paths = sorted(self._by_collection.get(collection_path, ()))
            return [self._documents[p] for p in paths]

    async def remove_collection(self, collection_path: str) -> int:
        with self._lock:
            paths = list(self._by_collection.get(collection_path, ()))
            for path in paths:
                self._discard(path)
            return len(paths)

    async def read_resume_token(self, target_id: int) -> bytes | None:
        with self._lock:
            return self._tokens.get(target_id)

    async def update_resume_token(self, target_id: int, token: bytes | None) -> None:
        with self._lock:
            if token is None:
                self._tokens.pop(target_id, None)
            else:
                self._tokens[target_id] = token

    async def close(self) -> None:
        with self._lock:
            self._documents.clear()
            self._by_collection.clear()
