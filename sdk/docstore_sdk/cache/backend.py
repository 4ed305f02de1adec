"""
Cache backend interface.

A backend stores raw Documents keyed by full document path, grouped by the
path of the collection that directly contains them, plus the resume token of
each listen target so a restarted process can resume its change feed.

Invariants:
    - put() replaces any previous snapshot of the same path
    - scan() returns only direct children of the collection path
    - Resume tokens are written only after the documents they cover
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Protocol, runtime_checkable

from ..paths import split_document_path
from ..protocol import Document


def collection_of(document_path: str) -> str:
    """Collection path that directly contains a document."""
    return split_document_path(document_path)[0]


@runtime_checkable
class CacheBackend(Protocol):
    """Storage used by the cache synchronizer.

    Also satisfies listener.ResumeStateStorage, so one backend holds both the
    documents and the resume points of the targets that fill it.
    """

    @abstractmethod
    async def get(self, document_path: str) -> Document | None:
        ...

    @abstractmethod
    async def put(self, document_path: str, document: Document) -> None:
        ...

    @abstractmethod
    async def remove(self, document_path: str) -> None:
        ...

    @abstractmethod
    async def scan(self, collection_path: str) -> list[Document]:
        """Documents directly inside a collection, in path order."""
        ...

    @abstractmethod
    async def remove_collection(self, collection_path: str) -> int:
        """Drop every cached document of a collection. Returns how many."""
        ...

    @abstractmethod
    async def read_resume_token(self, target_id: int) -> bytes | None:
        ...

    @abstractmethod
    async def update_resume_token(self, target_id: int, token: bytes | None) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
