"""
Cache configuration: which collections to mirror and how to seed them.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

from ..errors import ValidationError
from ..listener import MAX_TARGET_ID
from ..paths import ParentPathBuilder, collection_path


class PreloadPolicy(Enum):
    """When to run a full read before listening."""

    ALWAYS = "always"
    IF_EMPTY = "if_empty"
    NEVER = "never"


@dataclass(frozen=True)
class CollectionCacheConfig:
    """One cached collection.

    Attributes:
        collection_id: Collection to mirror
        target_id: Listen target id, unique within a configuration
        parent: Parent document path; defaults to the documents root
        preload: Preload policy for this collection
    """

    collection_id: str
    target_id: int
    parent: str | None = None
    preload: PreloadPolicy = PreloadPolicy.ALWAYS

    def __post_init__(self) -> None:
        if not self.collection_id or "/" in self.collection_id:
            raise ValidationError(
                f"Invalid collection id {self.collection_id!r}", field_name="collection_id"
            )
        if not 1 <= self.target_id <= MAX_TARGET_ID:
            raise ValidationError(
                f"target_id must be between 1 and {MAX_TARGET_ID}", field_name="target_id"
            )

    def collection_path(self, documents_root: str) -> str:
        return collection_path(self.parent or documents_root, self.collection_id)


class CacheConfiguration:
    """Set of cached collections, keyed by collection path.

    Example:
        >>> config = (
        ...     CacheConfiguration()
        ...     .add_collection("users", target_id=1)
        ...     .add_collection("orders", target_id=2, preload=PreloadPolicy.IF_EMPTY)
        ... )
    """

    def __init__(self) -> None:
        self._collections: list[CollectionCacheConfig] = []

    def add(self, collection: CollectionCacheConfig) -> CacheConfiguration:
        for existing in self._collections:
            if existing.target_id == collection.target_id:
                raise ValidationError(
                    f"Duplicate cache target id {collection.target_id}", field_name="target_id"
                )
            if (existing.parent, existing.collection_id) == (collection.parent, collection.collection_id):
                raise ValidationError(
                    f"Collection {collection.collection_id!r} is already cached",
                    field_name="collection_id",
                )
        self._collections.append(collection)
        return self

    def add_collection(
        self,
        collection_id: str,
        *,
        target_id: int,
        parent: str | ParentPathBuilder | None = None,
        preload: PreloadPolicy = PreloadPolicy.ALWAYS,
    ) -> CacheConfiguration:
        parent_path = parent.path if isinstance(parent, ParentPathBuilder) else parent
        return self.add(CollectionCacheConfig(collection_id, target_id, parent_path, preload))

    def __iter__(self) -> Iterator[CollectionCacheConfig]:
        return iter(self._collections)

    def __len__(self) -> int:
        return len(self._collections)
