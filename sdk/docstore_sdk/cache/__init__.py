"""
Local document cache kept in sync through the change feed.
"""

from .backend import CacheBackend
from .configuration import CacheConfiguration, CollectionCacheConfig, PreloadPolicy
from .memory import InMemoryCacheBackend
from .query_engine import LocalQueryEngine
from .sqlite import SqliteCacheBackend
from .synchronizer import CacheSynchronizer

__all__ = [
    "CacheBackend",
    "CacheConfiguration",
    "CacheSynchronizer",
    "CollectionCacheConfig",
    "InMemoryCacheBackend",
    "LocalQueryEngine",
    "PreloadPolicy",
    "SqliteCacheBackend",
]
