"""
DocStore Python SDK - Client library for a schemaless document database.

This SDK provides:
- A value codec between annotated Python types and the typed wire values
- A query builder and an executor with materialized, streaming, paginated,
  partitioned and aggregated reads
- Batched, streaming and transactional writers
- Change feed listeners and a local cache kept in sync with the server

Example:
    >>> from docstore_sdk import DocStoreClient, Query, document_model, field
    >>>
    >>> @document_model(rename_all=NameConvention.CAMEL_CASE)
    ... @dataclass
    ... class User:
    ...     name: str
    ...     age: int = 0
    >>>
    >>> async with DocStoreClient("demo") as db:
    ...     await db.create("users", User("Ada", 36), document_id="ada")
    ...     adults = await db.query(Query("users").where(field("age").greater_than_or_equal(18)), User)

Invariants:
    - Every network round trip is awaited; nothing blocks the event loop
    - All SDK errors inherit from DocStoreError

Version: 1.0.0
"""

__version__ = "1.0.0"

from .batch import (
    BatchWriteResponse,
    SimpleBatchWriteOptions,
    SimpleBatchWriter,
    StreamingBatchWriteOptions,
    StreamingBatchWriter,
    WriteBatch,
)
from .cache import (
    CacheBackend,
    CacheConfiguration,
    CacheSynchronizer,
    CollectionCacheConfig,
    InMemoryCacheBackend,
    LocalQueryEngine,
    PreloadPolicy,
    SqliteCacheBackend,
)
from .client import DocStoreClient
from .codec import Codec
from .config import ClientSettings, setup_logging
from .errors import (
    CacheError,
    ConflictError,
    ConnectionError,
    DecodeError,
    DocStoreError,
    EncodeError,
    ListenerStateError,
    NotFoundError,
    PermanentTransportError,
    PreconditionFailedError,
    ResumeTokenExpiredError,
    StatusCode,
    StreamBrokenError,
    TransientTransportError,
    TransportError,
    ValidationError,
)
from .executor import ListingPage, Partition, PartitionedQuery, QueryExecutor
from .field_path import parse_field_path
from .listener import (
    ChangeEvent,
    ChangeKind,
    ChangeListener,
    InMemoryResumeStateStorage,
    ListenerParams,
    ListenerState,
    ListenTarget,
    ResumeStateStorage,
    TempFileResumeStateStorage,
    open_change_feed,
)
from .paths import ParentPathBuilder
from .query import (
    Aggregation,
    Cursor,
    Direction,
    DistanceMeasure,
    Query,
    QueryParams,
    field,
    for_all,
    for_any,
)
from .registry import ModelRegistry
from .retry import RetryPolicy
from .schema import NameConvention, doc_field, document_model
from .transaction import (
    Transaction,
    TransactionMode,
    TransactionOptions,
    TransactionResult,
)
from .transport import StaticTokenProvider, TokenProvider, Transport
from .value import GeoPoint, Reference, Timestamp, Value, ValueKind, Vector
from .writes import Precondition, Transform, WriteOperation, WriteOutcome, WriteResult

__all__ = [
    # Version
    "__version__",
    # Client and configuration
    "DocStoreClient",
    "ClientSettings",
    "setup_logging",
    "RetryPolicy",
    "Transport",
    "TokenProvider",
    "StaticTokenProvider",
    # Values and codec
    "Value",
    "ValueKind",
    "Timestamp",
    "Vector",
    "Reference",
    "GeoPoint",
    "Codec",
    "ModelRegistry",
    "NameConvention",
    "document_model",
    "doc_field",
    "parse_field_path",
    "ParentPathBuilder",
    # Queries
    "Query",
    "QueryParams",
    "Direction",
    "DistanceMeasure",
    "Cursor",
    "Aggregation",
    "field",
    "for_all",
    "for_any",
    "QueryExecutor",
    "ListingPage",
    "Partition",
    "PartitionedQuery",
    # Writes
    "Precondition",
    "Transform",
    "WriteOperation",
    "WriteOutcome",
    "WriteResult",
    "WriteBatch",
    "BatchWriteResponse",
    "SimpleBatchWriter",
    "SimpleBatchWriteOptions",
    "StreamingBatchWriter",
    "StreamingBatchWriteOptions",
    "Transaction",
    "TransactionMode",
    "TransactionOptions",
    "TransactionResult",
    # Change feeds and cache
    "ChangeEvent",
    "ChangeKind",
    "ChangeListener",
    "ListenerParams",
    "ListenerState",
    "ListenTarget",
    "ResumeStateStorage",
    "InMemoryResumeStateStorage",
    "TempFileResumeStateStorage",
    "open_change_feed",
    "CacheBackend",
    "CacheConfiguration",
    "CollectionCacheConfig",
    "CacheSynchronizer",
    "InMemoryCacheBackend",
    "SqliteCacheBackend",
    "LocalQueryEngine",
    "PreloadPolicy",
    # Errors
    "DocStoreError",
    "StatusCode",
    "ValidationError",
    "EncodeError",
    "DecodeError",
    "PreconditionFailedError",
    "ConflictError",
    "TransportError",
    "TransientTransportError",
    "PermanentTransportError",
    "NotFoundError",
    "StreamBrokenError",
    "ResumeTokenExpiredError",
    "ConnectionError",
    "CacheError",
    "ListenerStateError",
]
