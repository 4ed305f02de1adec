"""
DocStore client for the Python SDK.

DocStoreClient is the explicit connection handle: it owns a Transport, binds
it to one database through an RpcSession and hands that session to the
executor, writers, transactions, listeners and cache synchronizers it
creates.

Example:
    >>> async with DocStoreClient("demo") as db:
    ...     await db.create("users", User(name="Ada", age=36), document_id="ada")
    ...     users = await db.query(Query("users").where(field("age").greater_than(30)), User)

Invariants:
    - Single writes are one atomic Commit each, outside any transaction
    - Single writes are retried on transient failures only when retry-safe
    - Reads are independent of any transaction unless made through one
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from typing import Any, TypeVar

from ._grpc_transport import GrpcTransport
from .batch import (
    SimpleBatchWriteOptions,
    SimpleBatchWriter,
    StreamingBatchWriteOptions,
    StreamingBatchWriter,
)
from .cache import CacheBackend, CacheConfiguration, CacheSynchronizer
from .codec import Codec
from .config import ClientSettings
from .errors import ConnectionError
from .executor import ListingPage, PartitionedQuery, QueryExecutor
from .listener import (
    ChangeEvent,
    ChangeListener,
    ListenerParams,
    ListenTarget,
    ResumeStateStorage,
    open_change_feed,
)
from .paths import ParentPathBuilder, database_path, generate_document_id, safe_document_path
from .protocol import CommitRequest, FieldTransform, Method
from .query import Aggregation, Query, QueryParams
from .rpc import RpcSession
from .transaction import (
    Transaction,
    TransactionOptions,
    TransactionResult,
    begin_transaction,
    run_transaction,
)
from .transport import TokenProvider, Transport
from .writes import Precondition, WriteOperation, WriteResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DocStoreClient:
    """Client for a DocStore database.

    Args:
        project_id: Project owning the database (defaults to settings)
        database_id: Database id
        transport: Transport to use; a GrpcTransport built from settings
            when omitted
        settings: Client settings (read from the environment when omitted)
        token_provider: Source of bearer tokens
        codec: Codec for native values (a fresh one when omitted)

    Example:
        >>> async with DocStoreClient("demo") as db:
        ...     user = await db.get("users", "ada", User)
    """

    def __init__(
        self,
        project_id: str | None = None,
        database_id: str | None = None,
        *,
        transport: Transport | None = None,
        settings: ClientSettings | None = None,
        token_provider: TokenProvider | None = None,
        codec: Codec | None = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        project = project_id or self.settings.project_id
        if not project:
            raise ValueError("project_id is required (argument or DOCSTORE_PROJECT_ID)")
        self._transport = transport or GrpcTransport(
            self.settings.host,
            self.settings.port,
            secure=self.settings.secure,
            max_message_size=self.settings.max_message_size,
        )
        self._session = RpcSession(
            self._transport,
            database_path(project, database_id or self.settings.database_id),
            token_provider=token_provider,
            retry_policy=self.settings.retry_policy(),
        )
        self.codec = codec or Codec()
        self._executor = QueryExecutor(self._session, self.codec, page_size=self.settings.list_page_size)
        self._connected = False

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect to the server."""
        if self._connected:
            return
        try:
            await self._transport.connect()
        except ConnectionError:
            raise
        except Exception as e:
            raise ConnectionError(
                f"Failed to connect: {e}", address=getattr(self._transport, "address", None)
            ) from e
        self._connected = True
        logger.info("Connected", extra={"database": self._session.database})

    async def close(self) -> None:
        """Close the connection."""
        if self._connected:
            await self._transport.close()
            self._connected = False

    async def __aenter__(self) -> DocStoreClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def session(self) -> RpcSession:
        return self._session

    @property
    def executor(self) -> QueryExecutor:
        return self._executor

    @property
    def database_path(self) -> str:
        return self._session.database

    @property
    def documents_path(self) -> str:
        return self._session.documents_root

    def parent_path(self) -> ParentPathBuilder:
        """Builder for nested parent paths, starting at the documents root."""
        return ParentPathBuilder(self._session.documents_root)

    def document_path(
        self,
        collection_id: str,
        document_id: str,
        *,
        parent: str | ParentPathBuilder | None = None,
    ) -> str:
        root = str(parent) if parent is not None else self.documents_path
        return safe_document_path(root, collection_id, document_id)

    # ------------------------------------------------------------------
    # Point reads
    # ------------------------------------------------------------------

    async def get(
        self,
        collection_id: str,
        document_id: str,
        as_type: Any = None,
        *,
        parent: str | ParentPathBuilder | None = None,
    ) -> Any | None:
        """Fetch a document. Returns None if it does not exist."""
        path = self.document_path(collection_id, document_id, parent=parent)
        return await self._executor.get(path, as_type)

    async def get_by_path(self, path: str, as_type: Any = None) -> Any | None:
        return await self._executor.get(path, as_type)

    async def batch_get(
        self, paths: Sequence[str], as_type: Any = None
    ) -> dict[str, Any | None]:
        """Fetch several documents; missing ones map to None."""
        found: dict[str, Any | None] = {path: None for path in paths}
        async for path, item in self._executor.batch_get(paths, as_type):
            found[path] = item
        return found

    # ------------------------------------------------------------------
    # Single writes
    # ------------------------------------------------------------------

    async def _commit_one(self, operation: WriteOperation) -> WriteResult:
        request = CommitRequest(database=self._session.database, writes=[operation.to_write()])
        response = await self._session.call(Method.COMMIT, request, idempotent=operation.retry_safe)
        wire = response.write_results[0] if response.write_results else None
        logger.debug(
            "Committed write",
            extra={"kind": operation.kind.value, "document_path": operation.document_path},
        )
        return WriteResult(
            update_time=wire.update_time if wire else response.commit_time,
            transform_results=list(wire.transform_results) if wire else [],
            document_path=operation.document_path,
        )

    async def create(
        self,
        collection_id: str,
        obj: Any,
        *,
        document_id: str | None = None,
        parent: str | ParentPathBuilder | None = None,
        idempotency_key: str | None = None,
    ) -> WriteResult:
        """Create a document. Fails with PreconditionFailedError if it exists.

        A random 20-character id is generated when document_id is omitted;
        the result carries the final document path.
        """
        path = self.document_path(collection_id, document_id or generate_document_id(), parent=parent)
        operation = WriteOperation.create(path, self.codec.encode_fields(obj), idempotency_key=idempotency_key)
        return await self._commit_one(operation)

    async def update(
        self,
        collection_id: str,
        document_id: str,
        obj: Any,
        *,
        fields: Iterable[str] | None = None,
        transforms: Iterable[FieldTransform] = (),
        precondition: Precondition | None = None,
        parent: str | ParentPathBuilder | None = None,
    ) -> WriteResult:
        """Replace a document, or only the field paths listed in `fields`."""
        operation = WriteOperation.update(
            self.document_path(collection_id, document_id, parent=parent),
            self.codec.encode_fields(obj),
            mask=fields,
            transforms=transforms,
            precondition=precondition,
        )
        return await self._commit_one(operation)

    async def delete(
        self,
        collection_id: str,
        document_id: str,
        *,
        precondition: Precondition | None = None,
        parent: str | ParentPathBuilder | None = None,
    ) -> WriteResult:
        operation = WriteOperation.delete(
            self.document_path(collection_id, document_id, parent=parent), precondition=precondition
        )
        return await self._commit_one(operation)

    async def transform(
        self,
        collection_id: str,
        document_id: str,
        transforms: Iterable[FieldTransform],
        *,
        precondition: Precondition | None = None,
        parent: str | ParentPathBuilder | None = None,
    ) -> WriteResult:
        """Apply field transforms atomically; results hold the new values."""
        operation = WriteOperation.transform(
            self.document_path(collection_id, document_id, parent=parent),
            transforms,
            precondition=precondition,
        )
        return await self._commit_one(operation)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query(self, query: Query | QueryParams, as_type: Any = None) -> list[Any]:
        return await self._executor.query(query, as_type)

    def stream_query(self, query: Query | QueryParams, as_type: Any = None) -> AsyncIterator[Any]:
        return self._executor.stream_query(query, as_type)

    async def list_documents(
        self,
        collection_id: str,
        *,
        parent: str | None = None,
        page_size: int | None = None,
        page_token: str = "",
        as_type: Any = None,
    ) -> ListingPage:
        return await self._executor.list_documents(
            collection_id, parent=parent, page_size=page_size, page_token=page_token, as_type=as_type
        )

    def list_all(
        self,
        collection_id: str,
        *,
        parent: str | None = None,
        page_size: int | None = None,
        as_type: Any = None,
    ) -> AsyncIterator[Any]:
        return self._executor.list_all(collection_id, parent=parent, page_size=page_size, as_type=as_type)

    async def list_collection_ids(self, parent: str | None = None) -> list[str]:
        return await self._executor.list_collection_ids(parent)

    async def partition_query(
        self, query: Query | QueryParams, partition_count: int, *, page_size: int | None = None
    ) -> PartitionedQuery:
        return await self._executor.partition_query(query, partition_count, page_size=page_size)

    async def aggregate(
        self, query: Query | QueryParams, aggregations: Iterable[Aggregation]
    ) -> list[dict[str, Any]]:
        return await self._executor.aggregate(query, aggregations)

    # ------------------------------------------------------------------
    # Writers and transactions
    # ------------------------------------------------------------------

    def simple_batch_writer(self, options: SimpleBatchWriteOptions | None = None) -> SimpleBatchWriter:
        return SimpleBatchWriter(self._session, self.codec, options)

    def streaming_batch_writer(
        self, options: StreamingBatchWriteOptions | None = None
    ) -> StreamingBatchWriter:
        return StreamingBatchWriter(self._session, self.codec, options)

    async def begin_transaction(self, options: TransactionOptions | None = None) -> Transaction:
        return await begin_transaction(self._session, self.codec, self._executor, options)

    async def run_transaction(
        self,
        body: Callable[[Transaction], Awaitable[T]],
        options: TransactionOptions | None = None,
    ) -> tuple[T, TransactionResult]:
        """Run body in a transaction, re-running it on conflicts.

        Example:
            >>> async def transfer(tx):
            ...     src = await tx.get(src_path, Account)
            ...     tx.update("accounts", "src", {"balance": src.balance - 10}, fields=["balance"])
            >>> await db.run_transaction(transfer)
        """
        return await run_transaction(self._session, self.codec, self._executor, body, options)

    # ------------------------------------------------------------------
    # Change feeds and caches
    # ------------------------------------------------------------------

    def listen(
        self,
        targets: Iterable[ListenTarget],
        *,
        resume_tokens: dict[int, bytes | None] | None = None,
    ) -> AsyncIterator[ChangeEvent]:
        """Open a single change feed connection (no reconnects)."""
        return open_change_feed(self._session, targets, resume_tokens=resume_tokens)

    def listener(
        self,
        storage: ResumeStateStorage,
        params: ListenerParams | None = None,
        *,
        name: str = "listener",
    ) -> ChangeListener:
        """Resilient change listener; add targets, then start()."""
        params = params or ListenerParams(retry_delay=self.settings.listen_retry_delay)
        return ChangeListener(self._session, storage, params, name=name)

    def cache(
        self,
        backend: CacheBackend,
        config: CacheConfiguration,
        params: ListenerParams | None = None,
    ) -> CacheSynchronizer:
        """Cache synchronizer mirroring the configured collections into backend."""
        params = params or ListenerParams(retry_delay=self.settings.listen_retry_delay)
        return CacheSynchronizer(self._session, self.codec, backend, config, params)
