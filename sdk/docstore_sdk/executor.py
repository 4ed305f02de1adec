"""
Query execution.

QueryExecutor turns query descriptors into RPCs and exposes the execution
modes: point lookups, full materialization, lazy streaming, paginated
listing, partitioned scans and aggregation.

Invariants:
    - Streaming never silently truncates: a broken stream raises
    - Materialized reads are retried as a whole on transient failures;
      streams are not retried
    - Partitions cover the result set exactly once
    - Abandoning any returned async iterator closes its RPC stream

How to change safely:
    - Keep decoding at the edges (_decode); RPC helpers deal in Documents
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from .codec import Codec
from .errors import StreamBrokenError, TransientTransportError, ValidationError
from .field_path import DOCUMENT_NAME_FIELD
from .protocol import (
    BatchGetDocumentsRequest,
    Document,
    ListCollectionIdsRequest,
    ListDocumentsRequest,
    Method,
    PartitionQueryRequest,
    RunAggregationQueryRequest,
    RunQueryRequest,
)
from .query import (
    Aggregation,
    Cursor,
    Direction,
    Order,
    Query,
    QueryParams,
    StructuredAggregationQuery,
    as_params,
)
from .retry import NO_RETRY, retry_async
from .rpc import RpcSession

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


@dataclass(frozen=True)
class ListingPage:
    """One page of a collection listing.

    Attributes:
        documents: Page contents (decoded when a target type was given)
        next_page_token: Opaque continuation token; empty on the last page
    """

    documents: list[Any]
    next_page_token: str

    @property
    def has_more(self) -> bool:
        return bool(self.next_page_token)


@dataclass(frozen=True)
class Partition:
    """Half-open slice [start_at, end_at) of a partitioned scan.

    None boundaries are unbounded.
    """

    start_at: Cursor | None
    end_at: Cursor | None


class QueryExecutor:
    """Executes reads against a session.

    Args:
        session: RPC session
        codec: Codec used for decoding into target types
        page_size: Default listing page size
    """

    def __init__(self, session: RpcSession, codec: Codec, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self._session = session
        self._codec = codec
        self._page_size = page_size

    @property
    def session(self) -> RpcSession:
        return self._session

    def _parent(self, params: QueryParams) -> str:
        return params.parent or self._session.documents_root

    def _decode(self, document: Document, as_type: Any) -> Any:
        if as_type is None:
            return document
        return self._codec.decode_document(document, as_type)

    # ------------------------------------------------------------------
    # Point lookups
    # ------------------------------------------------------------------

    async def batch_get(
        self,
        paths: Sequence[str],
        as_type: Any = None,
        *,
        transaction: bytes | None = None,
    ) -> AsyncIterator[tuple[str, Any | None]]:
        """Stream (path, document or None) pairs for the requested paths.

        Pairs arrive in server order, not request order.
        """
        if not paths:
            return
        request = BatchGetDocumentsRequest(
            database=self._session.database,
            documents=list(paths),
            transaction=transaction,
        )
        async for response in self._session.stream(Method.BATCH_GET_DOCUMENTS, request):
            if response.found is not None:
                yield response.found.name, self._decode(response.found, as_type)
            elif response.missing is not None:
                yield response.missing, None

    async def get(self, path: str, as_type: Any = None, *, transaction: bytes | None = None) -> Any | None:
        """Fetch one document by path. Returns None if it does not exist."""

        async def fetch() -> Any | None:
            found = None
            async for _, item in self.batch_get([path], as_type, transaction=transaction):
                found = item
            return found

        policy = NO_RETRY if transaction else self._session.retry_policy
        return await retry_async(fetch, policy, description="get")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def stream_query(
        self,
        query: Query | QueryParams,
        as_type: Any = None,
        *,
        transaction: bytes | None = None,
    ) -> AsyncIterator[Any]:
        """Lazily stream query results.

        Raises:
            StreamBrokenError: If the stream fails transiently mid-way
            DocStoreError: Any other classified failure
        """
        params = as_params(query)
        request = RunQueryRequest(
            parent=self._parent(params),
            structured_query=params.to_structured_query(),
            transaction=transaction,
        )
        received = 0
        responses = self._session.stream(Method.RUN_QUERY, request)
        try:
            async for response in responses:
                if response.document is None:
                    continue
                received += 1
                yield self._decode(response.document, as_type)
        except TransientTransportError as e:
            raise StreamBrokenError(
                f"Query stream broke after {received} results: {e.message}", status=e.status
            ) from e
        finally:
            await responses.aclose()

    async def query(
        self,
        query: Query | QueryParams,
        as_type: Any = None,
        *,
        transaction: bytes | None = None,
    ) -> list[Any]:
        """Run a query and buffer every result."""

        async def collect() -> list[Any]:
            return [item async for item in self.stream_query(query, as_type, transaction=transaction)]

        policy = NO_RETRY if transaction else self._session.retry_policy
        return await retry_async(collect, policy, description="query")

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_documents(
        self,
        collection_id: str,
        *,
        parent: str | None = None,
        page_size: int | None = None,
        page_token: str = "",
        order_by: str = "",
        as_type: Any = None,
    ) -> ListingPage:
        """Fetch a single page of a collection."""
        size = page_size or self._page_size
        if size < 1:
            raise ValidationError("page_size must be positive", field_name="page_size")
        request = ListDocumentsRequest(
            parent=parent or self._session.documents_root,
            collection_id=collection_id,
            page_size=size,
            page_token=page_token,
            order_by=order_by,
        )
        response = await self._session.call(Method.LIST_DOCUMENTS, request)
        return ListingPage(
            documents=[self._decode(d, as_type) for d in response.documents],
            next_page_token=response.next_page_token,
        )

    async def list_pages(
        self,
        collection_id: str,
        *,
        parent: str | None = None,
        page_size: int | None = None,
        order_by: str = "",
        as_type: Any = None,
    ) -> AsyncIterator[ListingPage]:
        """Iterate pages until the continuation token runs out."""
        token = ""
        while True:
            page = await self.list_documents(
                collection_id,
                parent=parent,
                page_size=page_size,
                page_token=token,
                order_by=order_by,
                as_type=as_type,
            )
            yield page
            if not page.has_more:
                return
            token = page.next_page_token

    async def list_all(
        self,
        collection_id: str,
        *,
        parent: str | None = None,
        page_size: int | None = None,
        order_by: str = "",
        as_type: Any = None,
    ) -> AsyncIterator[Any]:
        """Iterate every document of a collection, page by page."""
        async for page in self.list_pages(
            collection_id, parent=parent, page_size=page_size, order_by=order_by, as_type=as_type
        ):
            for document in page.documents:
                yield document

    async def list_collection_ids(self, parent: str | None = None) -> list[str]:
        """Names of the collections directly under parent."""
        ids: list[str] = []
        token = ""
        while True:
            request = ListCollectionIdsRequest(
                parent=parent or self._session.documents_root,
                page_size=self._page_size,
                page_token=token,
            )
            response = await self._session.call(Method.LIST_COLLECTION_IDS, request)
            ids.extend(response.collection_ids)
            if not response.next_page_token:
                return ids
            token = response.next_page_token

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    async def partition_query(
        self,
        query: Query | QueryParams,
        partition_count: int,
        *,
        page_size: int | None = None,
    ) -> PartitionedQuery:
        """Split a query into disjoint partitions that can be scanned in parallel.

        Args:
            query: Query without cursors, limit or offset
            partition_count: Desired number of partitions (the server may return fewer)
            page_size: Split points fetched per PartitionQuery page

        Raises:
            ValidationError: If the query cannot be partitioned
        """
        if partition_count < 1:
            raise ValidationError("partition_count must be positive", field_name="partition_count")
        params = as_params(query)
        if params.start_at or params.end_at or params.limit is not None or params.offset:
            raise ValidationError("Partitioned queries cannot have cursors, limit or offset")
        if params.find_nearest is not None:
            raise ValidationError("Partitioned queries cannot use find_nearest")
        name_order = (Order(DOCUMENT_NAME_FIELD, Direction.ASCENDING),)
        if params.order_by and params.order_by != name_order:
            raise ValidationError("Partitioned queries are ordered by document name only")
        params = dataclasses.replace(params, order_by=name_order)

        cursors: list[Cursor] = []
        token = ""
        while True:
            request = PartitionQueryRequest(
                parent=self._parent(params),
                structured_query=params.to_structured_query(),
                partition_count=partition_count,
                page_size=page_size or 0,
                page_token=token,
            )
            response = await self._session.call(Method.PARTITION_QUERY, request)
            cursors.extend(response.partitions)
            if not response.next_page_token:
                break
            token = response.next_page_token

        bounds: list[Cursor | None] = [None]
        bounds.extend(Cursor(c.values, before=True) for c in cursors)
        bounds.append(None)
        partitions = [Partition(start, end) for start, end in zip(bounds, bounds[1:])]
        logger.debug(
            "Partitioned query",
            extra={"requested": partition_count, "partitions": len(partitions)},
        )
        return PartitionedQuery(self, params, partitions)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def aggregate(
        self,
        query: Query | QueryParams,
        aggregations: Iterable[Aggregation],
        *,
        transaction: bytes | None = None,
    ) -> list[dict[str, Any]]:
        """Compute aggregates. Returns one alias -> value record per result."""
        aggregations = tuple(aggregations)
        if not aggregations:
            raise ValidationError("aggregate requires at least one aggregation")
        aliases = [a.alias for a in aggregations]
        if len(set(aliases)) != len(aliases):
            raise ValidationError("Aggregation aliases must be unique", errors=aliases)
        params = as_params(query)
        request = RunAggregationQueryRequest(
            parent=self._parent(params),
            structured_aggregation_query=StructuredAggregationQuery(
                query=params.to_structured_query(), aggregations=aggregations
            ),
            transaction=transaction,
        )

        async def collect() -> list[dict[str, Any]]:
            results = []
            async for response in self._session.stream(Method.RUN_AGGREGATION_QUERY, request):
                if response.result is None:
                    continue
                results.append(
                    {
                        alias: self._codec.decode(value)
                        for alias, value in response.result.aggregate_fields.items()
                    }
                )
            return results

        policy = NO_RETRY if transaction else self._session.retry_policy
        return await retry_async(collect, policy, description="aggregate")


class PartitionedQuery:
    """A query split into partitions, each streamable independently."""

    def __init__(self, executor: QueryExecutor, params: QueryParams, partitions: list[Partition]) -> None:
        self._executor = executor
        self._params = params
        self.partitions = partitions

    def partition_params(self, partition: Partition) -> QueryParams:
        return dataclasses.replace(
            self._params, start_at=partition.start_at, end_at=partition.end_at
        )

    def stream(self, partition: Partition, as_type: Any = None) -> AsyncIterator[Any]:
        """Stream the results of one partition."""
        return self._executor.stream_query(self.partition_params(partition), as_type)

    def streams(self, as_type: Any = None) -> list[AsyncIterator[Any]]:
        """One lazy stream per partition, in partition order."""
        return [self.stream(p, as_type) for p in self.partitions]

    async def stream_all(self, as_type: Any = None, *, parallelism: int = 4) -> AsyncIterator[Any]:
        """Scan all partitions concurrently and merge their results.

        Results are interleaved across partitions; order is not defined.
        The first partition failure cancels the others and is raised.
        """
        if parallelism < 1:
            raise ValidationError("parallelism must be positive", field_name="parallelism")
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1000)
        gate = asyncio.Semaphore(parallelism)

        async def pump(partition: Partition) -> None:
            async with gate:
                async for item in self.stream(partition, as_type):
                    await queue.put(item)

        async def run() -> None:
            tasks = [asyncio.create_task(pump(p)) for p in self.partitions]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for t in tasks:
                    t.cancel()
                raise

        task = asyncio.create_task(run())
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                while not queue.empty():
                    yield queue.get_nowait()
                task.result()
                return
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
