"""
Change-feed cache synchronizer.

Mirrors configured collections into a CacheBackend. Each collection gets its
own ChangeListener (and therefore its own state machine); events are applied
to the backend in arrival order and the backend doubles as resume-token
storage, so a durable backend resumes where the previous process stopped.

Invariants:
    - Only the synchronizer writes to the backend
    - A RESET (or an expired resume point) drops every cached document of the
      collection before the resync refills it
    - Preload failures are recorded; the collection still starts listening

How to change safely:
    - Keep _apply() free of awaits other than backend calls; event order is
      the listener's callback order
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from ..codec import Codec
from ..errors import ValidationError
from ..listener import (
    ChangeCallback,
    ChangeEvent,
    ChangeKind,
    ChangeListener,
    ListenerParams,
    ListenerState,
    ListenTarget,
    PreloadFn,
)
from ..protocol import Document, Method, RunQueryRequest
from ..query import Query, QueryParams, as_params
from ..rpc import RpcSession
from .backend import CacheBackend
from .configuration import CacheConfiguration, CollectionCacheConfig, PreloadPolicy
from .query_engine import LocalQueryEngine

logger = logging.getLogger(__name__)


class CacheSynchronizer:
    """Keeps a local backend consistent with the server.

    Args:
        session: RPC session
        codec: Codec used to decode cached reads
        backend: Local store (also holds resume tokens)
        config: Collections to mirror
        params: Listener options shared by every collection

    Example:
        >>> sync = client.cache(InMemoryCacheBackend(), config)
        >>> await sync.start()
        >>> await sync.wait_current()
        >>> users = await sync.query(Query("users").where(field("age").greater_than(30)), User)
        >>> await sync.shutdown()
    """

    def __init__(
        self,
        session: RpcSession,
        codec: Codec,
        backend: CacheBackend,
        config: CacheConfiguration,
        params: ListenerParams | None = None,
    ) -> None:
        if not len(config):
            raise ValidationError("Cache configuration has no collections")
        self._session = session
        self._codec = codec
        self._backend = backend
        self._config = config
        self._params = params or ListenerParams()
        self._engine = LocalQueryEngine()
        self._listeners: dict[str, ChangeListener] = {}
        self._collections: dict[str, CollectionCacheConfig] = {}
        for collection in config:
            path = collection.collection_path(session.documents_root)
            self._collections[path] = collection
        self._started = False

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def _path_for(self, collection_id: str, parent: str | None) -> str:
        return f"{parent or self._session.documents_root}/{collection_id}"

    def _listener_for(self, collection_id: str, parent: str | None = None) -> ChangeListener:
        path = self._path_for(collection_id, parent)
        if path not in self._listeners:
            raise ValidationError(f"Collection is not cached: {path}", field_name="collection_id")
        return self._listeners[path]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Preload (per policy) and start listening on every collection."""
        if self._started:
            return
        self._started = True
        for path, collection in self._collections.items():
            listener = ChangeListener(
                self._session, self._backend, self._params, name=f"cache:{path}"
            )
            listener.add_target(
                ListenTarget(
                    collection.target_id,
                    query=Query(collection.collection_id, parent=collection.parent),
                )
            )
            self._listeners[path] = listener
            initial_preload = await self._should_preload(collection, path)
            preload = None
            if collection.preload is not PreloadPolicy.NEVER:
                preload = self._preloader(collection, path)
            await listener.start(
                self._applier(path),
                preload=preload,
                initial_preload=initial_preload,
            )
            logger.info(
                "Cache collection started",
                extra={
                    "collection_path": path,
                    "target_id": collection.target_id,
                    "preload": collection.preload.value,
                    "initial_preload": initial_preload,
                },
            )

    async def shutdown(self) -> None:
        """Stop every listener and close the backend."""
        for listener in self._listeners.values():
            await listener.shutdown()
        await self._backend.close()
        logger.info("Cache synchronizer shut down", extra={"collections": len(self._listeners)})

    async def __aenter__(self) -> CacheSynchronizer:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    async def wait_current(self, timeout: float | None = None) -> None:
        """Wait until every collection caught up with the server."""
        for listener in self._listeners.values():
            await listener.wait_current(timeout)

    def state(self, collection_id: str, parent: str | None = None) -> ListenerState:
        return self._listener_for(collection_id, parent).state

    def last_error(self, collection_id: str, parent: str | None = None) -> Exception | None:
        """Most recent listener or preload failure of a collection."""
        listener = self._listener_for(collection_id, parent)
        return listener.last_error or listener.preload_error

    # ------------------------------------------------------------------
    # Preload and event application
    # ------------------------------------------------------------------

    async def _should_preload(self, collection: CollectionCacheConfig, path: str) -> bool:
        if collection.preload is PreloadPolicy.ALWAYS:
            return True
        if collection.preload is PreloadPolicy.IF_EMPTY:
            return not await self._backend.scan(path)
        return False

    def _preloader(self, collection: CollectionCacheConfig, path: str) -> PreloadFn:
        async def preload() -> datetime | None:
            params = Query(collection.collection_id, parent=collection.parent).params
            request = RunQueryRequest(
                parent=params.parent or self._session.documents_root,
                structured_query=params.to_structured_query(),
            )
            seen: set[str] = set()
            read_time: datetime | None = None
            responses = self._session.stream(Method.RUN_QUERY, request)
            try:
                async for response in responses:
                    if response.read_time is not None:
                        read_time = response.read_time
                    if response.document is not None:
                        await self._backend.put(response.document.name, response.document)
                        seen.add(response.document.name)
            finally:
                await responses.aclose()

            stale = [d.name for d in await self._backend.scan(path) if d.name not in seen]
            for name in stale:
                await self._backend.remove(name)
            logger.info(
                "Preloaded cache collection",
                extra={"collection_path": path, "documents": len(seen), "stale_removed": len(stale)},
            )
            return read_time

        return preload

    def _applier(self, path: str) -> ChangeCallback:
        async def apply(event: ChangeEvent) -> None:
            await self._apply(path, event)

        return apply

    async def _apply(self, path: str, event: ChangeEvent) -> None:
        if event.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
            await self._backend.put(event.document_path, event.document)
        elif event.kind is ChangeKind.REMOVED:
            await self._backend.remove(event.document_path)
        elif event.kind is ChangeKind.RESET:
            removed = await self._backend.remove_collection(path)
            logger.warning(
                "Cache collection reset", extra={"collection_path": path, "documents": removed}
            )
        elif event.kind is ChangeKind.CURRENT:
            logger.debug("Cache collection current", extra={"collection_path": path})

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    def _decode(self, document: Document, as_type: Any) -> Any:
        if as_type is None:
            return document
        return self._codec.decode_document(document, as_type)

    async def get(self, document_path: str, as_type: Any = None) -> Any | None:
        """Cached snapshot of a document, or None when not cached."""
        document = await self._backend.get(document_path)
        return self._decode(document, as_type) if document is not None else None

    async def list_all(
        self, collection_id: str, *, parent: str | None = None, as_type: Any = None
    ) -> list[Any]:
        """Every cached document of a collection, in path order."""
        path = self._path_for(collection_id, parent)
        return [self._decode(d, as_type) for d in await self._backend.scan(path)]

    async def query(self, query: Query | QueryParams, as_type: Any = None) -> list[Any] | None:
        """Evaluate a query against the cache.

        Returns:
            Matching documents, or None when the query cannot be answered
            locally (uncached collection, vector search, all-descendants)
        """
        params = as_params(query).validate()
        if not self._engine.supports(params):
            return None
        path = self._path_for(params.collection_id, params.parent)
        if path not in self._collections:
            return None
        documents = self._engine.run(await self._backend.scan(path), params)
        return [self._decode(d, as_type) for d in documents]

    async def invalidate_all(self) -> None:
        """Drop every cached document and resume token.

        Running listeners keep applying new events; a restart is needed to
        refill the cache from scratch.
        """
        for path, collection in self._collections.items():
            await self._backend.remove_collection(path)
            await self._backend.update_resume_token(collection.target_id, None)
        logger.info("Cache invalidated", extra={"collections": len(self._collections)})
