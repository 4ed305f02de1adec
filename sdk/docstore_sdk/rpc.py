"""
RPC session: the explicit connection handle shared by SDK components.

A session binds a Transport to one database and a token provider, and owns
the retry policy for unary calls. Executors, writers, transactions and
listeners all receive the session from DocStoreClient; nothing in the SDK
reaches for a process-wide connection.

Invariants:
    - Unary calls are retried only when the caller marks them idempotent
    - Stream iterators close their underlying call when abandoned
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from .paths import documents_path
from .retry import NO_RETRY, RetryPolicy, retry_async
from .transport import TokenProvider, Transport

logger = logging.getLogger(__name__)


class RpcSession:
    """Transport + database binding used by all SDK components.

    Args:
        transport: Transport implementation
        database: Database path ("projects/<p>/databases/<d>")
        token_provider: Optional source of bearer tokens
        retry_policy: Retry schedule for idempotent unary calls
    """

    def __init__(
        self,
        transport: Transport,
        database: str,
        *,
        token_provider: TokenProvider | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._transport = transport
        self._database = database
        self._documents = documents_path(database)
        self._token_provider = token_provider
        self._retry_policy = retry_policy or RetryPolicy()

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def database(self) -> str:
        return self._database

    @property
    def documents_root(self) -> str:
        return self._documents

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def token(self) -> str | None:
        if self._token_provider is None:
            return None
        return await self._token_provider.get_token()

    async def call(
        self,
        method: str,
        request: Any,
        *,
        idempotent: bool = True,
        retry_policy: RetryPolicy | None = None,
    ) -> Any:
        """Issue a unary call.

        Args:
            method: RPC method name
            request: Request message
            idempotent: Whether transient failures may be retried
            retry_policy: Override of the session policy

        Raises:
            DocStoreError: Classified failure after retries
        """
        policy = (retry_policy or self._retry_policy) if idempotent else NO_RETRY

        async def attempt() -> Any:
            return await self._transport.unary(method, request, token=await self.token())

        return await retry_async(attempt, policy, description=str(method))

    async def stream(self, method: str, request: Any) -> AsyncIterator[Any]:
        """Issue a server-streaming call. Not retried."""
        responses = self._transport.server_stream(method, request, token=await self.token())
        try:
            async for response in responses:
                yield response
        finally:
            await _aclose(responses)

    async def bidi(self, method: str, requests: AsyncIterator[Any]) -> AsyncIterator[Any]:
        """Issue a bidirectional streaming call. Not retried."""
        responses = self._transport.bidi_stream(method, requests, token=await self.token())
        try:
            async for response in responses:
                yield response
        finally:
            await _aclose(responses)


async def _aclose(iterator: AsyncIterator[Any]) -> None:
    close = getattr(iterator, "aclose", None)
    if close is not None:
        await close()
