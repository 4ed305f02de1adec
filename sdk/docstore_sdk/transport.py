"""
Transport abstraction.

The SDK never opens sockets itself. Everything it sends goes through a
Transport, which moves protocol messages (docstore_sdk.protocol) to the
service and back. GrpcTransport is the production implementation; tests use
an in-memory fake.

Invariants:
    - Transports raise classified DocStoreErrors (see errors.error_from_status),
      never framework-specific exceptions
    - Closing a returned stream iterator releases the underlying call
    - Tokens are passed per call; transports do not cache credentials

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, AsyncIterator, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """Protocol for RPC transports."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish the underlying channel. Idempotent."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying channel."""
        ...

    @abstractmethod
    async def unary(self, method: str, request: Any, *, token: str | None = None) -> Any:
        """Send one request and return one response.

        Args:
            method: RPC method name (protocol.Method)
            request: Request message
            token: Bearer token, if any

        Raises:
            DocStoreError: Classified failure
        """
        ...

    @abstractmethod
    def server_stream(
        self, method: str, request: Any, *, token: str | None = None
    ) -> AsyncIterator[Any]:
        """Send one request and iterate the response stream."""
        ...

    @abstractmethod
    def bidi_stream(
        self, method: str, requests: AsyncIterator[Any], *, token: str | None = None
    ) -> AsyncIterator[Any]:
        """Stream requests and iterate the response stream concurrently."""
        ...


@runtime_checkable
class TokenProvider(Protocol):
    """Source of bearer tokens for outgoing calls."""

    @abstractmethod
    async def get_token(self) -> str | None:
        """Return a currently valid token, or None for unauthenticated calls."""
        ...


class StaticTokenProvider:
    """TokenProvider returning a fixed token."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    async def get_token(self) -> str | None:
        return self._token
