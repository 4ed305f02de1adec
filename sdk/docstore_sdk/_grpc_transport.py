"""
Internal gRPC transport for the DocStore SDK.

This module provides the low-level gRPC communication layer. Methods are
invoked through generic channel callables on the google.firestore.v1
service; requests are converted to their generated protobuf messages by
docstore_sdk._wire and serialized by protobuf itself.

It is internal to the SDK and should not be used directly by users.
Users should use DocStoreClient instead, which provides a clean Python API.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, AsyncIterator

import grpc
from grpc import aio as grpc_aio

from . import _generated, _wire
from .errors import ConnectionError, StatusCode, error_from_status
from .protocol import Method

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = _generated.SERVICE
DEFAULT_MAX_MESSAGE_SIZE = 50 * 1024 * 1024


def _status_of(error: grpc.RpcError) -> StatusCode:
    code = error.code() if hasattr(error, "code") else None
    if code is None:
        return StatusCode.UNKNOWN
    return StatusCode(code.value[0])


def _details_of(error: grpc.RpcError) -> str:
    return error.details() if hasattr(error, "details") else str(error)


async def _converted(requests: AsyncIterator[Any], convert: Callable[[Any], Any]) -> AsyncIterator[Any]:
    async for request in requests:
        yield convert(request)


class GrpcTransport:
    """gRPC implementation of the Transport protocol.

    Manages channel lifecycle and maps grpc status codes into the SDK error
    taxonomy.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 50051,
        *,
        secure: bool = False,
        credentials: grpc.ChannelCredentials | None = None,
        service: str = DEFAULT_SERVICE,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ) -> None:
        """Initialize the gRPC transport.

        Args:
            host: Server hostname
            port: Server port
            secure: Whether to use TLS
            credentials: Optional TLS credentials
            service: Fully qualified service name
            max_message_size: Send/receive message limit in bytes
        """
        self._host = host
        self._port = port
        self._secure = secure
        self._credentials = credentials
        self._service = service
        self._max_message_size = max_message_size
        self._channel: grpc_aio.Channel | None = None

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    async def connect(self) -> None:
        """Establish connection to the server."""
        if self._channel is not None:
            return

        options = [
            ("grpc.max_send_message_length", self._max_message_size),
            ("grpc.max_receive_message_length", self._max_message_size),
        ]
        try:
            if self._secure:
                self._channel = grpc_aio.secure_channel(
                    self.address,
                    self._credentials or grpc.ssl_channel_credentials(),
                    options=options,
                )
            else:
                self._channel = grpc_aio.insecure_channel(self.address, options=options)
        except Exception as e:
            raise ConnectionError(f"Failed to open channel: {e}", address=self.address) from e

        logger.debug("Connected to document service", extra={"address": self.address})

    async def close(self) -> None:
        """Close the connection."""
        if self._channel:
            await self._channel.close()
            self._channel = None
            logger.debug("Disconnected from document service", extra={"address": self.address})

    async def __aenter__(self) -> GrpcTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _ensure_connected(self) -> grpc_aio.Channel:
        """Ensure we're connected and return the channel."""
        if self._channel is None:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._channel

    def _path(self, method: str) -> str:
        return f"/{self._service}/{Method(method).value}"

    def _callable(self, kind: str, method: str) -> tuple[Any, _wire.MethodCodec]:
        channel = self._ensure_connected()
        codec = _wire.METHODS[Method(method)]
        factory = getattr(channel, kind)
        return (
            factory(
                self._path(method),
                request_serializer=codec.request_type.SerializeToString,
                response_deserializer=codec.response_type.FromString,
            ),
            codec,
        )

    @staticmethod
    def _metadata(token: str | None) -> tuple[tuple[str, str], ...] | None:
        if not token:
            return None
        return (("authorization", f"Bearer {token}"),)

    async def unary(self, method: str, request: Any, *, token: str | None = None) -> Any:
        call, codec = self._callable("unary_unary", method)
        try:
            response = await call(codec.request_to_proto(request), metadata=self._metadata(token))
        except grpc.RpcError as e:
            raise error_from_status(_status_of(e), _details_of(e)) from e
        return codec.response_from_proto(response)

    async def server_stream(
        self, method: str, request: Any, *, token: str | None = None
    ) -> AsyncIterator[Any]:
        factory, codec = self._callable("unary_stream", method)
        call = factory(codec.request_to_proto(request), metadata=self._metadata(token))
        try:
            async for response in call:
                yield codec.response_from_proto(response)
        except grpc.RpcError as e:
            raise error_from_status(_status_of(e), _details_of(e)) from e
        finally:
            call.cancel()

    async def bidi_stream(
        self, method: str, requests: AsyncIterator[Any], *, token: str | None = None
    ) -> AsyncIterator[Any]:
        factory, codec = self._callable("stream_stream", method)
        call = factory(_converted(requests, codec.request_to_proto), metadata=self._metadata(token))
        try:
            async for response in call:
                yield codec.response_from_proto(response)
        except grpc.RpcError as e:
            raise error_from_status(_status_of(e), _details_of(e)) from e
        finally:
            call.cancel()
