"""
Batched writes.

Two writers share WriteBatch as the caller-owned accumulator:

- SimpleBatchWriter: one blocking BatchWrite RPC per flush. Outcomes are
  reported per item, index-aligned with the batch. Transient per-item
  failures are re-sent (only those items) when the item is retry-safe.
- StreamingBatchWriter: a long-lived bidirectional Write stream. write()
  returns the batch's sequence position immediately; per-batch reports arrive
  on responses(); finish() drains the stream.

Invariants:
    - Items of one batch are applied independently; one failure never blocks
      its siblings
    - A batch is written at most once; create a new batch after each flush
    - finish() returns only when every submitted batch has been acknowledged
      or reported failed

How to change safely:
    - Outcome correlation is by position only; never match on document path
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .codec import Codec
from .errors import DocStoreError, StreamBrokenError, ValidationError, error_from_status
from .protocol import BatchWriteRequest, Method, Status, WriteRequest
from .protocol import WriteResult as WireWriteResult
from .retry import RetryPolicy
from .rpc import RpcSession
from .writes import WriteAccumulator, WriteOperation, WriteOutcome, WriteResult

logger = logging.getLogger(__name__)

_CLOSE = object()
_END = object()


class WriteBatch(WriteAccumulator):
    """Ordered write operations flushed together.

    Owned by the caller; becomes read-only once handed to a writer.
    """

    def __init__(self, codec: Codec, documents_root: str) -> None:
        super().__init__(codec, documents_root)
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def _check_open(self) -> None:
        if self._sealed:
            raise ValidationError("Batch was already written; create a new batch")

    def _seal(self) -> tuple[WriteOperation, ...]:
        self._check_open()
        self._sealed = True
        return self.operations


@dataclass
class BatchWriteResponse:
    """Report for one flushed batch.

    Attributes:
        position: Sequence number of the batch within its writer
        outcomes: Per-item outcomes, index-aligned with the batch
        commit_time: Commit time when the whole batch was acknowledged together
        error: Batch-level failure (streaming writer only)
    """

    position: int
    outcomes: list[WriteOutcome] = field(default_factory=list)
    commit_time: datetime | None = None
    error: DocStoreError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(o.ok for o in self.outcomes)

    @property
    def failures(self) -> list[WriteOutcome]:
        return [o for o in self.outcomes if not o.ok]


def _result(index: int, operation: WriteOperation, wire: WireWriteResult | None) -> WriteOutcome:
    wire = wire or WireWriteResult()
    return WriteOutcome(
        index=index,
        document_path=operation.document_path,
        result=WriteResult(
            update_time=wire.update_time,
            transform_results=list(wire.transform_results),
            document_path=operation.document_path,
        ),
    )


@dataclass(frozen=True)
class SimpleBatchWriteOptions:
    """Options for SimpleBatchWriter.

    Attributes:
        retry_policy: Schedule for re-sending transient per-item failures;
            defaults to the session policy
        labels: Labels attached to every BatchWrite request
    """

    retry_policy: RetryPolicy | None = None
    labels: Mapping[str, str] = field(default_factory=dict)


class SimpleBatchWriter:
    """Flushes each batch with a single BatchWrite RPC.

    Example:
        >>> writer = client.simple_batch_writer()
        >>> batch = writer.new_batch()
        >>> batch.create("users", {"name": "a"}, document_id="a")
        >>> response = await writer.write(batch)
        >>> [o.ok for o in response.outcomes]
        [True]
    """

    def __init__(
        self,
        session: RpcSession,
        codec: Codec,
        options: SimpleBatchWriteOptions | None = None,
    ) -> None:
        self._session = session
        self._codec = codec
        self._options = options or SimpleBatchWriteOptions()
        self._policy = self._options.retry_policy or session.retry_policy
        self._position = 0

    def new_batch(self) -> WriteBatch:
        return WriteBatch(self._codec, self._session.documents_root)

    async def write(self, batch: WriteBatch) -> BatchWriteResponse:
        """Flush a batch and wait for per-item outcomes.

        Raises:
            ValidationError: If the batch was already written
            DocStoreError: If the first RPC fails. Per-item failures, and a
                failed re-send of transient items, are reported in the
                response instead
        """
        operations = batch._seal()
        position = self._position
        self._position += 1

        outcomes: list[WriteOutcome | None] = [None] * len(operations)
        pending = list(range(len(operations)))
        attempt = 1
        while pending:
            request = BatchWriteRequest(
                database=self._session.database,
                writes=[operations[i].to_write() for i in pending],
                labels=dict(self._options.labels),
            )
            try:
                response = await self._session.call(
                    Method.BATCH_WRITE,
                    request,
                    idempotent=all(operations[i].retry_safe for i in pending),
                    retry_policy=self._policy,
                )
            except DocStoreError as e:
                if attempt == 1:
                    raise
                # Earlier rounds already committed; only the re-sent items failed.
                logger.warning(
                    "Re-send of batch write items failed",
                    extra={"position": position, "items": pending, "error": str(e)},
                    exc_info=True,
                )
                for index in pending:
                    outcomes[index] = WriteOutcome(index, operations[index].document_path, error=e)
                break

            retry: list[int] = []
            for slot, index in enumerate(pending):
                operation = operations[index]
                status = response.status[slot] if slot < len(response.status) else Status()
                if status.ok:
                    wire = response.write_results[slot] if slot < len(response.write_results) else None
                    outcomes[index] = _result(index, operation, wire)
                    continue
                error = error_from_status(
                    status.code, status.message, resource=operation.document_path, index=index
                )
                if error.retryable and operation.retry_safe and attempt < self._policy.max_attempts:
                    retry.append(index)
                else:
                    outcomes[index] = WriteOutcome(index, operation.document_path, error=error)

            if retry:
                delay = self._policy.backoff(attempt)
                logger.warning(
                    "Re-sending transient batch write failures",
                    extra={"position": position, "items": retry, "attempt": attempt, "delay_s": delay},
                )
                attempt += 1
                await asyncio.sleep(delay)
            pending = retry

        report = BatchWriteResponse(position=position, outcomes=[o for o in outcomes if o is not None])
        logger.debug(
            "Batch written",
            extra={"position": position, "items": len(operations), "failed": len(report.failures)},
        )
        return report


@dataclass(frozen=True)
class StreamingBatchWriteOptions:
    """Options for StreamingBatchWriter.

    Attributes:
        labels: Labels attached to every Write request
    """

    labels: Mapping[str, str] = field(default_factory=dict)


class StreamingBatchWriter:
    """Writes batches over a long-lived bidirectional stream.

    Use as an async context manager, or call start() and finish() explicitly.

    Example:
        >>> async with client.streaming_batch_writer() as writer:
        ...     batch = writer.new_batch()
        ...     batch.delete("users", "u1")
        ...     position = await writer.write(batch)
        >>> # reports are available on writer.responses() until finish()
    """

    def __init__(
        self,
        session: RpcSession,
        codec: Codec,
        options: StreamingBatchWriteOptions | None = None,
    ) -> None:
        self._session = session
        self._codec = codec
        self._options = options or StreamingBatchWriteOptions()
        self._outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._reports: asyncio.Queue[Any] = asyncio.Queue()
        self._in_flight: collections.deque[tuple[int, tuple[WriteOperation, ...]]] = collections.deque()
        self._ready = asyncio.Event()
        self._reader: asyncio.Task[None] | None = None
        self._stream_id = ""
        self._stream_token: bytes | None = None
        self._position = 0
        self._failure: DocStoreError | None = None
        self._finishing = False

    @property
    def stream_id(self) -> str:
        return self._stream_id

    def new_batch(self) -> WriteBatch:
        return WriteBatch(self._codec, self._session.documents_root)

    async def start(self) -> None:
        """Open the stream and complete the handshake."""
        if self._reader is not None:
            return
        self._reader = asyncio.create_task(self._read_loop())
        await self._ready.wait()
        if self._failure is not None:
            raise self._failure

    async def __aenter__(self) -> StreamingBatchWriter:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.finish()

    async def _requests(self) -> AsyncIterator[WriteRequest]:
        # Handshake: no stream id and no writes
        yield WriteRequest(database=self._session.database, labels=dict(self._options.labels))
        while True:
            request = await self._outbox.get()
            if request is _CLOSE:
                return
            yield request

    async def _read_loop(self) -> None:
        error: DocStoreError | None = None
        stream = self._session.bidi(Method.WRITE, self._requests())
        try:
            async for response in stream:
                if not self._ready.is_set():
                    self._stream_id = response.stream_id
                    self._stream_token = response.stream_token
                    self._ready.set()
                    logger.debug("Write stream open", extra={"stream_id": self._stream_id})
                    continue
                self._stream_token = response.stream_token or self._stream_token
                if not self._in_flight:
                    logger.warning("Unexpected write response with nothing in flight")
                    continue
                position, operations = self._in_flight.popleft()
                results = response.write_results
                outcomes = [
                    _result(i, op, results[i] if i < len(results) else None)
                    for i, op in enumerate(operations)
                ]
                await self._reports.put(
                    BatchWriteResponse(position, outcomes, commit_time=response.commit_time)
                )
        except DocStoreError as e:
            error = e
            logger.error(
                "Write stream failed",
                extra={"stream_id": self._stream_id, "error_code": e.code, "in_flight": len(self._in_flight)},
            )
        finally:
            await stream.aclose()
            self._fail_in_flight(error)
            self._ready.set()
            await self._reports.put(_END)

    def _fail_in_flight(self, error: DocStoreError | None) -> None:
        if error is None and not self._in_flight:
            return
        if error is None:
            error = StreamBrokenError("Write stream closed before acknowledging all batches")
        self._failure = error
        first = True
        while self._in_flight:
            position, operations = self._in_flight.popleft()
            batch_error = error if first else StreamBrokenError(
                f"Write stream closed by an earlier failure: {error.message}"
            )
            first = False
            self._reports.put_nowait(
                BatchWriteResponse(
                    position,
                    [WriteOutcome(i, op.document_path, error=batch_error) for i, op in enumerate(operations)],
                    error=batch_error,
                )
            )

    async def write(self, batch: WriteBatch) -> int:
        """Submit a batch. Returns its sequence position without waiting.

        Raises:
            ValidationError: If the batch was already written or the writer
                is finishing
            DocStoreError: If the stream has already failed
        """
        if self._finishing:
            raise ValidationError("Writer is finishing; no more batches accepted")
        await self.start()
        if self._failure is not None or (self._reader is not None and self._reader.done()):
            raise self._failure or StreamBrokenError("Write stream is closed")
        operations = batch._seal()
        position = self._position
        self._position += 1
        self._in_flight.append((position, operations))
        await self._outbox.put(
            WriteRequest(
                database=self._session.database,
                stream_id=self._stream_id,
                writes=[op.to_write() for op in operations],
                stream_token=self._stream_token,
                labels=dict(self._options.labels),
            )
        )
        return position

    async def responses(self) -> AsyncIterator[BatchWriteResponse]:
        """Per-batch reports in position order, until the stream ends."""
        while True:
            report = await self._reports.get()
            if report is _END:
                # Leave the marker for other consumers
                self._reports.put_nowait(_END)
                return
            yield report

    async def finish(self) -> None:
        """Close the request side and wait for every outstanding batch."""
        if self._finishing:
            return
        self._finishing = True
        if self._reader is None:
            await self._reports.put(_END)
            return
        await self._outbox.put(_CLOSE)
        with contextlib.suppress(asyncio.CancelledError):
            await self._reader
        logger.debug("Write stream finished", extra={"stream_id": self._stream_id, "batches": self._position})
