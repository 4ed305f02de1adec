"""
Transactions.

A Transaction binds reads to a server transaction id and accumulates writes
that are committed atomically. A conflicting concurrent write makes the
commit fail with ConflictError; run_transaction() re-runs the whole body in
that case.

Invariants:
    - commit() and rollback() are terminal; a finished transaction rejects
      further reads and writes
    - Writes are all-or-nothing: any failed precondition rejects the commit
    - run_transaction() retries only ConflictError and transient failures of
      begin/commit, never errors raised by the body itself
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from .codec import Codec
from .errors import ConflictError, DocStoreError, StatusCode, TransportError, ValidationError
from .executor import QueryExecutor
from .protocol import (
    BeginTransactionRequest,
    CommitRequest,
    Method,
    RollbackRequest,
    TransactionOptionsMessage,
)
from .query import Query, QueryParams
from .rpc import RpcSession
from .writes import WriteAccumulator, WriteResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionMode(Enum):
    READ_ONLY = "read_only"
    READ_WRITE = "read_write"


@dataclass(frozen=True)
class TransactionOptions:
    """Options for a transaction.

    Attributes:
        mode: READ_ONLY transactions reject writes
        max_attempts: Body executions allowed by run_transaction()
    """

    mode: TransactionMode = TransactionMode.READ_WRITE
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field_name="max_attempts")


@dataclass
class TransactionResult:
    """Result of a successful commit."""

    write_results: list[WriteResult] = field(default_factory=list)
    commit_time: datetime | None = None


class Transaction(WriteAccumulator):
    """An open server transaction.

    Obtain one from DocStoreClient.begin_transaction(). Usable as an async
    context manager: leaving the block without commit() rolls back.
    """

    def __init__(
        self,
        session: RpcSession,
        codec: Codec,
        executor: QueryExecutor,
        transaction_id: bytes,
        options: TransactionOptions,
    ) -> None:
        super().__init__(codec, session.documents_root)
        self._session = session
        self._executor = executor
        self._id = transaction_id
        self._options = options
        self._finished = False

    @property
    def id(self) -> bytes:
        return self._id

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def read_only(self) -> bool:
        return self._options.mode is TransactionMode.READ_ONLY

    def _ensure_active(self) -> None:
        if self._finished:
            raise ValidationError("Transaction already committed or rolled back")

    def _check_open(self) -> None:
        self._ensure_active()
        if self.read_only:
            raise ValidationError("Read-only transaction does not accept writes")

    async def get(self, path: str, as_type: Any = None) -> Any | None:
        """Read a document within the transaction."""
        self._ensure_active()
        return await self._executor.get(path, as_type, transaction=self._id)

    async def query(self, query: Query | QueryParams, as_type: Any = None) -> list[Any]:
        """Run a query within the transaction."""
        self._ensure_active()
        return await self._executor.query(query, as_type, transaction=self._id)

    async def commit(self) -> TransactionResult:
        """Commit accumulated writes atomically.

        Raises:
            ConflictError: A concurrent write invalidated the transaction
            PreconditionFailedError: A write precondition did not hold
        """
        self._ensure_active()
        self._finished = True
        request = CommitRequest(
            database=self._session.database,
            writes=[op.to_write() for op in self.operations],
            transaction=self._id,
        )
        try:
            response = await self._session.call(Method.COMMIT, request, idempotent=False)
        except TransportError as e:
            if e.status == StatusCode.ABORTED:
                raise ConflictError(
                    f"Transaction aborted by a concurrent write: {e.message}", transaction_id=self._id
                ) from e
            raise
        results = [
            WriteResult(
                update_time=r.update_time,
                transform_results=list(r.transform_results),
                document_path=op.document_path,
            )
            for r, op in zip(response.write_results, self.operations)
        ]
        logger.debug(
            "Transaction committed",
            extra={"transaction_id": self._id.hex(), "writes": len(results)},
        )
        return TransactionResult(write_results=results, commit_time=response.commit_time)

    async def rollback(self) -> None:
        """Abandon the transaction. Safe to call once; later calls are no-ops."""
        if self._finished:
            return
        self._finished = True
        await self._session.call(
            Method.ROLLBACK,
            RollbackRequest(database=self._session.database, transaction=self._id),
        )
        logger.debug("Transaction rolled back", extra={"transaction_id": self._id.hex()})

    async def __aenter__(self) -> Transaction:
        return self

    async def __aexit__(self, exc_type: Any, *args: Any) -> None:
        if not self._finished:
            await self.rollback()


async def begin_transaction(
    session: RpcSession,
    codec: Codec,
    executor: QueryExecutor,
    options: TransactionOptions | None = None,
    *,
    retry_id: bytes | None = None,
) -> Transaction:
    """Start a transaction on the server."""
    options = options or TransactionOptions()
    request = BeginTransactionRequest(
        database=session.database,
        options=TransactionOptionsMessage(
            read_only=options.mode is TransactionMode.READ_ONLY,
            retry_transaction=retry_id,
        ),
    )
    response = await session.call(Method.BEGIN_TRANSACTION, request)
    return Transaction(session, codec, executor, response.transaction, options)


async def run_transaction(
    session: RpcSession,
    codec: Codec,
    executor: QueryExecutor,
    body: Callable[[Transaction], Awaitable[T]],
    options: TransactionOptions | None = None,
) -> tuple[T, TransactionResult]:
    """Run body inside a transaction, re-running it on conflicts.

    Args:
        body: Coroutine function receiving the transaction; its return value
            is passed through
        options: Transaction options (max_attempts bounds re-runs)

    Returns:
        (body result, commit result)

    Raises:
        ConflictError: If every attempt conflicted
        Exception: Anything raised by body, after rolling back
    """
    options = options or TransactionOptions()
    policy = session.retry_policy
    retry_id: bytes | None = None
    attempt = 1
    while True:
        transaction = await begin_transaction(session, codec, executor, options, retry_id=retry_id)
        try:
            value = await body(transaction)
        except BaseException:
            await _quiet_rollback(transaction)
            raise

        try:
            result = await transaction.commit()
            return value, result
        except DocStoreError as e:
            if not e.retryable or attempt >= options.max_attempts:
                raise
            delay = policy.backoff(attempt)
            logger.warning(
                "Retrying transaction",
                extra={"attempt": attempt, "max_attempts": options.max_attempts, "error_code": e.code},
            )
            retry_id = transaction.id
            attempt += 1
            await asyncio.sleep(delay)


async def _quiet_rollback(transaction: Transaction) -> None:
    try:
        await transaction.rollback()
    except DocStoreError as e:
        logger.warning(
            "Rollback failed",
            extra={"transaction_id": transaction.id.hex(), "error_code": e.code},
        )
