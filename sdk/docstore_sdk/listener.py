"""
Change feed subscriptions.

open_change_feed() is the single-connection primitive: it opens one Listen
stream for a set of targets and yields typed ChangeEvents until the stream
breaks. ChangeListener wraps it into a resilient subscription that persists
resume tokens, reconnects after failures and forces a full resync when the
server can no longer resume.

ChangeListener lifecycle (see TRANSITIONS):

    UNINITIALIZED -> PRELOADING -> LISTENING <-> RECONNECTING
                                   RECONNECTING -> PRELOADING (forced resync)
    any state -> CLOSED

Invariants:
    - Events reach the callback in stream order
    - A resume token is persisted only after every event delivered before it
      was handled by the callback
    - Permanent errors close the listener; transient ones reconnect

How to change safely:
    - New states need entries in TRANSITIONS; _transition() rejects anything
      not listed there
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from abc import abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from .errors import (
    DocStoreError,
    ListenerStateError,
    PermanentTransportError,
    ResumeTokenExpiredError,
    StatusCode,
    StreamBrokenError,
    TransientTransportError,
    ValidationError,
    error_from_status,
)
from .protocol import (
    Document,
    DocumentsTarget,
    ListenRequest,
    ListenResponse,
    Method,
    QueryTarget,
    Target,
    TargetChangeType,
)
from .query import Query, QueryParams, as_params
from .rpc import RpcSession

logger = logging.getLogger(__name__)

MAX_TARGET_ID = 2**31 - 1


class ChangeKind(Enum):
    """Kind of a change event."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    CURRENT = "current"
    RESET = "reset"
    # Resume point with no document change; never passed to callbacks
    CHECKPOINT = "checkpoint"


@dataclass(frozen=True)
class ChangeEvent:
    """One event of a change feed.

    Attributes:
        kind: Event kind
        target_ids: Targets the event applies to
        document: New document snapshot (ADDED / MODIFIED)
        document_path: Affected document path (document events)
        resume_token: Token to resume after this event, if the server sent one
        read_time: Server time of the event, if known
    """

    kind: ChangeKind
    target_ids: tuple[int, ...] = ()
    document: Document | None = None
    document_path: str | None = None
    resume_token: bytes | None = None
    read_time: datetime | None = None


@dataclass(frozen=True)
class ListenTarget:
    """A subscription target: a query or a fixed set of documents.

    Attributes:
        target_id: Client-chosen id in [1, 2**31 - 1]
        query: Query to watch
        documents: Document paths to watch
        once: Ask the server to stop the target once it is current
    """

    target_id: int
    query: Query | QueryParams | None = None
    documents: tuple[str, ...] | None = None
    once: bool = False

    def __post_init__(self) -> None:
        if not 1 <= self.target_id <= MAX_TARGET_ID:
            raise ValidationError(
                f"target_id must be between 1 and {MAX_TARGET_ID}", field_name="target_id"
            )
        if (self.query is None) == (self.documents is None):
            raise ValidationError("ListenTarget needs exactly one of query or documents")
        if self.documents is not None:
            object.__setattr__(self, "documents", tuple(self.documents))

    def to_wire(
        self,
        documents_root: str,
        *,
        resume_token: bytes | None = None,
        read_time: datetime | None = None,
    ) -> Target:
        target = Target(
            target_id=self.target_id,
            resume_token=resume_token,
            read_time=None if resume_token else read_time,
            once=self.once,
        )
        if self.query is not None:
            params = as_params(self.query)
            target.query = QueryTarget(
                parent=params.parent or documents_root,
                structured_query=params.to_structured_query(),
            )
        else:
            target.documents = DocumentsTarget(documents=list(self.documents or ()))
        return target


# ----------------------------------------------------------------------
# Resume state storage
# ----------------------------------------------------------------------


@runtime_checkable
class ResumeStateStorage(Protocol):
    """Persistence of per-target resume tokens."""

    @abstractmethod
    async def read_resume_token(self, target_id: int) -> bytes | None:
        ...

    @abstractmethod
    async def update_resume_token(self, target_id: int, token: bytes | None) -> None:
        """Store a token; None forgets the target's token."""
        ...


class InMemoryResumeStateStorage:
    """Resume tokens held in process memory."""

    def __init__(self) -> None:
        self._tokens: dict[int, bytes] = {}

    async def read_resume_token(self, target_id: int) -> bytes | None:
        return self._tokens.get(target_id)

    async def update_resume_token(self, target_id: int, token: bytes | None) -> None:
        if token is None:
            self._tokens.pop(target_id, None)
        else:
            self._tokens[target_id] = token


class TempFileResumeStateStorage:
    """Resume tokens stored hex-encoded in one file per target.

    Args:
        directory: Where token files live (defaults to the system temp dir)
    """

    FILE_TEMPLATE = "docstore-listen-token.{target_id}.tmp"

    def __init__(self, directory: str | os.PathLike[str] | None = None) -> None:
        self._directory = Path(directory or tempfile.gettempdir())
        self._directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, target_id: int) -> Path:
        return self._directory / self.FILE_TEMPLATE.format(target_id=target_id)

    async def read_resume_token(self, target_id: int) -> bytes | None:
        path = self.path_for(target_id)
        if not path.exists():
            return None
        text = path.read_text(encoding="ascii").strip()
        if not text:
            return None
        try:
            return bytes.fromhex(text)
        except ValueError:
            logger.warning("Ignoring corrupt resume token file", extra={"path": str(path)})
            return None

    async def update_resume_token(self, target_id: int, token: bytes | None) -> None:
        path = self.path_for(target_id)
        if token is None:
            path.unlink(missing_ok=True)
            return
        staging = path.with_suffix(".partial")
        staging.write_text(token.hex(), encoding="ascii")
        staging.replace(path)


# ----------------------------------------------------------------------
# Single-connection feed
# ----------------------------------------------------------------------


def _document_events(
    response: ListenResponse, known: dict[int, set[str]]
) -> list[ChangeEvent]:
    events: list[ChangeEvent] = []

    if response.document_change is not None:
        change = response.document_change
        document = change.document
        by_kind: dict[ChangeKind, list[int]] = {}
        for tid in change.target_ids:
            seen = known.setdefault(tid, set())
            kind = ChangeKind.MODIFIED if document.name in seen else ChangeKind.ADDED
            seen.add(document.name)
            by_kind.setdefault(kind, []).append(tid)
        for kind, tids in by_kind.items():
            events.append(
                ChangeEvent(kind, tuple(tids), document=document, document_path=document.name)
            )
        if change.removed_target_ids:
            for tid in change.removed_target_ids:
                known.get(tid, set()).discard(document.name)
            events.append(
                ChangeEvent(
                    ChangeKind.REMOVED,
                    tuple(change.removed_target_ids),
                    document_path=document.name,
                )
            )
        return events

    removal = response.document_delete or response.document_remove
    if removal is not None:
        tids = list(removal.removed_target_ids) or [
            tid for tid, seen in known.items() if removal.document in seen
        ]
        for tid in tids:
            known.get(tid, set()).discard(removal.document)
        events.append(
            ChangeEvent(
                ChangeKind.REMOVED,
                tuple(tids),
                document_path=removal.document,
                read_time=removal.read_time,
            )
        )
    return events


def _target_events(
    response: ListenResponse, known: dict[int, set[str]], all_targets: tuple[int, ...]
) -> list[ChangeEvent]:
    change = response.target_change
    if change is None:
        return []
    tids = tuple(change.target_ids) or all_targets
    kind = change.target_change_type

    if kind is TargetChangeType.REMOVE:
        if change.cause is not None and not change.cause.ok:
            if change.cause.code == StatusCode.OUT_OF_RANGE:
                raise ResumeTokenExpiredError(
                    change.cause.message or "Resume token expired",
                    target_id=tids[0] if tids else None,
                )
            raise error_from_status(change.cause.code, change.cause.message)
        return []
    if kind is TargetChangeType.RESET:
        for tid in tids:
            known.pop(tid, None)
        return [ChangeEvent(ChangeKind.RESET, tids, resume_token=change.resume_token, read_time=change.read_time)]
    if kind is TargetChangeType.CURRENT:
        return [ChangeEvent(ChangeKind.CURRENT, tids, resume_token=change.resume_token, read_time=change.read_time)]
    if change.resume_token:
        return [
            ChangeEvent(ChangeKind.CHECKPOINT, tids, resume_token=change.resume_token, read_time=change.read_time)
        ]
    return []


async def open_change_feed(
    session: RpcSession,
    targets: Iterable[ListenTarget],
    *,
    resume_tokens: Mapping[int, bytes | None] | None = None,
    read_times: Mapping[int, datetime | None] | None = None,
    known: dict[int, set[str]] | None = None,
) -> AsyncIterator[ChangeEvent]:
    """Open one Listen stream and yield its events.

    Args:
        session: RPC session
        targets: Targets to add on the stream
        resume_tokens: Per-target resume tokens
        read_times: Per-target resume read times (used when no token)
        known: Per-target sets of document paths already seen, used to tell
            ADDED from MODIFIED; updated in place

    Raises:
        StreamBrokenError: The stream ended or failed transiently
        ResumeTokenExpiredError: The server rejected a resume point
        DocStoreError: Any other classified failure
    """
    targets = tuple(targets)
    if not targets:
        raise ValidationError("open_change_feed requires at least one target")
    ids = [t.target_id for t in targets]
    if len(set(ids)) != len(ids):
        raise ValidationError("Listen target ids must be unique", errors=[str(i) for i in ids])
    resume_tokens = resume_tokens or {}
    read_times = read_times or {}
    known = known if known is not None else {}
    all_targets = tuple(ids)
    closed = asyncio.Event()

    async def requests() -> AsyncIterator[ListenRequest]:
        for target in targets:
            yield ListenRequest(
                database=session.database,
                add_target=target.to_wire(
                    session.documents_root,
                    resume_token=resume_tokens.get(target.target_id),
                    read_time=read_times.get(target.target_id),
                ),
            )
        await closed.wait()

    stream = session.bidi(Method.LISTEN, requests())
    try:
        async for response in stream:
            for event in _target_events(response, known, all_targets):
                yield event
            for event in _document_events(response, known):
                yield event
        raise StreamBrokenError("Listen stream ended")
    except TransientTransportError as e:
        raise StreamBrokenError(f"Listen stream broke: {e.message}", status=e.status) from e
    except PermanentTransportError as e:
        if e.status == StatusCode.OUT_OF_RANGE:
            raise ResumeTokenExpiredError(e.message) from e
        raise
    finally:
        closed.set()
        await stream.aclose()


# ----------------------------------------------------------------------
# Resilient listener
# ----------------------------------------------------------------------


class ListenerState(Enum):
    UNINITIALIZED = "uninitialized"
    PRELOADING = "preloading"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


TRANSITIONS: dict[ListenerState, frozenset[ListenerState]] = {
    ListenerState.UNINITIALIZED: frozenset(
        {ListenerState.PRELOADING, ListenerState.LISTENING, ListenerState.CLOSED}
    ),
    ListenerState.PRELOADING: frozenset({ListenerState.LISTENING, ListenerState.CLOSED}),
    ListenerState.LISTENING: frozenset({ListenerState.RECONNECTING, ListenerState.CLOSED}),
    ListenerState.RECONNECTING: frozenset(
        {ListenerState.LISTENING, ListenerState.PRELOADING, ListenerState.CLOSED}
    ),
    ListenerState.CLOSED: frozenset(),
}


class ListenerStateMachine:
    """Current state plus validated transitions."""

    def __init__(self, name: str = "listener") -> None:
        self._name = name
        self._state = ListenerState.UNINITIALIZED
        self._changed = asyncio.Condition()

    @property
    def state(self) -> ListenerState:
        return self._state

    def can_transition(self, target: ListenerState) -> bool:
        return target in TRANSITIONS[self._state]

    def transition(self, target: ListenerState) -> None:
        """Move to target.

        Raises:
            ListenerStateError: If the move is not in TRANSITIONS
        """
        if target is self._state:
            return
        if not self.can_transition(target):
            raise ListenerStateError(self._state.name, target.name)
        logger.debug(
            "Listener state change",
            extra={"listener": self._name, "from": self._state.value, "to": target.value},
        )
        self._state = target


@dataclass(frozen=True)
class ListenerParams:
    """Options for ChangeListener.

    Attributes:
        retry_delay: Seconds to wait before reconnecting after a failure
    """

    retry_delay: float = 5.0


ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]
PreloadFn = Callable[[], Awaitable["datetime | None"]]


class _ForcedResync(Exception):
    pass


class ChangeListener:
    """Resilient change feed subscription.

    Args:
        session: RPC session
        storage: Resume token storage
        params: Listener options
        name: Name used in log records

    Example:
        >>> listener = ChangeListener(session, InMemoryResumeStateStorage())
        >>> listener.add_target(ListenTarget(1, query=Query("orders")))
        >>> await listener.start(handle_event)
        >>> ...
        >>> await listener.shutdown()
    """

    def __init__(
        self,
        session: RpcSession,
        storage: ResumeStateStorage,
        params: ListenerParams | None = None,
        *,
        name: str = "listener",
    ) -> None:
        self._session = session
        self._storage = storage
        self._params = params or ListenerParams()
        self._name = name
        self._targets: dict[int, ListenTarget] = {}
        self._machine = ListenerStateMachine(name)
        self._task: asyncio.Task[None] | None = None
        self._known: dict[int, set[str]] = {}
        self._read_times: dict[int, datetime] = {}
        self._current = asyncio.Event()
        self.last_error: DocStoreError | None = None
        self.preload_error: Exception | None = None
        self.reconnects = 0

    @property
    def state(self) -> ListenerState:
        return self._machine.state

    @property
    def targets(self) -> tuple[ListenTarget, ...]:
        return tuple(self._targets.values())

    def add_target(self, target: ListenTarget) -> None:
        """Register a target. Only allowed before start()."""
        if self._task is not None:
            raise ValidationError("Targets must be added before the listener starts")
        if target.target_id in self._targets:
            raise ValidationError(f"Duplicate listen target id {target.target_id}", field_name="target_id")
        self._targets[target.target_id] = target

    async def start(
        self,
        callback: ChangeCallback,
        *,
        preload: PreloadFn | None = None,
        initial_preload: bool = True,
    ) -> None:
        """Start listening in a background task.

        Args:
            callback: Receives every non-checkpoint event, in order
            preload: Optional full read run before listening and again on
                forced resyncs; returns the snapshot's read time
            initial_preload: Run preload at startup (False resumes from the
                stored token and keeps preload for resyncs only)
        """
        if self._task is not None:
            raise ValidationError("Listener already started")
        if not self._targets:
            raise ValidationError("Listener has no targets")
        self._task = asyncio.create_task(self._run(callback, preload, initial_preload))

    async def wait_current(self, timeout: float | None = None) -> None:
        """Wait until all targets reported CURRENT since the last (re)sync."""
        await asyncio.wait_for(self._current.wait(), timeout)

    async def shutdown(self) -> None:
        """Stop listening and close the stream."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if self.state is not ListenerState.CLOSED:
            self._machine.transition(ListenerState.CLOSED)
        logger.info("Listener shut down", extra={"listener": self._name})

    async def _preload(self, preload: PreloadFn) -> None:
        self._machine.transition(ListenerState.PRELOADING)
        try:
            read_time = await preload()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.preload_error = e
            logger.error(
                "Preload failed; listening without a full snapshot",
                extra={"listener": self._name, "error": str(e)},
                exc_info=True,
            )
        else:
            self.preload_error = None
            # A fresh snapshot supersedes any stored resume point
            for tid in self._targets:
                await self._storage.update_resume_token(tid, None)
                if read_time is not None:
                    self._read_times[tid] = read_time

    async def _reset_resume_state(self) -> None:
        self._known.clear()
        self._read_times.clear()
        self._current.clear()
        for tid in self._targets:
            await self._storage.update_resume_token(tid, None)

    async def _run(
        self, callback: ChangeCallback, preload: PreloadFn | None, initial_preload: bool
    ) -> None:
        if preload is not None and initial_preload:
            await self._preload(preload)
        self._machine.transition(ListenerState.LISTENING)
        resync = False

        while True:
            if resync:
                resync = False
                await self._reset_resume_state()
                if preload is not None:
                    await self._preload(preload)
                self._machine.transition(ListenerState.LISTENING)

            try:
                await self._listen_once(callback)
            except (StreamBrokenError, TransientTransportError) as e:
                self.reconnects += 1
                logger.warning(
                    "Change feed interrupted; reconnecting",
                    extra={"listener": self._name, "error_code": e.code, "delay_s": self._params.retry_delay},
                )
                self._machine.transition(ListenerState.RECONNECTING)
                await asyncio.sleep(self._params.retry_delay)
                self._machine.transition(ListenerState.LISTENING)
            except ResumeTokenExpiredError as e:
                logger.warning(
                    "Resume point expired; forcing full resync",
                    extra={"listener": self._name, "target_id": e.target_id},
                )
                self._machine.transition(ListenerState.RECONNECTING)
                try:
                    await callback(ChangeEvent(ChangeKind.RESET, tuple(self._targets)))
                except asyncio.CancelledError:
                    raise
                except Exception as callback_error:
                    # The expired token is still stored, so the next attempt
                    # fails the same way and redelivers RESET
                    self.reconnects += 1
                    logger.error(
                        "Reset callback failed; reconnecting",
                        extra={"listener": self._name, "error": str(callback_error)},
                        exc_info=True,
                    )
                    await asyncio.sleep(self._params.retry_delay)
                    self._machine.transition(ListenerState.LISTENING)
                else:
                    resync = True
            except _ForcedResync:
                self._machine.transition(ListenerState.RECONNECTING)
                resync = True
            except DocStoreError as e:
                self.last_error = e
                logger.error(
                    "Change feed failed permanently",
                    extra={"listener": self._name, "error_code": e.code, "error": e.message},
                )
                self._machine.transition(ListenerState.CLOSED)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Callback failure: the resume token was not advanced past the
                # failing event, so reconnecting redelivers it
                self.reconnects += 1
                logger.error(
                    "Change callback failed; reconnecting",
                    extra={"listener": self._name, "error": str(e)},
                    exc_info=True,
                )
                self._machine.transition(ListenerState.RECONNECTING)
                await asyncio.sleep(self._params.retry_delay)
                self._machine.transition(ListenerState.LISTENING)

    async def _listen_once(self, callback: ChangeCallback) -> None:
        tokens = {tid: await self._storage.read_resume_token(tid) for tid in self._targets}
        current: set[int] = set()
        feed = open_change_feed(
            self._session,
            self._targets.values(),
            resume_tokens=tokens,
            read_times=self._read_times,
            known=self._known,
        )
        try:
            async for event in feed:
                if event.kind is not ChangeKind.CHECKPOINT:
                    await callback(event)
                if event.kind is ChangeKind.RESET:
                    raise _ForcedResync()
                if event.kind is ChangeKind.CURRENT:
                    current.update(event.target_ids)
                    if current >= set(self._targets):
                        self._current.set()
                if event.resume_token:
                    for tid in event.target_ids:
                        await self._storage.update_resume_token(tid, event.resume_token)
                        self._read_times.pop(tid, None)
        finally:
            await feed.aclose()
