"""
Unit tests for change feed building blocks.

Tests cover:
- Listen target validation and wire form
- Listener state machine transitions
- Resume token storage
- Translation of listen responses into change events
"""

from datetime import datetime, timezone

import pytest

from docstore_sdk.errors import (
    ListenerStateError,
    PermanentTransportError,
    ResumeTokenExpiredError,
    StatusCode,
    ValidationError,
)
from docstore_sdk.listener import (
    ChangeKind,
    InMemoryResumeStateStorage,
    ListenerState,
    ListenerStateMachine,
    ListenTarget,
    ResumeStateStorage,
    TempFileResumeStateStorage,
    _document_events,
    _target_events,
)
from docstore_sdk.protocol import (
    Document,
    DocumentChange,
    DocumentDelete,
    ListenResponse,
    Status,
    TargetChange,
    TargetChangeType,
)
from docstore_sdk.query import Query

ROOT = "projects/p/databases/(default)/documents"


class TestListenTarget:
    """Tests for ListenTarget."""

    def test_target_id_range(self):
        """Target ids must be positive 31-bit integers."""
        with pytest.raises(ValidationError):
            ListenTarget(0, query=Query("users"))
        with pytest.raises(ValidationError):
            ListenTarget(2**31, query=Query("users"))

    def test_exactly_one_kind(self):
        """A target watches a query or documents, not both."""
        with pytest.raises(ValidationError):
            ListenTarget(1)
        with pytest.raises(ValidationError):
            ListenTarget(1, query=Query("users"), documents=("a",))

    def test_query_wire_form(self):
        """Query targets default to the documents root."""
        target = ListenTarget(3, query=Query("users")).to_wire(ROOT)
        assert target.target_id == 3
        assert target.query.parent == ROOT
        assert target.query.structured_query.from_[0].collection_id == "users"

    def test_token_wins_over_read_time(self):
        """A resume token suppresses the read time."""
        moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
        target = ListenTarget(1, documents=[f"{ROOT}/c/d"]).to_wire(
            ROOT, resume_token=b"t", read_time=moment
        )
        assert target.resume_token == b"t"
        assert target.read_time is None
        assert target.documents.documents == [f"{ROOT}/c/d"]


class TestListenerStateMachine:
    """Tests for ListenerStateMachine."""

    def test_happy_path(self):
        """Preload, listen, reconnect, listen, close."""
        machine = ListenerStateMachine()
        for state in (
            ListenerState.PRELOADING,
            ListenerState.LISTENING,
            ListenerState.RECONNECTING,
            ListenerState.LISTENING,
            ListenerState.CLOSED,
        ):
            machine.transition(state)
        assert machine.state is ListenerState.CLOSED

    def test_forced_resync_path(self):
        """Reconnecting may go back to preloading."""
        machine = ListenerStateMachine()
        machine.transition(ListenerState.LISTENING)
        machine.transition(ListenerState.RECONNECTING)
        assert machine.can_transition(ListenerState.PRELOADING)
        machine.transition(ListenerState.PRELOADING)

    def test_illegal_transition(self):
        """Transitions not listed are rejected."""
        machine = ListenerStateMachine()
        with pytest.raises(ListenerStateError):
            machine.transition(ListenerState.RECONNECTING)

    def test_closed_is_terminal(self):
        """Nothing leaves CLOSED."""
        machine = ListenerStateMachine()
        machine.transition(ListenerState.CLOSED)
        with pytest.raises(ListenerStateError):
            machine.transition(ListenerState.LISTENING)

    def test_same_state_is_noop(self):
        """Re-entering the current state is allowed."""
        machine = ListenerStateMachine()
        machine.transition(ListenerState.UNINITIALIZED)
        assert machine.state is ListenerState.UNINITIALIZED


class TestResumeStateStorage:
    """Tests for resume token storage implementations."""

    @pytest.mark.asyncio
    async def test_in_memory(self):
        """Tokens are stored and forgotten per target."""
        storage = InMemoryResumeStateStorage()
        assert isinstance(storage, ResumeStateStorage)
        await storage.update_resume_token(1, b"abc")
        assert await storage.read_resume_token(1) == b"abc"
        assert await storage.read_resume_token(2) is None
        await storage.update_resume_token(1, None)
        assert await storage.read_resume_token(1) is None

    @pytest.mark.asyncio
    async def test_temp_file(self, tmp_path):
        """Tokens survive a new storage instance on the same directory."""
        storage = TempFileResumeStateStorage(tmp_path)
        await storage.update_resume_token(7, b"\x00\xfftoken")
        assert storage.path_for(7).name == "docstore-listen-token.7.tmp"
        assert storage.path_for(7).read_text() == b"\x00\xfftoken".hex()

        reopened = TempFileResumeStateStorage(tmp_path)
        assert await reopened.read_resume_token(7) == b"\x00\xfftoken"

        await reopened.update_resume_token(7, None)
        assert not storage.path_for(7).exists()
        assert await storage.read_resume_token(7) is None

    @pytest.mark.asyncio
    async def test_temp_file_corrupt(self, tmp_path):
        """Corrupt token files read as absent."""
        storage = TempFileResumeStateStorage(tmp_path)
        storage.path_for(1).write_text("not-hex")
        assert await storage.read_resume_token(1) is None


class TestResponseTranslation:
    """Tests for listen response translation."""

    @pytest.fixture
    def document(self):
        return Document(name=f"{ROOT}/users/a")

    def test_added_then_modified(self, document):
        """The first sighting per target is ADDED, later ones MODIFIED."""
        known = {}
        response = ListenResponse(document_change=DocumentChange(document, [1]))
        assert _document_events(response, known)[0].kind is ChangeKind.ADDED
        assert _document_events(response, known)[0].kind is ChangeKind.MODIFIED

    def test_removed_target_ids(self, document):
        """A change that leaves a target is a removal for that target."""
        known = {1: {document.name}}
        response = ListenResponse(document_change=DocumentChange(document, [], removed_target_ids=[1]))
        events = _document_events(response, known)
        assert [e.kind for e in events] == [ChangeKind.REMOVED]
        assert document.name not in known[1]

    def test_delete_without_targets(self, document):
        """Deletes without target ids apply to targets that knew the document."""
        known = {1: {document.name}, 2: set()}
        response = ListenResponse(document_delete=DocumentDelete(document.name))
        events = _document_events(response, known)
        assert events[0].kind is ChangeKind.REMOVED
        assert events[0].target_ids == (1,)

    def test_current_and_checkpoint(self):
        """CURRENT is an event; NO_CHANGE with a token is a checkpoint."""
        current = ListenResponse(
            target_change=TargetChange(TargetChangeType.CURRENT, [1], resume_token=b"t1")
        )
        checkpoint = ListenResponse(
            target_change=TargetChange(TargetChangeType.NO_CHANGE, [], resume_token=b"t2")
        )
        assert _target_events(current, {}, (1,))[0].kind is ChangeKind.CURRENT
        event = _target_events(checkpoint, {}, (1, 2))[0]
        assert event.kind is ChangeKind.CHECKPOINT
        assert event.target_ids == (1, 2)

    def test_reset_clears_known(self):
        """RESET forgets what the target had seen."""
        known = {1: {"x"}}
        response = ListenResponse(target_change=TargetChange(TargetChangeType.RESET, [1]))
        assert _target_events(response, known, (1,))[0].kind is ChangeKind.RESET
        assert 1 not in known

    def test_remove_out_of_range(self):
        """An OUT_OF_RANGE removal means the resume point expired."""
        response = ListenResponse(
            target_change=TargetChange(
                TargetChangeType.REMOVE, [4], cause=Status(StatusCode.OUT_OF_RANGE, "expired")
            )
        )
        with pytest.raises(ResumeTokenExpiredError) as exc_info:
            _target_events(response, {}, (4,))
        assert exc_info.value.target_id == 4

    def test_remove_with_other_cause(self):
        """Other removal causes are classified errors."""
        response = ListenResponse(
            target_change=TargetChange(
                TargetChangeType.REMOVE, [4], cause=Status(StatusCode.PERMISSION_DENIED, "no")
            )
        )
        with pytest.raises(PermanentTransportError):
            _target_events(response, {}, (4,))
