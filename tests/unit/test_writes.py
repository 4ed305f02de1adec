"""
Unit tests for write operations.

Tests cover:
- Wire form of each write kind
- Retry safety classification
- Preconditions and transforms
- Accumulators and batch sealing
"""

from datetime import datetime, timezone

import pytest

from docstore_sdk.batch import WriteBatch
from docstore_sdk.codec import Codec
from docstore_sdk.errors import EncodeError, ValidationError
from docstore_sdk.protocol import TransformKind
from docstore_sdk.value import Value
from docstore_sdk.writes import Precondition, Transform, WriteKind, WriteOperation

ROOT = "projects/p/databases/(default)/documents"
PATH = f"{ROOT}/counters/c1"


class TestWriteOperation:
    """Tests for WriteOperation."""

    def test_create_requires_absence(self):
        """Creates carry an exists=False precondition on the wire."""
        write = WriteOperation.create(PATH, {"n": Value.integer(1)}).to_write()
        assert write.update.name == PATH
        assert write.current_document.exists is False
        assert write.update_mask is None

    def test_update_with_mask(self):
        """Masked updates list canonical field paths."""
        write = WriteOperation.update(PATH, {"a": Value.integer(1)}, mask=["a", "`b`.c"]).to_write()
        assert write.update_mask == ["a", "b.c"]
        assert write.current_document is None

    def test_delete(self):
        """Deletes name the document."""
        write = WriteOperation.delete(PATH, precondition=Precondition.must_exist()).to_write()
        assert write.delete == PATH
        assert write.current_document.exists is True

    def test_transform_requires_transforms(self):
        """A transform write needs at least one transform."""
        with pytest.raises(ValidationError):
            WriteOperation.transform(PATH, [])

    def test_transform_wire(self):
        """Transform writes carry only field transforms."""
        write = WriteOperation.transform(PATH, [Transform.increment("n", 2)]).to_write()
        assert write.transform == PATH
        assert write.update is None
        assert write.update_transforms[0].kind is TransformKind.INCREMENT
        assert write.update_transforms[0].value == Value.integer(2)

    def test_document_path(self):
        """Every write kind exposes its document path."""
        assert WriteOperation.delete(PATH).to_write().document_path == PATH
        assert WriteOperation.create(PATH, {}).to_write().document_path == PATH


class TestRetrySafety:
    """Tests for retry_safe classification."""

    def test_plain_create_not_safe(self):
        """Replaying a create after an unseen success would fail it."""
        assert not WriteOperation.create(PATH, {}).retry_safe

    def test_create_with_idempotency_key(self):
        """An idempotency key makes a create safe to replay."""
        assert WriteOperation.create(PATH, {}, idempotency_key="k1").retry_safe

    def test_delete_and_update_safe(self):
        """Deletes and plain updates converge on replay."""
        assert WriteOperation.delete(PATH).retry_safe
        assert WriteOperation.update(PATH, {"a": Value.null()}).retry_safe

    def test_increment_not_safe(self):
        """An increment applied twice changes the result."""
        assert not WriteOperation.transform(PATH, [Transform.increment("n", 1)]).retry_safe
        assert not WriteOperation.transform(PATH, [Transform.append_missing_elements("t", ["x"])]).retry_safe

    def test_idempotent_transforms_safe(self):
        """Server time, max and min converge on replay."""
        operation = WriteOperation.transform(
            PATH, [Transform.server_time("at"), Transform.maximum("hi", 3), Transform.minimum("lo", 1)]
        )
        assert operation.retry_safe

    def test_precondition_makes_safe(self):
        """A guarded increment fails instead of double-applying."""
        moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
        operation = WriteOperation.transform(
            PATH, [Transform.increment("n", 1)], precondition=Precondition.updated_at(moment)
        )
        assert operation.retry_safe


class TestPrecondition:
    """Tests for Precondition."""

    def test_exactly_one_condition(self):
        """Exactly one of exists and update_time is set."""
        with pytest.raises(ValidationError):
            Precondition()
        with pytest.raises(ValidationError):
            Precondition(exists=True, update_time=datetime(2024, 1, 1))

    def test_update_time_normalized(self):
        """Naive update times are taken as UTC."""
        precondition = Precondition.updated_at(datetime(2024, 1, 1))
        assert precondition.update_time.tzinfo is not None


class TestTransform:
    """Tests for transform constructors."""

    def test_increment_requires_number(self):
        """Increments need a numeric operand."""
        with pytest.raises(ValidationError):
            Transform.increment("n", "1")
        with pytest.raises(ValidationError):
            Transform.increment("n", True)

    def test_array_operands(self):
        """Array transforms encode their elements."""
        transform = Transform.remove_all_from_array("tags", ["a", 1])
        assert transform.value == Value.array([Value.string("a"), Value.integer(1)])


class TestWriteBatch:
    """Tests for WriteBatch accumulation."""

    @pytest.fixture
    def batch(self):
        return WriteBatch(Codec(), ROOT)

    def test_operations_in_order(self, batch):
        """Operations keep insertion order."""
        batch.create("users", {"name": "a"}, document_id="a")
        batch.update("users", "b", {"name": "b"}, fields=["name"])
        batch.delete("users", "c")
        assert [op.kind for op in batch.operations] == [WriteKind.CREATE, WriteKind.UPDATE, WriteKind.DELETE]
        assert batch.operations[0].document_path == f"{ROOT}/users/a"
        assert len(batch) == 3

    def test_generated_id(self, batch):
        """Creates without an id get a generated one."""
        batch.create("users", {"name": "a"})
        assert len(batch.operations[0].document_path.rsplit("/", 1)[-1]) == 20

    def test_sealed_batch_rejects_writes(self, batch):
        """A written batch is read-only."""
        batch.delete("users", "a")
        batch._seal()
        assert batch.sealed
        with pytest.raises(ValidationError):
            batch.delete("users", "b")

    def test_parent_path(self, batch):
        """Writes can target sub-collections."""
        batch.delete("orders", "o1", parent=f"{ROOT}/users/u1")
        assert batch.operations[0].document_path == f"{ROOT}/users/u1/orders/o1"

    def test_encoding_errors_surface_immediately(self, batch):
        """Bodies are encoded when added."""
        with pytest.raises(EncodeError):
            batch.create("users", {"bad": object()})
        assert len(batch) == 0
