"""
Write operations and their outcomes.

A WriteOperation is an immutable, already-encoded description of one write
(create, update, delete or transform) plus an optional precondition. Batches
and transactions accumulate them through WriteAccumulator, which encodes
native payloads with the codec and builds document paths.

Retry safety:
    A write may be re-sent after a transient failure only if replaying it
    cannot change the outcome: deletes, plain updates, or any write guarded by
    an explicit precondition or idempotency key. A plain create or an
    increment/append transform is not retry-safe.

Example:
    >>> op = WriteOperation.update(path, {"count": Value.integer(5)}, mask=["count"])
    >>> op.to_write().update_mask
    ['count']
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .codec import Codec
from .errors import DocStoreError, EncodeError, ValidationError
from .field_path import canonical_field_path
from .paths import ParentPathBuilder, generate_document_id, safe_document_path
from .protocol import Document, FieldTransform, TransformKind, Write
from .protocol import Precondition as WirePrecondition
from .value import Value, normalize_datetime

_TRANSFORM_LITERALS = Codec()

_IDEMPOTENT_TRANSFORMS = frozenset(
    {TransformKind.SET_TO_SERVER_VALUE, TransformKind.MAXIMUM, TransformKind.MINIMUM}
)


@dataclass(frozen=True)
class Precondition:
    """Guard evaluated by the server before applying a write.

    Exactly one of `exists` and `update_time` is set.
    """

    exists: bool | None = None
    update_time: datetime | None = None

    def __post_init__(self) -> None:
        if (self.exists is None) == (self.update_time is None):
            raise ValidationError("Precondition needs exactly one of exists or update_time")
        if self.update_time is not None:
            object.__setattr__(self, "update_time", normalize_datetime(self.update_time))

    @classmethod
    def must_exist(cls) -> Precondition:
        return cls(exists=True)

    @classmethod
    def must_not_exist(cls) -> Precondition:
        return cls(exists=False)

    @classmethod
    def updated_at(cls, update_time: datetime) -> Precondition:
        return cls(update_time=update_time)

    def to_wire(self) -> WirePrecondition:
        return WirePrecondition(exists=self.exists, update_time=self.update_time)


def _transform_value(value: Any) -> Value:
    try:
        return _TRANSFORM_LITERALS.encode(value)
    except EncodeError as e:
        raise ValidationError(f"Invalid transform operand {value!r}: {e.reason}") from e


class Transform:
    """Constructors for field transforms."""

    @staticmethod
    def server_time(field_path: str) -> FieldTransform:
        return FieldTransform(canonical_field_path(field_path), TransformKind.SET_TO_SERVER_VALUE)

    @staticmethod
    def increment(field_path: str, by: int | float) -> FieldTransform:
        if isinstance(by, bool) or not isinstance(by, (int, float)):
            raise ValidationError("increment requires a number", field_name=field_path)
        return FieldTransform(canonical_field_path(field_path), TransformKind.INCREMENT, _transform_value(by))

    @staticmethod
    def maximum(field_path: str, value: int | float) -> FieldTransform:
        return FieldTransform(canonical_field_path(field_path), TransformKind.MAXIMUM, _transform_value(value))

    @staticmethod
    def minimum(field_path: str, value: int | float) -> FieldTransform:
        return FieldTransform(canonical_field_path(field_path), TransformKind.MINIMUM, _transform_value(value))

    @staticmethod
    def append_missing_elements(field_path: str, values: Iterable[Any]) -> FieldTransform:
        return FieldTransform(
            canonical_field_path(field_path),
            TransformKind.APPEND_MISSING_ELEMENTS,
            _transform_value(list(values)),
        )

    @staticmethod
    def remove_all_from_array(field_path: str, values: Iterable[Any]) -> FieldTransform:
        return FieldTransform(
            canonical_field_path(field_path),
            TransformKind.REMOVE_ALL_FROM_ARRAY,
            _transform_value(list(values)),
        )


class WriteKind(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    TRANSFORM = "transform"


@dataclass(frozen=True)
class WriteOperation:
    """One encoded write.

    Attributes:
        kind: Write variant
        document_path: Absolute document path
        fields: Encoded document body (create/update)
        update_mask: Field paths replaced by an update; None replaces the document
        transforms: Field transforms applied after the body
        precondition: Explicit server-side guard
        idempotency_key: Caller-supplied key marking the write as safe to replay
    """

    kind: WriteKind
    document_path: str
    fields: Mapping[str, Value] | None = None
    update_mask: tuple[str, ...] | None = None
    transforms: tuple[FieldTransform, ...] = ()
    precondition: Precondition | None = None
    idempotency_key: str | None = None

    @classmethod
    def create(
        cls,
        document_path: str,
        fields: Mapping[str, Value],
        *,
        transforms: Iterable[FieldTransform] = (),
        idempotency_key: str | None = None,
    ) -> WriteOperation:
        return cls(
            WriteKind.CREATE,
            document_path,
            fields=dict(fields),
            transforms=tuple(transforms),
            idempotency_key=idempotency_key,
        )

    @classmethod
    def update(
        cls,
        document_path: str,
        fields: Mapping[str, Value],
        *,
        mask: Iterable[str] | None = None,
        transforms: Iterable[FieldTransform] = (),
        precondition: Precondition | None = None,
        idempotency_key: str | None = None,
    ) -> WriteOperation:
        return cls(
            WriteKind.UPDATE,
            document_path,
            fields=dict(fields),
            update_mask=tuple(canonical_field_path(p) for p in mask) if mask is not None else None,
            transforms=tuple(transforms),
            precondition=precondition,
            idempotency_key=idempotency_key,
        )

    @classmethod
    def delete(cls, document_path: str, *, precondition: Precondition | None = None) -> WriteOperation:
        return cls(WriteKind.DELETE, document_path, precondition=precondition)

    @classmethod
    def transform(
        cls,
        document_path: str,
        transforms: Iterable[FieldTransform],
        *,
        precondition: Precondition | None = None,
        idempotency_key: str | None = None,
    ) -> WriteOperation:
        transforms = tuple(transforms)
        if not transforms:
            raise ValidationError("transform requires at least one field transform")
        return cls(
            WriteKind.TRANSFORM,
            document_path,
            transforms=transforms,
            precondition=precondition,
            idempotency_key=idempotency_key,
        )

    @property
    def retry_safe(self) -> bool:
        """Whether replaying this write after an unseen success is harmless."""
        if self.precondition is not None or self.idempotency_key is not None:
            return True
        if self.kind is WriteKind.DELETE:
            return True
        if self.kind is WriteKind.CREATE:
            return False
        return all(t.kind in _IDEMPOTENT_TRANSFORMS for t in self.transforms)

    def to_write(self) -> Write:
        """Build the wire Write."""
        precondition = self.precondition.to_wire() if self.precondition else None
        if self.kind is WriteKind.DELETE:
            return Write(delete=self.document_path, current_document=precondition)
        if self.kind is WriteKind.TRANSFORM:
            return Write(
                transform=self.document_path,
                update_transforms=list(self.transforms),
                current_document=precondition,
            )
        if self.kind is WriteKind.CREATE:
            precondition = WirePrecondition(exists=False)
        return Write(
            update=Document(name=self.document_path, fields=dict(self.fields or {})),
            update_mask=list(self.update_mask) if self.update_mask is not None else None,
            update_transforms=list(self.transforms),
            current_document=precondition,
        )


@dataclass
class WriteResult:
    """Server acknowledgement of one write.

    Attributes:
        update_time: Commit time of the write (None for no-op deletes)
        transform_results: One value per field transform, in order
        document_path: Path of the written document
    """

    update_time: datetime | None = None
    transform_results: list[Value] = field(default_factory=list)
    document_path: str | None = None


@dataclass
class WriteOutcome:
    """Per-item result of a batched write: exactly one of result / error."""

    index: int
    document_path: str
    result: WriteResult | None = None
    error: DocStoreError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class WriteAccumulator:
    """Collects write operations for a batch or transaction.

    Native payloads are encoded immediately, so encoding errors surface at
    the call that introduced them.
    """

    def __init__(self, codec: Codec, documents_root: str) -> None:
        self._codec = codec
        self._root = documents_root
        self._operations: list[WriteOperation] = []

    @property
    def operations(self) -> tuple[WriteOperation, ...]:
        return tuple(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def _path(self, collection_id: str, document_id: str, parent: str | ParentPathBuilder | None) -> str:
        return safe_document_path(str(parent) if parent is not None else self._root, collection_id, document_id)

    def add(self, operation: WriteOperation) -> WriteAccumulator:
        self._check_open()
        self._operations.append(operation)
        return self

    def _check_open(self) -> None:
        """Hook for subclasses that become read-only."""

    def create(
        self,
        collection_id: str,
        obj: Any,
        *,
        document_id: str | None = None,
        parent: str | ParentPathBuilder | None = None,
        idempotency_key: str | None = None,
    ) -> WriteAccumulator:
        """Create a document; a random id is generated when none is given."""
        path = self._path(collection_id, document_id or generate_document_id(), parent)
        return self.add(
            WriteOperation.create(path, self._codec.encode_fields(obj), idempotency_key=idempotency_key)
        )

    def update(
        self,
        collection_id: str,
        document_id: str,
        obj: Any,
        *,
        fields: Iterable[str] | None = None,
        transforms: Iterable[FieldTransform] = (),
        precondition: Precondition | None = None,
        parent: str | ParentPathBuilder | None = None,
    ) -> WriteAccumulator:
        """Replace a document, or only the given field paths when `fields` is set."""
        path = self._path(collection_id, document_id, parent)
        return self.add(
            WriteOperation.update(
                path,
                self._codec.encode_fields(obj),
                mask=fields,
                transforms=transforms,
                precondition=precondition,
            )
        )

    def delete(
        self,
        collection_id: str,
        document_id: str,
        *,
        precondition: Precondition | None = None,
        parent: str | ParentPathBuilder | None = None,
    ) -> WriteAccumulator:
        return self.add(
            WriteOperation.delete(self._path(collection_id, document_id, parent), precondition=precondition)
        )

    def transform(
        self,
        collection_id: str,
        document_id: str,
        transforms: Iterable[FieldTransform],
        *,
        precondition: Precondition | None = None,
        parent: str | ParentPathBuilder | None = None,
    ) -> WriteAccumulator:
        return self.add(
            WriteOperation.transform(
                self._path(collection_id, document_id, parent), transforms, precondition=precondition
            )
        )
