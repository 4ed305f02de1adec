"""
RPC method names and message shapes.

These dataclasses are the contract between the SDK and a Transport. They
mirror the google.firestore.v1 messages; the gRPC transport converts them to
and from the generated protobuf types with docstore_sdk._wire, while test
transports use them directly.

Invariants:
    - Exactly one of Write.update / Write.delete / Write.transform is set
    - BatchWriteResponse.write_results and .status are index-aligned with the
      request's writes
    - A ListenResponse carries exactly one of its change fields
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .errors import StatusCode
from .query import Cursor, StructuredAggregationQuery, StructuredQuery
from .value import Value


class Method(str, Enum):
    """RPC method names on the document service."""

    BATCH_GET_DOCUMENTS = "BatchGetDocuments"
    RUN_QUERY = "RunQuery"
    RUN_AGGREGATION_QUERY = "RunAggregationQuery"
    LIST_DOCUMENTS = "ListDocuments"
    LIST_COLLECTION_IDS = "ListCollectionIds"
    PARTITION_QUERY = "PartitionQuery"
    BEGIN_TRANSACTION = "BeginTransaction"
    COMMIT = "Commit"
    ROLLBACK = "Rollback"
    BATCH_WRITE = "BatchWrite"
    WRITE = "Write"
    LISTEN = "Listen"


@dataclass
class Status:
    code: StatusCode = StatusCode.OK
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.code == StatusCode.OK


@dataclass
class Document:
    """A stored document."""

    name: str
    fields: dict[str, Value] = field(default_factory=dict)
    create_time: datetime | None = None
    update_time: datetime | None = None


@dataclass
class Precondition:
    """Server-side guard on a write. At most one condition is set."""

    exists: bool | None = None
    update_time: datetime | None = None


class TransformKind(str, Enum):
    SET_TO_SERVER_VALUE = "setToServerValue"
    INCREMENT = "increment"
    MAXIMUM = "maximum"
    MINIMUM = "minimum"
    APPEND_MISSING_ELEMENTS = "appendMissingElements"
    REMOVE_ALL_FROM_ARRAY = "removeAllFromArray"


@dataclass
class FieldTransform:
    field_path: str
    kind: TransformKind
    value: Value | None = None


@dataclass
class Write:
    update: Document | None = None
    delete: str | None = None
    transform: str | None = None
    update_mask: list[str] | None = None
    update_transforms: list[FieldTransform] = field(default_factory=list)
    current_document: Precondition | None = None

    @property
    def document_path(self) -> str:
        if self.update is not None:
            return self.update.name
        return self.delete or self.transform or ""


@dataclass
class WriteResult:
    update_time: datetime | None = None
    transform_results: list[Value] = field(default_factory=list)


# Reads


@dataclass
class BatchGetDocumentsRequest:
    database: str
    documents: list[str]
    transaction: bytes | None = None
    mask: list[str] | None = None


@dataclass
class BatchGetDocumentsResponse:
    found: Document | None = None
    missing: str | None = None
    read_time: datetime | None = None
    transaction: bytes | None = None


@dataclass
class RunQueryRequest:
    parent: str
    structured_query: StructuredQuery
    transaction: bytes | None = None


@dataclass
class RunQueryResponse:
    document: Document | None = None
    read_time: datetime | None = None
    skipped_results: int = 0
    done: bool = False


@dataclass
class RunAggregationQueryRequest:
    parent: str
    structured_aggregation_query: StructuredAggregationQuery
    transaction: bytes | None = None


@dataclass
class AggregationResult:
    aggregate_fields: dict[str, Value] = field(default_factory=dict)


@dataclass
class RunAggregationQueryResponse:
    result: AggregationResult | None = None
    read_time: datetime | None = None


@dataclass
class ListDocumentsRequest:
    parent: str
    collection_id: str
    page_size: int = 0
    page_token: str = ""
    order_by: str = ""
    mask: list[str] | None = None


@dataclass
class ListDocumentsResponse:
    documents: list[Document] = field(default_factory=list)
    next_page_token: str = ""


@dataclass
class ListCollectionIdsRequest:
    parent: str
    page_size: int = 0
    page_token: str = ""


@dataclass
class ListCollectionIdsResponse:
    collection_ids: list[str] = field(default_factory=list)
    next_page_token: str = ""


@dataclass
class PartitionQueryRequest:
    parent: str
    structured_query: StructuredQuery
    partition_count: int
    page_size: int = 0
    page_token: str = ""


@dataclass
class PartitionQueryResponse:
    partitions: list[Cursor] = field(default_factory=list)
    next_page_token: str = ""


# Transactions


@dataclass
class TransactionOptionsMessage:
    read_only: bool = False
    retry_transaction: bytes | None = None


@dataclass
class BeginTransactionRequest:
    database: str
    options: TransactionOptionsMessage = field(default_factory=TransactionOptionsMessage)


@dataclass
class BeginTransactionResponse:
    transaction: bytes = b""


@dataclass
class CommitRequest:
    database: str
    writes: list[Write] = field(default_factory=list)
    transaction: bytes | None = None


@dataclass
class CommitResponse:
    write_results: list[WriteResult] = field(default_factory=list)
    commit_time: datetime | None = None


@dataclass
class RollbackRequest:
    database: str
    transaction: bytes


@dataclass
class Empty:
    pass


# Batched writes


@dataclass
class BatchWriteRequest:
    database: str
    writes: list[Write] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class BatchWriteResponse:
    write_results: list[WriteResult] = field(default_factory=list)
    status: list[Status] = field(default_factory=list)


@dataclass
class WriteRequest:
    database: str
    stream_id: str = ""
    writes: list[Write] = field(default_factory=list)
    stream_token: bytes | None = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class WriteResponse:
    stream_id: str = ""
    stream_token: bytes | None = None
    write_results: list[WriteResult] = field(default_factory=list)
    commit_time: datetime | None = None


# Listen


@dataclass
class QueryTarget:
    parent: str
    structured_query: StructuredQuery


@dataclass
class DocumentsTarget:
    documents: list[str] = field(default_factory=list)


@dataclass
class Target:
    target_id: int
    query: QueryTarget | None = None
    documents: DocumentsTarget | None = None
    resume_token: bytes | None = None
    read_time: datetime | None = None
    once: bool = False


@dataclass
class ListenRequest:
    database: str
    add_target: Target | None = None
    remove_target: int | None = None
    labels: dict[str, str] = field(default_factory=dict)


class TargetChangeType(str, Enum):
    NO_CHANGE = "NO_CHANGE"
    ADD = "ADD"
    REMOVE = "REMOVE"
    CURRENT = "CURRENT"
    RESET = "RESET"


@dataclass
class TargetChange:
    target_change_type: TargetChangeType = TargetChangeType.NO_CHANGE
    target_ids: list[int] = field(default_factory=list)
    cause: Status | None = None
    resume_token: bytes | None = None
    read_time: datetime | None = None


@dataclass
class DocumentChange:
    document: Document
    target_ids: list[int] = field(default_factory=list)
    removed_target_ids: list[int] = field(default_factory=list)


@dataclass
class DocumentDelete:
    document: str
    removed_target_ids: list[int] = field(default_factory=list)
    read_time: datetime | None = None


@dataclass
class DocumentRemove:
    document: str
    removed_target_ids: list[int] = field(default_factory=list)
    read_time: datetime | None = None


@dataclass
class ListenResponse:
    target_change: TargetChange | None = None
    document_change: DocumentChange | None = None
    document_delete: DocumentDelete | None = None
    document_remove: DocumentRemove | None = None
