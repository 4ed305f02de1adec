"""
Protobuf conversion of protocol messages.

Internal to the SDK. The gRPC transport turns each request dataclass from
docstore_sdk.protocol into its generated message before the channel
serializes it, and turns each decoded response message back into a
dataclass. The SQLite cache backend stores documents as serialized Document
messages.

Vectors travel as the map {"__type__": "__vector__", "value": <array of doubles>}.

How to change safely:
    - Every Method needs an entry in METHODS
    - Check submessage presence with HasField; unset submessages read as
      empty messages, not None
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from . import _generated as pb
from .errors import StatusCode
from .protocol import (
    AggregationResult,
    BatchGetDocumentsRequest,
    BatchGetDocumentsResponse,
    BatchWriteRequest,
    BatchWriteResponse,
    BeginTransactionRequest,
    BeginTransactionResponse,
    CommitRequest,
    CommitResponse,
    Document,
    DocumentChange,
    DocumentDelete,
    DocumentRemove,
    Empty,
    FieldTransform,
    ListCollectionIdsRequest,
    ListCollectionIdsResponse,
    ListDocumentsRequest,
    ListDocumentsResponse,
    ListenRequest,
    ListenResponse,
    Method,
    PartitionQueryRequest,
    PartitionQueryResponse,
    Precondition,
    RollbackRequest,
    RunAggregationQueryRequest,
    RunAggregationQueryResponse,
    RunQueryRequest,
    RunQueryResponse,
    Status,
    Target,
    TargetChange,
    TargetChangeType,
    TransactionOptionsMessage,
    TransformKind,
    Write,
    WriteRequest,
    WriteResponse,
    WriteResult,
)
from .query import (
    Aggregation,
    AggregationOp,
    CompositeFilter,
    Cursor,
    FieldFilter,
    Filter,
    FindNearest,
    StructuredAggregationQuery,
    StructuredQuery,
    UnaryFilter,
)
from .value import GeoPoint, Value, ValueKind, normalize_datetime

VECTOR_TYPE_KEY = "__type__"
VECTOR_TYPE_VALUE = "__vector__"
VECTOR_VALUE_KEY = "value"

_ARRAY_TRANSFORMS = {TransformKind.APPEND_MISSING_ELEMENTS, TransformKind.REMOVE_ALL_FROM_ARRAY}


# ----------------------------------------------------------------------
# Scalars
# ----------------------------------------------------------------------


def timestamp_to_proto(value: datetime) -> pb.Timestamp:
    message = pb.Timestamp()
    message.FromDatetime(normalize_datetime(value))
    return message


def timestamp_from_proto(message: pb.Timestamp) -> datetime:
    return message.ToDatetime(tzinfo=timezone.utc)


def _time(message: Any, name: str) -> datetime | None:
    if not message.HasField(name):
        return None
    return timestamp_from_proto(getattr(message, name))


def _set_message(message: Any, name: str, value: Any) -> None:
    """Copy value into a submessage field, keeping presence when value is empty."""
    target = getattr(message, name)
    target.SetInParent()
    target.MergeFrom(value)


def _set_time(message: Any, name: str, value: datetime | None) -> None:
    if value is not None:
        _set_message(message, name, timestamp_to_proto(value))


def _set_wrapped(message: Any, name: str, value: Any) -> None:
    """Set a wrapper-typed field (Int32Value and friends), keeping presence for zero."""
    if value is None:
        return
    wrapper = getattr(message, name)
    wrapper.SetInParent()
    wrapper.value = value


def _set_mask(message: Any, name: str, field_paths: list[str] | None) -> None:
    if field_paths is None:
        return
    mask = getattr(message, name)
    mask.SetInParent()
    mask.field_paths.extend(field_paths)


def status_from_proto(message: pb.Status) -> Status:
    try:
        code = StatusCode(message.code)
    except ValueError:
        code = StatusCode.UNKNOWN
    return Status(code, message.message)


# ----------------------------------------------------------------------
# Values
# ----------------------------------------------------------------------


def value_to_proto(value: Value) -> pb.Value:
    kind = value.kind
    message = pb.Value()
    if kind is ValueKind.NULL:
        message.null_value = pb.NULL_VALUE
    elif kind is ValueKind.BOOLEAN:
        message.boolean_value = value.data
    elif kind is ValueKind.INTEGER:
        message.integer_value = value.data
    elif kind is ValueKind.DOUBLE:
        message.double_value = value.data
    elif kind is ValueKind.TIMESTAMP:
        _set_message(message, "timestamp_value", timestamp_to_proto(value.data))
    elif kind is ValueKind.STRING:
        message.string_value = value.data
    elif kind is ValueKind.BYTES:
        message.bytes_value = value.data
    elif kind is ValueKind.REFERENCE:
        message.reference_value = value.data
    elif kind is ValueKind.GEO_POINT:
        _set_message(
            message,
            "geo_point_value",
            pb.LatLng(latitude=value.data.latitude, longitude=value.data.longitude),
        )
    elif kind is ValueKind.ARRAY:
        _set_message(message, "array_value", array_to_proto(value.data))
    elif kind is ValueKind.VECTOR:
        vector = pb.MapValue()
        vector.fields[VECTOR_TYPE_KEY].string_value = VECTOR_TYPE_VALUE
        _set_message(
            vector.fields[VECTOR_VALUE_KEY],
            "array_value",
            array_to_proto(tuple(Value.double(v) for v in value.data)),
        )
        _set_message(message, "map_value", vector)
    else:
        fields = pb.MapValue()
        for name, item in value.data.items():
            fields.fields[name].CopyFrom(value_to_proto(item))
        _set_message(message, "map_value", fields)
    return message


def array_to_proto(values: tuple[Value, ...]) -> pb.ArrayValue:
    message = pb.ArrayValue()
    message.values.extend(value_to_proto(v) for v in values)
    return message


def _is_vector(fields: Any) -> bool:
    # Indexing a message map inserts missing keys; test membership first
    if VECTOR_TYPE_KEY not in fields or VECTOR_VALUE_KEY not in fields:
        return False
    marker = fields[VECTOR_TYPE_KEY]
    return marker.WhichOneof("value_type") == "string_value" and marker.string_value == VECTOR_TYPE_VALUE


def value_from_proto(message: pb.Value) -> Value:
    kind = message.WhichOneof("value_type")
    if kind == "null_value":
        return Value.null()
    if kind == "boolean_value":
        return Value.boolean(message.boolean_value)
    if kind == "integer_value":
        return Value.integer(message.integer_value)
    if kind == "double_value":
        return Value.double(message.double_value)
    if kind == "timestamp_value":
        return Value.timestamp(timestamp_from_proto(message.timestamp_value))
    if kind == "string_value":
        return Value.string(message.string_value)
    if kind == "bytes_value":
        return Value.bytes_(message.bytes_value)
    if kind == "reference_value":
        return Value.reference(message.reference_value)
    if kind == "geo_point_value":
        point = message.geo_point_value
        return Value.geo_point(GeoPoint(point.latitude, point.longitude))
    if kind == "array_value":
        return Value.array(value_from_proto(v) for v in message.array_value.values)
    if kind == "map_value":
        fields = message.map_value.fields
        if _is_vector(fields):
            items = fields[VECTOR_VALUE_KEY].array_value.values
            return Value.vector(value_from_proto(v).data for v in items)
        return Value.map({k: value_from_proto(v) for k, v in fields.items()})
    raise ValueError(f"Unsupported wire value type {kind!r}")


# ----------------------------------------------------------------------
# Documents
# ----------------------------------------------------------------------


def document_to_proto(document: Document) -> pb.Document:
    message = pb.Document(name=document.name)
    for name, value in document.fields.items():
        message.fields[name].CopyFrom(value_to_proto(value))
    _set_time(message, "create_time", document.create_time)
    _set_time(message, "update_time", document.update_time)
    return message


def document_from_proto(message: pb.Document) -> Document:
    return Document(
        name=message.name,
        fields={k: value_from_proto(v) for k, v in message.fields.items()},
        create_time=_time(message, "create_time"),
        update_time=_time(message, "update_time"),
    )


def encode_document(document: Document) -> bytes:
    """Serialize a document for storage."""
    return document_to_proto(document).SerializeToString()


def decode_document(payload: bytes) -> Document:
    """Rebuild a document stored with encode_document."""
    return document_from_proto(pb.Document.FromString(payload))


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------


def _field(path: str) -> pb.FieldReference:
    return pb.FieldReference(field_path=path)


def filter_to_proto(condition: Filter) -> pb.Filter:
    if isinstance(condition, FieldFilter):
        return pb.Filter(
            field_filter=pb.FieldFilter(
                field=_field(condition.field),
                op=pb.FieldOperator[condition.op.value],
                value=value_to_proto(condition.value),
            )
        )
    if isinstance(condition, UnaryFilter):
        return pb.Filter(
            unary_filter=pb.UnaryFilter(
                op=pb.UnaryOperator[condition.op.value], field=_field(condition.field)
            )
        )
    if isinstance(condition, CompositeFilter):
        return pb.Filter(
            composite_filter=pb.CompositeFilter(
                op=pb.CompositeOperator[condition.op.value],
                filters=[filter_to_proto(f) for f in condition.filters],
            )
        )
    raise TypeError(f"Unknown filter type {type(condition).__name__}")


def cursor_to_proto(cursor: Cursor) -> pb.Cursor:
    return pb.Cursor(values=[value_to_proto(v) for v in cursor.values], before=cursor.before)


def cursor_from_proto(message: pb.Cursor) -> Cursor:
    return Cursor(tuple(value_from_proto(v) for v in message.values), message.before)


def _find_nearest_to_proto(nearest: FindNearest) -> pb.FindNearest:
    message = pb.FindNearest(
        vector_field=_field(nearest.vector_field),
        query_vector=value_to_proto(nearest.query_vector),
        distance_measure=pb.DistanceMeasure[nearest.distance_measure.value],
    )
    _set_wrapped(message, "limit", nearest.limit)
    if nearest.distance_result_field:
        message.distance_result_field = nearest.distance_result_field
    _set_wrapped(message, "distance_threshold", nearest.distance_threshold)
    return message


def structured_query_to_proto(query: StructuredQuery) -> pb.StructuredQuery:
    message = pb.StructuredQuery()
    # "from" is a Python keyword
    message.from_.extend(
        pb.CollectionSelector(collection_id=s.collection_id, all_descendants=s.all_descendants)
        for s in query.from_
    )
    if query.select is not None:
        message.select.SetInParent()
        message.select.fields.extend(_field(path) for path in query.select)
    if query.where is not None:
        _set_message(message, "where", filter_to_proto(query.where))
    message.order_by.extend(
        pb.Order(field=_field(o.field), direction=pb.Direction[o.direction.name]) for o in query.order_by
    )
    if query.start_at is not None:
        _set_message(message, "start_at", cursor_to_proto(query.start_at))
    if query.end_at is not None:
        _set_message(message, "end_at", cursor_to_proto(query.end_at))
    if query.offset:
        message.offset = query.offset
    _set_wrapped(message, "limit", query.limit)
    if query.find_nearest is not None:
        _set_message(message, "find_nearest", _find_nearest_to_proto(query.find_nearest))
    return message


def _aggregation_to_proto(aggregation: Aggregation) -> pb.Aggregation:
    message = pb.Aggregation(alias=aggregation.alias)
    if aggregation.op is AggregationOp.COUNT:
        message.count.SetInParent()
        _set_wrapped(message.count, "up_to", aggregation.up_to)
    elif aggregation.op is AggregationOp.SUM:
        message.sum.field.field_path = aggregation.field or ""
    else:
        message.avg.field.field_path = aggregation.field or ""
    return message


def aggregation_query_to_proto(query: StructuredAggregationQuery) -> pb.StructuredAggregationQuery:
    return pb.StructuredAggregationQuery(
        structured_query=structured_query_to_proto(query.query),
        aggregations=[_aggregation_to_proto(a) for a in query.aggregations],
    )


# ----------------------------------------------------------------------
# Writes
# ----------------------------------------------------------------------


def field_transform_to_proto(transform: FieldTransform) -> pb.FieldTransform:
    message = pb.FieldTransform(field_path=transform.field_path)
    if transform.kind is TransformKind.SET_TO_SERVER_VALUE:
        message.set_to_server_value = pb.ServerValue.REQUEST_TIME
        return message
    # Remaining kinds share their field name with the transform kind
    name = transform.kind.name.lower()
    if transform.kind in _ARRAY_TRANSFORMS:
        _set_message(message, name, array_to_proto(transform.value.data))
    else:
        _set_message(message, name, value_to_proto(transform.value))
    return message


def precondition_to_proto(precondition: Precondition) -> pb.Precondition:
    message = pb.Precondition()
    if precondition.exists is not None:
        message.exists = precondition.exists
    _set_time(message, "update_time", precondition.update_time)
    return message


def write_to_proto(write: Write) -> pb.Write:
    message = pb.Write()
    transforms = [field_transform_to_proto(t) for t in write.update_transforms]
    if write.update is not None:
        _set_message(message, "update", document_to_proto(write.update))
        message.update_transforms.extend(transforms)
    elif write.delete is not None:
        message.delete = write.delete
    else:
        message.transform.document = write.transform or ""
        message.transform.field_transforms.extend(transforms)
    _set_mask(message, "update_mask", write.update_mask)
    if write.current_document is not None:
        _set_message(message, "current_document", precondition_to_proto(write.current_document))
    return message


def write_result_from_proto(message: pb.WriteResult) -> WriteResult:
    return WriteResult(
        update_time=_time(message, "update_time"),
        transform_results=[value_from_proto(v) for v in message.transform_results],
    )


# ----------------------------------------------------------------------
# Listen
# ----------------------------------------------------------------------


def target_to_proto(target: Target) -> pb.Target:
    message = pb.Target(target_id=target.target_id, once=target.once)
    if target.query is not None:
        message.query.parent = target.query.parent
        _set_message(
            message.query, "structured_query", structured_query_to_proto(target.query.structured_query)
        )
    elif target.documents is not None:
        message.documents.SetInParent()
        message.documents.documents.extend(target.documents.documents)
    if target.resume_token:
        message.resume_token = target.resume_token
    elif target.read_time is not None:
        _set_time(message, "read_time", target.read_time)
    return message


def _target_change_from_proto(message: Any) -> TargetChange:
    return TargetChange(
        target_change_type=TargetChangeType(pb.TargetChangeType(message.target_change_type).name),
        target_ids=list(message.target_ids),
        cause=status_from_proto(message.cause) if message.HasField("cause") else None,
        resume_token=message.resume_token or None,
        read_time=_time(message, "read_time"),
    )


def listen_response_from_proto(message: pb.ListenResponse) -> ListenResponse:
    kind = message.WhichOneof("response_type")
    if kind == "target_change":
        return ListenResponse(target_change=_target_change_from_proto(message.target_change))
    if kind == "document_change":
        change = message.document_change
        return ListenResponse(
            document_change=DocumentChange(
                document=document_from_proto(change.document),
                target_ids=list(change.target_ids),
                removed_target_ids=list(change.removed_target_ids),
            )
        )
    if kind in ("document_delete", "document_remove"):
        removal = getattr(message, kind)
        cls = DocumentDelete if kind == "document_delete" else DocumentRemove
        return ListenResponse(
            **{
                kind: cls(
                    document=removal.document,
                    removed_target_ids=list(removal.removed_target_ids),
                    read_time=_time(removal, "read_time"),
                )
            }
        )
    # Existence filters carry nothing the listener acts on
    return ListenResponse()


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


def _batch_get_request(request: BatchGetDocumentsRequest) -> pb.BatchGetDocumentsRequest:
    message = pb.BatchGetDocumentsRequest(database=request.database, documents=request.documents)
    if request.transaction:
        message.transaction = request.transaction
    _set_mask(message, "mask", request.mask)
    return message


def _run_query_request(request: RunQueryRequest) -> pb.RunQueryRequest:
    message = pb.RunQueryRequest(
        parent=request.parent, structured_query=structured_query_to_proto(request.structured_query)
    )
    if request.transaction:
        message.transaction = request.transaction
    return message


def _run_aggregation_request(request: RunAggregationQueryRequest) -> pb.RunAggregationQueryRequest:
    message = pb.RunAggregationQueryRequest(
        parent=request.parent,
        structured_aggregation_query=aggregation_query_to_proto(request.structured_aggregation_query),
    )
    if request.transaction:
        message.transaction = request.transaction
    return message


def _list_documents_request(request: ListDocumentsRequest) -> pb.ListDocumentsRequest:
    message = pb.ListDocumentsRequest(
        parent=request.parent,
        collection_id=request.collection_id,
        page_size=request.page_size,
        page_token=request.page_token,
        order_by=request.order_by,
    )
    _set_mask(message, "mask", request.mask)
    return message


def _list_collection_ids_request(request: ListCollectionIdsRequest) -> pb.ListCollectionIdsRequest:
    return pb.ListCollectionIdsRequest(
        parent=request.parent, page_size=request.page_size, page_token=request.page_token
    )


def _partition_query_request(request: PartitionQueryRequest) -> pb.PartitionQueryRequest:
    return pb.PartitionQueryRequest(
        parent=request.parent,
        structured_query=structured_query_to_proto(request.structured_query),
        partition_count=request.partition_count,
        page_size=request.page_size,
        page_token=request.page_token,
    )


def _transaction_options(options: TransactionOptionsMessage) -> pb.TransactionOptions:
    message = pb.TransactionOptions()
    if options.read_only:
        message.read_only.SetInParent()
    else:
        message.read_write.SetInParent()
        if options.retry_transaction:
            message.read_write.retry_transaction = options.retry_transaction
    return message


def _begin_transaction_request(request: BeginTransactionRequest) -> pb.BeginTransactionRequest:
    return pb.BeginTransactionRequest(
        database=request.database, options=_transaction_options(request.options)
    )


def _commit_request(request: CommitRequest) -> pb.CommitRequest:
    message = pb.CommitRequest(
        database=request.database, writes=[write_to_proto(w) for w in request.writes]
    )
    if request.transaction:
        message.transaction = request.transaction
    return message


def _rollback_request(request: RollbackRequest) -> pb.RollbackRequest:
    return pb.RollbackRequest(database=request.database, transaction=request.transaction)


def _batch_write_request(request: BatchWriteRequest) -> pb.BatchWriteRequest:
    return pb.BatchWriteRequest(
        database=request.database,
        writes=[write_to_proto(w) for w in request.writes],
        labels=request.labels,
    )


def _write_request(request: WriteRequest) -> pb.WriteRequest:
    message = pb.WriteRequest(
        database=request.database,
        stream_id=request.stream_id,
        writes=[write_to_proto(w) for w in request.writes],
        labels=request.labels,
    )
    if request.stream_token:
        message.stream_token = request.stream_token
    return message


def _listen_request(request: ListenRequest) -> pb.ListenRequest:
    message = pb.ListenRequest(database=request.database, labels=request.labels)
    if request.add_target is not None:
        _set_message(message, "add_target", target_to_proto(request.add_target))
    elif request.remove_target is not None:
        message.remove_target = request.remove_target
    return message


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


def _batch_get_response(message: pb.BatchGetDocumentsResponse) -> BatchGetDocumentsResponse:
    result = message.WhichOneof("result")
    return BatchGetDocumentsResponse(
        found=document_from_proto(message.found) if result == "found" else None,
        missing=message.missing if result == "missing" else None,
        read_time=_time(message, "read_time"),
        transaction=message.transaction or None,
    )


def _run_query_response(message: pb.RunQueryResponse) -> RunQueryResponse:
    return RunQueryResponse(
        document=document_from_proto(message.document) if message.HasField("document") else None,
        read_time=_time(message, "read_time"),
        skipped_results=message.skipped_results,
        done=message.done,
    )


def _run_aggregation_response(message: pb.RunAggregationQueryResponse) -> RunAggregationQueryResponse:
    result = None
    if message.HasField("result"):
        result = AggregationResult(
            {k: value_from_proto(v) for k, v in message.result.aggregate_fields.items()}
        )
    return RunAggregationQueryResponse(result=result, read_time=_time(message, "read_time"))


def _list_documents_response(message: pb.ListDocumentsResponse) -> ListDocumentsResponse:
    return ListDocumentsResponse(
        documents=[document_from_proto(d) for d in message.documents],
        next_page_token=message.next_page_token,
    )


def _list_collection_ids_response(message: pb.ListCollectionIdsResponse) -> ListCollectionIdsResponse:
    return ListCollectionIdsResponse(
        collection_ids=list(message.collection_ids), next_page_token=message.next_page_token
    )


def _partition_query_response(message: pb.PartitionQueryResponse) -> PartitionQueryResponse:
    return PartitionQueryResponse(
        partitions=[cursor_from_proto(c) for c in message.partitions],
        next_page_token=message.next_page_token,
    )


def _begin_transaction_response(message: pb.BeginTransactionResponse) -> BeginTransactionResponse:
    return BeginTransactionResponse(transaction=message.transaction)


def _commit_response(message: pb.CommitResponse) -> CommitResponse:
    return CommitResponse(
        write_results=[write_result_from_proto(r) for r in message.write_results],
        commit_time=_time(message, "commit_time"),
    )


def _batch_write_response(message: pb.BatchWriteResponse) -> BatchWriteResponse:
    return BatchWriteResponse(
        write_results=[write_result_from_proto(r) for r in message.write_results],
        status=[status_from_proto(s) for s in message.status],
    )


def _write_response(message: pb.WriteResponse) -> WriteResponse:
    return WriteResponse(
        stream_id=message.stream_id,
        stream_token=message.stream_token or None,
        write_results=[write_result_from_proto(r) for r in message.write_results],
        commit_time=_time(message, "commit_time"),
    )


@dataclass(frozen=True)
class MethodCodec:
    """Generated message types of one method and their dataclass conversions."""

    request_type: Any
    response_type: Any
    request_to_proto: Callable[[Any], Any]
    response_from_proto: Callable[[Any], Any]


METHODS: dict[Method, MethodCodec] = {
    Method.BATCH_GET_DOCUMENTS: MethodCodec(
        pb.BatchGetDocumentsRequest, pb.BatchGetDocumentsResponse, _batch_get_request, _batch_get_response
    ),
    Method.RUN_QUERY: MethodCodec(
        pb.RunQueryRequest, pb.RunQueryResponse, _run_query_request, _run_query_response
    ),
    Method.RUN_AGGREGATION_QUERY: MethodCodec(
        pb.RunAggregationQueryRequest,
        pb.RunAggregationQueryResponse,
        _run_aggregation_request,
        _run_aggregation_response,
    ),
    Method.LIST_DOCUMENTS: MethodCodec(
        pb.ListDocumentsRequest, pb.ListDocumentsResponse, _list_documents_request, _list_documents_response
    ),
    Method.LIST_COLLECTION_IDS: MethodCodec(
        pb.ListCollectionIdsRequest,
        pb.ListCollectionIdsResponse,
        _list_collection_ids_request,
        _list_collection_ids_response,
    ),
    Method.PARTITION_QUERY: MethodCodec(
        pb.PartitionQueryRequest,
        pb.PartitionQueryResponse,
        _partition_query_request,
        _partition_query_response,
    ),
    Method.BEGIN_TRANSACTION: MethodCodec(
        pb.BeginTransactionRequest,
        pb.BeginTransactionResponse,
        _begin_transaction_request,
        _begin_transaction_response,
    ),
    Method.COMMIT: MethodCodec(pb.CommitRequest, pb.CommitResponse, _commit_request, _commit_response),
    Method.ROLLBACK: MethodCodec(pb.RollbackRequest, pb.Empty, _rollback_request, lambda _: Empty()),
    Method.BATCH_WRITE: MethodCodec(
        pb.BatchWriteRequest, pb.BatchWriteResponse, _batch_write_request, _batch_write_response
    ),
    Method.WRITE: MethodCodec(pb.WriteRequest, pb.WriteResponse, _write_request, _write_response),
    Method.LISTEN: MethodCodec(
        pb.ListenRequest, pb.ListenResponse, _listen_request, listen_response_from_proto
    ),
}
