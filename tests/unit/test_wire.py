"""
Unit tests for the protobuf wire conversion and the gRPC transport.

Tests cover:
- Value conversion, including zero values and vectors
- Query, write and listen target conversion
- Response conversion back into protocol types
- Transport use of generated serializers over the channel
"""

from datetime import datetime, timezone

import pytest

from docstore_sdk import _generated as pb
from docstore_sdk import _wire
from docstore_sdk._grpc_transport import GrpcTransport
from docstore_sdk.errors import StatusCode
from docstore_sdk.protocol import (
    CommitRequest,
    Document,
    FieldTransform,
    Method,
    Precondition,
    RunQueryRequest,
    TargetChangeType,
    TransformKind,
    Write,
)
from docstore_sdk.query import (
    Aggregation,
    AggregationOp,
    CollectionSelector,
    Query,
    StructuredAggregationQuery,
    StructuredQuery,
    field,
)
from docstore_sdk.value import GeoPoint, Value

ROOT = "projects/p/databases/(default)/documents"
MOMENT = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)


def _reparse(message):
    """Send a message through its serialized form."""
    return type(message).FromString(message.SerializeToString())


class TestValueWire:
    """Tests for value_to_proto / value_from_proto."""

    def test_integer(self):
        """64-bit integers travel as int64."""
        message = _wire.value_to_proto(Value.integer(2**62))
        assert message.WhichOneof("value_type") == "integer_value"
        assert message.integer_value == 2**62

    def test_zero_values_keep_their_kind(self):
        """Null, False, zeros and empty containers survive serialization."""
        for value in (
            Value.null(),
            Value.boolean(False),
            Value.integer(0),
            Value.string(""),
            Value.array([]),
            Value.map({}),
            Value.geo_point(GeoPoint(0.0, 0.0)),
        ):
            assert _wire.value_from_proto(_reparse(_wire.value_to_proto(value))) == value

    def test_vector_as_tagged_map(self):
        """Vectors travel as a marked map."""
        message = _wire.value_to_proto(Value.vector([1.0, 2.0]))
        assert message.map_value.fields["__type__"].string_value == "__vector__"
        assert _wire.value_from_proto(_reparse(message)) == Value.vector([1.0, 2.0])

    def test_map_with_type_key_is_not_a_vector(self):
        """Only the full marker makes a vector."""
        value = Value.map({"__type__": Value.string("__vector__")})
        assert _wire.value_from_proto(_wire.value_to_proto(value)) == value

    def test_nested(self):
        """Nested containers and typed scalars keep their structure."""
        value = Value.map(
            {
                "a": Value.array([Value.null(), Value.boolean(True)]),
                "at": Value.timestamp(MOMENT),
                "where": Value.geo_point(GeoPoint(51.5, -0.1)),
                "raw": Value.bytes_(b"\x00\x01"),
                "owner": Value.reference(f"{ROOT}/users/ada"),
            }
        )
        assert _wire.value_from_proto(_reparse(_wire.value_to_proto(value))) == value

    def test_unset_value(self):
        """A value message with no type set is rejected."""
        with pytest.raises(ValueError):
            _wire.value_from_proto(pb.Value())


class TestDocumentWire:
    """Tests for document conversion."""

    def test_stored_form(self):
        """Documents keep their fields and times through storage."""
        document = Document(
            name=f"{ROOT}/c/d",
            fields={"n": Value.integer(1)},
            create_time=MOMENT,
            update_time=MOMENT,
        )
        assert _wire.decode_document(_wire.encode_document(document)) == document

    def test_unset_times(self):
        """Missing times read back as None."""
        document = Document(name=f"{ROOT}/c/d")
        message = _wire.document_to_proto(document)
        assert not message.HasField("update_time")
        assert _wire.document_from_proto(message).update_time is None


class TestQueryWire:
    """Tests for query conversion."""

    def test_query_request(self):
        """Collections, filters, orders and limits map to their messages."""
        params = Query("users").where(field("age").greater_than(30)).order_by("age").limit(5).params
        request = RunQueryRequest(parent=ROOT, structured_query=params.to_structured_query())
        message = _reparse(_wire.METHODS[Method.RUN_QUERY].request_to_proto(request))

        query = message.structured_query
        assert message.parent == ROOT
        assert [s.collection_id for s in query.from_] == ["users"]
        assert query.where.field_filter.op == pb.FieldOperator.GREATER_THAN
        assert query.where.field_filter.field.field_path == "age"
        assert query.where.field_filter.value.integer_value == 30
        assert query.order_by[0].direction == pb.Direction.ASCENDING
        assert query.limit.value == 5

    def test_zero_limit_is_sent(self):
        """A limit of zero is distinguishable from no limit."""
        query = StructuredQuery(from_=(CollectionSelector("users"),), limit=0)
        assert _wire.structured_query_to_proto(query).HasField("limit")
        unlimited = StructuredQuery(from_=(CollectionSelector("users"),))
        assert not _wire.structured_query_to_proto(unlimited).HasField("limit")

    def test_aggregations(self):
        """Count bounds and summed fields are carried next to the query."""
        query = StructuredQuery(from_=(CollectionSelector("orders"),))
        aggregation_query = StructuredAggregationQuery(
            query,
            (
                Aggregation("n", AggregationOp.COUNT, up_to=100),
                Aggregation("total", AggregationOp.SUM, field="cents"),
            ),
        )
        message = _wire.aggregation_query_to_proto(aggregation_query)
        count, total = message.aggregations
        assert message.structured_query == _wire.structured_query_to_proto(query)
        assert count.alias == "n"
        assert count.WhichOneof("operator") == "count"
        assert count.count.up_to.value == 100
        assert total.sum.field.field_path == "cents"


class TestWriteWire:
    """Tests for write conversion."""

    def test_create_precondition(self):
        """exists=False is sent even though it is the default value."""
        write = Write(
            update=Document(name=f"{ROOT}/c/d", fields={"a": Value.integer(1)}),
            current_document=Precondition(exists=False),
        )
        message = _reparse(_wire.write_to_proto(write))
        assert message.WhichOneof("operation") == "update"
        assert message.current_document.WhichOneof("condition_type") == "exists"
        assert message.current_document.exists is False

    def test_empty_update_mask_is_sent(self):
        """An empty mask differs from no mask."""
        write = Write(update=Document(name=f"{ROOT}/c/d"), update_mask=[])
        assert _wire.write_to_proto(write).HasField("update_mask")
        assert not _wire.write_to_proto(Write(update=Document(name=f"{ROOT}/c/d"))).HasField("update_mask")

    def test_transform_only_write(self):
        """Transform writes carry their field transforms in a DocumentTransform."""
        write = Write(
            transform=f"{ROOT}/c/d",
            update_transforms=[
                FieldTransform("n", TransformKind.INCREMENT, Value.integer(1)),
                FieldTransform("edited", TransformKind.SET_TO_SERVER_VALUE),
                FieldTransform(
                    "tags", TransformKind.APPEND_MISSING_ELEMENTS, Value.array([Value.string("x")])
                ),
            ],
        )
        message = _wire.write_to_proto(write)
        increment, server_time, append = message.transform.field_transforms
        assert message.transform.document == f"{ROOT}/c/d"
        assert increment.increment.integer_value == 1
        assert server_time.set_to_server_value == pb.ServerValue.REQUEST_TIME
        assert [v.string_value for v in append.append_missing_elements.values] == ["x"]


class TestResponseWire:
    """Tests for response conversion."""

    def test_listen_target_change(self):
        """Target changes decode enums, tokens and times."""
        message = pb.ListenResponse()
        message.target_change.target_change_type = pb.TargetChangeType.CURRENT
        message.target_change.target_ids.append(1)
        message.target_change.resume_token = b"\x00tok"
        message.target_change.read_time.CopyFrom(_wire.timestamp_to_proto(MOMENT))

        response = _wire.METHODS[Method.LISTEN].response_from_proto(_reparse(message))
        change = response.target_change
        assert change.target_change_type is TargetChangeType.CURRENT
        assert change.target_ids == [1]
        assert change.resume_token == b"\x00tok"
        assert change.read_time == MOMENT
        assert change.cause is None

    def test_listen_document_delete(self):
        """Deletes report the document and its targets."""
        message = pb.ListenResponse()
        message.document_delete.document = f"{ROOT}/c/d"
        message.document_delete.removed_target_ids.append(2)
        response = _wire.listen_response_from_proto(message)
        assert response.document_delete.document == f"{ROOT}/c/d"
        assert response.document_delete.removed_target_ids == [2]
        assert response.target_change is None

    def test_batch_write_statuses(self):
        """Per-item statuses map onto status codes."""
        message = pb.BatchWriteResponse(
            write_results=[pb.WriteResult(), pb.WriteResult()],
            status=[pb.Status(code=0), pb.Status(code=9, message="stale")],
        )
        response = _wire.METHODS[Method.BATCH_WRITE].response_from_proto(message)
        assert [s.code for s in response.status] == [StatusCode.OK, StatusCode.FAILED_PRECONDITION]
        assert response.status[1].message == "stale"

    def test_batch_get_missing(self):
        """Missing documents are reported by path."""
        message = pb.BatchGetDocumentsResponse(missing=f"{ROOT}/c/x")
        response = _wire.METHODS[Method.BATCH_GET_DOCUMENTS].response_from_proto(message)
        assert response.found is None
        assert response.missing == f"{ROOT}/c/x"
        assert response.transaction is None

    def test_every_method_has_messages(self):
        """Each RPC method has generated request and response types."""
        assert set(_wire.METHODS) == set(Method)


class RecordingChannel:
    """Channel stand-in that runs the serializers it is given."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def unary_unary(self, path, request_serializer, response_deserializer):
        async def call(request, metadata=None):
            self.calls.append((path, request_serializer(request), metadata))
            return response_deserializer(self.responses[0])

        return call

    def unary_stream(self, path, request_serializer, response_deserializer):
        channel = self

        class Call:
            def __init__(self, request, metadata=None):
                channel.calls.append((path, request_serializer(request), metadata))
                self.cancelled = False

            def __aiter__(self):
                return self._iterate()

            async def _iterate(self):
                for payload in channel.responses:
                    yield response_deserializer(payload)

            def cancel(self):
                self.cancelled = True

        return Call


class TestGrpcTransport:
    """Tests for GrpcTransport serialization."""

    @pytest.mark.asyncio
    async def test_unary_uses_generated_messages(self):
        """Requests go out as serialized protobuf; responses come back as dataclasses."""
        reply = pb.CommitResponse()
        reply.commit_time.CopyFrom(_wire.timestamp_to_proto(MOMENT))
        channel = RecordingChannel([reply.SerializeToString()])
        transport = GrpcTransport()
        transport._channel = channel

        request = CommitRequest(
            database="projects/p/databases/(default)", writes=[Write(delete=f"{ROOT}/c/d")]
        )
        response = await transport.unary(Method.COMMIT, request, token="secret")

        path, payload, metadata = channel.calls[0]
        assert path == "/google.firestore.v1.Firestore/Commit"
        assert pb.CommitRequest.FromString(payload).writes[0].delete == f"{ROOT}/c/d"
        assert metadata == (("authorization", "Bearer secret"),)
        assert response.commit_time == MOMENT

    @pytest.mark.asyncio
    async def test_server_stream(self):
        """Streamed responses are converted one by one."""
        first = pb.RunQueryResponse()
        first.document.name = f"{ROOT}/users/ada"
        first.document.fields["age"].integer_value = 36
        last = pb.RunQueryResponse(done=True)
        channel = RecordingChannel([first.SerializeToString(), last.SerializeToString()])
        transport = GrpcTransport()
        transport._channel = channel

        request = RunQueryRequest(parent=ROOT, structured_query=Query("users").params.to_structured_query())
        responses = [r async for r in transport.server_stream(Method.RUN_QUERY, request)]

        assert responses[0].document.fields == {"age": Value.integer(36)}
        assert responses[1].document is None
        assert responses[1].done
        assert channel.calls[0][0] == "/google.firestore.v1.Firestore/RunQuery"
