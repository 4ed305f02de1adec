# mypy: ignore-errors
"""Protobuf messages of the document service.

The service speaks the google.firestore.v1 protocol. Its generated message
types ship with google-cloud-firestore as proto-plus wrappers; the raw
protobuf classes behind them are re-exported here so the transport can hand
SerializeToString / FromString straight to the channel.

Enum types stay proto-plus IntEnums, usable for both name lookup and the raw
integer fields.

This module is internal to the SDK. Users should not import from here.
"""

from google.cloud.firestore_v1 import types as _types
from google.protobuf.empty_pb2 import Empty
from google.protobuf.struct_pb2 import NULL_VALUE
from google.protobuf.timestamp_pb2 import Timestamp
from google.rpc.status_pb2 import Status
from google.type.latlng_pb2 import LatLng

SERVICE = "google.firestore.v1.Firestore"

# Documents
ArrayValue = _types.ArrayValue.pb()
Document = _types.Document.pb()
DocumentMask = _types.DocumentMask.pb()
MapValue = _types.MapValue.pb()
Precondition = _types.Precondition.pb()
Value = _types.Value.pb()

# Queries
Aggregation = _types.StructuredAggregationQuery.Aggregation.pb()
CollectionSelector = _types.StructuredQuery.CollectionSelector.pb()
CompositeFilter = _types.StructuredQuery.CompositeFilter.pb()
Cursor = _types.Cursor.pb()
FieldFilter = _types.StructuredQuery.FieldFilter.pb()
FieldReference = _types.StructuredQuery.FieldReference.pb()
Filter = _types.StructuredQuery.Filter.pb()
FindNearest = _types.StructuredQuery.FindNearest.pb()
Order = _types.StructuredQuery.Order.pb()
StructuredAggregationQuery = _types.StructuredAggregationQuery.pb()
StructuredQuery = _types.StructuredQuery.pb()
UnaryFilter = _types.StructuredQuery.UnaryFilter.pb()

CompositeOperator = _types.StructuredQuery.CompositeFilter.Operator
Direction = _types.StructuredQuery.Direction
DistanceMeasure = _types.StructuredQuery.FindNearest.DistanceMeasure
FieldOperator = _types.StructuredQuery.FieldFilter.Operator
UnaryOperator = _types.StructuredQuery.UnaryFilter.Operator

# Writes
DocumentTransform = _types.DocumentTransform.pb()
FieldTransform = _types.DocumentTransform.FieldTransform.pb()
Write = _types.Write.pb()
WriteResult = _types.WriteResult.pb()

ServerValue = _types.DocumentTransform.FieldTransform.ServerValue

# Transactions
TransactionOptions = _types.TransactionOptions.pb()

# Listen
DocumentsTarget = _types.Target.DocumentsTarget.pb()
QueryTarget = _types.Target.QueryTarget.pb()
Target = _types.Target.pb()

TargetChangeType = _types.TargetChange.TargetChangeType

# Requests and responses
BatchGetDocumentsRequest = _types.BatchGetDocumentsRequest.pb()
BatchGetDocumentsResponse = _types.BatchGetDocumentsResponse.pb()
BatchWriteRequest = _types.BatchWriteRequest.pb()
BatchWriteResponse = _types.BatchWriteResponse.pb()
BeginTransactionRequest = _types.BeginTransactionRequest.pb()
BeginTransactionResponse = _types.BeginTransactionResponse.pb()
CommitRequest = _types.CommitRequest.pb()
CommitResponse = _types.CommitResponse.pb()
ListCollectionIdsRequest = _types.ListCollectionIdsRequest.pb()
ListCollectionIdsResponse = _types.ListCollectionIdsResponse.pb()
ListDocumentsRequest = _types.ListDocumentsRequest.pb()
ListDocumentsResponse = _types.ListDocumentsResponse.pb()
ListenRequest = _types.ListenRequest.pb()
ListenResponse = _types.ListenResponse.pb()
PartitionQueryRequest = _types.PartitionQueryRequest.pb()
PartitionQueryResponse = _types.PartitionQueryResponse.pb()
RollbackRequest = _types.RollbackRequest.pb()
RunAggregationQueryRequest = _types.RunAggregationQueryRequest.pb()
RunAggregationQueryResponse = _types.RunAggregationQueryResponse.pb()
RunQueryRequest = _types.RunQueryRequest.pb()
RunQueryResponse = _types.RunQueryResponse.pb()
WriteRequest = _types.WriteRequest.pb()
WriteResponse = _types.WriteResponse.pb()
