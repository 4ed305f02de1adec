"""
Local query evaluation over cached documents.

Evaluates a QueryParams against an in-memory set of documents with the same
semantics as the server: filters, order keys (with the document name as the
final tie-breaker), cursors, offset, limit and projection.

Queries the engine cannot answer locally (vector search, all-descendants
scans) are reported by supports() so callers can go to the server instead.

Invariants:
    - Documents missing an order_by field are excluded, as on the server
    - Comparisons use value.compare_values (server type ordering)
"""

from __future__ import annotations

import functools
from collections.abc import Iterable

from ..field_path import DOCUMENT_NAME_FIELD, get_field, set_field
from ..protocol import Document
from ..query import (
    CompositeFilter,
    CompositeOp,
    Cursor,
    Direction,
    FieldFilter,
    FieldOp,
    Filter,
    Order,
    QueryParams,
    UnaryFilter,
    UnaryOp,
)
from ..value import Value, ValueKind, compare_values, type_rank, values_equal


def field_value(document: Document, path: str) -> Value | None:
    """Value of a field path in a document; "__name__" yields a reference."""
    if path == DOCUMENT_NAME_FIELD:
        return Value.reference(document.name)
    return get_field(document.fields, path)


def _eval_field_filter(f: FieldFilter, actual: Value | None) -> bool:
    if actual is None:
        return False
    expected = f.value
    op = f.op

    if op is FieldOp.EQUAL:
        return values_equal(actual, expected)
    if op is FieldOp.NOT_EQUAL:
        return not actual.is_null and not values_equal(actual, expected)
    if op in (
        FieldOp.LESS_THAN,
        FieldOp.LESS_THAN_OR_EQUAL,
        FieldOp.GREATER_THAN,
        FieldOp.GREATER_THAN_OR_EQUAL,
    ):
        # Range filters only match values of the same type class
        if type_rank(actual) != type_rank(expected) or actual.is_nan or expected.is_nan:
            return False
        result = compare_values(actual, expected)
        if op is FieldOp.LESS_THAN:
            return result < 0
        if op is FieldOp.LESS_THAN_OR_EQUAL:
            return result <= 0
        if op is FieldOp.GREATER_THAN:
            return result > 0
        return result >= 0
    if op is FieldOp.ARRAY_CONTAINS:
        return actual.kind is ValueKind.ARRAY and any(
            values_equal(item, expected) for item in actual.data
        )
    if op is FieldOp.ARRAY_CONTAINS_ANY:
        return actual.kind is ValueKind.ARRAY and any(
            values_equal(item, candidate) for item in actual.data for candidate in expected.data
        )
    if op is FieldOp.IN:
        return any(values_equal(actual, candidate) for candidate in expected.data)
    if op is FieldOp.NOT_IN:
        return not actual.is_null and not any(
            values_equal(actual, candidate) for candidate in expected.data
        )
    raise ValueError(f"Unsupported operator {op}")


def _eval_unary_filter(f: UnaryFilter, actual: Value | None) -> bool:
    if actual is None:
        return False
    if f.op is UnaryOp.IS_NULL:
        return actual.is_null
    if f.op is UnaryOp.IS_NOT_NULL:
        return not actual.is_null
    if f.op is UnaryOp.IS_NAN:
        return actual.is_nan
    return not actual.is_nan and not actual.is_null


def effective_orders(order_by: tuple[Order, ...]) -> tuple[Order, ...]:
    """Order keys with the implicit document-name tie-breaker appended."""
    if any(o.field == DOCUMENT_NAME_FIELD for o in order_by):
        return order_by
    direction = order_by[-1].direction if order_by else Direction.ASCENDING
    return order_by + (Order(DOCUMENT_NAME_FIELD, direction),)


class LocalQueryEngine:
    """Evaluates queries against documents held in memory."""

    def supports(self, params: QueryParams) -> bool:
        """Whether the query can be answered locally."""
        return params.find_nearest is None and not params.all_descendants

    def matches(self, document: Document, query_filter: Filter | None) -> bool:
        if query_filter is None:
            return True
        if isinstance(query_filter, CompositeFilter):
            results = (self.matches(document, f) for f in query_filter.filters)
            return all(results) if query_filter.op is CompositeOp.AND else any(results)
        if isinstance(query_filter, UnaryFilter):
            return _eval_unary_filter(query_filter, field_value(document, query_filter.field))
        return _eval_field_filter(query_filter, field_value(document, query_filter.field))

    def compare(self, a: Document, b: Document, orders: tuple[Order, ...]) -> int:
        for order in orders:
            result = compare_values(field_value(a, order.field), field_value(b, order.field))
            if result:
                return -result if order.direction is Direction.DESCENDING else result
        return 0

    def _cursor_position(self, document: Document, cursor: Cursor, orders: tuple[Order, ...]) -> int:
        for order, bound in zip(orders, cursor.values):
            result = compare_values(field_value(document, order.field), bound)
            if result:
                return -result if order.direction is Direction.DESCENDING else result
        return 0

    def _within_cursors(self, document: Document, params: QueryParams, orders: tuple[Order, ...]) -> bool:
        if params.start_at is not None:
            position = self._cursor_position(document, params.start_at, orders)
            if position < 0 or (position == 0 and not params.start_at.before):
                return False
        if params.end_at is not None:
            position = self._cursor_position(document, params.end_at, orders)
            if position > 0 or (position == 0 and params.end_at.before):
                return False
        return True

    def run(self, documents: Iterable[Document], params: QueryParams) -> list[Document]:
        """Filter, order, slice and project documents.

        Args:
            documents: Candidate documents (already scoped to the collection)
            params: Query descriptor

        Returns:
            Matching documents in query order
        """
        orders = effective_orders(params.order_by)
        candidates = [
            d
            for d in documents
            if self.matches(d, params.filter)
            and all(field_value(d, o.field) is not None for o in params.order_by)
        ]
        candidates.sort(key=functools.cmp_to_key(lambda a, b: self.compare(a, b, orders)))
        results = [d for d in candidates if self._within_cursors(d, params, orders)]

        if params.offset:
            results = results[params.offset :]
        if params.limit is not None:
            results = results[: params.limit]
        if params.select is not None:
            results = [self.project(d, params.select) for d in results]
        return results

    def project(self, document: Document, field_paths: tuple[str, ...]) -> Document:
        fields: dict[str, Value] = {}
        for path in field_paths:
            if path == DOCUMENT_NAME_FIELD:
                continue
            value = get_field(document.fields, path)
            if value is not None:
                set_field(fields, path, value)
        return Document(
            name=document.name,
            fields=fields,
            create_time=document.create_time,
            update_time=document.update_time,
        )
