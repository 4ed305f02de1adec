"""
Filter/query AST and builder.

Queries are immutable. Every builder call returns a new Query; the resolved
descriptor (QueryParams) is what the executor consumes and what is turned
into a wire StructuredQuery.

Example:
    >>> q = (
    ...     Query("orders")
    ...     .where(lambda f: f.for_all(
    ...         f.field("status").equal("open"),
    ...         f.field("total").greater_than(100) if min_total else None,
    ...     ))
    ...     .order_by("total", Direction.DESCENDING)
    ...     .limit(10)
    ... )

Invariants:
    - A Query never changes after construction
    - None filter operands are dropped; a one-operand composite collapses
    - Conflicting builder options raise ValidationError before any I/O
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .codec import Codec
from .errors import EncodeError, ValidationError
from .field_path import DOCUMENT_NAME_FIELD, canonical_field_path
from .value import Value, Vector

_LITERALS = Codec()

MAX_FIND_NEAREST_LIMIT = 1000


class Direction(Enum):
    """Sort direction of an order key."""

    ASCENDING = "asc"
    DESCENDING = "desc"


class FieldOp(Enum):
    LESS_THAN = "LESS_THAN"
    LESS_THAN_OR_EQUAL = "LESS_THAN_OR_EQUAL"
    GREATER_THAN = "GREATER_THAN"
    GREATER_THAN_OR_EQUAL = "GREATER_THAN_OR_EQUAL"
    EQUAL = "EQUAL"
    NOT_EQUAL = "NOT_EQUAL"
    ARRAY_CONTAINS = "ARRAY_CONTAINS"
    IN = "IN"
    ARRAY_CONTAINS_ANY = "ARRAY_CONTAINS_ANY"
    NOT_IN = "NOT_IN"


class UnaryOp(Enum):
    IS_NAN = "IS_NAN"
    IS_NULL = "IS_NULL"
    IS_NOT_NAN = "IS_NOT_NAN"
    IS_NOT_NULL = "IS_NOT_NULL"


class CompositeOp(Enum):
    AND = "AND"
    OR = "OR"


class AggregationOp(Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"


class DistanceMeasure(Enum):
    EUCLIDEAN = "EUCLIDEAN"
    COSINE = "COSINE"
    DOT_PRODUCT = "DOT_PRODUCT"


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: FieldOp
    value: Value


@dataclass(frozen=True)
class UnaryFilter:
    field: str
    op: UnaryOp


@dataclass(frozen=True)
class CompositeFilter:
    op: CompositeOp
    filters: tuple[Filter, ...]


Filter = Union[FieldFilter, UnaryFilter, CompositeFilter]


@dataclass(frozen=True)
class Order:
    field: str
    direction: Direction = Direction.ASCENDING


@dataclass(frozen=True)
class Cursor:
    """Position in an ordered result set.

    `before` is True for start_at/end_before (the cursor position itself is
    on the near side of the boundary) and False for start_after/end_at.
    """

    values: tuple[Value, ...]
    before: bool


@dataclass(frozen=True)
class CollectionSelector:
    collection_id: str
    all_descendants: bool = False


@dataclass(frozen=True)
class FindNearest:
    """Nearest-neighbour vector search options."""

    vector_field: str
    query_vector: Value
    distance_measure: DistanceMeasure
    limit: int
    distance_result_field: str | None = None
    distance_threshold: float | None = None


@dataclass(frozen=True)
class Aggregation:
    """One named aggregate over a query's result set."""

    alias: str
    op: AggregationOp
    field: str | None = None
    up_to: int | None = None

    def __post_init__(self) -> None:
        if not self.alias:
            raise ValidationError("Aggregation alias must not be empty", field_name="alias")
        if self.op is not AggregationOp.COUNT and not self.field:
            raise ValidationError(f"{self.op.value} aggregation requires a field")
        if self.field is not None:
            object.__setattr__(self, "field", canonical_field_path(self.field))
        if self.up_to is not None and self.up_to < 1:
            raise ValidationError("count up_to must be positive", field_name="up_to")

    @classmethod
    def count(cls, alias: str = "count", *, up_to: int | None = None) -> Aggregation:
        return cls(alias, AggregationOp.COUNT, up_to=up_to)

    @classmethod
    def sum(cls, field: str, alias: str | None = None) -> Aggregation:
        return cls(alias or f"sum_{field}", AggregationOp.SUM, field=field)

    @classmethod
    def avg(cls, field: str, alias: str | None = None) -> Aggregation:
        return cls(alias or f"avg_{field}", AggregationOp.AVG, field=field)


@dataclass(frozen=True)
class StructuredQuery:
    """Wire form of a query, relative to the request's parent path."""

    from_: tuple[CollectionSelector, ...]
    select: tuple[str, ...] | None = None
    where: Filter | None = None
    order_by: tuple[Order, ...] = ()
    start_at: Cursor | None = None
    end_at: Cursor | None = None
    offset: int | None = None
    limit: int | None = None
    find_nearest: FindNearest | None = None


@dataclass(frozen=True)
class StructuredAggregationQuery:
    query: StructuredQuery
    aggregations: tuple[Aggregation, ...]


def _literal(value: Any) -> Value:
    try:
        return _LITERALS.encode(value)
    except EncodeError as e:
        raise ValidationError(f"Cannot use {value!r} as a query literal: {e.reason}") from e


def _literal_list(values: Iterable[Any], what: str) -> Value:
    items = [_literal(v) for v in values]
    if not items:
        raise ValidationError(f"{what} requires a non-empty list")
    return Value.array(items)


class FieldExpr:
    """Comparisons on one field path. Created by FilterBuilder.field()."""

    def __init__(self, path: str) -> None:
        self._path = canonical_field_path(path)

    @property
    def path(self) -> str:
        return self._path

    def _cmp(self, op: FieldOp, value: Any) -> FieldFilter:
        return FieldFilter(self._path, op, _literal(value))

    def equal(self, value: Any) -> FieldFilter:
        return self._cmp(FieldOp.EQUAL, value)

    def not_equal(self, value: Any) -> FieldFilter:
        return self._cmp(FieldOp.NOT_EQUAL, value)

    def less_than(self, value: Any) -> FieldFilter:
        return self._cmp(FieldOp.LESS_THAN, value)

    def less_than_or_equal(self, value: Any) -> FieldFilter:
        return self._cmp(FieldOp.LESS_THAN_OR_EQUAL, value)

    def greater_than(self, value: Any) -> FieldFilter:
        return self._cmp(FieldOp.GREATER_THAN, value)

    def greater_than_or_equal(self, value: Any) -> FieldFilter:
        return self._cmp(FieldOp.GREATER_THAN_OR_EQUAL, value)

    def array_contains(self, value: Any) -> FieldFilter:
        return self._cmp(FieldOp.ARRAY_CONTAINS, value)

    def array_contains_any(self, values: Iterable[Any]) -> FieldFilter:
        return FieldFilter(
            self._path, FieldOp.ARRAY_CONTAINS_ANY, _literal_list(values, "array_contains_any")
        )

    def is_in(self, values: Iterable[Any]) -> FieldFilter:
        return FieldFilter(self._path, FieldOp.IN, _literal_list(values, "is_in"))

    def is_not_in(self, values: Iterable[Any]) -> FieldFilter:
        return FieldFilter(self._path, FieldOp.NOT_IN, _literal_list(values, "is_not_in"))

    def is_null(self) -> UnaryFilter:
        return UnaryFilter(self._path, UnaryOp.IS_NULL)

    def is_not_null(self) -> UnaryFilter:
        return UnaryFilter(self._path, UnaryOp.IS_NOT_NULL)

    def is_nan(self) -> UnaryFilter:
        return UnaryFilter(self._path, UnaryOp.IS_NAN)

    def is_not_nan(self) -> UnaryFilter:
        return UnaryFilter(self._path, UnaryOp.IS_NOT_NAN)


def _combine(op: CompositeOp, filters: Sequence[Filter | None]) -> Filter | None:
    present = [f for f in filters if f is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return CompositeFilter(op, tuple(present))


class FilterBuilder:
    """Stateless entry point for building filters."""

    def field(self, path: str) -> FieldExpr:
        return FieldExpr(path)

    def for_all(self, *filters: Filter | None) -> Filter | None:
        """AND of the given filters, ignoring None operands."""
        return _combine(CompositeOp.AND, _flatten_args(filters))

    def for_any(self, *filters: Filter | None) -> Filter | None:
        """OR of the given filters, ignoring None operands."""
        return _combine(CompositeOp.OR, _flatten_args(filters))


def _flatten_args(filters: tuple[Any, ...]) -> list[Filter | None]:
    # Accept both for_all(a, b) and for_all([a, b])
    if len(filters) == 1 and isinstance(filters[0], (list, tuple)):
        return list(filters[0])
    return list(filters)


def field(path: str) -> FieldExpr:
    """Shorthand for FilterBuilder().field(path)."""
    return FieldExpr(path)


def for_all(*filters: Filter | None) -> Filter | None:
    return FilterBuilder().for_all(*filters)


def for_any(*filters: Filter | None) -> Filter | None:
    return FilterBuilder().for_any(*filters)


@dataclass(frozen=True)
class QueryParams:
    """Resolved, immutable query descriptor."""

    collection_id: str
    parent: str | None = None
    all_descendants: bool = False
    filter: Filter | None = None
    order_by: tuple[Order, ...] = ()
    start_at: Cursor | None = None
    end_at: Cursor | None = None
    limit: int | None = None
    offset: int | None = None
    select: tuple[str, ...] | None = None
    find_nearest: FindNearest | None = None

    def validate(self) -> QueryParams:
        """Check cross-option constraints.

        Raises:
            ValidationError: On conflicting options
        """
        if not self.collection_id or "/" in self.collection_id:
            raise ValidationError(
                f"Invalid collection id {self.collection_id!r}", field_name="collection_id"
            )
        for cursor, name in ((self.start_at, "start"), (self.end_at, "end")):
            if cursor is None:
                continue
            if not self.order_by:
                raise ValidationError(f"{name} cursor requires at least one order_by key")
            if len(cursor.values) > len(self.order_by):
                raise ValidationError(
                    f"{name} cursor has {len(cursor.values)} values but only "
                    f"{len(self.order_by)} order_by keys"
                )
        if self.find_nearest is not None and (self.start_at or self.end_at):
            raise ValidationError("find_nearest cannot be combined with cursors")
        return self

    def to_structured_query(self) -> StructuredQuery:
        self.validate()
        return StructuredQuery(
            from_=(CollectionSelector(self.collection_id, self.all_descendants),),
            select=self.select,
            where=self.filter,
            order_by=self.order_by,
            start_at=self.start_at,
            end_at=self.end_at,
            offset=self.offset,
            limit=self.limit,
            find_nearest=self.find_nearest,
        )


FilterSpec = Union[Filter, None, Callable[[FilterBuilder], Union[Filter, None]]]


class Query:
    """Fluent, immutable query builder.

    Args:
        collection_id: Collection to query
        parent: Parent path (documents root or a document path); the client
            fills in the documents root when omitted
    """

    __slots__ = ("_params",)

    def __init__(self, collection_id: str, parent: str | None = None) -> None:
        self._params = QueryParams(collection_id=collection_id, parent=parent)

    @classmethod
    def _from_params(cls, params: QueryParams) -> Query:
        query = cls.__new__(cls)
        query._params = params
        return query

    def _replace(self, **changes: Any) -> Query:
        return Query._from_params(dataclasses.replace(self._params, **changes))

    @property
    def params(self) -> QueryParams:
        return self._params

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Query):
            return self._params == other._params
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._params.collection_id)

    def __repr__(self) -> str:
        return f"Query({self._params!r})"

    def parent(self, parent: str | Any) -> Query:
        return self._replace(parent=str(parent))

    def all_descendants(self, enabled: bool = True) -> Query:
        return self._replace(all_descendants=enabled)

    def where(self, condition: FilterSpec) -> Query:
        """Add a filter. Repeated calls are ANDed together."""
        built = condition(FilterBuilder()) if callable(condition) else condition
        if built is None:
            return self
        return self._replace(filter=_combine(CompositeOp.AND, [self._params.filter, built]))

    def order_by(self, field_path: str, direction: Direction | str = Direction.ASCENDING) -> Query:
        order = Order(canonical_field_path(field_path), Direction(direction))
        return self._replace(order_by=self._params.order_by + (order,))

    def _cursor(self, values: tuple[Any, ...], before: bool) -> Cursor:
        if not values:
            raise ValidationError("Cursor requires at least one value")
        encoded: list[Value] = []
        for i, item in enumerate(values):
            order = self._params.order_by[i] if i < len(self._params.order_by) else None
            if order is not None and order.field == DOCUMENT_NAME_FIELD and isinstance(item, str):
                encoded.append(Value.reference(item))
            else:
                encoded.append(_literal(item))
        return Cursor(tuple(encoded), before)

    def _start(self, cursor: Cursor) -> Query:
        if self._params.start_at is not None:
            raise ValidationError("Query already has a start cursor")
        return self._replace(start_at=cursor)

    def _end(self, cursor: Cursor) -> Query:
        if self._params.end_at is not None:
            raise ValidationError("Query already has an end cursor")
        return self._replace(end_at=cursor)

    def start_at(self, *values: Any) -> Query:
        return self._start(self._cursor(values, before=True))

    def start_after(self, *values: Any) -> Query:
        return self._start(self._cursor(values, before=False))

    def end_at(self, *values: Any) -> Query:
        return self._end(self._cursor(values, before=False))

    def end_before(self, *values: Any) -> Query:
        return self._end(self._cursor(values, before=True))

    def start_at_cursor(self, cursor: Cursor | None) -> Query:
        return self if cursor is None else self._start(cursor)

    def end_at_cursor(self, cursor: Cursor | None) -> Query:
        return self if cursor is None else self._end(cursor)

    def limit(self, count: int) -> Query:
        if count < 0:
            raise ValidationError("limit must not be negative", field_name="limit")
        return self._replace(limit=count)

    def offset(self, count: int) -> Query:
        if count < 0:
            raise ValidationError("offset must not be negative", field_name="offset")
        return self._replace(offset=count)

    def select(self, *field_paths: str) -> Query:
        """Project results onto the given fields."""
        return self._replace(select=tuple(canonical_field_path(p) for p in field_paths))

    def find_nearest(
        self,
        vector_field: str,
        query_vector: Vector | Sequence[float],
        limit: int,
        distance_measure: DistanceMeasure | str = DistanceMeasure.EUCLIDEAN,
        *,
        distance_result_field: str | None = None,
        distance_threshold: float | None = None,
    ) -> Query:
        if not 1 <= limit <= MAX_FIND_NEAREST_LIMIT:
            raise ValidationError(
                f"find_nearest limit must be between 1 and {MAX_FIND_NEAREST_LIMIT}",
                field_name="limit",
            )
        vector = Value.vector(query_vector)
        if not vector.data:
            raise ValidationError("find_nearest requires a non-empty query vector")
        nearest = FindNearest(
            vector_field=canonical_field_path(vector_field),
            query_vector=vector,
            distance_measure=DistanceMeasure(distance_measure),
            limit=limit,
            distance_result_field=distance_result_field,
            distance_threshold=distance_threshold,
        )
        return self._replace(find_nearest=nearest)


def as_params(query: Query | QueryParams) -> QueryParams:
    """Normalize a Query or QueryParams to a validated QueryParams."""
    params = query.params if isinstance(query, Query) else query
    return params.validate()
