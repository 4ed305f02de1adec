"""
Wire value model for the DocStore SDK.

Every field of a stored document is a Value: a tagged union over the
database's scalar and container types. Application code normally never builds
Values by hand; the codec produces them from plain Python objects. Values are
needed directly when writing query literals or inspecting raw documents.

Marker types (Timestamp, Vector, Reference, GeoPoint) let application models
force a specific wire representation for data that would otherwise encode as
a string or an array.

Invariants:
    - Integer values fit in signed 64 bits
    - Map keys are unique non-empty strings
    - Timestamps are timezone-aware UTC datetimes
    - compare_values() is a total order consistent with server ordering

How to change safely:
    - Adding a ValueKind requires a rank in _TYPE_RANK and wire support in _wire
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_FRACTION_RE = re.compile(r"\.(\d+)")


class ValueKind(Enum):
    """Discriminator of a wire Value."""

    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    DOUBLE = "double"
    TIMESTAMP = "timestamp"
    STRING = "string"
    BYTES = "bytes"
    REFERENCE = "reference"
    GEO_POINT = "geo_point"
    VECTOR = "vector"
    ARRAY = "array"
    MAP = "map"


def normalize_datetime(value: datetime) -> datetime:
    """Return value as an aware UTC datetime. Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp, truncating sub-microsecond precision."""
    raw = text.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    raw = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw, count=1)
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as e:
        raise ValueError(f"Invalid RFC 3339 timestamp: {text!r}") from e
    return normalize_datetime(parsed)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC with a Z suffix."""
    return normalize_datetime(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True)
class Timestamp:
    """Marker forcing Timestamp encoding.

    Accepts a datetime or an RFC 3339 string.

    Example:
        >>> Timestamp("2024-01-02T03:04:05Z").value.year
        2024
    """

    value: datetime

    def __init__(self, value: datetime | str) -> None:
        if isinstance(value, str):
            parsed = parse_timestamp(value)
        elif isinstance(value, datetime):
            parsed = normalize_datetime(value)
        else:
            raise TypeError(f"Timestamp expects datetime or str, got {type(value).__name__}")
        object.__setattr__(self, "value", parsed)

    def isoformat(self) -> str:
        return format_timestamp(self.value)


@dataclass(frozen=True)
class Vector:
    """Marker forcing Vector encoding for a sequence of floats."""

    values: tuple[float, ...]

    def __init__(self, values: Iterable[float]) -> None:
        object.__setattr__(self, "values", tuple(float(v) for v in values))

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self):
        return iter(self.values)


@dataclass(frozen=True)
class Reference:
    """Marker for a reference to another document by absolute path."""

    path: str

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("Reference path must not be empty")


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair."""

    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class Value:
    """A single wire value.

    Build Values with the classmethod constructors, which enforce the
    representation invariants; `data` holds:

    - NULL: None
    - BOOLEAN: bool
    - INTEGER: int
    - DOUBLE: float
    - TIMESTAMP: aware UTC datetime
    - STRING / REFERENCE: str
    - BYTES: bytes
    - GEO_POINT: GeoPoint
    - VECTOR: tuple[float, ...]
    - ARRAY: tuple[Value, ...]
    - MAP: dict[str, Value]
    """

    kind: ValueKind
    data: Any = field(default=None)

    @classmethod
    def null(cls) -> Value:
        return cls(ValueKind.NULL)

    @classmethod
    def boolean(cls, value: bool) -> Value:
        return cls(ValueKind.BOOLEAN, bool(value))

    @classmethod
    def integer(cls, value: int) -> Value:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"integer expects int, got {type(value).__name__}")
        if not INT64_MIN <= value <= INT64_MAX:
            raise ValueError(f"integer {value} does not fit in 64 bits")
        return cls(ValueKind.INTEGER, value)

    @classmethod
    def double(cls, value: float) -> Value:
        return cls(ValueKind.DOUBLE, float(value))

    @classmethod
    def timestamp(cls, value: datetime | str | Timestamp) -> Value:
        if isinstance(value, Timestamp):
            return cls(ValueKind.TIMESTAMP, value.value)
        return cls(ValueKind.TIMESTAMP, Timestamp(value).value)

    @classmethod
    def string(cls, value: str) -> Value:
        return cls(ValueKind.STRING, str(value))

    @classmethod
    def bytes_(cls, value: bytes | bytearray | memoryview) -> Value:
        return cls(ValueKind.BYTES, bytes(value))

    @classmethod
    def reference(cls, path: str | Reference) -> Value:
        if isinstance(path, Reference):
            path = path.path
        if not path:
            raise ValueError("reference path must not be empty")
        return cls(ValueKind.REFERENCE, path)

    @classmethod
    def geo_point(cls, latitude: float | GeoPoint, longitude: float | None = None) -> Value:
        if isinstance(latitude, GeoPoint):
            return cls(ValueKind.GEO_POINT, latitude)
        if longitude is None:
            raise ValueError("geo_point requires latitude and longitude")
        return cls(ValueKind.GEO_POINT, GeoPoint(float(latitude), float(longitude)))

    @classmethod
    def vector(cls, values: Iterable[float] | Vector) -> Value:
        if isinstance(values, Vector):
            return cls(ValueKind.VECTOR, values.values)
        return cls(ValueKind.VECTOR, tuple(float(v) for v in values))

    @classmethod
    def array(cls, values: Iterable[Value]) -> Value:
        items = tuple(values)
        for item in items:
            if not isinstance(item, Value):
                raise TypeError(f"array elements must be Value, got {type(item).__name__}")
        return cls(ValueKind.ARRAY, items)

    @classmethod
    def map(cls, fields: Mapping[str, Value]) -> Value:
        entries: dict[str, Value] = {}
        for key, item in fields.items():
            if not isinstance(key, str) or not key:
                raise ValueError(f"map keys must be non-empty strings, got {key!r}")
            if not isinstance(item, Value):
                raise TypeError(f"map values must be Value, got {type(item).__name__}")
            entries[key] = item
        return cls(ValueKind.MAP, entries)

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    @property
    def is_nan(self) -> bool:
        return self.kind is ValueKind.DOUBLE and math.isnan(self.data)

    @property
    def is_number(self) -> bool:
        return self.kind in (ValueKind.INTEGER, ValueKind.DOUBLE)

    def to_native(self) -> Any:
        """Convert to plain Python, keeping marker types for typed scalars."""
        kind = self.kind
        if kind is ValueKind.ARRAY:
            return [item.to_native() for item in self.data]
        if kind is ValueKind.MAP:
            return {key: item.to_native() for key, item in self.data.items()}
        if kind is ValueKind.VECTOR:
            return Vector(self.data)
        if kind is ValueKind.REFERENCE:
            return Reference(self.data)
        return self.data


# Server ordering of value types. Integer and Double share a rank.
_TYPE_RANK = {
    ValueKind.NULL: 0,
    ValueKind.BOOLEAN: 1,
    ValueKind.INTEGER: 2,
    ValueKind.DOUBLE: 2,
    ValueKind.TIMESTAMP: 3,
    ValueKind.STRING: 4,
    ValueKind.BYTES: 5,
    ValueKind.REFERENCE: 6,
    ValueKind.GEO_POINT: 7,
    ValueKind.ARRAY: 8,
    ValueKind.VECTOR: 9,
    ValueKind.MAP: 10,
}


def type_rank(value: Value) -> int:
    """Rank of the value's type in server ordering."""
    return _TYPE_RANK[value.kind]


def _cmp(a: Any, b: Any) -> int:
    return (a > b) - (a < b)


def _compare_numbers(a: Value, b: Value) -> int:
    a_nan = a.is_nan
    b_nan = b.is_nan
    if a_nan or b_nan:
        # NaN sorts before every other number and equals itself
        return _cmp(not a_nan, not b_nan)
    return _cmp(a.data, b.data)


def _compare_sequences(a: tuple[Value, ...], b: tuple[Value, ...]) -> int:
    for left, right in zip(a, b):
        result = compare_values(left, right)
        if result:
            return result
    return _cmp(len(a), len(b))


def _compare_references(a: str, b: str) -> int:
    left = a.split("/")
    right = b.split("/")
    for x, y in zip(left, right):
        if x != y:
            return _cmp(x, y)
    return _cmp(len(left), len(right))


def compare_values(a: Value, b: Value) -> int:
    """Compare two values using server ordering.

    Returns:
        Negative if a < b, zero if equal, positive if a > b
    """
    rank = _cmp(type_rank(a), type_rank(b))
    if rank:
        return rank

    kind = a.kind
    if a.is_number:
        return _compare_numbers(a, b)
    if kind is ValueKind.NULL:
        return 0
    if kind is ValueKind.STRING:
        # UTF-8 byte order, matching the server
        return _cmp(a.data.encode("utf-8"), b.data.encode("utf-8"))
    if kind is ValueKind.REFERENCE:
        return _compare_references(a.data, b.data)
    if kind is ValueKind.GEO_POINT:
        return _cmp(
            (a.data.latitude, a.data.longitude),
            (b.data.latitude, b.data.longitude),
        )
    if kind is ValueKind.ARRAY:
        return _compare_sequences(a.data, b.data)
    if kind is ValueKind.VECTOR:
        # Shorter vectors sort first regardless of content
        length = _cmp(len(a.data), len(b.data))
        return length or _cmp(a.data, b.data)
    if kind is ValueKind.MAP:
        left = sorted(a.data.items())
        right = sorted(b.data.items())
        for (lk, lv), (rk, rv) in zip(left, right):
            if lk != rk:
                return _cmp(lk, rk)
            result = compare_values(lv, rv)
            if result:
                return result
        return _cmp(len(left), len(right))
    return _cmp(a.data, b.data)


def values_equal(a: Value, b: Value) -> bool:
    """Server equality: numbers compare across Integer/Double, NaN never equals."""
    if a.is_nan or b.is_nan:
        return False
    return compare_values(a, b) == 0
