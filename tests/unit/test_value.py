"""
Unit tests for the wire value model.

Tests cover:
- Constructor invariants
- Server ordering across and within types
- Equality semantics (numbers, NaN)
"""

import math
from datetime import datetime, timedelta, timezone

import pytest

from docstore_sdk.value import (
    GeoPoint,
    Timestamp,
    Value,
    ValueKind,
    Vector,
    compare_values,
    format_timestamp,
    parse_timestamp,
    values_equal,
)


class TestValueConstructors:
    """Tests for Value classmethod constructors."""

    def test_integer_rejects_bool(self):
        """Booleans are not integers."""
        with pytest.raises(TypeError):
            Value.integer(True)

    def test_integer_range(self):
        """Integers must fit in 64 bits."""
        assert Value.integer(2**63 - 1).data == 2**63 - 1
        with pytest.raises(ValueError):
            Value.integer(2**63)

    def test_timestamp_naive_is_utc(self):
        """Naive datetimes are taken as UTC."""
        value = Value.timestamp(datetime(2024, 1, 1, 12, 0))
        assert value.data.tzinfo is not None
        assert value.data.utcoffset() == timedelta(0)

    def test_timestamp_is_normalized_to_utc(self):
        """Offsets are converted to UTC."""
        plus_two = timezone(timedelta(hours=2))
        value = Value.timestamp(datetime(2024, 1, 1, 14, 0, tzinfo=plus_two))
        assert value.data == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_geo_point_range(self):
        """Latitude must be within [-90, 90]."""
        with pytest.raises(ValueError):
            Value.geo_point(91.0, 0.0)
        assert Value.geo_point(GeoPoint(10.0, 20.0)).data.longitude == 20.0

    def test_array_requires_values(self):
        """Array elements must already be Values."""
        with pytest.raises(TypeError):
            Value.array([1, 2])

    def test_map_rejects_empty_key(self):
        """Map keys must be non-empty strings."""
        with pytest.raises(ValueError):
            Value.map({"": Value.null()})

    def test_vector_from_marker(self):
        """Vector marker values become vector values."""
        value = Value.vector(Vector([1, 2]))
        assert value.kind is ValueKind.VECTOR
        assert value.data == (1.0, 2.0)

    def test_to_native(self):
        """Nested values convert to plain Python."""
        value = Value.map({"a": Value.array([Value.integer(1), Value.string("x")])})
        assert value.to_native() == {"a": [1, "x"]}


class TestTimestamps:
    """Tests for timestamp parsing and formatting."""

    def test_round_trip_microseconds(self):
        """Formatted timestamps keep microsecond precision."""
        moment = datetime(2024, 3, 5, 6, 7, 8, 123456, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(moment)) == moment

    def test_parse_nanoseconds_truncates(self):
        """Fractions beyond microseconds are truncated."""
        parsed = parse_timestamp("2024-01-01T00:00:00.123456789Z")
        assert parsed.microsecond == 123456

    def test_timestamp_marker(self):
        """Timestamp accepts ISO strings."""
        marker = Timestamp("2024-01-01T00:00:00Z")
        assert marker.value == datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestOrdering:
    """Tests for server ordering."""

    def test_type_order(self):
        """Types order null < bool < number < timestamp < string < bytes < reference."""
        ordered = [
            Value.null(),
            Value.boolean(False),
            Value.integer(1),
            Value.timestamp(datetime(2024, 1, 1, tzinfo=timezone.utc)),
            Value.string("a"),
            Value.bytes_(b"a"),
            Value.reference("projects/p/databases/d/documents/c/a"),
            Value.geo_point(0.0, 0.0),
            Value.array([]),
            Value.vector([1.0]),
            Value.map({}),
        ]
        for left, right in zip(ordered, ordered[1:]):
            assert compare_values(left, right) < 0
            assert compare_values(right, left) > 0

    def test_integer_and_double_compare_numerically(self):
        """Integers and doubles share one numeric order."""
        assert compare_values(Value.integer(1), Value.double(1.5)) < 0
        assert compare_values(Value.double(2.0), Value.integer(2)) == 0

    def test_nan_sorts_first(self):
        """NaN sorts before every other number."""
        nan = Value.double(math.nan)
        assert compare_values(nan, Value.integer(-(2**63))) < 0
        assert compare_values(nan, nan) == 0

    def test_strings_by_utf8_bytes(self):
        """Strings compare by UTF-8 encoding."""
        assert compare_values(Value.string("Z"), Value.string("a")) < 0
        assert compare_values(Value.string("￿"), Value.string("\U0001F600")) < 0

    def test_references_by_segment(self):
        """References compare segment by segment."""
        short = Value.reference("c/a")
        longer = Value.reference("c/a/sub/x")
        assert compare_values(short, longer) < 0

    def test_reference_segment_order_differs_from_string_order(self):
        """A document id sorts before ids it is a prefix of, whatever follows."""
        # As plain strings "c/a-b" < "c/a/x" because "-" sorts before "/".
        assert compare_values(Value.reference("c/a-b"), Value.reference("c/a/x")) > 0
        assert compare_values(Value.reference("c/a/x"), Value.reference("c/a-b")) < 0

    def test_arrays_lexicographic(self):
        """Arrays compare element-wise, then by length."""
        a = Value.array([Value.integer(1), Value.integer(2)])
        b = Value.array([Value.integer(1), Value.integer(3)])
        c = Value.array([Value.integer(1)])
        assert compare_values(a, b) < 0
        assert compare_values(c, a) < 0

    def test_vectors_by_length_first(self):
        """Shorter vectors sort first."""
        assert compare_values(Value.vector([9.0]), Value.vector([1.0, 1.0])) < 0


class TestEquality:
    """Tests for values_equal."""

    def test_cross_numeric_equality(self):
        """Integer 1 equals double 1.0."""
        assert values_equal(Value.integer(1), Value.double(1.0))

    def test_nan_never_equal(self):
        """NaN equals nothing, not even NaN."""
        nan = Value.double(math.nan)
        assert not values_equal(nan, nan)

    def test_maps(self):
        """Maps are equal when their entries are."""
        a = Value.map({"x": Value.integer(1), "y": Value.string("s")})
        b = Value.map({"y": Value.string("s"), "x": Value.double(1.0)})
        assert values_equal(a, b)
