"""
Unit tests for the value codec.

Tests cover:
- Encoding of native values and models
- Decoding into requested target types
- Field options: wire names, aliases, None omission, read-only
- Path-qualified codec errors
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import pydantic
import pytest

from docstore_sdk.codec import Codec
from docstore_sdk.errors import DecodeError, EncodeError
from docstore_sdk.protocol import Document
from docstore_sdk.registry import DuplicateWireNameError, ModelRegistry, RegistryFrozenError
from docstore_sdk.schema import NO_DEFAULT, FieldDescriptor, NameConvention, doc_field, document_model
from docstore_sdk.value import GeoPoint, Reference, Timestamp, Value, ValueKind, Vector


class Color(Enum):
    RED = "red"
    BLUE = "blue"


@dataclass
class Counter:
    id: Optional[str] = doc_field(default=None, aliases=("_generated_id",))
    count: int = 0


@document_model(rename_all=NameConvention.CAMEL_CASE)
@dataclass
class Order:
    order_id: Optional[str] = doc_field(default=None, aliases=("_document_id",), read_only=True)
    total_cents: int = 0
    tags: list[str] = field(default_factory=list)
    color: Color = Color.RED
    note: Optional[str] = doc_field(default=None, omit_if_none=False)


@dataclass
class Embedded:
    embedding: Vector
    seen_at: Timestamp
    owner: Reference


@dataclass
class Scores:
    values: list[int]


class Profile(pydantic.BaseModel):
    name: str
    age: int
    nickname: Optional[str] = None


@document_model(omit_none=False)
class NullableProfile(pydantic.BaseModel):
    name: str
    nickname: Optional[str] = None


@pytest.fixture
def codec():
    """Fresh codec with its own registry."""
    return Codec()


class TestEncode:
    """Tests for Codec.encode."""

    def test_scalars(self, codec):
        """Scalars map to their natural kinds."""
        assert codec.encode(None).kind is ValueKind.NULL
        assert codec.encode(True) == Value.boolean(True)
        assert codec.encode(5) == Value.integer(5)
        assert codec.encode(1.5) == Value.double(1.5)
        assert codec.encode("s") == Value.string("s")
        assert codec.encode(b"\x00") == Value.bytes_(b"\x00")

    def test_datetime(self, codec):
        """Datetimes encode as timestamps."""
        moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert codec.encode(moment) == Value.timestamp(moment)

    def test_markers(self, codec):
        """Marker instances force their representation."""
        assert codec.encode(Vector([1, 2])).kind is ValueKind.VECTOR
        assert codec.encode(Reference("a/b")).kind is ValueKind.REFERENCE
        assert codec.encode(GeoPoint(1.0, 2.0)).kind is ValueKind.GEO_POINT

    def test_containers(self, codec):
        """Lists encode as arrays, dicts as maps."""
        value = codec.encode({"a": [1, "x"], "b": {"c": None}})
        assert value.data["a"] == Value.array([Value.integer(1), Value.string("x")])
        assert value.data["b"] == Value.map({"c": Value.null()})

    def test_enum_by_value(self, codec):
        """Enums encode their value."""
        assert codec.encode(Color.BLUE) == Value.string("blue")

    def test_none_omitted_from_models(self, codec):
        """None fields are omitted from dataclass bodies by default."""
        assert codec.encode_fields(Counter(id=None, count=5)) == {"count": Value.integer(5)}

    def test_model_options(self, codec):
        """Naming convention, read-only and explicit None handling apply."""
        fields = codec.encode_fields(Order(order_id="o1", total_cents=250, tags=["a"]))
        assert set(fields) == {"totalCents", "tags", "color", "note"}
        assert fields["note"].is_null
        assert fields["color"] == Value.string("red")

    def test_annotation_markers(self, codec):
        """Annotations pick marker encodings for plain data."""
        fields = codec.encode_fields(
            Embedded(embedding=[0.5, 1.5], seen_at="2024-01-01T00:00:00Z", owner="users/ada")
        )
        assert fields["embedding"] == Value.vector([0.5, 1.5])
        assert fields["seen_at"].kind is ValueKind.TIMESTAMP
        assert fields["owner"] == Value.reference("users/ada")

    def test_pydantic_model(self, codec):
        """Pydantic models encode through model_dump."""
        fields = codec.encode_fields(Profile(name="ada", age=36))
        assert fields == {"name": Value.string("ada"), "age": Value.integer(36)}

    def test_pydantic_model_keeps_nulls(self, codec):
        """A pydantic model declared with omit_none=False writes None as Null."""
        fields = codec.encode_fields(NullableProfile(name="ada"))
        assert fields == {"name": Value.string("ada"), "nickname": Value.null()}

    def test_sets_are_sorted(self, codec):
        """Sets encode in sorted order."""
        assert codec.encode({3, 1, 2}) == Value.array([Value.integer(i) for i in (1, 2, 3)])

    def test_error_path(self, codec):
        """Failures report where in the tree they happened."""
        with pytest.raises(EncodeError) as exc_info:
            codec.encode({"a": [1, object()]})
        assert exc_info.value.path == "a[1]"

    def test_integer_overflow(self, codec):
        """Integers outside 64 bits cannot be encoded."""
        with pytest.raises(EncodeError):
            codec.encode({"big": 2**70})

    def test_body_must_be_map(self, codec):
        """A document body must encode to a map."""
        with pytest.raises(EncodeError):
            codec.encode_fields([1, 2])


class TestDecode:
    """Tests for Codec.decode."""

    def test_alias_on_decode(self, codec):
        """Aliases are consulted when the wire name is absent."""
        value = Value.map({"_generated_id": Value.string("abc"), "count": Value.integer(5)})
        assert codec.decode(value, Counter) == Counter(id="abc", count=5)

    def test_wire_name_wins_over_alias(self, codec):
        """The primary wire name has priority over aliases."""
        value = Value.map(
            {"id": Value.string("primary"), "_generated_id": Value.string("alias")}
        )
        assert codec.decode(value, Counter).id == "primary"

    def test_defaults_for_missing_fields(self, codec):
        """Missing fields fall back to defaults."""
        assert codec.decode(Value.map({}), Counter) == Counter()

    def test_missing_required_field(self, codec):
        """Missing required fields fail with their path."""
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(Value.map({}), Scores)
        assert exc_info.value.path == "values"

    def test_nested_error_path(self, codec):
        """Element failures report the element index."""
        value = Value.map({"values": Value.array([Value.integer(1), Value.string("x")])})
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(value, Scores)
        assert exc_info.value.path == "values[1]"

    def test_int_to_float(self, codec):
        """Integers widen to float targets."""
        assert codec.decode(Value.integer(2), float) == 2.0

    def test_float_to_int_rejected(self, codec):
        """Doubles do not narrow to int."""
        with pytest.raises(DecodeError):
            codec.decode(Value.double(2.5), int)

    def test_typed_containers(self, codec):
        """Generic containers decode their elements."""
        value = Value.map({"a": Value.array([Value.integer(1)])})
        assert codec.decode(value, dict[str, list[int]]) == {"a": [1]}
        assert codec.decode(Value.array([Value.integer(1), Value.string("x")]), tuple[int, str]) == (1, "x")

    def test_optional(self, codec):
        """Null decodes to None for optional targets."""
        assert codec.decode(Value.null(), Optional[int]) is None
        assert codec.decode(Value.integer(3), Optional[int]) == 3

    def test_enum(self, codec):
        """Enums decode from their value."""
        assert codec.decode(Value.string("blue"), Color) is Color.BLUE
        with pytest.raises(DecodeError):
            codec.decode(Value.string("green"), Color)

    def test_any_gives_natives(self, codec):
        """Any decodes to plain Python."""
        assert codec.decode(Value.map({"x": Value.integer(1)}), Any) == {"x": 1}

    def test_vector_marker(self, codec):
        """Vectors decode to the Vector marker."""
        assert codec.decode(Value.vector([1.0, 2.0]), Vector) == Vector([1.0, 2.0])

    def test_pydantic_model(self, codec):
        """Pydantic targets are validated by the model."""
        value = Value.map({"name": Value.string("ada"), "age": Value.integer(36)})
        assert codec.decode(value, Profile) == Profile(name="ada", age=36)
        with pytest.raises(DecodeError):
            codec.decode(Value.map({"name": Value.string("ada")}), Profile)

    def test_document_metadata(self, codec):
        """Models can alias server metadata such as the document id."""
        document = Document(
            name="projects/p/databases/(default)/documents/orders/o42",
            fields={"totalCents": Value.integer(990)},
        )
        order = codec.decode_document(document, Order)
        assert order.order_id == "o42"
        assert order.total_cents == 990

    def test_document_as_dict_has_only_stored_fields(self, codec):
        """Plain targets do not see metadata."""
        document = Document(name="x/c/d", fields={"a": Value.integer(1)})
        assert codec.decode_document(document, dict) == {"a": 1}


class TestRegistry:
    """Tests for ModelRegistry."""

    def test_caches_descriptors(self):
        """A type is resolved once."""
        registry = ModelRegistry()
        first = registry.descriptor_for(Counter)
        assert registry.descriptor_for(Counter) is first
        assert Counter in registry
        assert len(registry) == 1

    def test_frozen_rejects_new_types(self):
        """A frozen registry only serves known types."""
        registry = ModelRegistry()
        registry.register(Counter)
        registry.freeze()
        assert registry.descriptor_for(Counter)
        with pytest.raises(RegistryFrozenError):
            registry.descriptor_for(Scores)

    def test_duplicate_wire_names(self):
        """Two fields cannot share a wire name."""

        @dataclass
        class Clash:
            a: int = doc_field(default=0, name="x")
            b: int = doc_field(default=0, name="x")

        with pytest.raises(DuplicateWireNameError):
            ModelRegistry().register(Clash)

    def test_descriptor_without_default(self):
        """Required fields resolve to descriptors with no default."""
        descriptor = ModelRegistry().descriptor_for(Scores)
        (values,) = descriptor.fields
        assert values.default is NO_DEFAULT
        assert not values.has_default

        bare = FieldDescriptor(
            attr="name", name="name", aliases=(), annotation=str, omit_if_none=True
        )
        assert not bare.has_default
        assert bare.source_names == ("name",)

    def test_descriptor_defaults(self):
        """Plain defaults and factories are both honoured."""
        descriptor = ModelRegistry().descriptor_for(Order)
        by_attr = {f.attr: f for f in descriptor.fields}
        assert by_attr["total_cents"].make_default() == 0
        assert by_attr["tags"].has_default
        assert by_attr["tags"].make_default() == []
        assert by_attr["tags"].make_default() is not by_attr["tags"].make_default()

    def test_non_dataclass(self):
        """Only dataclasses have descriptors."""
        with pytest.raises(TypeError):
            ModelRegistry().register(int)

    def test_name_conventions(self):
        """Conventions rename attribute names."""
        assert NameConvention.CAMEL_CASE.apply("total_cents") == "totalCents"
        assert NameConvention.PASCAL_CASE.apply("total_cents") == "TotalCents"
        assert NameConvention.SNAKE_CASE.apply("totalCents") == "total_cents"
