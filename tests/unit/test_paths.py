"""
Unit tests for document paths and field paths.

Tests cover:
- Document path construction and validation
- Parent path building
- Field path parsing, quoting and nested access
"""

import pytest

from docstore_sdk.errors import ValidationError
from docstore_sdk.field_path import (
    canonical_field_path,
    delete_field,
    get_field,
    join_field_path,
    parse_field_path,
    set_field,
)
from docstore_sdk.paths import (
    AUTO_ID_LENGTH,
    ParentPathBuilder,
    database_path,
    generate_document_id,
    is_document_path,
    safe_document_path,
    split_document_path,
    validate_parent_path,
)
from docstore_sdk.value import Value

ROOT = "projects/p/databases/(default)/documents"


class TestDocumentPaths:
    """Tests for document addressing."""

    def test_database_path(self):
        """Database path combines project and database id."""
        assert database_path("p") == "projects/p/databases/(default)"
        with pytest.raises(ValidationError):
            database_path("")

    def test_safe_document_path(self):
        """Ids become path segments."""
        assert safe_document_path(ROOT, "users", "ada") == f"{ROOT}/users/ada"

    def test_slash_in_id_rejected(self):
        """Ids containing a slash would escape their segment."""
        with pytest.raises(ValidationError):
            safe_document_path(ROOT, "users", "a/b")
        with pytest.raises(ValidationError):
            safe_document_path(ROOT, "users/x", "a")

    def test_long_id_rejected(self):
        """Ids longer than 1500 characters are rejected."""
        with pytest.raises(ValidationError):
            safe_document_path(ROOT, "users", "x" * 1501)

    def test_split_document_path(self):
        """A document path splits into collection path and id."""
        assert split_document_path(f"{ROOT}/users/ada") == (f"{ROOT}/users", "ada")

    def test_generated_ids(self):
        """Generated ids are 20 alphanumeric characters and distinct."""
        ids = {generate_document_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) == AUTO_ID_LENGTH and i.isalnum() for i in ids)

    def test_parent_builder(self):
        """Nested parents are built one level at a time."""
        parent = ParentPathBuilder(ROOT).at("users", "u1").at("orders", "o7")
        assert str(parent) == f"{ROOT}/users/u1/orders/o7"
        assert is_document_path(parent.path, ROOT)

    def test_validate_parent_path(self):
        """A parent must be the root or a document path."""
        assert validate_parent_path(ROOT, ROOT) == ROOT
        assert validate_parent_path(f"{ROOT}/users/u1", ROOT)
        with pytest.raises(ValidationError):
            validate_parent_path(f"{ROOT}/users", ROOT)


class TestFieldPaths:
    """Tests for dotted field paths."""

    def test_parse_simple(self):
        """Dots separate segments."""
        assert parse_field_path("a.b.c") == ("a", "b", "c")

    def test_parse_quoted(self):
        """Backticks make a segment literal."""
        assert parse_field_path("`a.b`.c") == ("a.b", "c")
        assert parse_field_path("`we\\`ird`") == ("we`ird",)

    @pytest.mark.parametrize("path", ["", "a..b", ".a", "a.", "`a", "`a`b"])
    def test_parse_invalid(self, path):
        """Malformed paths are rejected."""
        with pytest.raises(ValidationError):
            parse_field_path(path)

    def test_canonical_quotes_when_needed(self):
        """Only non-identifier segments are quoted."""
        assert join_field_path(["a", "b-c", "1x"]) == "a.`b-c`.`1x`"
        assert canonical_field_path("`simple`.x") == "simple.x"
        assert canonical_field_path("__name__") == "__name__"

    def test_get_nested(self):
        """Nested lookup walks maps."""
        fields = {"a": Value.map({"b": Value.integer(1)})}
        assert get_field(fields, "a.b") == Value.integer(1)
        assert get_field(fields, "a.c") is None
        assert get_field(fields, "x.y") is None

    def test_set_creates_maps(self):
        """Setting a nested path creates intermediate maps."""
        fields = {}
        set_field(fields, "a.b.c", Value.string("v"))
        assert get_field(fields, "a.b.c") == Value.string("v")

    def test_set_replaces_non_map(self):
        """A scalar on the way is replaced by a map."""
        fields = {"a": Value.integer(1)}
        set_field(fields, "a.b", Value.integer(2))
        assert fields["a"].data == {"b": Value.integer(2)}

    def test_delete_nested(self):
        """Deleting keeps sibling entries."""
        fields = {"a": Value.map({"b": Value.integer(1), "c": Value.integer(2)})}
        assert delete_field(fields, "a.b")
        assert fields["a"].data == {"c": Value.integer(2)}
        assert not delete_field(fields, "a.zz")


class TestEscapedFieldAccess:
    """Tests for backtick-escaped paths against real document fields."""

    @pytest.fixture
    def fields(self):
        """Fields holding both a literal "a.b" and a nested a -> b."""
        return {
            "a.b": Value.integer(1),
            "a": Value.map({"b": Value.integer(2)}),
        }

    def test_get_addresses_literal_field(self, fields):
        """An escaped segment reads the dotted field, a plain path the nested one."""
        assert get_field(fields, "`a.b`") == Value.integer(1)
        assert get_field(fields, "a.b") == Value.integer(2)

    def test_set_leaves_nested_field(self, fields):
        """Writing through the escaped path never touches the nested entry."""
        set_field(fields, "`a.b`", Value.integer(10))
        assert fields["a.b"] == Value.integer(10)
        assert fields["a"] == Value.map({"b": Value.integer(2)})

    def test_delete_leaves_nested_field(self, fields):
        """Deleting through the escaped path removes only the dotted field."""
        assert delete_field(fields, "`a.b`")
        assert "a.b" not in fields
        assert get_field(fields, "a.b") == Value.integer(2)
