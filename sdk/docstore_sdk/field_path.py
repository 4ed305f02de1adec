"""
Dotted field paths.

A field path addresses a value nested inside a document's map fields:
"address.city" is entry "city" of map "address". A segment wrapped in
backticks is taken literally, so "`a.b`.c" addresses entry "c" of the
top-level field named "a.b". Inside backticks a backslash escapes the next
character.

The special path "__name__" refers to the document's own name.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence

from .errors import ValidationError
from .value import Value, ValueKind

DOCUMENT_NAME_FIELD = "__name__"

_SIMPLE_SEGMENT = re.compile(r"^[_a-zA-Z][_a-zA-Z0-9]*$")


def parse_field_path(path: str) -> tuple[str, ...]:
    """Split a dotted field path into segments.

    Args:
        path: Field path such as "a.b" or "a.`b.c`"

    Returns:
        The literal segments

    Raises:
        ValidationError: If the path is empty, has an empty segment or an
            unterminated backtick
    """
    if not path:
        raise ValidationError("Field path must not be empty", field_name=path)

    segments: list[str] = []
    current: list[str] = []
    quoted = False
    was_quoted = False
    i = 0
    while i < len(path):
        ch = path[i]
        if quoted:
            if ch == "\\":
                if i + 1 >= len(path):
                    raise ValidationError(f"Dangling escape in field path {path!r}", field_name=path)
                current.append(path[i + 1])
                i += 2
                continue
            if ch == "`":
                quoted = False
            else:
                current.append(ch)
        elif ch == "`":
            if current:
                raise ValidationError(
                    f"Backtick must start a segment in field path {path!r}", field_name=path
                )
            quoted = True
            was_quoted = True
        elif ch == ".":
            if not current and not was_quoted:
                raise ValidationError(f"Empty segment in field path {path!r}", field_name=path)
            segments.append("".join(current))
            current = []
            was_quoted = False
        else:
            if was_quoted:
                raise ValidationError(
                    f"Unexpected character after quoted segment in {path!r}", field_name=path
                )
            current.append(ch)
        i += 1

    if quoted:
        raise ValidationError(f"Unterminated backtick in field path {path!r}", field_name=path)
    if not current and not was_quoted:
        raise ValidationError(f"Empty segment in field path {path!r}", field_name=path)
    segments.append("".join(current))

    for segment in segments:
        if not segment:
            raise ValidationError(f"Empty segment in field path {path!r}", field_name=path)
    return tuple(segments)


def quote_segment(segment: str) -> str:
    """Quote a segment with backticks when it is not a simple identifier."""
    if _SIMPLE_SEGMENT.match(segment):
        return segment
    escaped = segment.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


def join_field_path(segments: Sequence[str]) -> str:
    """Build the canonical dotted form of a sequence of segments."""
    if not segments:
        raise ValidationError("Field path must have at least one segment")
    return ".".join(quote_segment(s) for s in segments)


def canonical_field_path(path: str) -> str:
    """Validate a field path and return its canonical spelling."""
    if path == DOCUMENT_NAME_FIELD:
        return path
    return join_field_path(parse_field_path(path))


def _segments(path: str | Sequence[str]) -> tuple[str, ...]:
    if isinstance(path, str):
        return parse_field_path(path)
    return tuple(path)


def get_field(fields: Mapping[str, Value], path: str | Sequence[str]) -> Value | None:
    """Look up a nested value by field path.

    Returns:
        The value, or None when any segment is missing or not a map
    """
    segments = _segments(path)
    current: Mapping[str, Value] = fields
    for segment in segments[:-1]:
        nested = current.get(segment)
        if nested is None or nested.kind is not ValueKind.MAP:
            return None
        current = nested.data
    return current.get(segments[-1])


def set_field(fields: dict[str, Value], path: str | Sequence[str], value: Value) -> None:
    """Set a nested value, creating intermediate maps as needed.

    Intermediate maps are rebuilt rather than mutated since Values are
    immutable.
    """
    segments = _segments(path)
    head = segments[0]
    if len(segments) == 1:
        fields[head] = value
        return
    existing = fields.get(head)
    nested = dict(existing.data) if existing is not None and existing.kind is ValueKind.MAP else {}
    set_field(nested, segments[1:], value)
    fields[head] = Value.map(nested)


def delete_field(fields: dict[str, Value], path: str | Sequence[str]) -> bool:
    """Remove a nested value. Returns True if something was removed."""
    segments = _segments(path)
    head = segments[0]
    if len(segments) == 1:
        return fields.pop(head, None) is not None
    existing = fields.get(head)
    if existing is None or existing.kind is not ValueKind.MAP:
        return False
    nested = dict(existing.data)
    removed = delete_field(nested, segments[1:])
    if removed:
        fields[head] = Value.map(nested)
    return removed
