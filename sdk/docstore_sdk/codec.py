"""
Value codec: native Python objects <-> wire Values.

Encoding is driven by the runtime value, refined by the declared annotation
where one is known (dataclass fields, element types of list[...] and
dict[str, ...]). Decoding is driven by the requested target type.

Supported native shapes:
    None, bool, int, float, str, bytes, datetime, Enum, list/tuple/set,
    dict[str, T], Optional[T] and unions, dataclasses (via ModelRegistry
    descriptors), pydantic models, Any, Value itself, and the marker types
    Timestamp, Vector, Reference and GeoPoint.

Invariants:
    - decode(encode(v), type(v)) == v, modulo the None-omission convention
    - Markers are recognised by instance type or annotation, never by name
    - Any nested failure aborts the whole call with a path-qualified error

How to change safely:
    - Keep _decode_into dispatch order: Value, Any, unions, markers, scalars,
      containers, models. Reordering changes which branch wins for str-Enums
      and bool/int.
"""

from __future__ import annotations

import dataclasses
import logging
import types
import typing
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import pydantic

from .errors import DecodeError, EncodeError
from .registry import ModelRegistry
from .schema import ModelDescriptor, model_options
from .value import (
    GeoPoint,
    Reference,
    Timestamp,
    Value,
    ValueKind,
    Vector,
    parse_timestamp,
)

if TYPE_CHECKING:
    from .protocol import Document

logger = logging.getLogger(__name__)

# Server metadata injected into the field map by Codec.decode_document().
DOCUMENT_ID_FIELD = "_document_id"
DOCUMENT_PATH_FIELD = "_document_path"
CREATE_TIME_FIELD = "_create_time"
UPDATE_TIME_FIELD = "_update_time"

_NONE_TYPE = type(None)
_SEQUENCE_ORIGINS = (list, tuple, set, frozenset)


def _format_path(parts: list[str]) -> str:
    out = ""
    for part in parts:
        if part.startswith("["):
            out += part
        elif out:
            out += "." + part
        else:
            out = part
    return out


def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Strip None from a union. Returns (inner annotation, was_optional)."""
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        args = [a for a in typing.get_args(annotation) if a is not _NONE_TYPE]
        optional = len(args) != len(typing.get_args(annotation))
        if len(args) == 1:
            return args[0], optional
        return typing.Union[tuple(args)], optional
    return annotation, False


def _is_pydantic_model(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, pydantic.BaseModel)


class Codec:
    """Converts between native objects and wire Values.

    Args:
        registry: Descriptor cache; a private one is created when omitted

    Example:
        >>> codec = Codec()
        >>> codec.encode({"count": 5})
        Value(kind=<ValueKind.MAP: 'map'>, data={'count': Value(...)})
    """

    def __init__(self, registry: ModelRegistry | None = None) -> None:
        self._registry = registry or ModelRegistry()

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def encode(self, obj: Any, annotation: Any = None) -> Value:
        """Encode a native value.

        Raises:
            EncodeError: If a value cannot be represented
        """
        return self._encode(obj, annotation, [])

    def encode_fields(self, obj: Any) -> dict[str, Value]:
        """Encode a document body. The value must encode to a map.

        Raises:
            EncodeError: If obj does not encode to a map
        """
        value = self.encode(obj)
        if value.kind is not ValueKind.MAP:
            raise EncodeError(f"Document body must encode to a map, got {value.kind.value}")
        return dict(value.data)

    def _encode(self, obj: Any, annotation: Any, path: list[str]) -> Value:
        hint, _ = _unwrap_optional(annotation) if annotation is not None else (None, False)

        if isinstance(obj, Value):
            return obj
        if obj is None:
            return Value.null()

        if hint is Vector and isinstance(obj, (list, tuple)):
            return self._wrap(lambda: Value.vector(obj), path)
        if hint is Timestamp and isinstance(obj, (datetime, str)):
            return self._wrap(lambda: Value.timestamp(obj), path)
        if hint is Reference and isinstance(obj, str):
            return self._wrap(lambda: Value.reference(obj), path)

        if isinstance(obj, Timestamp):
            return Value.timestamp(obj)
        if isinstance(obj, Vector):
            return Value.vector(obj)
        if isinstance(obj, Reference):
            return Value.reference(obj)
        if isinstance(obj, GeoPoint):
            return Value.geo_point(obj)
        if isinstance(obj, Enum):
            return self._encode(obj.value, None, path)
        if isinstance(obj, bool):
            return Value.boolean(obj)
        if isinstance(obj, int):
            return self._wrap(lambda: Value.integer(obj), path)
        if isinstance(obj, float):
            return Value.double(obj)
        if isinstance(obj, str):
            return Value.string(obj)
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return Value.bytes_(obj)
        if isinstance(obj, datetime):
            return Value.timestamp(obj)
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return self._encode_model(obj, self._registry.descriptor_for(type(obj)), path)
        if isinstance(obj, pydantic.BaseModel):
            omit_none = model_options(type(obj)).omit_none
            dumped = obj.model_dump(mode="python", by_alias=True, exclude_none=omit_none)
            return self._encode_mapping(dumped, None, path)
        if isinstance(obj, Mapping):
            value_hint = None
            if hint is not None and typing.get_origin(hint) in (dict, Mapping):
                args = typing.get_args(hint)
                value_hint = args[1] if len(args) == 2 else None
            return self._encode_mapping(obj, value_hint, path)
        if isinstance(obj, (list, tuple, set, frozenset)):
            return self._encode_sequence(obj, hint, path)

        raise EncodeError(f"Unsupported type {type(obj).__name__}", _format_path(path))

    def _wrap(self, build: Any, path: list[str]) -> Value:
        try:
            return build()
        except (TypeError, ValueError) as e:
            raise EncodeError(str(e), _format_path(path)) from e

    def _encode_mapping(self, obj: Mapping[Any, Any], value_hint: Any, path: list[str]) -> Value:
        fields: dict[str, Value] = {}
        for key, item in obj.items():
            if not isinstance(key, str) or not key:
                raise EncodeError(
                    f"Map keys must be non-empty strings, got {key!r}", _format_path(path)
                )
            fields[key] = self._encode(item, value_hint, path + [key])
        return Value.map(fields)

    def _encode_sequence(self, obj: Any, hint: Any, path: list[str]) -> Value:
        item_hint = None
        if hint is not None:
            args = typing.get_args(hint)
            if typing.get_origin(hint) in _SEQUENCE_ORIGINS and args:
                item_hint = args[0]
        items = obj
        if isinstance(obj, (set, frozenset)):
            try:
                items = sorted(obj)
            except TypeError:
                items = list(obj)
        return Value.array(
            self._encode(item, item_hint, path + [f"[{i}]"]) for i, item in enumerate(items)
        )

    def _encode_model(self, obj: Any, descriptor: ModelDescriptor, path: list[str]) -> Value:
        fields: dict[str, Value] = {}
        for fd in descriptor.fields:
            if fd.read_only:
                continue
            item = getattr(obj, fd.attr)
            if item is None and fd.omit_if_none:
                continue
            fields[fd.name] = self._encode(item, fd.annotation, path + [fd.name])
        return Value.map(fields)

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode(self, value: Value, target: Any = Any) -> Any:
        """Decode a wire value into the target type.

        Raises:
            DecodeError: If the value does not fit the target type
        """
        return self._decode_into(value, target, [])

    def decode_fields(self, fields: Mapping[str, Value], target: Any = Any) -> Any:
        """Decode a document's top-level field map into the target type."""
        return self.decode(Value.map(fields), target)

    def decode_document(self, document: Document, target: Any = Any) -> Any:
        """Decode a document, exposing server metadata to model fields.

        For model targets the field map is extended (without overriding
        stored fields) with DOCUMENT_ID_FIELD, DOCUMENT_PATH_FIELD,
        CREATE_TIME_FIELD and UPDATE_TIME_FIELD so fields can alias them.
        Plain dict/Any targets receive the stored fields only.
        """
        fields = dict(document.fields)
        inner, _ = _unwrap_optional(target)
        if dataclasses.is_dataclass(inner) or _is_pydantic_model(inner):
            fields.setdefault(DOCUMENT_PATH_FIELD, Value.string(document.name))
            fields.setdefault(DOCUMENT_ID_FIELD, Value.string(document.name.rsplit("/", 1)[-1]))
            if document.create_time is not None:
                fields.setdefault(CREATE_TIME_FIELD, Value.timestamp(document.create_time))
            if document.update_time is not None:
                fields.setdefault(UPDATE_TIME_FIELD, Value.timestamp(document.update_time))
        return self.decode(Value.map(fields), target)

    def _fail(self, message: str, path: list[str]) -> DecodeError:
        return DecodeError(message, _format_path(path))

    def _expect(self, value: Value, kinds: tuple[ValueKind, ...], target: Any, path: list[str]):
        if value.kind not in kinds:
            name = getattr(target, "__name__", str(target))
            raise self._fail(f"Expected {name}, got {value.kind.value}", path)

    def _decode_into(self, value: Value, target: Any, path: list[str]) -> Any:
        if target is Value:
            return value
        if target is Any or target is object or target is None:
            return value.to_native()

        origin = typing.get_origin(target)
        if origin is typing.Union or origin is types.UnionType:
            return self._decode_union(value, target, path)

        if target is Timestamp:
            if value.kind is ValueKind.STRING:
                return self._parse(lambda: Timestamp(value.data), path)
            self._expect(value, (ValueKind.TIMESTAMP,), target, path)
            return Timestamp(value.data)
        if target is Vector:
            if value.kind is ValueKind.ARRAY:
                return Vector(self._decode_into(v, float, path + [f"[{i}]"]) for i, v in enumerate(value.data))
            self._expect(value, (ValueKind.VECTOR,), target, path)
            return Vector(value.data)
        if target is Reference:
            self._expect(value, (ValueKind.REFERENCE, ValueKind.STRING), target, path)
            return Reference(value.data)
        if target is GeoPoint:
            self._expect(value, (ValueKind.GEO_POINT,), target, path)
            return value.data

        if isinstance(target, type) and issubclass(target, Enum):
            raw = self._decode_into(value, Any, path)
            try:
                return target(raw)
            except ValueError as e:
                raise self._fail(f"{raw!r} is not a valid {target.__name__}", path) from e

        if target is bool:
            self._expect(value, (ValueKind.BOOLEAN,), target, path)
            return value.data
        if target is int:
            self._expect(value, (ValueKind.INTEGER,), target, path)
            return value.data
        if target is float:
            self._expect(value, (ValueKind.DOUBLE, ValueKind.INTEGER), target, path)
            return float(value.data)
        if target is str:
            self._expect(value, (ValueKind.STRING, ValueKind.REFERENCE), target, path)
            return value.data
        if target is bytes:
            self._expect(value, (ValueKind.BYTES,), target, path)
            return value.data
        if target is datetime:
            if value.kind is ValueKind.STRING:
                return self._parse(lambda: parse_timestamp(value.data), path)
            self._expect(value, (ValueKind.TIMESTAMP,), target, path)
            return value.data

        container = origin or target
        if container in _SEQUENCE_ORIGINS or container in (
            typing.Sequence,
            typing.MutableSequence,
            typing.AbstractSet,
        ) or origin is not None and _is_abc(origin, ("Sequence", "MutableSequence", "Set")):
            return self._decode_sequence(value, target, container, path)
        if container in (dict, Mapping) or origin is not None and _is_abc(
            origin, ("Mapping", "MutableMapping")
        ):
            return self._decode_mapping(value, target, path)

        if dataclasses.is_dataclass(target) and isinstance(target, type):
            return self._decode_model(value, self._registry.descriptor_for(target), path)
        if _is_pydantic_model(target):
            return self._decode_pydantic(value, target, path)

        raise self._fail(f"Unsupported target type {target!r}", path)

    def _parse(self, build: Any, path: list[str]) -> Any:
        try:
            return build()
        except ValueError as e:
            raise self._fail(str(e), path) from e

    def _decode_union(self, value: Value, target: Any, path: list[str]) -> Any:
        args = typing.get_args(target)
        if value.is_null and _NONE_TYPE in args:
            return None
        candidates = [a for a in args if a is not _NONE_TYPE]
        if len(candidates) == 1:
            return self._decode_into(value, candidates[0], path)
        errors: list[str] = []
        for candidate in candidates:
            try:
                return self._decode_into(value, candidate, path)
            except DecodeError as e:
                errors.append(e.reason)
        raise self._fail(f"No union member matched: {'; '.join(errors)}", path)

    def _decode_sequence(self, value: Value, target: Any, container: Any, path: list[str]) -> Any:
        args = typing.get_args(target)
        if value.kind is ValueKind.VECTOR:
            items = [Value.double(v) for v in value.data]
        else:
            self._expect(value, (ValueKind.ARRAY,), list, path)
            items = list(value.data)

        if container is tuple and args and not (len(args) == 2 and args[1] is Ellipsis):
            if len(args) != len(items):
                raise self._fail(f"Expected {len(args)} elements, got {len(items)}", path)
            return tuple(
                self._decode_into(item, tp, path + [f"[{i}]"])
                for i, (item, tp) in enumerate(zip(items, args))
            )

        item_type = args[0] if args else Any
        decoded = [
            self._decode_into(item, item_type, path + [f"[{i}]"]) for i, item in enumerate(items)
        ]
        if container is tuple:
            return tuple(decoded)
        if container in (set, typing.AbstractSet) or _is_abc(container, ("Set",)):
            return set(decoded)
        if container is frozenset:
            return frozenset(decoded)
        return decoded

    def _decode_mapping(self, value: Value, target: Any, path: list[str]) -> dict[str, Any]:
        self._expect(value, (ValueKind.MAP,), dict, path)
        args = typing.get_args(target)
        if args and args[0] is not str and args[0] is not Any:
            raise self._fail(f"Map keys decode to str only, not {args[0]!r}", path)
        item_type = args[1] if len(args) == 2 else Any
        return {
            key: self._decode_into(item, item_type, path + [key])
            for key, item in value.data.items()
        }

    def _decode_model(self, value: Value, descriptor: ModelDescriptor, path: list[str]) -> Any:
        if value.kind is not ValueKind.MAP:
            raise self._fail(
                f"Expected map for {descriptor.type_name}, got {value.kind.value}", path
            )
        fields: Mapping[str, Value] = value.data
        kwargs: dict[str, Any] = {}
        for fd in descriptor.fields:
            source = next((n for n in fd.source_names if n in fields), None)
            _, optional = _unwrap_optional(fd.annotation)
            if source is None:
                if fd.has_default:
                    kwargs[fd.attr] = fd.make_default()
                elif optional:
                    kwargs[fd.attr] = None
                else:
                    raise self._fail(
                        f"Missing field '{fd.name}' for {descriptor.type_name}", path + [fd.name]
                    )
                continue
            kwargs[fd.attr] = self._decode_into(fields[source], fd.annotation, path + [fd.name])
        try:
            return descriptor.model(**kwargs)
        except (TypeError, ValueError) as e:
            raise self._fail(f"Cannot construct {descriptor.type_name}: {e}", path) from e

    def _decode_pydantic(self, value: Value, target: type, path: list[str]) -> Any:
        self._expect(value, (ValueKind.MAP,), target, path)
        try:
            return target.model_validate(value.to_native())
        except pydantic.ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            loc = [str(p) if not isinstance(p, int) else f"[{p}]" for p in first.get("loc", ())]
            raise self._fail(first.get("msg", str(e)), path + loc) from e


def _is_abc(origin: Any, names: tuple[str, ...]) -> bool:
    return getattr(origin, "__module__", "") == "collections.abc" and origin.__name__ in names
