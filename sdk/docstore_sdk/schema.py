"""
Model declarations for the value codec.

Application document types are plain dataclasses. This module provides the
knobs that control how their fields map to document fields:

- doc_field(): per-field wire name, aliases, None handling, read-only flag
- document_model(): per-model naming convention and None handling
- FieldDescriptor / ModelDescriptor: the resolved, immutable mapping table the
  codec runs on (built once per type by ModelRegistry)

Invariants:
    - Descriptors are immutable once built
    - An explicit wire name always wins over the model's naming convention
    - Aliases are only consulted on decode, in declaration order

Example:
    >>> @document_model(rename_all=NameConvention.CAMEL_CASE)
    ... @dataclass
    ... class Order:
    ...     order_id: str | None = doc_field(default=None, aliases=("_document_id",))
    ...     total_cents: int = 0
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import pydantic

MODEL_OPTIONS_ATTR = "__docstore_model__"
FIELD_METADATA_KEY = "docstore"

_WORD_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

# Marks a descriptor field without a default value or factory.
NO_DEFAULT: Any = object()


class NameConvention(Enum):
    """Case conventions applied to attribute names at the codec boundary."""

    NONE = "none"
    CAMEL_CASE = "camelCase"
    SNAKE_CASE = "snake_case"
    PASCAL_CASE = "PascalCase"

    def apply(self, name: str) -> str:
        """Transform a Python attribute name into a wire name."""
        if self is NameConvention.NONE:
            return name
        words = [w for w in _WORD_BOUNDARY.sub("_", name).split("_") if w]
        if not words:
            return name
        if self is NameConvention.SNAKE_CASE:
            return "_".join(w.lower() for w in words)
        if self is NameConvention.CAMEL_CASE:
            return words[0].lower() + "".join(w.capitalize() for w in words[1:])
        return "".join(w.capitalize() for w in words)


@dataclass(frozen=True)
class FieldOptions:
    """Per-field codec options stored in dataclass field metadata."""

    name: str | None = None
    aliases: tuple[str, ...] = ()
    omit_if_none: bool | None = None
    read_only: bool = False


@dataclass(frozen=True)
class ModelOptions:
    """Per-model codec options attached by document_model()."""

    rename_all: NameConvention = NameConvention.NONE
    omit_none: bool = True


@dataclass(frozen=True)
class FieldDescriptor:
    """Resolved mapping for one attribute of a model.

    Attributes:
        attr: Python attribute name
        name: Wire field name
        aliases: Alternate wire names tried on decode, in order
        annotation: Resolved type annotation
        omit_if_none: Whether None is omitted (True) or written as Null
        read_only: Decoded but never encoded
        default: Default value, or NO_DEFAULT
        default_factory: Default factory, or NO_DEFAULT
    """

    attr: str
    name: str
    aliases: tuple[str, ...]
    annotation: Any
    omit_if_none: bool
    read_only: bool = False
    default: Any = NO_DEFAULT
    default_factory: Any = NO_DEFAULT

    @property
    def has_default(self) -> bool:
        return (
            self.default is not NO_DEFAULT
            or self.default_factory is not NO_DEFAULT
        )

    def make_default(self) -> Any:
        if self.default_factory is not NO_DEFAULT:
            return self.default_factory()
        return self.default

    @property
    def source_names(self) -> tuple[str, ...]:
        """Wire names consulted on decode, in priority order."""
        return (self.name, *self.aliases)


@dataclass(frozen=True)
class ModelDescriptor:
    """Resolved mapping table for a model type."""

    model: type
    fields: tuple[FieldDescriptor, ...]
    options: ModelOptions

    @property
    def type_name(self) -> str:
        return self.model.__qualname__


def doc_field(
    *,
    name: str | None = None,
    aliases: tuple[str, ...] | list[str] = (),
    omit_if_none: bool | None = None,
    read_only: bool = False,
    default: Any = dataclasses.MISSING,
    default_factory: Callable[[], Any] | Any = dataclasses.MISSING,
) -> Any:
    """Declare a dataclass field with codec options.

    Args:
        name: Explicit wire name (overrides the model's naming convention)
        aliases: Alternate wire names accepted on decode
        omit_if_none: Override the model's None handling for this field
        read_only: Populate on decode, never write on encode
        default: Default value
        default_factory: Default factory

    Returns:
        A dataclasses.Field carrying the options in its metadata

    Example:
        >>> @dataclass
        ... class Counter:
        ...     id: str | None = doc_field(default=None, aliases=("_generated_id",))
        ...     count: int = 0
    """
    options = FieldOptions(
        name=name,
        aliases=tuple(aliases),
        omit_if_none=omit_if_none,
        read_only=read_only,
    )
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata={FIELD_METADATA_KEY: options},
    )


def document_model(
    cls: type | None = None,
    *,
    rename_all: NameConvention | str = NameConvention.NONE,
    omit_none: bool = True,
) -> Any:
    """Attach model-level codec options to a dataclass or pydantic model.

    Usable bare (@document_model) or with arguments. Apply it above @dataclass.
    Pydantic models keep their own alias machinery, so only omit_none applies
    to them.
    """
    convention = NameConvention(rename_all) if isinstance(rename_all, str) else rename_all
    options = ModelOptions(rename_all=convention, omit_none=omit_none)

    def wrap(model: type) -> type:
        if not (dataclasses.is_dataclass(model) or _is_pydantic_model(model)):
            raise TypeError(f"document_model requires a dataclass or pydantic model, got {model!r}")
        setattr(model, MODEL_OPTIONS_ATTR, options)
        return model

    if cls is None:
        return wrap
    return wrap(cls)


def _is_pydantic_model(model: Any) -> bool:
    return isinstance(model, type) and issubclass(model, pydantic.BaseModel)


def model_options(model: type) -> ModelOptions:
    """Options declared on a model, or the defaults."""
    return getattr(model, MODEL_OPTIONS_ATTR, None) or ModelOptions()


def field_options(f: dataclasses.Field) -> FieldOptions:
    """Options declared on a dataclass field, or the defaults."""
    return f.metadata.get(FIELD_METADATA_KEY) or FieldOptions()
