"""
Descriptor registry for the value codec.

Resolving a dataclass into a ModelDescriptor requires evaluating type hints
and reading field metadata. That work is done once per type and cached here.

Each Codec owns its registry; there is no process-wide instance. A registry
can be frozen after warm-up so that an unexpected model type fails loudly
instead of being resolved lazily.

Example:
    >>> registry = ModelRegistry()
    >>> descriptor = registry.descriptor_for(Order)
    >>> [f.name for f in descriptor.fields]
    ['orderId', 'totalCents']
"""

from __future__ import annotations

import dataclasses
import threading
import typing
from collections.abc import Iterator

from .schema import (
    NO_DEFAULT,
    FieldDescriptor,
    ModelDescriptor,
    field_options,
    model_options,
)


class RegistryFrozenError(Exception):
    """Registry is frozen and cannot resolve new types."""

    pass


class DuplicateWireNameError(Exception):
    """Two fields of one model map to the same wire name."""

    pass


class ModelRegistry:
    """Cache of resolved model descriptors.

    Thread-safe: concurrent lookups of an unresolved type resolve it once.
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._descriptors: dict[type, ModelDescriptor] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether registry is frozen."""
        return self._frozen

    def freeze(self) -> None:
        """Stop resolving new types."""
        with self._lock:
            self._frozen = True

    def register(self, model: type) -> ModelDescriptor:
        """Resolve and cache a model type eagerly.

        Raises:
            RegistryFrozenError: If the registry is frozen
            TypeError: If model is not a dataclass
            DuplicateWireNameError: If two fields share a wire name
        """
        return self.descriptor_for(model)

    def descriptor_for(self, model: type) -> ModelDescriptor:
        """Get the descriptor of a dataclass type, resolving it on first use."""
        descriptor = self._descriptors.get(model)
        if descriptor is not None:
            return descriptor

        with self._lock:
            descriptor = self._descriptors.get(model)
            if descriptor is not None:
                return descriptor
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot resolve {model.__qualname__}: registry is frozen"
                )
            descriptor = _build_descriptor(model)
            self._descriptors[model] = descriptor
            return descriptor

    def __contains__(self, model: type) -> bool:
        return model in self._descriptors

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(list(self._descriptors.values()))

    def __len__(self) -> int:
        return len(self._descriptors)


def _build_descriptor(model: type) -> ModelDescriptor:
    if not dataclasses.is_dataclass(model) or not isinstance(model, type):
        raise TypeError(f"{model!r} is not a dataclass type")

    options = model_options(model)
    hints = typing.get_type_hints(model)
    fields: list[FieldDescriptor] = []
    seen: dict[str, str] = {}

    for f in dataclasses.fields(model):
        if not f.init:
            continue
        opts = field_options(f)
        name = opts.name or options.rename_all.apply(f.name)
        if name in seen:
            raise DuplicateWireNameError(
                f"{model.__qualname__}: fields '{seen[name]}' and '{f.name}' "
                f"both map to '{name}'"
            )
        seen[name] = f.name
        fields.append(
            FieldDescriptor(
                attr=f.name,
                name=name,
                aliases=opts.aliases,
                annotation=hints.get(f.name, typing.Any),
                omit_if_none=(
                    options.omit_none if opts.omit_if_none is None else opts.omit_if_none
                ),
                read_only=opts.read_only,
                default=NO_DEFAULT if f.default is dataclasses.MISSING else f.default,
                default_factory=(
                    NO_DEFAULT if f.default_factory is dataclasses.MISSING else f.default_factory
                ),
            )
        )

    return ModelDescriptor(model=model, fields=tuple(fields), options=options)
