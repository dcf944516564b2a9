"""Heterogeneous, kind-tagged option dictionary.

Model code passes named options around without a dataclass per option set:

    opts = Options()
    opts.set("dim-emb", 512)
    opts.set("dim-vocabs", [32000, 32000])
    opts.get("dim-emb", int)              -> 512
    opts.get("dim-vocabs", list[int])     -> [32000, 32000]
    opts.get("tied-embeddings", bool, False)

Values are stored as `DictionaryValue(kind, value)`. Vectors are not a native
kind: a list is stored as a VECTOR of scalar DictionaryValues and unwrapped
element by element on `get`. Retrieval is strict: the requested type must
match the stored kind exactly (no int -> float widening), otherwise TypeError.
"""

from __future__ import annotations

import enum
import typing
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from marian_jax.inits import Initializer

_MISSING: Any = object()


class ValueKind(enum.Enum):
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    VECTOR = "vector"
    INITIALIZER = "initializer"


_SCALAR_KINDS: dict[type, ValueKind] = {
    bool: ValueKind.BOOL,
    int: ValueKind.INT,
    float: ValueKind.FLOAT,
    str: ValueKind.STRING,
    Initializer: ValueKind.INITIALIZER,
}


@dataclass(frozen=True)
class DictionaryValue:
    """A value tagged with its kind."""

    kind: ValueKind
    value: Any

    @classmethod
    def of(cls, value: Any) -> DictionaryValue:
        """Wrap a Python value, inferring its kind.

        :param Any value: bool, int, float, str, Initializer, or a list/tuple of scalars.
        :raises TypeError: For unsupported types or nested vectors.
        :return DictionaryValue: Tagged value.
        """
        if isinstance(value, DictionaryValue):
            return value
        # bool is a subclass of int; check it first
        if isinstance(value, bool):
            return cls(ValueKind.BOOL, value)
        if isinstance(value, int):
            return cls(ValueKind.INT, value)
        if isinstance(value, float):
            return cls(ValueKind.FLOAT, value)
        if isinstance(value, str):
            return cls(ValueKind.STRING, value)
        if isinstance(value, Initializer):
            return cls(ValueKind.INITIALIZER, value)
        if isinstance(value, (list, tuple)):
            elems = tuple(cls.of(v) for v in value)
            for e in elems:
                if e.kind is ValueKind.VECTOR:
                    raise TypeError("Nested vectors are not supported in Options")
            return cls(ValueKind.VECTOR, elems)
        raise TypeError(f"Unsupported option value type: {type(value).__name__}")

    def unwrap(self) -> Any:
        """Return the plain Python value (vectors become lists)."""
        if self.kind is ValueKind.VECTOR:
            return [e.unwrap() for e in self.value]
        return self.value


def vector_of(*values: Any) -> DictionaryValue:
    """Build a VECTOR value explicitly."""
    return DictionaryValue.of(list(values))


def _expect(key: str, dv: DictionaryValue, kind: ValueKind, requested: str) -> Any:
    if dv.kind is not kind:
        raise TypeError(
            f"Option {key!r} is stored as {dv.kind.value}, requested {requested}"
        )
    return dv.value


class Options:
    """String-keyed dictionary of kind-tagged values."""

    def __init__(self, items: Mapping[str, Any] | None = None):
        self._items: dict[str, DictionaryValue] = {}
        if items:
            for k, v in items.items():
                self.set(k, v)

    @classmethod
    def from_mapping(cls, items: Mapping[str, Any]) -> Options:
        return cls(items)

    def set(self, key: str, value: Any) -> None:
        """Store `value` under `key`, overwriting any previous value."""
        self._items[str(key)] = DictionaryValue.of(value)

    def has(self, key: str) -> bool:
        return key in self._items

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def keys(self) -> list[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def raw(self, key: str) -> DictionaryValue:
        try:
            return self._items[key]
        except KeyError:
            raise KeyError(f"Option {key!r} not found") from None

    def get(self, key: str, type_: Any, default: Any = _MISSING) -> Any:
        """Typed retrieval.

        :param str key: Option name.
        :param type_: One of bool, int, float, str, Initializer, list[int], list[str].
        :param default: Returned only if `key` is absent.
        :raises KeyError: If absent and no default given.
        :raises TypeError: If the stored kind does not match `type_`.
        :return Any: The stored value as `type_`.
        """
        if key not in self._items:
            if default is _MISSING:
                raise KeyError(f"Option {key!r} not found")
            return default
        dv = self._items[key]

        origin = typing.get_origin(type_)
        if origin is list:
            (elem_type,) = typing.get_args(type_)
            elem_kind = _SCALAR_KINDS.get(elem_type)
            if elem_kind is None:
                raise TypeError(f"Unsupported vector element type: {elem_type!r}")
            elems = _expect(key, dv, ValueKind.VECTOR, f"list[{elem_type.__name__}]")
            return [_expect(key, e, elem_kind, elem_type.__name__) for e in elems]

        kind = _SCALAR_KINDS.get(type_)
        if kind is None:
            raise TypeError(f"Unsupported option type: {type_!r}")
        return _expect(key, dv, kind, getattr(type_, "__name__", str(type_)))

    def merge(self, other: Options) -> None:
        """Add every item of `other` whose key is not already present.

        Existing keys are never overwritten and `other` is not modified.
        """
        for key, dv in other._items.items():
            if key not in self._items:
                self._items[key] = dv

    def to_dict(self) -> dict[str, Any]:
        return {k: dv.unwrap() for k, dv in self._items.items()}

    def str(self) -> str:
        raise NotImplementedError("Option serialization not supported")

    def __repr__(self) -> str:
        return f"Options(keys={self.keys()})"
