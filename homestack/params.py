"""Tagged parameter values for service definitions.

A parameter in the registry is one of a small closed set of shapes: a scalar
literal, a reference to a vault key, a nested mapping, or a list. Templates
decide which names are required; this module only fixes the shapes.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Tuple, Union

ScalarType = Union[str, int, float, bool, None]

SECRET_KEY = "secret"


@dataclass(frozen=True)
class Scalar:
    value: ScalarType


@dataclass(frozen=True)
class SecretRef:
    """Indirection to a key in the encrypted secret store."""

    key: str


@dataclass(frozen=True)
class Nested:
    items: Tuple[Tuple[str, "ParamValue"], ...]

    def as_dict(self) -> dict[str, "ParamValue"]:
        return dict(self.items)


@dataclass(frozen=True)
class Sequence:
    items: Tuple["ParamValue", ...]


ParamValue = Union[Scalar, SecretRef, Nested, Sequence]


def parse_param(raw: Any, path: str = "") -> ParamValue:
    """Build a ParamValue from a value loaded out of YAML.

    ``{secret: key}`` (a mapping with only a ``secret`` key) is a secret
    reference; other mappings are nested parameters.
    """
    if raw is None or isinstance(raw, (str, bool, int, float)):
        return Scalar(raw)
    if isinstance(raw, Mapping):
        if set(raw) == {SECRET_KEY}:
            key = raw[SECRET_KEY]
            if not isinstance(key, str) or not key:
                raise ValueError(f"{path or 'value'}: secret reference must name a key")
            return SecretRef(key)
        items = []
        for name, value in raw.items():
            if not isinstance(name, str):
                raise ValueError(f"{path or 'value'}: parameter names must be strings")
            child = f"{path}.{name}" if path else name
            items.append((name, parse_param(value, child)))
        return Nested(tuple(items))
    if isinstance(raw, (list, tuple)):
        return Sequence(
            tuple(parse_param(value, f"{path}[{index}]") for index, value in enumerate(raw))
        )
    raise ValueError(f"{path or 'value'}: unsupported parameter type {type(raw).__name__}")


def parse_params(raw: Mapping[str, Any]) -> dict[str, ParamValue]:
    return {name: parse_param(value, name) for name, value in raw.items()}


def iter_secret_keys(value: ParamValue) -> Iterator[str]:
    if isinstance(value, SecretRef):
        yield value.key
    elif isinstance(value, Nested):
        for _, child in value.items:
            yield from iter_secret_keys(child)
    elif isinstance(value, Sequence):
        for child in value.items:
            yield from iter_secret_keys(child)


def secret_keys(params: Mapping[str, ParamValue]) -> list[str]:
    """Return referenced vault keys in first-seen order without duplicates."""
    seen: dict[str, None] = {}
    for value in params.values():
        for key in iter_secret_keys(value):
            seen.setdefault(key, None)
    return list(seen)


def resolve(value: ParamValue, lookup: Callable[[str], str]) -> Any:
    """Turn a ParamValue into plain Python data, resolving secrets via ``lookup``."""
    if isinstance(value, Scalar):
        return value.value
    if isinstance(value, SecretRef):
        return lookup(value.key)
    if isinstance(value, Nested):
        return {name: resolve(child, lookup) for name, child in value.items}
    return [resolve(child, lookup) for child in value.items]


def to_plain(value: ParamValue) -> Any:
    """Inverse of :func:`parse_param`, keeping secret references unresolved."""
    if isinstance(value, Scalar):
        return value.value
    if isinstance(value, SecretRef):
        return {SECRET_KEY: value.key}
    if isinstance(value, Nested):
        return {name: to_plain(child) for name, child in value.items}
    return [to_plain(child) for child in value.items]
