"""Build the per-service render context.

Merge order, later wins: built-in defaults, globals, service parameters.
Secret references in the service parameters are resolved against the
unlocked store; the resulting context is handed to the renderer and must
never be logged or persisted.
"""
from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from .constants import BUILTIN_DEFAULTS
from .errors import ConfigError, RegistryError
from .models import GlobalContext
from .params import resolve
from .registry import ServiceDefinition, load_yaml
from .secrets import SecretStore, referenced_keys

log = logging.getLogger(__name__)


class RenderContext(Mapping[str, Any]):
    """Template variables for one service. ``repr`` never shows values."""

    def __init__(self, service: str, values: Dict[str, Any]) -> None:
        self.service = service
        self._values = values

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"RenderContext(service={self.service!r}, keys={sorted(self._values)!r})"

    __str__ = __repr__


def deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested dicts merge, the rest replace."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def lookup_path(values: Mapping[str, Any], dotted: str) -> Optional[Any]:
    """Return the value at ``a.b.c`` or ``None`` when any segment is missing."""
    current: Any = values
    for part in dotted.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


class ConfigResolver:
    """Merges defaults, globals, and one service's parameters."""

    def __init__(
        self,
        globals_: GlobalContext,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.globals = globals_
        self.defaults = dict(BUILTIN_DEFAULTS if defaults is None else defaults)

    def base_vars(self) -> Dict[str, Any]:
        return deep_merge(self.defaults, self.globals.as_vars())

    def build(
        self,
        service: ServiceDefinition,
        secrets: SecretStore,
        required: Iterable[str] = (),
    ) -> RenderContext:
        keys = service.secret_keys()
        missing_secrets = [key for key in keys if key not in secrets]
        if missing_secrets:
            raise ConfigError(service.name, "missing_secret", missing_secrets)

        params = {
            name: resolve(value, secrets.resolve)
            for name, value in service.params.items()
        }
        values = deep_merge(self.base_vars(), params)

        missing_fields = [name for name in required if lookup_path(values, name) is None]
        if missing_fields:
            raise ConfigError(service.name, "missing_field", missing_fields)

        values["service"] = service.name
        values["secrets"] = referenced_keys(keys, secrets)
        log.debug(
            "Built context for %s (%d variables, %d secrets)",
            service.name,
            len(values),
            len(keys),
        )
        return RenderContext(service.name, values)

    def check_required(self, service: ServiceDefinition, required: Iterable[str]) -> List[str]:
        """Required names missing from a service, counting secret references as present."""
        placeholder = "<secret>"
        params = {
            name: resolve(value, lambda _key: placeholder)
            for name, value in service.params.items()
        }
        values = deep_merge(self.base_vars(), params)
        return [name for name in required if lookup_path(values, name) is None]


def load_globals(path: Path) -> GlobalContext:
    """Read globals.yaml; a missing file means built-in defaults only."""
    if not path.exists():
        log.debug("No globals document at %s; using built-in defaults", path)
        return GlobalContext()
    try:
        data = load_yaml(path) or {}
    except yaml.YAMLError as exc:
        raise RegistryError(f"Invalid globals document {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise RegistryError(f"Globals document {path} must be a mapping")
    try:
        return GlobalContext.model_validate(data)
    except ValidationError as exc:
        raise RegistryError(f"Invalid globals document {path}: {exc}") from exc
