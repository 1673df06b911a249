"""Declarative service registry loaded from services.yaml."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import yaml

from .errors import RegistryError, ServiceDisabled, ServiceNotFound
from .models import Scope, ServiceSummary
from .params import ParamValue, parse_params, secret_keys, to_plain

log = logging.getLogger(__name__)

SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]{0,62}$")
RESERVED_KEYS = {"enabled", "template"}
# Names the render context sets itself.
CONTEXT_KEYS = {"service", "secrets"}


@dataclass(frozen=True)
class ServiceDefinition:
    name: str
    enabled: bool = True
    params: Dict[str, ParamValue] = field(default_factory=dict)
    template: str = ""

    @property
    def template_id(self) -> str:
        return self.template or self.name

    def secret_keys(self) -> List[str]:
        return secret_keys(self.params)

    def summary(self) -> ServiceSummary:
        return ServiceSummary(
            name=self.name,
            enabled=self.enabled,
            template=self.template_id,
            params={name: to_plain(value) for name, value in self.params.items()},
            secrets=self.secret_keys(),
        )


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys."""


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False):
    mapping: Dict[Any, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise yaml.constructor.ConstructorError(
                "while constructing a mapping",
                node.start_mark,
                f"found duplicate key {key!r}",
                key_node.start_mark,
            )
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping
)


def load_yaml(path: Path) -> Any:
    with path.open() as handle:
        return yaml.load(handle, Loader=_UniqueKeyLoader)


class ServiceRegistry:
    """Ordered, read-only view over the declared services."""

    def __init__(self, services: Iterable[ServiceDefinition]) -> None:
        self._services: Dict[str, ServiceDefinition] = {}
        for service in services:
            if service.name in self._services:
                raise RegistryError(f"Duplicate service name '{service.name}'")
            self._services[service.name] = service

    @classmethod
    def load(cls, path: Path) -> "ServiceRegistry":
        if not path.exists():
            raise RegistryError(f"Missing service registry at {path}")
        try:
            data = load_yaml(path)
        except yaml.YAMLError as exc:
            raise RegistryError(f"Invalid registry document {path}: {exc}") from exc
        registry = cls.from_mapping(data or {})
        log.debug("Loaded %d services from %s", len(registry), path)
        return registry

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ServiceRegistry":
        if not isinstance(data, Mapping):
            raise RegistryError("Registry document must be a mapping of service names")
        if set(data) == {"services"} and isinstance(data["services"], Mapping):
            data = data["services"]
        return cls(_parse_service(name, entry) for name, entry in data.items())

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def list(self) -> List[ServiceDefinition]:
        return list(self._services.values())

    def names(self) -> List[str]:
        return list(self._services)

    def get(self, name: str) -> ServiceDefinition:
        try:
            return self._services[name]
        except KeyError:
            raise ServiceNotFound(name) from None

    def enabled_only(self) -> List[ServiceDefinition]:
        return [service for service in self._services.values() if service.enabled]

    def select(self, scope: Scope) -> List[ServiceDefinition]:
        """Resolve a run scope to the working set, in registry order."""
        if scope.kind == "all":
            return self.enabled_only()
        service = self.get(scope.service or "")
        if not service.enabled:
            raise ServiceDisabled(service.name)
        return [service]


def _parse_service(name: Any, entry: Any) -> ServiceDefinition:
    if not isinstance(name, str) or not SERVICE_NAME_RE.match(name):
        raise RegistryError(
            f"Invalid service name {name!r}. Use lowercase letters, digits, '-' or '_', "
            "starting with a letter."
        )
    if entry is None:
        entry = {}
    if not isinstance(entry, Mapping):
        raise RegistryError(f"{name}: service entry must be a mapping")

    enabled = entry.get("enabled", True)
    if not isinstance(enabled, bool):
        raise RegistryError(f"{name}: 'enabled' must be true or false")

    template = entry.get("template", "")
    if not isinstance(template, str):
        raise RegistryError(f"{name}: 'template' must be a template name")

    raw_params = {key: value for key, value in entry.items() if key not in RESERVED_KEYS}
    clashing = sorted(CONTEXT_KEYS.intersection(raw_params))
    if clashing:
        raise RegistryError(f"{name}: parameter names {clashing} are reserved")
    try:
        params = parse_params(raw_params)
    except ValueError as exc:
        raise RegistryError(f"{name}: {exc}") from exc
    return ServiceDefinition(name=name, enabled=enabled, params=params, template=template)
