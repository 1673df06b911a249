"""Pre-flight validation for the registry, templates, and host ports."""
from __future__ import annotations

import shutil
from typing import Any, Dict, List, Optional

from .context import ConfigResolver
from .errors import RenderError
from .models import ValidationResult
from .registry import ServiceDefinition, ServiceRegistry
from .params import resolve
from .rendering import TemplateRenderer
from .secrets import SecretStore


def run_validation(
    registry: ServiceRegistry,
    renderer: TemplateRenderer,
    resolver: ConfigResolver,
    secrets: Optional[SecretStore] = None,
    docker_binary: str = "docker",
) -> ValidationResult:
    """Validate every enabled service without decrypting or applying anything.

    When an unlocked ``secrets`` store is passed, secret references are
    checked against it as well.
    """
    checks: Dict[str, str] = {}
    overall_ok = True
    published: Dict[int, List[str]] = {}

    for service in registry.list():
        prefix = f"services.{service.name}"
        if not service.enabled:
            checks[prefix] = "skipped"
            continue

        try:
            renderer.check(service.template_id)
            required = renderer.requirements(service.template_id)
        except RenderError as exc:
            checks[f"{prefix}.template"] = exc.code
            overall_ok = False
            continue
        checks[f"{prefix}.template"] = "ok"

        missing = resolver.check_required(service, required)
        if missing:
            checks[f"{prefix}.required"] = "missing: " + ", ".join(missing)
            overall_ok = False
        else:
            checks[f"{prefix}.required"] = "ok"

        keys = service.secret_keys()
        if secrets is None:
            checks[f"{prefix}.secrets"] = f"{len(keys)} referenced" if keys else "none"
        else:
            absent = [key for key in keys if key not in secrets]
            if absent:
                checks[f"{prefix}.secrets"] = "missing: " + ", ".join(absent)
                overall_ok = False
            else:
                checks[f"{prefix}.secrets"] = "ok"

        for port in _published_ports(service):
            published.setdefault(port, []).append(service.name)

    for port, owners in sorted(published.items()):
        if len(owners) > 1:
            checks[f"ports.{port}"] = "conflict: " + ", ".join(owners)
            overall_ok = False

    docker_cli = shutil.which(docker_binary)
    checks["docker.cli"] = "present" if docker_cli else "missing"

    return ValidationResult(ok=overall_ok, checks=checks)


def _published_ports(service: ServiceDefinition) -> List[int]:
    """Host ports a service claims through ``port`` or ``*_port`` parameters."""
    ports: List[int] = []
    for name, value in service.params.items():
        if name != "port" and not name.endswith("_port"):
            continue
        plain = resolve(value, lambda _key: "")
        port = _as_port(plain)
        if port is not None:
            ports.append(port)
    return ports


def _as_port(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        port = int(value)
    except (TypeError, ValueError):
        return None
    return port if 1 <= port <= 65535 else None
