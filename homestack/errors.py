"""Error taxonomy for registry, secrets, config, rendering, and runtime failures.

Every error carries a stable ``code`` that ends up in outcome records and API
responses. Fatal errors (registry, auth, engine unavailable) end a run; the
rest are captured per service.
"""
from __future__ import annotations

from typing import Iterable, Optional


class HomestackError(Exception):
    """Base class for all reconciler errors."""

    code = "error"
    fatal = False

    def __init__(self, message: str, *, service: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.service = service

    def __str__(self) -> str:
        return self.message


# Registry ------------------------------------------------------------------


class RegistryError(HomestackError):
    code = "registry_error"
    fatal = True


class ServiceNotFound(RegistryError):
    code = "not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"Service '{name}' is not registered", service=name)


class ServiceDisabled(RegistryError):
    code = "disabled"

    def __init__(self, name: str) -> None:
        super().__init__(f"Service '{name}' is disabled in the registry", service=name)


# Secrets -------------------------------------------------------------------


class AuthError(HomestackError):
    """The secret store could not be unlocked with the given passphrase."""

    code = "auth_failed"
    fatal = True


class MissingSecret(HomestackError):
    code = "missing_secret"

    def __init__(self, key: str) -> None:
        super().__init__(f"Secret '{key}' is not present in the vault")
        self.key = key


# Config --------------------------------------------------------------------


class ConfigError(HomestackError):
    """A service's render context could not be built."""

    code = "config_error"

    def __init__(
        self,
        service: str,
        reason: str,
        names: Iterable[str],
    ) -> None:
        self.reason = reason
        self.names = list(names)
        label = "secret" if reason == "missing_secret" else "field"
        if len(self.names) > 1:
            label += "s"
        joined = ", ".join(self.names)
        super().__init__(f"{service}: missing {label} {joined}", service=service)
        self.code = reason


# Rendering -----------------------------------------------------------------


class RenderError(HomestackError):
    code = "render_error"


class TemplateNotFound(RenderError):
    code = "template_not_found"


class TemplateSyntaxError(RenderError):
    code = "template_syntax"


class TemplateEvaluationError(RenderError):
    code = "evaluation"


# Runtime -------------------------------------------------------------------


class ApplyError(HomestackError):
    code = "apply_failed"


class EngineUnavailable(ApplyError):
    """The container engine is unreachable; nothing else can be applied."""

    code = "engine_unavailable"
    fatal = True


class ResourceConflict(ApplyError):
    code = "resource_conflict"


class ApplyTimeout(ApplyError):
    code = "timeout"


class ServiceLocked(ApplyError):
    code = "locked"


# Storage -------------------------------------------------------------------


class StorageError(HomestackError):
    """The artifact store could not be read or written."""

    code = "storage_error"
