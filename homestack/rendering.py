"""Rendering helpers for per-service docker compose templates."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

import jinja2
import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .constants import TEMPLATE_FILE, TEMPLATE_META_FILE
from .errors import (
    TemplateEvaluationError,
    TemplateNotFound,
    TemplateSyntaxError,
)
from .models import Artifact

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateMeta:
    """Sidecar metadata declared next to a service template."""

    requires: Tuple[str, ...] = ()
    description: str = ""


class TemplateFailure(Exception):
    """Raised from templates through ``fail()``."""


def _fail(message: str) -> None:
    raise TemplateFailure(message)


def _to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, sort_keys=True, default_flow_style=False).rstrip("\n")


def _quote(value: Any) -> str:
    # JSON strings are valid double-quoted YAML scalars.
    return json.dumps("" if value is None else str(value))


def _bool_str(value: Any) -> str:
    return "true" if value else "false"


class TemplateRenderer:
    """Renders a service's docker-compose template from a merged context."""

    def __init__(self, template_dir: Path) -> None:
        self.template_dir = template_dir
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self.env.filters["to_yaml"] = _to_yaml
        self.env.filters["quote"] = _quote
        self.env.filters["bool_str"] = _bool_str
        self.env.globals["fail"] = _fail

    def template_path(self, template_id: str) -> str:
        return f"{template_id}/{TEMPLATE_FILE}"

    def available(self) -> List[str]:
        if not self.template_dir.exists():
            return []
        return sorted(
            path.parent.name
            for path in self.template_dir.glob(f"*/{TEMPLATE_FILE}")
        )

    def has_template(self, template_id: str) -> bool:
        return (self.template_dir / self.template_path(template_id)).is_file()

    def meta(self, template_id: str) -> TemplateMeta:
        _check_id(template_id)
        path = self.template_dir / template_id / TEMPLATE_META_FILE
        if not path.exists():
            return TemplateMeta()
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (yaml.YAMLError, UnicodeDecodeError) as exc:
            raise TemplateSyntaxError(f"{path}: {exc}") from exc
        if not isinstance(data, dict):
            raise TemplateSyntaxError(f"{path}: metadata must be a mapping")
        requires = data.get("requires") or []
        if not isinstance(requires, list) or not all(isinstance(item, str) for item in requires):
            raise TemplateSyntaxError(f"{path}: 'requires' must be a list of parameter names")
        return TemplateMeta(requires=tuple(requires), description=str(data.get("description", "")))

    def requirements(self, template_id: str) -> Tuple[str, ...]:
        return self.meta(template_id).requires

    def check(self, template_id: str) -> None:
        """Load and compile a template without rendering it."""
        self._load(template_id)

    def render(self, template_id: str, context: Mapping[str, Any], service: Optional[str] = None) -> Artifact:
        template = self._load(template_id)
        name = service or template_id
        try:
            content = template.render(dict(context))
        except jinja2.UndefinedError as exc:
            raise TemplateEvaluationError(f"{name}: {exc.message}", service=name) from exc
        except TemplateFailure as exc:
            raise TemplateEvaluationError(f"{name}: {exc}", service=name) from exc
        except (TypeError, ValueError, KeyError, AttributeError) as exc:
            raise TemplateEvaluationError(
                f"{name}: {exc.__class__.__name__} while rendering: {exc}", service=name
            ) from exc
        except jinja2.TemplateError as exc:
            raise TemplateEvaluationError(f"{name}: {exc}", service=name) from exc
        log.debug("Rendered template %s for %s (%d bytes)", template_id, name, len(content))
        return Artifact.from_content(name, content)

    def _load(self, template_id: str) -> jinja2.Template:
        _check_id(template_id)
        try:
            return self.env.get_template(self.template_path(template_id))
        except jinja2.TemplateNotFound as exc:
            raise TemplateNotFound(
                f"No template {self.template_path(template_id)} under {self.template_dir}"
            ) from exc
        except jinja2.TemplateSyntaxError as exc:
            raise TemplateSyntaxError(
                f"{template_id}: {exc.message} (line {exc.lineno})"
            ) from exc
        except UnicodeDecodeError as exc:
            raise TemplateSyntaxError(f"{template_id}: template is not valid UTF-8 ({exc.reason})") from exc


def _check_id(template_id: str) -> None:
    if not template_id or "/" in template_id or template_id.startswith("."):
        raise TemplateNotFound(f"Invalid template id {template_id!r}")
