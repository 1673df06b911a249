"""Artifact diff engine: shows what a reconcile would change for a service.

Compares the committed artifact with a newly rendered one and produces:
  - a unified text diff of the compose file
  - the changed leaf values of the parsed compose document (old → new)

Used by dry runs and ``render``. Every line passes through secret redaction
before it leaves this module, since artifacts carry resolved credentials.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import yaml

from ..constants import SECRET_MASK
from ..models import Artifact


@dataclass
class ConfigChange:
    """A single leaf-level change in the compose document."""

    path: str  # dot-separated path, e.g. "services.jellyfin.ports"
    old_value: Any
    new_value: Any


@dataclass
class ArtifactDiff:
    service: str
    old_fingerprint: Optional[str]
    new_fingerprint: str
    changes: List[ConfigChange] = field(default_factory=list)
    text: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.old_fingerprint != self.new_fingerprint

    @property
    def is_new(self) -> bool:
        return self.old_fingerprint is None

    def summary_lines(self) -> List[str]:
        """Return a human-readable summary of all changes."""
        if not self.has_changes:
            return ["No changes detected"]
        if self.is_new:
            return [f"new artifact ({self.new_fingerprint})"]
        if not self.changes:
            return ["formatting changes only"]
        return [
            f"{change.path}: {_format_value(change.old_value)} → {_format_value(change.new_value)}"
            for change in self.changes
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "has_changes": self.has_changes,
            "old_fingerprint": self.old_fingerprint,
            "new_fingerprint": self.new_fingerprint,
            "changes": [
                {"path": c.path, "old_value": c.old_value, "new_value": c.new_value}
                for c in self.changes
            ],
            "summary": self.summary_lines(),
            "diff": self.text,
        }


def compute_diff(
    previous: Optional[Artifact],
    new: Artifact,
    secret_values: Iterable[str] = (),
) -> ArtifactDiff:
    """Compare the committed artifact with a freshly rendered one.

    A leaf whose rendered value carries a secret is redacted on both sides,
    so a rotated secret still sitting in the committed artifact is hidden
    along with its replacement.
    """
    old_content = previous.content if previous is not None else ""
    old_leaves = _flatten(_load(old_content)) if previous is not None else {}
    new_leaves = _flatten(_load(new.content))

    known = _Redactor(secret_values)
    stale: List[str] = []
    for path, value in new_leaves.items():
        old_val = old_leaves.get(path)
        if old_val != value and known.hides(value):
            stale.extend(_scalars(old_val))
    redactor = _Redactor([*secret_values, *stale])

    text = [
        redactor.text(line.rstrip("\n"))
        for line in difflib.unified_diff(
            old_content.splitlines(keepends=True),
            new.content.splitlines(keepends=True),
            fromfile=f"{new.service}/committed",
            tofile=f"{new.service}/rendered",
        )
    ]

    changes: List[ConfigChange] = []
    if previous is not None:
        for path in sorted(set(old_leaves) | set(new_leaves)):
            old_val = old_leaves.get(path)
            new_val = new_leaves.get(path)
            if old_val == new_val:
                continue
            changes.append(
                ConfigChange(path=path, old_value=redactor.value(old_val), new_value=redactor.value(new_val))
            )

    return ArtifactDiff(
        service=new.service,
        old_fingerprint=previous.fingerprint if previous is not None else None,
        new_fingerprint=new.fingerprint,
        changes=changes,
        text=text,
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

class _Redactor:
    """Hides known secret values in diff text and parsed compose leaves."""

    def __init__(self, values: Iterable[str]) -> None:
        # Longest first so a secret containing another is masked whole.
        self.values = sorted({value for value in values if value}, key=len, reverse=True)

    def text(self, text: str) -> str:
        for value in self.values:
            text = text.replace(value, SECRET_MASK)
        return text

    def hides(self, value: Any) -> bool:
        return any(
            secret in scalar for scalar in _scalars(value) for secret in self.values
        )

    def value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.text(value)
        if isinstance(value, list):
            return [self.value(item) for item in value]
        if isinstance(value, dict):
            return {key: self.value(item) for key, item in value.items()}
        if value is not None and self.hides(value):
            # Unquoted secrets parse as numbers or booleans
            return SECRET_MASK
        return value


def _scalars(value: Any) -> List[str]:
    """String forms of every scalar inside a leaf value."""
    if value is None:
        return []
    if isinstance(value, list):
        return [text for item in value for text in _scalars(item)]
    if isinstance(value, dict):
        return [text for item in value.values() for text in _scalars(item)]
    return [str(value)]


def _load(content: str) -> Dict[str, Any]:
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError:
        return {}
    return document if isinstance(document, dict) else {}


def _flatten(d: dict, prefix: str = "") -> Dict[str, Any]:
    """Flatten a nested dict into dot-separated path → value pairs.

    Lists are treated as atomic values (not diffed element-by-element)
    to avoid noisy diffs on reordering.
    """
    result: Dict[str, Any] = {}
    for key, value in d.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            result.update(_flatten(value, path))
        else:
            result[path] = value
    return result


def _format_value(val: Any) -> str:
    """Format a value for human-readable display."""
    if val is None:
        return "null"
    if isinstance(val, bool):
        return "true" if val else "false"
    if isinstance(val, str):
        return f'"{val}"'
    if isinstance(val, list):
        if len(val) == 0:
            return "[]"
        if len(val) <= 3:
            return "[" + ", ".join(_format_value(v) for v in val) + "]"
        return f"[{len(val)} items]"
    return str(val)
