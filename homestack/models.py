"""Pydantic models for globals, artifacts, outcomes, and run reports."""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GlobalContext(BaseModel):
    """Host-wide variables shared by every service template.

    Unset fields fall through to the built-in defaults when the render context
    is assembled; ``extra`` holds any additional variables from globals.yaml.
    """

    model_config = ConfigDict(frozen=True)

    config_root: Optional[str] = None
    data_root: Optional[str] = None
    timezone: Optional[str] = None
    network_name: Optional[str] = None
    user_id: Optional[int] = Field(default=None, ge=0)
    group_id: Optional[int] = Field(default=None, ge=0)
    domain: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("config_root", "data_root")
    @classmethod
    def ensure_absolute(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith("/"):
            raise ValueError("Paths must be absolute")
        return value

    @model_validator(mode="before")
    @classmethod
    def collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        payload = {key: value for key, value in data.items() if key in known}
        extra = dict(payload.get("extra") or {})
        extra.update({key: value for key, value in data.items() if key not in known})
        payload["extra"] = extra
        return payload

    def as_vars(self) -> Dict[str, Any]:
        """Flatten to template variables, dropping unset fields."""
        values = {
            name: getattr(self, name)
            for name in type(self).model_fields
            if name != "extra" and getattr(self, name) is not None
        }
        values.update(self.extra)
        return values


class Artifact(BaseModel):
    """Rendered runtime definition for one service."""

    model_config = ConfigDict(frozen=True)

    service: str
    content: str
    fingerprint: str

    @classmethod
    def from_content(cls, service: str, content: str) -> "Artifact":
        return cls(service=service, content=content, fingerprint=fingerprint_of(content))


def fingerprint_of(content: Union[str, bytes]) -> str:
    data = content.encode("utf-8") if isinstance(content, str) else content
    return "sha256:" + hashlib.sha256(data).hexdigest()


class DiffStatus(str, Enum):
    unchanged = "unchanged"
    changed = "changed"


class OutcomeStatus(str, Enum):
    unchanged = "unchanged"
    applied = "applied"
    would_apply = "would_apply"
    config_failed = "config_failed"
    render_failed = "render_failed"
    apply_failed = "apply_failed"
    cancelled = "cancelled"


FAILED_STATUSES = {
    OutcomeStatus.config_failed,
    OutcomeStatus.render_failed,
    OutcomeStatus.apply_failed,
    OutcomeStatus.cancelled,
}


class Outcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    service: str
    status: OutcomeStatus
    reason: Optional[str] = None
    detail: Optional[str] = None
    fingerprint: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATUSES


class Scope(BaseModel):
    """Which services a run targets: every enabled one, or exactly one."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["all", "single"] = "all"
    service: Optional[str] = None

    @model_validator(mode="after")
    def check_service(self) -> "Scope":
        if self.kind == "single" and not self.service:
            raise ValueError("single scope requires a service name")
        if self.kind == "all" and self.service is not None:
            raise ValueError("all scope does not take a service name")
        return self

    @classmethod
    def all(cls) -> "Scope":
        return cls(kind="all")

    @classmethod
    def single(cls, name: str) -> "Scope":
        return cls(kind="single", service=name)

    def __str__(self) -> str:
        return "all enabled services" if self.kind == "all" else f"service {self.service}"


class RunError(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    service: Optional[str] = None


class RunReport(BaseModel):
    """Ordered per-service outcomes of one reconcile invocation."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    scope: Scope
    dry_run: bool = False
    force_pull: bool = False
    outcomes: Tuple[Outcome, ...] = ()
    error: Optional[RunError] = None
    cancelled: bool = False
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not any(outcome.failed for outcome in self.outcomes)

    def outcome_for(self, service: str) -> Optional[Outcome]:
        for outcome in self.outcomes:
            if outcome.service == service:
                return outcome
        return None

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.status.value] = counts.get(outcome.status.value, 0) + 1
        return counts


class RunningState(str, Enum):
    running = "running"
    stopped = "stopped"
    partially_running = "partially_running"
    unknown = "unknown"


class ServiceStatus(BaseModel):
    """Reported runtime state of a registered service."""

    name: str
    enabled: bool = True
    state: RunningState = RunningState.unknown
    fingerprint: Optional[str] = None
    message: Optional[str] = None


class StatusResponse(BaseModel):
    """Wrapper returned from ``GET /api/status`` with the state of services."""

    services: List[ServiceStatus] = Field(default_factory=list)


class ServiceSummary(BaseModel):
    name: str
    enabled: bool
    template: str
    params: Dict[str, Any] = Field(default_factory=dict)
    secrets: List[str] = Field(default_factory=list)


class ReconcileRequest(BaseModel):
    service: Optional[str] = None
    force_pull: bool = False
    dry_run: bool = False

    def scope(self) -> Scope:
        return Scope.single(self.service) if self.service else Scope.all()


class ValidationResult(BaseModel):
    ok: bool
    checks: Dict[str, str]


class RunRecord(BaseModel):
    """Persisted history entry; mirrors a RunReport as it is being produced."""

    run_id: str
    scope: str
    dry_run: bool = False
    ok: Optional[bool] = None
    outcomes: List[Outcome] = Field(default_factory=list)
    error: Optional[RunError] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
