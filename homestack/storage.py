"""File-backed persistence for rendered artifacts and run history."""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, List, Optional

from .constants import (
    ARTIFACT_DIR,
    ARTIFACT_FILE,
    ARTIFACT_MODE,
    FINGERPRINT_FILE,
    RUN_HISTORY_LIMIT,
    RUNS_FILE,
    STAGING_DIR,
)
from .errors import StorageError
from .models import Artifact, DiffStatus, Outcome, RunError, RunRecord, RunReport, fingerprint_of

log = logging.getLogger(__name__)


def _atomic_write(path: Path, content: str, mode: int = ARTIFACT_MODE) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ArtifactStore:
    """Owns build/services/<service>/docker-compose.yml.

    ``commit`` is the only method that changes what counts as applied;
    ``previous`` and ``diff`` are read-only so dry runs can use them.
    """

    def __init__(self, build_root: Path) -> None:
        self.build_root = build_root
        self.artifact_root = build_root / ARTIFACT_DIR
        self.staging_root = build_root / STAGING_DIR

    def service_dir(self, service: str) -> Path:
        return self.artifact_root / service

    def path_for(self, service: str) -> Path:
        return self.service_dir(service) / ARTIFACT_FILE

    def staging_path(self, service: str) -> Path:
        return self.staging_root / service / ARTIFACT_FILE

    def previous(self, service: str) -> Optional[Artifact]:
        """The committed artifact, fingerprinted over its raw bytes.

        A hand-edited file that is not valid UTF-8 still gets a fingerprint,
        so it simply shows up as changed.
        """
        path = self.path_for(service)
        if not path.exists():
            return None
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Cannot read committed artifact {path}: {exc}", service=service) from exc
        return Artifact(
            service=service,
            content=data.decode("utf-8", errors="replace"),
            fingerprint=fingerprint_of(data),
        )

    def recorded_fingerprint(self, service: str) -> Optional[str]:
        path = self.service_dir(service) / FINGERPRINT_FILE
        if not path.exists():
            return None
        return path.read_text().strip() or None

    def diff(self, service: str, artifact: Artifact, previous: Optional[Artifact] = None) -> DiffStatus:
        if previous is None:
            previous = self.previous(service)
        if previous is None or previous.fingerprint != artifact.fingerprint:
            return DiffStatus.changed
        return DiffStatus.unchanged

    def stage(self, service: str, artifact: Artifact) -> Path:
        """Write a candidate artifact next to the build tree for the driver to apply."""
        path = self.staging_path(service)
        try:
            _atomic_write(path, artifact.content)
        except OSError as exc:
            raise StorageError(f"Cannot stage artifact {path}: {exc}", service=service) from exc
        return path

    def discard_staged(self, service: str) -> None:
        shutil.rmtree(self.staging_root / service, ignore_errors=True)

    def commit(self, service: str, artifact: Artifact) -> Path:
        path = self.path_for(service)
        try:
            _atomic_write(path, artifact.content)
            _atomic_write(self.service_dir(service) / FINGERPRINT_FILE, artifact.fingerprint + "\n", 0o644)
        except OSError as exc:
            raise StorageError(f"Cannot record artifact {path}: {exc}", service=service) from exc
        finally:
            self.discard_staged(service)
        log.debug("Committed %s (%s)", path, artifact.fingerprint)
        return path

    def committed_services(self) -> List[str]:
        if not self.artifact_root.exists():
            return []
        return sorted(
            path.parent.name for path in self.artifact_root.glob(f"*/{ARTIFACT_FILE}")
        )


class RunHistory:
    """Run records kept in state/runs.json for the API and ``runs`` listings.

    Only service names, statuses, and already-masked details are stored.
    """

    def __init__(self, state_dir: Path, limit: int = RUN_HISTORY_LIMIT) -> None:
        self.state_dir = state_dir
        self.path = state_dir / RUNS_FILE
        self.limit = limit
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"runs": []}
        try:
            return json.loads(self.path.read_text())
        except json.JSONDecodeError:
            log.warning("Run history %s is corrupt; starting a new one", self.path)
            return {"runs": []}

    def _save(self, state: dict[str, Any]) -> None:
        runs = state.get("runs", [])
        if len(runs) > self.limit:
            state["runs"] = runs[-self.limit:]
        _atomic_write(self.path, json.dumps(state, indent=2))

    def _find(self, state: dict[str, Any], run_id: str) -> dict[str, Any]:
        runs = state.setdefault("runs", [])
        for record in runs:
            if record["run_id"] == run_id:
                return record
        record = {"run_id": run_id, "scope": "", "ok": None, "outcomes": []}
        runs.append(record)
        return record

    def start_run(self, report: RunReport) -> None:
        with self._lock:
            state = self._load()
            record = self._find(state, report.run_id)
            record.update(
                scope=str(report.scope),
                dry_run=report.dry_run,
                started_at=report.started_at.isoformat(),
            )
            self._save(state)

    def append_outcome(self, run_id: str, outcome: Outcome) -> None:
        with self._lock:
            state = self._load()
            record = self._find(state, run_id)
            record.setdefault("outcomes", []).append(outcome.model_dump(mode="json"))
            self._save(state)

    def finalize_run(self, report: RunReport) -> None:
        with self._lock:
            state = self._load()
            record = self._find(state, report.run_id)
            record["ok"] = report.ok
            record["outcomes"] = [outcome.model_dump(mode="json") for outcome in report.outcomes]
            record["error"] = report.error.model_dump(mode="json") if report.error else None
            if report.finished_at is not None:
                record["finished_at"] = report.finished_at.isoformat()
            self._save(state)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        state = self._load()
        for record in state.get("runs", []):
            if record.get("run_id") == run_id:
                return _to_record(record)
        return None

    def recent(self, limit: int = 10) -> List[RunRecord]:
        runs = self._load().get("runs", [])
        return [_to_record(record) for record in reversed(runs[-limit:])]


def _to_record(record: dict[str, Any]) -> RunRecord:
    error = record.get("error")
    return RunRecord(
        run_id=record["run_id"],
        scope=record.get("scope", ""),
        dry_run=record.get("dry_run", False),
        ok=record.get("ok"),
        outcomes=[Outcome.model_validate(item) for item in record.get("outcomes", [])],
        error=RunError.model_validate(error) if error else None,
        started_at=record.get("started_at"),
        finished_at=record.get("finished_at"),
    )
