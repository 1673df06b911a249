"""Utilities for invoking docker compose commands, one project per service."""
from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Any, List, Optional, Set

import yaml

from ..constants import DEFAULT_LOG_TAIL, DEFAULT_STATUS_TIMEOUT
from ..errors import ApplyError, ApplyTimeout, EngineUnavailable, ResourceConflict
from ..models import RunningState

log = logging.getLogger(__name__)

ENGINE_DOWN_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "permission denied while trying to connect to the docker daemon",
    "docker: 'compose' is not a docker command",
)

CONFLICT_MARKERS = (
    "port is already allocated",
    "address already in use",
    "is already in use by container",
    "conflict. the container name",
)


def classify_failure(command: List[str], returncode: int, stderr: str) -> ApplyError:
    """Map a failed docker invocation onto the ApplyError taxonomy."""
    detail = stderr.strip() or f"exit status {returncode}"
    lowered = detail.lower()
    action = " ".join(command[-3:]) if command else "docker"
    if any(marker in lowered for marker in ENGINE_DOWN_MARKERS):
        return EngineUnavailable(f"Container engine unavailable: {detail}")
    if any(marker in lowered for marker in CONFLICT_MARKERS):
        return ResourceConflict(f"Resource conflict during {action}: {detail}")
    return ApplyError(f"{action} failed: {detail}")


class DockerComposeDriver:
    """Wrapper around docker compose scoped to a single service's project."""

    def __init__(self, docker_binary: str = "docker") -> None:
        self.docker_binary = docker_binary

    def converge(
        self,
        service: str,
        artifact_path: Path,
        project_dir: Path,
        force_pull: bool = False,
        timeout: Optional[float] = None,
    ) -> str:
        """Pull (when asked) then ``up -d --remove-orphans`` for one service."""
        deadline = time.monotonic() + timeout if timeout else None
        if force_pull:
            self._run(
                self._compose(service, artifact_path, project_dir, "pull"),
                project_dir,
                self._remaining(deadline),
            )
        process = self._run(
            self._compose(service, artifact_path, project_dir, "up", "-d", "--remove-orphans"),
            project_dir,
            self._remaining(deadline),
        )
        return process.stdout.strip() or process.stderr.strip() or "ok"

    def teardown(
        self,
        service: str,
        artifact_path: Path,
        project_dir: Path,
        timeout: Optional[float] = None,
    ) -> str:
        process = self._run(
            self._compose(service, artifact_path, project_dir, "down"), project_dir, timeout
        )
        return process.stderr.strip() or "stopped"

    def restart(
        self,
        service: str,
        artifact_path: Path,
        project_dir: Path,
        timeout: Optional[float] = None,
    ) -> str:
        process = self._run(
            self._compose(service, artifact_path, project_dir, "restart"), project_dir, timeout
        )
        return process.stderr.strip() or "restarted"

    def logs(self, service: str, artifact_path: Path, project_dir: Path, tail: int = DEFAULT_LOG_TAIL) -> str:
        process = self._run(
            self._compose(service, artifact_path, project_dir, "logs", "--no-color", "--tail", str(tail)),
            project_dir,
            DEFAULT_STATUS_TIMEOUT,
        )
        return process.stdout

    def status(self, service: str, artifact_path: Path, project_dir: Path) -> RunningState:
        if not artifact_path.exists():
            return RunningState.stopped
        try:
            process = self._run(
                self._compose(service, artifact_path, project_dir, "ps", "--all", "--format", "json"),
                project_dir,
                DEFAULT_STATUS_TIMEOUT,
            )
        except ApplyError as exc:
            log.debug("Status check for %s failed: %s", service, exc)
            return RunningState.unknown

        try:
            containers = parse_ps_output(process.stdout)
        except ValueError as exc:
            log.debug("Unreadable compose ps output for %s: %s", service, exc)
            return RunningState.unknown

        declared = declared_services(artifact_path)
        running = {
            str(item.get("Service") or item.get("Name"))
            for item in containers
            if str(item.get("State", "")).lower() == "running"
        }
        if declared:
            running &= declared
            total = len(declared)
        else:
            total = len(containers)
        if total == 0 or not running:
            return RunningState.stopped
        if len(running) >= total:
            return RunningState.running
        return RunningState.partially_running

    # ------------------------------------------------------------------ helpers

    def _compose(self, service: str, artifact_path: Path, project_dir: Path, *args: str) -> List[str]:
        return [
            self.docker_binary,
            "compose",
            "-f",
            str(artifact_path),
            "--project-name",
            service,
            "--project-directory",
            str(project_dir),
            *args,
        ]

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.1, deadline - time.monotonic())

    def _run(
        self,
        command: List[str],
        workdir: Path,
        timeout: Optional[float],
    ) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        # The project name is set explicitly per call.
        env.pop("COMPOSE_PROJECT_NAME", None)
        workdir.mkdir(parents=True, exist_ok=True)
        log.debug("Running %s", " ".join(command[1:]))
        try:
            process = subprocess.run(
                command,
                cwd=str(workdir),
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise EngineUnavailable(f"'{self.docker_binary}' executable not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise ApplyTimeout(
                f"{' '.join(command[-3:])} did not finish within {timeout:.0f}s"
            ) from exc
        if process.returncode != 0:
            raise classify_failure(command, process.returncode, process.stderr)
        return process


def parse_ps_output(output: str) -> List[dict[str, Any]]:
    """Parse ``docker compose ps --format json`` (array or one object per line)."""
    text = output.strip()
    if not text:
        return []
    if text.startswith("["):
        data = json.loads(text)
        if not isinstance(data, list):
            raise ValueError("expected a JSON array")
        return [item for item in data if isinstance(item, dict)]
    items = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        item = json.loads(line)
        if isinstance(item, dict):
            items.append(item)
    return items


def declared_services(artifact_path: Path) -> Set[str]:
    try:
        document = yaml.safe_load(artifact_path.read_text()) or {}
    except (OSError, yaml.YAMLError):
        return set()
    services = document.get("services") if isinstance(document, dict) else None
    if not isinstance(services, dict):
        return set()
    return {str(name) for name in services}
