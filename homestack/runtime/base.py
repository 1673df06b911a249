"""Runtime driver protocol consumed by the reconciler."""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

from ..models import RunningState


class RuntimeDriver(Protocol):
    """Converges one named service's containers; never touches other services.

    ``converge`` and ``teardown`` raise :class:`~homestack.errors.ApplyError`
    subclasses on failure. ``project_dir`` is where relative paths in the
    artifact resolve (the service's build directory).
    """

    def converge(
        self,
        service: str,
        artifact_path: Path,
        project_dir: Path,
        force_pull: bool = False,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    def teardown(
        self,
        service: str,
        artifact_path: Path,
        project_dir: Path,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    def status(self, service: str, artifact_path: Path, project_dir: Path) -> RunningState:
        ...

    def restart(
        self,
        service: str,
        artifact_path: Path,
        project_dir: Path,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    def logs(self, service: str, artifact_path: Path, project_dir: Path, tail: int = 100) -> str:
        ...
