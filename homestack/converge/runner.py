"""Reconcile runner: render each selected service and converge what changed."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Union
from uuid import uuid4

from ..constants import DEFAULT_APPLY_TIMEOUT, DEFAULT_LOG_TAIL, LOCK_DIR
from ..context import ConfigResolver, load_globals
from ..errors import (
    ApplyError,
    AuthError,
    ConfigError,
    EngineUnavailable,
    HomestackError,
    RegistryError,
    RenderError,
    StorageError,
)
from ..models import (
    Artifact,
    DiffStatus,
    Outcome,
    OutcomeStatus,
    RunError,
    RunningState,
    RunReport,
    Scope,
    ServiceStatus,
)
from ..registry import ServiceDefinition, ServiceRegistry
from ..rendering import TemplateRenderer
from ..runtime.base import RuntimeDriver
from ..secrets import SecretResolver, SecretStore
from ..settings import Settings
from ..storage import ArtifactStore, RunHistory
from .diff import ArtifactDiff, compute_diff
from .locks import ServiceLocks

log = logging.getLogger(__name__)

Passphrase = Union[str, Callable[[], str]]


@dataclass
class Prepared:
    """Result of the pure part of the pipeline for one service."""

    service: ServiceDefinition
    artifact: Optional[Artifact] = None
    status: Optional[DiffStatus] = None
    diff: Optional[ArtifactDiff] = None
    failure: Optional[Outcome] = None


@dataclass
class Preview:
    """Rendered artifact for display; ``content`` has secrets masked."""

    service: str
    artifact: Optional[Artifact] = None
    content: Optional[str] = None
    diff: Optional[ArtifactDiff] = None
    failure: Optional[Outcome] = None


@dataclass
class Reconciler:
    registry: ServiceRegistry
    secrets: SecretResolver
    resolver: ConfigResolver
    renderer: TemplateRenderer
    store: ArtifactStore
    driver: RuntimeDriver
    locks: ServiceLocks
    history: Optional[RunHistory] = None
    apply_timeout: float = DEFAULT_APPLY_TIMEOUT
    prepare_workers: int = 1

    @classmethod
    def from_settings(cls, settings: Settings, driver: Optional[RuntimeDriver] = None) -> "Reconciler":
        if driver is None:
            from ..runtime.docker import DockerComposeDriver

            driver = DockerComposeDriver(settings.docker_binary)
        return cls(
            registry=ServiceRegistry.load(settings.services_file),
            secrets=SecretResolver(settings.vault_file),
            resolver=ConfigResolver(load_globals(settings.globals_file)),
            renderer=TemplateRenderer(settings.template_dir),
            store=ArtifactStore(settings.build_dir),
            driver=driver,
            locks=ServiceLocks(settings.build_dir / LOCK_DIR, timeout=settings.lock_timeout),
            history=RunHistory(settings.state_dir),
            apply_timeout=settings.apply_timeout,
            prepare_workers=settings.prepare_workers,
        )

    # ------------------------------------------------------------------ reconcile

    def run(
        self,
        scope: Scope,
        passphrase: Passphrase,
        force_pull: bool = False,
        dry_run: bool = False,
        cancel: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> RunReport:
        report = RunReport(
            run_id=run_id or str(uuid4()),
            scope=scope,
            dry_run=dry_run,
            force_pull=force_pull,
        )
        log.info("Reconciling %s (run %s)", scope, report.run_id)
        if self.history is not None:
            self.history.start_run(report)

        try:
            services = self.registry.select(scope)
        except RegistryError as exc:
            return self._abort(report, exc)

        try:
            secrets = self._unlock(services, passphrase)
        except AuthError as exc:
            return self._abort(report, exc)

        outcomes: List[Outcome] = []
        error: Optional[RunError] = None
        cancelled = False

        prepared = self._prepare_all(services, secrets)
        for index, item in enumerate(prepared):
            if cancel is not None and cancel.is_set():
                cancelled = True
                for remaining in services[index:]:
                    self._record(
                        report,
                        outcomes,
                        Outcome(
                            service=remaining.name,
                            status=OutcomeStatus.cancelled,
                            detail="run cancelled before this service started",
                        ),
                    )
                log.warning("Run %s cancelled; %d services not attempted", report.run_id, len(services) - index)
                break

            try:
                outcome = self._reconcile_one(item, secrets, force_pull, dry_run)
            except EngineUnavailable as exc:
                detail = secrets.mask(str(exc))
                self._record(
                    report,
                    outcomes,
                    Outcome(
                        service=item.service.name,
                        status=OutcomeStatus.apply_failed,
                        reason=exc.code,
                        detail=detail,
                        fingerprint=item.artifact.fingerprint if item.artifact else None,
                    ),
                )
                error = RunError(code=exc.code, message=detail or str(exc), service=item.service.name)
                log.error("Container engine unavailable; aborting remaining services")
                break
            self._record(report, outcomes, outcome)

        return self._finish(report, outcomes, error=error, cancelled=cancelled)

    def _reconcile_one(
        self,
        item: Prepared,
        secrets: SecretStore,
        force_pull: bool,
        dry_run: bool,
    ) -> Outcome:
        name = item.service.name
        if item.failure is not None:
            return item.failure
        if item.artifact is None:
            return Outcome(service=name, status=OutcomeStatus.render_failed, detail="no artifact rendered")

        if item.status is DiffStatus.unchanged and not force_pull:
            return Outcome(service=name, status=OutcomeStatus.unchanged, fingerprint=item.artifact.fingerprint)

        if dry_run:
            summary = item.diff.summary_lines() if item.diff else []
            if item.status is DiffStatus.unchanged:
                summary = ["unchanged; images would be pulled"]
            return Outcome(
                service=name,
                status=OutcomeStatus.would_apply,
                detail="; ".join(summary) or None,
                fingerprint=item.artifact.fingerprint,
            )

        try:
            self._apply(name, item.artifact, force_pull)
        except EngineUnavailable:
            raise
        except (ApplyError, StorageError) as exc:
            return Outcome(
                service=name,
                status=OutcomeStatus.apply_failed,
                reason=exc.code,
                detail=secrets.mask(str(exc)),
                fingerprint=item.artifact.fingerprint,
            )
        return Outcome(service=name, status=OutcomeStatus.applied, fingerprint=item.artifact.fingerprint)

    def _apply(self, name: str, artifact: Artifact, force_pull: bool) -> None:
        with self.locks.hold(name):
            staged = self.store.stage(name, artifact)
            try:
                self.driver.converge(
                    name,
                    staged,
                    self.store.service_dir(name),
                    force_pull=force_pull,
                    timeout=self.apply_timeout,
                )
            except BaseException:
                self.store.discard_staged(name)
                raise
            self.store.commit(name, artifact)

    # ------------------------------------------------------------------ pipeline

    def _prepare_all(self, services: List[ServiceDefinition], secrets: SecretStore) -> Iterator[Prepared]:
        if self.prepare_workers > 1 and len(services) > 1:
            with ThreadPoolExecutor(max_workers=self.prepare_workers) as pool:
                futures = [pool.submit(self._prepare, service, secrets) for service in services]
            return (future.result() for future in futures)
        return (self._prepare(service, secrets) for service in services)

    def _prepare(self, service: ServiceDefinition, secrets: SecretStore) -> Prepared:
        """Build context, render, and diff. No side effects."""
        name = service.name
        try:
            required = self.renderer.requirements(service.template_id)
            context = self.resolver.build(service, secrets, required)
        except ConfigError as exc:
            return Prepared(service, failure=self._failure(name, OutcomeStatus.config_failed, exc, secrets))
        except RenderError as exc:
            return Prepared(service, failure=self._failure(name, OutcomeStatus.render_failed, exc, secrets))

        try:
            artifact = self.renderer.render(service.template_id, context, service=name)
        except RenderError as exc:
            return Prepared(service, failure=self._failure(name, OutcomeStatus.render_failed, exc, secrets))

        try:
            previous = self.store.previous(name)
        except StorageError as exc:
            return Prepared(service, failure=self._failure(name, OutcomeStatus.apply_failed, exc, secrets))
        status = self.store.diff(name, artifact, previous)
        diff = compute_diff(previous, artifact, secret_values=secrets.values())
        return Prepared(service, artifact=artifact, status=status, diff=diff)

    @staticmethod
    def _failure(name: str, status: OutcomeStatus, exc: HomestackError, secrets: SecretStore) -> Outcome:
        return Outcome(service=name, status=status, reason=exc.code, detail=secrets.mask(str(exc)))

    def _unlock(self, services: Iterable[ServiceDefinition], passphrase: Passphrase) -> SecretStore:
        referenced = any(service.secret_keys() for service in services)
        if not referenced and not self.secrets.exists():
            log.debug("No secrets referenced and no vault present; skipping unlock")
            return SecretStore({})
        value = passphrase() if callable(passphrase) else passphrase
        return self.secrets.unlock(value)

    # ------------------------------------------------------------------ reporting

    def _record(self, report: RunReport, outcomes: List[Outcome], outcome: Outcome) -> None:
        outcomes.append(outcome)
        if outcome.failed:
            log.warning("%s: %s (%s) %s", outcome.service, outcome.status.value, outcome.reason, outcome.detail or "")
        else:
            log.info("%s: %s", outcome.service, outcome.status.value)
        if self.history is not None:
            self.history.append_outcome(report.run_id, outcome)

    def _abort(self, report: RunReport, exc: HomestackError) -> RunReport:
        log.error("Run %s aborted: %s", report.run_id, exc)
        error = RunError(code=exc.code, message=str(exc), service=exc.service)
        return self._finish(report, [], error=error)

    def _finish(
        self,
        report: RunReport,
        outcomes: List[Outcome],
        error: Optional[RunError] = None,
        cancelled: bool = False,
    ) -> RunReport:
        final = report.model_copy(
            update={
                "outcomes": tuple(outcomes),
                "error": error,
                "cancelled": cancelled,
                "finished_at": datetime.now(timezone.utc),
            }
        )
        if self.history is not None:
            self.history.finalize_run(final)
        return final

    # ------------------------------------------------------------------ other operations

    def preview(self, scope: Scope, passphrase: Passphrase) -> List[Preview]:
        """Render the selected services without applying or committing anything."""
        services = self.registry.select(scope)
        secrets = self._unlock(services, passphrase)
        previews = []
        for item in self._prepare_all(services, secrets):
            name = item.service.name
            if item.failure is not None:
                previews.append(Preview(name, failure=item.failure))
            else:
                masked = secrets.mask(item.artifact.content) if item.artifact else None
                previews.append(Preview(name, artifact=item.artifact, content=masked, diff=item.diff))
        return previews

    def teardown(self, name: str) -> str:
        self.registry.get(name)
        path = self._applied_path(name)
        with self.locks.hold(name):
            detail = self.driver.teardown(name, path, self.store.service_dir(name), timeout=self.apply_timeout)
        log.info("%s: stopped", name)
        return detail

    def restart(self, name: str) -> str:
        self.registry.get(name)
        path = self._applied_path(name)
        with self.locks.hold(name):
            return self.driver.restart(name, path, self.store.service_dir(name), timeout=self.apply_timeout)

    def logs(self, name: str, tail: int = DEFAULT_LOG_TAIL) -> str:
        self.registry.get(name)
        return self.driver.logs(name, self._applied_path(name), self.store.service_dir(name), tail=tail)

    def status(self, name: Optional[str] = None) -> List[ServiceStatus]:
        services = [self.registry.get(name)] if name else self.registry.list()
        statuses = []
        for service in services:
            path = self.store.path_for(service.name)
            if not path.exists():
                statuses.append(
                    ServiceStatus(
                        name=service.name,
                        enabled=service.enabled,
                        state=RunningState.stopped,
                        message="not deployed" if service.enabled else "service disabled in configuration",
                    )
                )
                continue
            state = self.driver.status(service.name, path, self.store.service_dir(service.name))
            statuses.append(
                ServiceStatus(
                    name=service.name,
                    enabled=service.enabled,
                    state=state,
                    fingerprint=self.store.recorded_fingerprint(service.name),
                    message=None if service.enabled else "service disabled in configuration",
                )
            )
        return statuses

    def _applied_path(self, name: str) -> Path:
        path = self.store.path_for(name)
        if not path.exists():
            raise ApplyError(f"Service {name} has no applied artifact under {self.store.artifact_root}", service=name)
        return path
