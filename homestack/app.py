"""FastAPI entrypoint for the homestack reconciler."""
from __future__ import annotations

import asyncio
import json
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from sse_starlette.sse import EventSourceResponse

from .converge.runner import Reconciler
from .errors import AuthError, HomestackError, RegistryError, ServiceNotFound
from .models import (
    ReconcileRequest,
    RunRecord,
    RunReport,
    ServiceSummary,
    StatusResponse,
    ValidationResult,
)
from .runtime.base import RuntimeDriver
from .secrets import passphrase_from
from .settings import Settings
from .validators import run_validation

app = FastAPI(title="homestack", version="0.1.0")
settings = Settings.from_env()
driver: Optional[RuntimeDriver] = None


def get_reconciler() -> Reconciler:
    """Build a reconciler from the current settings; services.yaml is re-read per request."""
    try:
        return Reconciler.from_settings(settings, driver=driver)
    except RegistryError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _passphrase() -> str:
    return passphrase_from(settings.vault_password_file, interactive=False)


def _http_error(exc: HomestackError) -> HTTPException:
    if isinstance(exc, ServiceNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AuthError):
        return HTTPException(status_code=401, detail=str(exc))
    if exc.fatal:
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc))


@app.get("/api/services", response_model=List[ServiceSummary])
def list_services() -> List[ServiceSummary]:
    """Return registered services; secret references are listed by key only."""
    return [service.summary() for service in get_reconciler().registry.list()]


@app.get("/api/status", response_model=StatusResponse)
def get_status(service: Optional[str] = None) -> StatusResponse:
    """Return the runtime state of every registered service, or just one."""
    try:
        return StatusResponse(services=get_reconciler().status(service))
    except HomestackError as exc:
        raise _http_error(exc) from exc


@app.get("/api/validate", response_model=ValidationResult)
def validate() -> ValidationResult:
    """Run the pre-flight checks without decrypting secrets."""
    reconciler = get_reconciler()
    return run_validation(
        reconciler.registry,
        reconciler.renderer,
        reconciler.resolver,
        docker_binary=settings.docker_binary,
    )


@app.post("/api/reconcile", response_model=RunReport)
def reconcile(request: ReconcileRequest) -> RunReport:
    """Run a reconcile and return its report, including fatal errors."""
    return get_reconciler().run(
        request.scope(),
        _passphrase,
        force_pull=request.force_pull,
        dry_run=request.dry_run,
    )


@app.post("/api/services/{name}/teardown")
def teardown(name: str) -> dict:
    """Stop a service's containers; its committed artifact is kept."""
    try:
        detail = get_reconciler().teardown(name)
    except HomestackError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "service": name, "detail": detail}


@app.get("/api/runs/{run_id}", response_model=RunRecord)
def get_run(run_id: str) -> RunRecord:
    reconciler = get_reconciler()
    record = reconciler.history.get_run(run_id) if reconciler.history else None
    if record is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return record


@app.get("/api/runs/{run_id}/events")
async def stream_run_events(run_id: str) -> EventSourceResponse:
    """Stream service outcomes for a given run identifier."""
    history = get_reconciler().history

    async def event_generator():
        sent = 0
        while True:
            record = history.get_run(run_id) if history else None
            if record is None:
                yield {
                    "event": "error",
                    "data": json.dumps({"message": "run_not_found"}),
                }
                return

            while sent < len(record.outcomes):
                outcome = record.outcomes[sent]
                sent += 1
                yield {
                    "event": "outcome",
                    "data": outcome.model_dump_json(),
                }

            if record.ok is not None:
                yield {
                    "event": "status",
                    "data": json.dumps(
                        {
                            "ok": record.ok,
                            "error": record.error.model_dump(mode="json") if record.error else None,
                        }
                    ),
                }
                return

            await asyncio.sleep(0.5)

    return EventSourceResponse(event_generator())
