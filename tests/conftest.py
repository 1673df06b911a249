"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple
from unittest.mock import MagicMock, patch

import pytest
import yaml
from fastapi.testclient import TestClient

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from homestack.converge.runner import Reconciler
from homestack.errors import ApplyError
from homestack.models import RunningState
from homestack.secrets import encrypt_store
from homestack.settings import Settings

PASSPHRASE = "correct horse battery staple"

SECRETS = {
    "romm_db_password": "s3cret-db-pass",
    "romm_auth_secret_key": "auth-key-0123456789",
}

SERVICES = {
    "jellyfin": {
        "enabled": True,
        "port": 8096,
        "image": "jellyfin/jellyfin:10.9.11",
    },
    "romm": {
        "enabled": True,
        "port": 8080,
        "image": "rommapp/romm:3.5.1",
        "db": {
            "name": "romm",
            "user": "romm",
            "password": {"secret": "romm_db_password"},
        },
        "auth_secret_key": {"secret": "romm_auth_secret_key"},
    },
    "uptime-kuma": {
        "enabled": False,
        "port": 3001,
    },
}

GLOBALS = {
    "config_root": "/srv/appdata",
    "data_root": "/srv/media",
    "timezone": "Europe/Berlin",
}

TEMPLATES = {
    "jellyfin": (
        ["port", "image", "config_root"],
        """\
        services:
          jellyfin:
            image: {{ image }}
            restart: {{ restart_policy }}
            environment:
              TZ: {{ timezone | quote }}
              PUID: "{{ user_id }}"
            volumes:
              - {{ config_root }}/jellyfin:/config
              - {{ data_root }}:/media:ro
            ports:
              - "{{ port }}:8096"
        """,
    ),
    "romm": (
        ["port", "image", "db.password", "auth_secret_key"],
        """\
        services:
          romm:
            image: {{ image }}
            environment:
              DB_NAME: {{ db.name | quote }}
              DB_USER: {{ db.user | quote }}
              DB_PASSWD: {{ db.password | quote }}
              ROMM_AUTH_SECRET_KEY: {{ auth_secret_key | quote }}
            ports:
              - "{{ port }}:8080"
        """,
    ),
    "uptime-kuma": (
        ["port"],
        """\
        services:
          uptime-kuma:
            image: louislam/uptime-kuma:1
            ports:
              - "{{ port }}:3001"
        """,
    ),
}


class FakeDriver:
    """Runtime driver that records calls instead of running docker compose.

    ``failures`` maps a service name to the exception its next converge
    raises; ``states`` maps a service name to the state ``status`` reports.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.converged: List[str] = []
        self.pulled: List[str] = []
        self.artifacts: Dict[str, str] = {}
        self.failures: Dict[str, Exception] = {}
        self.states: Dict[str, RunningState] = {}
        self.on_converge = None

    def converge(self, service, artifact_path, project_dir, force_pull=False, timeout=None):
        self.calls.append(("converge", service))
        if self.on_converge is not None:
            self.on_converge(service)
        if service in self.failures:
            raise self.failures[service]
        if force_pull:
            self.pulled.append(service)
        self.converged.append(service)
        self.artifacts[service] = Path(artifact_path).read_text()
        self.states[service] = RunningState.running
        return "ok"

    def teardown(self, service, artifact_path, project_dir, timeout=None):
        self.calls.append(("teardown", service))
        self.states[service] = RunningState.stopped
        return "stopped"

    def restart(self, service, artifact_path, project_dir, timeout=None):
        self.calls.append(("restart", service))
        return "restarted"

    def status(self, service, artifact_path, project_dir):
        self.calls.append(("status", service))
        return self.states.get(service, RunningState.unknown)

    def logs(self, service, artifact_path, project_dir, tail=100):
        self.calls.append(("logs", service))
        return f"{service} log line\n"


def write_services(root: Path, services: Dict) -> None:
    (root / "services.yaml").write_text(yaml.safe_dump(services, sort_keys=False))


def write_template(root: Path, template_id: str, body: str, requires: Optional[List[str]] = None) -> None:
    folder = root / "templates" / "services" / template_id
    folder.mkdir(parents=True, exist_ok=True)
    (folder / "docker-compose.yml.j2").write_text(textwrap.dedent(body))
    if requires is not None:
        (folder / "template.yml").write_text(yaml.safe_dump({"requires": requires}))


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """A project tree with a registry, globals, templates, and an encrypted vault."""
    write_services(tmp_path, SERVICES)
    (tmp_path / "globals.yaml").write_text(yaml.safe_dump(GLOBALS))
    for template_id, (requires, body) in TEMPLATES.items():
        write_template(tmp_path, template_id, body, requires)
    encrypt_store(tmp_path / "vault.yml", SECRETS, PASSPHRASE)
    (tmp_path / "vault-pass").write_text(PASSPHRASE + "\n")
    return tmp_path


@pytest.fixture
def settings(project_root: Path) -> Settings:
    return Settings.from_env(root=project_root, environ={}).with_password_file(
        project_root / "vault-pass"
    )


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def reconciler(settings: Settings, fake_driver: FakeDriver) -> Reconciler:
    """A reconciler wired to the temp project and the recording driver."""
    return Reconciler.from_settings(settings, driver=fake_driver)


@pytest.fixture
def fresh_reconciler(settings: Settings, fake_driver: FakeDriver):
    """Factory for a reconciler that re-reads services.yaml after a test edits it."""

    def build() -> Reconciler:
        return Reconciler.from_settings(settings, driver=fake_driver)

    return build


@pytest.fixture
def api_client(settings: Settings, fake_driver: FakeDriver) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    from homestack.app import app
    import sse_starlette.sse as sse

    # The SSE exit event binds to the first event loop that touches it
    if hasattr(sse, "AppStatus"):
        sse.AppStatus.should_exit_event = None

    # Patch the module-level settings and driver used by app routes
    with patch("homestack.app.settings", settings), patch("homestack.app.driver", fake_driver):
        with TestClient(app) as client:
            yield client


@pytest.fixture
def mock_docker() -> Generator[MagicMock, None, None]:
    """Mock docker compose invocations."""
    with patch("homestack.runtime.docker.subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        yield mock_run


@pytest.fixture
def apply_error() -> ApplyError:
    return ApplyError("up -d --remove-orphans failed: container exited with code 1")
