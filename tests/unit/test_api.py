"""Tests for the FastAPI endpoints."""
from __future__ import annotations

import dataclasses
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from conftest import SECRETS


class TestServicesEndpoint:
    def test_lists_services_without_secret_values(self, api_client: TestClient):
        """GET /api/services should list services with secret names but no values."""
        response = api_client.get("/api/services")

        assert response.status_code == 200
        services = {item["name"]: item for item in response.json()}
        assert list(services) == ["jellyfin", "romm", "uptime-kuma"]
        assert services["romm"]["secrets"] == ["romm_db_password", "romm_auth_secret_key"]
        assert services["uptime-kuma"]["enabled"] is False
        for value in SECRETS.values():
            assert value not in response.text


class TestReconcileEndpoint:
    def test_reconcile_all(self, api_client: TestClient, fake_driver):
        """POST /api/reconcile with no service should apply every enabled service."""
        response = api_client.post("/api/reconcile", json={})

        assert response.status_code == 200
        report = response.json()
        assert report["error"] is None
        assert [o["status"] for o in report["outcomes"]] == ["applied", "applied"]
        assert fake_driver.converged == ["jellyfin", "romm"]

    def test_reconcile_single_dry_run(self, api_client: TestClient, fake_driver):
        """A single-service dry run should report would_apply without calling the driver."""
        response = api_client.post("/api/reconcile", json={"service": "jellyfin", "dry_run": True})

        report = response.json()
        assert report["scope"] == {"kind": "single", "service": "jellyfin"}
        assert report["outcomes"][0]["status"] == "would_apply"
        assert fake_driver.calls == []

    def test_fatal_errors_are_reported_not_raised(self, api_client: TestClient):
        """Fatal run errors should come back in the report with a 200."""
        response = api_client.post("/api/reconcile", json={"service": "plex"})

        assert response.status_code == 200
        assert response.json()["error"]["code"] == "not_found"
        assert response.json()["outcomes"] == []

    def test_wrong_password_file(self, api_client: TestClient, settings, tmp_path: Path):
        """A wrong passphrase in the password file should fail the run with auth_failed."""
        bad = tmp_path / "bad-pass"
        bad.write_text("wrong")
        with patch("homestack.app.settings", dataclasses.replace(settings, vault_password_file=bad)):
            response = api_client.post("/api/reconcile", json={})

        assert response.json()["error"]["code"] == "auth_failed"

    def test_passphrase_is_not_accepted_in_the_body(self, api_client: TestClient, settings, fake_driver):
        """A passphrase sent in the request body should be ignored."""
        with patch("homestack.app.settings", dataclasses.replace(settings, vault_password_file=None)), \
                patch.dict("os.environ", {}, clear=True):
            response = api_client.post(
                "/api/reconcile", json={"passphrase": "correct horse battery staple"}
            )

        assert response.json()["error"]["code"] == "auth_failed"
        assert fake_driver.calls == []


class TestStatusEndpoint:
    def test_status_after_reconcile(self, api_client: TestClient):
        """GET /api/status should report running services after a reconcile."""
        api_client.post("/api/reconcile", json={})

        response = api_client.get("/api/status")

        states = {item["name"]: item["state"] for item in response.json()["services"]}
        assert states == {"jellyfin": "running", "romm": "running", "uptime-kuma": "stopped"}

    def test_status_unknown_service(self, api_client: TestClient):
        """GET /api/status for an unregistered service should return 404."""
        assert api_client.get("/api/status", params={"service": "plex"}).status_code == 404


class TestTeardownEndpoint:
    def test_teardown(self, api_client: TestClient, fake_driver):
        """POST /api/services/{name}/teardown should stop an applied service."""
        api_client.post("/api/reconcile", json={"service": "jellyfin"})

        response = api_client.post("/api/services/jellyfin/teardown")

        assert response.status_code == 200
        assert ("teardown", "jellyfin") in fake_driver.calls

    def test_teardown_unknown(self, api_client: TestClient):
        """Teardown of an unregistered service should return 404."""
        assert api_client.post("/api/services/plex/teardown").status_code == 404

    def test_teardown_never_applied(self, api_client: TestClient):
        """Teardown of a service that was never applied should return 409."""
        assert api_client.post("/api/services/jellyfin/teardown").status_code == 409


class TestRunsEndpoints:
    def test_get_run(self, api_client: TestClient):
        """GET /api/runs/{run_id} should return the recorded run."""
        run_id = api_client.post("/api/reconcile", json={}).json()["run_id"]

        response = api_client.get(f"/api/runs/{run_id}")

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert len(response.json()["outcomes"]) == 2

    def test_unknown_run(self, api_client: TestClient):
        """GET /api/runs/{run_id} for an unknown run should return 404."""
        assert api_client.get("/api/runs/nope").status_code == 404

    def test_event_stream(self, api_client: TestClient):
        """The run event stream should emit one outcome event per service and a status event."""
        run_id = api_client.post("/api/reconcile", json={}).json()["run_id"]

        with api_client.stream("GET", f"/api/runs/{run_id}/events") as response:
            body = "".join(response.iter_text())

        assert body.count("event: outcome") == 2
        assert "event: status" in body

    def test_event_stream_unknown_run(self, api_client: TestClient):
        """The event stream for an unknown run should emit run_not_found."""
        with api_client.stream("GET", "/api/runs/nope/events") as response:
            body = "".join(response.iter_text())

        assert "run_not_found" in body


class TestValidateEndpoint:
    def test_validate(self, api_client: TestClient):
        """GET /api/validate should report a valid project."""
        with patch("homestack.validators.shutil.which", return_value="/usr/bin/docker"):
            response = api_client.get("/api/validate")

        assert response.status_code == 200
        assert response.json()["ok"] is True
