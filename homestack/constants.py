"""Centralized constants for the homestack reconciler.

File names, build layout, and the built-in defaults that sit underneath the
globals document. Nothing here should be service specific.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Declarative inputs (relative to the project root)
# ---------------------------------------------------------------------------
SERVICES_FILE = "services.yaml"
GLOBALS_FILE = "globals.yaml"
VAULT_FILE = "vault.yml"
TEMPLATE_DIR = "templates/services"

# ---------------------------------------------------------------------------
# Per-template files inside templates/services/<template-id>/
# ---------------------------------------------------------------------------
TEMPLATE_FILE = "docker-compose.yml.j2"
TEMPLATE_META_FILE = "template.yml"

# ---------------------------------------------------------------------------
# Build output layout (relative to the build root)
# build/services/<service>/docker-compose.yml is what docker compose sees.
# ---------------------------------------------------------------------------
BUILD_DIR = "build"
ARTIFACT_DIR = "services"
STAGING_DIR = "staging"
LOCK_DIR = "locks"
STATE_DIR = "state"
ARTIFACT_FILE = "docker-compose.yml"
FINGERPRINT_FILE = ".fingerprint"
RUNS_FILE = "runs.json"

# Rendered artifacts can carry credentials.
ARTIFACT_MODE = 0o600

# ---------------------------------------------------------------------------
# Built-in defaults, lowest precedence in the render context.
# ---------------------------------------------------------------------------
BUILTIN_DEFAULTS: dict[str, object] = {
    "timezone": "UTC",
    "user_id": 1000,
    "group_id": 1000,
    "network_name": "media",
    "domain": "localhost",
    "restart_policy": "unless-stopped",
}

# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------
DEFAULT_APPLY_TIMEOUT = 600  # seconds per service convergence
DEFAULT_LOCK_TIMEOUT = 30  # seconds to wait for another run's convergence
DEFAULT_STATUS_TIMEOUT = 30
DEFAULT_LOG_TAIL = 100
RUN_HISTORY_LIMIT = 50

SECRET_MASK = "********"
