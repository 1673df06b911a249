from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from . import constants


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_path(env: Mapping[str, str], name: str, root: Path, default: str) -> Path:
    raw = env.get(name)
    path = Path(raw).expanduser() if raw else Path(default)
    return path if path.is_absolute() else root / path


@dataclass(frozen=True)
class Settings:
    root: Path
    services_file: Path
    globals_file: Path
    vault_file: Path
    template_dir: Path
    build_dir: Path
    state_dir: Path
    vault_password_file: Optional[Path] = None
    apply_timeout: int = constants.DEFAULT_APPLY_TIMEOUT
    lock_timeout: int = constants.DEFAULT_LOCK_TIMEOUT
    prepare_workers: int = 1
    docker_binary: str = "docker"
    log_level: str = "WARNING"

    @classmethod
    def from_env(
        cls,
        root: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        env = os.environ if environ is None else environ
        if root is None:
            root = Path(env.get("HOMESTACK_ROOT") or os.getcwd())
        root = root.expanduser().resolve()
        build_dir = _env_path(env, "HOMESTACK_BUILD_DIR", root, constants.BUILD_DIR)
        password_file = env.get("HOMESTACK_VAULT_PASSWORD_FILE")
        return cls(
            root=root,
            services_file=_env_path(env, "HOMESTACK_SERVICES_FILE", root, constants.SERVICES_FILE),
            globals_file=_env_path(env, "HOMESTACK_GLOBALS_FILE", root, constants.GLOBALS_FILE),
            vault_file=_env_path(env, "HOMESTACK_VAULT_FILE", root, constants.VAULT_FILE),
            template_dir=_env_path(env, "HOMESTACK_TEMPLATE_DIR", root, constants.TEMPLATE_DIR),
            build_dir=build_dir,
            state_dir=_env_path(
                env, "HOMESTACK_STATE_DIR", root, str(build_dir / constants.STATE_DIR)
            ),
            vault_password_file=Path(password_file).expanduser() if password_file else None,
            apply_timeout=_env_int(env, "HOMESTACK_APPLY_TIMEOUT", constants.DEFAULT_APPLY_TIMEOUT),
            lock_timeout=_env_int(env, "HOMESTACK_LOCK_TIMEOUT", constants.DEFAULT_LOCK_TIMEOUT),
            prepare_workers=max(1, _env_int(env, "HOMESTACK_PREPARE_WORKERS", 1)),
            docker_binary=env.get("HOMESTACK_DOCKER_BINARY", "docker"),
            log_level=env.get("HOMESTACK_LOG_LEVEL", "WARNING").upper(),
        )

    def with_password_file(self, path: Optional[Path]) -> "Settings":
        if path is None:
            return self
        return replace(self, vault_password_file=path)
