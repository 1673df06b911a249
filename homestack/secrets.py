"""Encrypted secret store (vault) and the in-memory view unlocked from it.

On disk the vault is a small YAML envelope holding the scrypt parameters and
salt used to derive the key, plus a Fernet token over a YAML mapping of
secret names to values. Fernet authenticates the token, so a wrong passphrase
fails as a whole instead of yielding garbage.
"""
from __future__ import annotations

import base64
import getpass
import hashlib
import logging
import os
import secrets as _random
import sys
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

import yaml
from cryptography.fernet import Fernet, InvalidToken

from .constants import SECRET_MASK
from .errors import AuthError, MissingSecret

log = logging.getLogger(__name__)

VAULT_FORMAT = "homestack-vault/1"

PASSWORD_FILE_ENV = "HOMESTACK_VAULT_PASSWORD_FILE"
PASSWORD_ENV = "HOMESTACK_VAULT_PASSWORD"

# scrypt parameters (memory-hard KDF)
_SCRYPT_N = 16384
_SCRYPT_R = 8
_SCRYPT_P = 1
_SALT_BYTES = 16


def _derive_key(passphrase: str, salt: bytes, n: int, r: int, p: int) -> bytes:
    digest = hashlib.scrypt(
        passphrase.encode("utf-8"),
        salt=salt,
        n=n,
        r=r,
        p=p,
        dklen=32,
    )
    return base64.urlsafe_b64encode(digest)


class SecretStore(Mapping[str, str]):
    """Read-only decrypted secrets for the duration of one run."""

    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = MappingProxyType(dict(values))

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SecretStore(keys={sorted(self._values)!r})"

    def resolve(self, key: str) -> str:
        try:
            return self._values[key]
        except KeyError:
            raise MissingSecret(key) from None

    def mask(self, text: Optional[str]) -> Optional[str]:
        """Replace every secret value occurring in ``text``."""
        if not text:
            return text
        # Longest first so a secret containing another is masked whole.
        for value in sorted(self._values.values(), key=len, reverse=True):
            if value and value in text:
                text = text.replace(value, SECRET_MASK)
        return text


class SecretResolver:
    """Unlocks the vault file at ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def unlock(self, passphrase: str) -> SecretStore:
        envelope = self._read_envelope()
        try:
            salt = base64.b64decode(envelope["salt"])
            key = _derive_key(
                passphrase,
                salt,
                int(envelope.get("n", _SCRYPT_N)),
                int(envelope.get("r", _SCRYPT_R)),
                int(envelope.get("p", _SCRYPT_P)),
            )
            payload = Fernet(key).decrypt(envelope["token"].encode("ascii"))
        except InvalidToken:
            raise AuthError("Vault passphrase is incorrect or the vault is corrupted") from None
        except (KeyError, ValueError, TypeError) as exc:
            raise AuthError(f"Vault {self.path} is malformed: {exc}") from exc

        values = yaml.safe_load(payload.decode("utf-8")) or {}
        if not isinstance(values, dict):
            raise AuthError(f"Vault {self.path} does not contain a mapping of secrets")
        log.debug("Unlocked vault %s (%d secrets)", self.path, len(values))
        return SecretStore(_coerce_values(values))

    def rekey(self, old_passphrase: str, new_passphrase: str) -> None:
        store = self.unlock(old_passphrase)
        encrypt_store(self.path, dict(store), new_passphrase)

    def update(self, passphrase: str, changes: Mapping[str, Optional[str]]) -> SecretStore:
        """Set (or, with ``None``, delete) secrets and re-encrypt the vault."""
        values: Dict[str, str] = dict(self.unlock(passphrase)) if self.exists() else {}
        for key, value in changes.items():
            if value is None:
                values.pop(key, None)
            else:
                values[key] = value
        encrypt_store(self.path, values, passphrase)
        return SecretStore(values)

    def _read_envelope(self) -> Dict[str, Any]:
        if not self.path.exists():
            raise AuthError(f"Missing vault at {self.path}")
        try:
            envelope = yaml.safe_load(self.path.read_text())
        except yaml.YAMLError as exc:
            raise AuthError(f"Vault {self.path} is not readable: {exc}") from exc
        if not isinstance(envelope, dict) or envelope.get("format") != VAULT_FORMAT:
            raise AuthError(f"Vault {self.path} is not a {VAULT_FORMAT} file")
        return envelope


def encrypt_store(path: Path, values: Mapping[str, str], passphrase: str) -> None:
    """Write ``values`` to ``path`` as an encrypted vault."""
    if not passphrase:
        raise ValueError("Vault passphrase must not be empty")
    salt = _random.token_bytes(_SALT_BYTES)
    key = _derive_key(passphrase, salt, _SCRYPT_N, _SCRYPT_R, _SCRYPT_P)
    payload = yaml.safe_dump(dict(_coerce_values(values)), sort_keys=True)
    token = Fernet(key).encrypt(payload.encode("utf-8")).decode("ascii")
    envelope = {
        "format": VAULT_FORMAT,
        "kdf": "scrypt",
        "salt": base64.b64encode(salt).decode("ascii"),
        "n": _SCRYPT_N,
        "r": _SCRYPT_R,
        "p": _SCRYPT_P,
        "token": token,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(yaml.safe_dump(envelope, sort_keys=False))
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)


def _coerce_values(values: Mapping[Any, Any]) -> Dict[str, str]:
    coerced: Dict[str, str] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            raise AuthError(f"Vault secret '{key}' must be a plain value")
        coerced[str(key)] = value if isinstance(value, str) else str(value)
    return coerced


def read_password_file(path: Path) -> str:
    try:
        return path.read_text().rstrip("\r\n")
    except OSError as exc:
        raise AuthError(f"Cannot read vault password file {path}: {exc}") from exc


def passphrase_from(
    password_file: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    interactive: Optional[bool] = None,
    prompt: str = "Vault password: ",
) -> str:
    """Find the vault passphrase.

    Order: explicit password file, ``HOMESTACK_VAULT_PASSWORD_FILE``,
    ``HOMESTACK_VAULT_PASSWORD``, then an interactive prompt on a TTY.
    """
    env = os.environ if environ is None else environ
    if password_file is not None:
        return read_password_file(password_file)
    env_file = env.get(PASSWORD_FILE_ENV)
    if env_file:
        return read_password_file(Path(env_file).expanduser())
    env_password = env.get(PASSWORD_ENV)
    if env_password:
        return env_password
    if interactive is None:
        interactive = sys.stdin.isatty()
    if interactive:
        return getpass.getpass(prompt)
    raise AuthError(
        "No vault passphrase available; pass --vault-password-file or set "
        f"{PASSWORD_FILE_ENV}"
    )


def referenced_keys(keys: Iterable[str], store: SecretStore) -> Dict[str, str]:
    """Subset of the store limited to ``keys`` that are present."""
    return {key: store[key] for key in keys if key in store}
