"""Encrypted credential storage resolved only inside the transport broker."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict

from cryptography.fernet import Fernet, InvalidToken

__all__ = ["CredentialVault", "redact_secret"]

LOGGER = logging.getLogger(__name__)
_CREDENTIALS_DIR = Path.home() / ".inkwell"
_DEFAULT_STORE_PATH = _CREDENTIALS_DIR / "credentials.json"
_ENV_PREFIX = "INKWELL_CREDENTIAL_"


class CredentialVault:
    """Maps opaque credential references to Fernet-encrypted secrets.

    Callers outside the transport layer only ever see the reference string.
    A reference can also be satisfied by an ``INKWELL_CREDENTIAL_<REF>``
    environment variable, which takes priority over the stored value.
    """

    def __init__(self, path: Path | None = None, *, key_path: Path | None = None) -> None:
        self._path = path or _DEFAULT_STORE_PATH
        self._key_path = key_path or self._path.with_suffix(".key")
        self._fernet: Fernet | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def store(self, credential_ref: str, secret: str) -> None:
        """Encrypt ``secret`` and persist it under ``credential_ref``."""

        ref = _normalize_ref(credential_ref)
        token = self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")
        with self._lock:
            payload = self._read_payload()
            payload[ref] = token
            self._write_payload(payload)
        LOGGER.debug("Stored credential %s (%s)", ref, redact_secret(secret))

    def forget(self, credential_ref: str) -> bool:
        ref = _normalize_ref(credential_ref)
        with self._lock:
            payload = self._read_payload()
            if ref not in payload:
                return False
            del payload[ref]
            self._write_payload(payload)
        return True

    def has(self, credential_ref: str | None) -> bool:
        if not credential_ref:
            return False
        return bool(self.resolve(credential_ref))

    def resolve(self, credential_ref: str | None) -> str:
        """Return the plaintext secret for ``credential_ref`` or ``""``."""

        if not credential_ref:
            return ""
        ref = _normalize_ref(credential_ref)
        env_value = os.environ.get(_env_name(ref))
        if env_value:
            return env_value.strip()
        with self._lock:
            token = self._read_payload().get(ref)
        if not token:
            return ""
        try:
            return self._get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError(f"Credential {ref} could not be decrypted") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key

    def _read_payload(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Credential store %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): str(value) for key, value in payload.items()}

    def _write_payload(self, payload: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(self._path)


def _normalize_ref(credential_ref: str) -> str:
    ref = (credential_ref or "").strip()
    if not ref:
        raise ValueError("credential_ref must be a non-empty string")
    return ref


def _env_name(ref: str) -> str:
    cleaned = "".join(ch if ch.isalnum() else "_" for ch in ref)
    return f"{_ENV_PREFIX}{cleaned.upper()}"


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
