"""File-backed fallback store for the session token and org id."""

from __future__ import annotations

import base64
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("relay.auth_store")

TOKEN_KEYS = ("token", "accessToken")
ORG_KEYS = ("orgId", "orgid")
_ENC_PREFIX = "fernet:"


class AuthStoreError(RuntimeError):
    pass


def _default_path() -> Path:
    raw = (os.getenv("PORTAL_AUTH_STORE_PATH") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".portal-relay" / "auth.json"


def _get_fernet(key: str | None = None) -> Optional[Fernet]:
    key = (key if key is not None else os.getenv("PORTAL_STORE_KEY", "")).strip()
    if not key:
        return None
    try:
        # Accept raw 32-byte keys as well as urlsafe base64 Fernet keys.
        if len(key) == 32:
            key = base64.urlsafe_b64encode(key.encode("utf-8")).decode("utf-8")
        return Fernet(key.encode("utf-8"))
    except Exception as exc:
        raise AuthStoreError("Invalid PORTAL_STORE_KEY") from exc


def _first(data: Dict[str, Any], keys: tuple) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class FileAuthStore:
    def __init__(self, path: str | Path | None = None, key: str | None = None) -> None:
        self._path = Path(path) if path is not None else _default_path()
        self._fernet = _get_fernet(key)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("auth_store_unreadable path=%s error=%s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._path)

    def _decrypt(self, value: str | None) -> str | None:
        if not value or not value.startswith(_ENC_PREFIX):
            return value
        if self._fernet is None:
            logger.warning("auth_store_encrypted_without_key path=%s", self._path)
            return None
        try:
            return self._fernet.decrypt(value[len(_ENC_PREFIX):].encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.warning("auth_store_invalid_token path=%s", self._path)
            return None

    def _encrypt(self, value: str) -> str:
        if self._fernet is None:
            return value
        return _ENC_PREFIX + self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def get_token(self) -> str | None:
        return self._decrypt(_first(self._read(), TOKEN_KEYS))

    def get_org_id(self) -> str | None:
        return _first(self._read(), ORG_KEYS)

    def set_token(self, token: str | None) -> None:
        data = self._read()
        for key in TOKEN_KEYS:
            data.pop(key, None)
        if token:
            data["token"] = self._encrypt(token)
        self._write(data)

    def set_org_id(self, org_id: str | None) -> None:
        data = self._read()
        for key in ORG_KEYS:
            data.pop(key, None)
        if org_id:
            data["orgId"] = org_id
        self._write(data)

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()
