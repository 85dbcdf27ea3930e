"""Auth context resolution and header injection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Protocol


class TokenSource(Protocol):
    def get_token(self) -> str | None: ...

    def get_org_id(self) -> str | None: ...


@dataclass(frozen=True)
class AuthContext:
    token: str | None = None
    org_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


class MemoryAuthStore:
    def __init__(self, token: str | None = None, org_id: str | None = None) -> None:
        self._token = _clean(token)
        self._org_id = _clean(org_id)

    def get_token(self) -> str | None:
        return self._token

    def get_org_id(self) -> str | None:
        return self._org_id

    def set_token(self, token: str | None) -> None:
        self._token = _clean(token)

    def set_org_id(self, org_id: str | None) -> None:
        self._org_id = _clean(org_id)

    def clear(self) -> None:
        self._token = None
        self._org_id = None


def resolve_auth_context(memory: TokenSource | None, persistent: TokenSource | None = None) -> AuthContext:
    token = _clean(memory.get_token()) if memory is not None else None
    org_id = _clean(memory.get_org_id()) if memory is not None else None
    if persistent is not None:
        if not token:
            token = _clean(persistent.get_token())
        if not org_id:
            org_id = _clean(persistent.get_org_id())
    return AuthContext(token=token, org_id=org_id)


def auth_headers(ctx: AuthContext | None) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    if ctx is None:
        return headers
    token = _clean(ctx.token)
    org_id = _clean(ctx.org_id)
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if org_id:
        headers["x-org-id"] = org_id
    return headers


class AuthStoreSync:
    """Writes token and org changes through to both stores."""

    def __init__(self, memory: MemoryAuthStore, persistent: Any | None = None) -> None:
        self._memory = memory
        self._persistent = persistent

    def current(self) -> AuthContext:
        return resolve_auth_context(self._memory, self._persistent)

    def set_token(self, token: str | None) -> None:
        self._memory.set_token(token)
        if self._persistent is not None:
            self._persistent.set_token(token)

    def set_org_id(self, org_id: str | None) -> None:
        self._memory.set_org_id(org_id)
        if self._persistent is not None:
            self._persistent.set_org_id(org_id)

    def clear(self) -> None:
        self._memory.clear()
        if self._persistent is not None:
            self._persistent.clear()
