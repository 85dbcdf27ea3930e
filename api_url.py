"""API base URL resolution from the environment."""

from __future__ import annotations

import os

DEFAULT_API_URL = "http://localhost:3000"


def _env_api_url() -> str:
    for key in ("PORTAL_API_URL", "VITE_API_URL", "E2E_API_URL"):
        value = (os.getenv(key) or "").strip()
        if value:
            return value
    return DEFAULT_API_URL


def api_base(base_url: str | None = None) -> str:
    """Return the API root, always ending in ``/api`` exactly once."""
    base = (base_url or _env_api_url()).strip().rstrip("/")
    if base.endswith("/api"):
        return base
    return f"{base}/api"


def create_api_url(path: str, base_url: str | None = None) -> str:
    if path.startswith("http://") or path.startswith("https://"):
        return path
    if path and not path.startswith("/"):
        path = f"/{path}"
    return f"{api_base(base_url)}{path}"
