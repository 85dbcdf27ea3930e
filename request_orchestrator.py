"""Request orchestration: headers, dedup/cancel, and outcome classification.

Every outbound call goes through ``RequestOrchestrator.send``:

1. headers are assembled from the descriptor and an explicit ``AuthContext``
   (no ambient reads of stored credentials inside the orchestrator);
2. the dedupe key is registered in the ``InFlightRegistry``, superseding and
   cancelling any older request for the same key;
3. the transport call runs as a task attached to the registry handle;
4. the settled response is classified into a ``RequestResult``. A request
   that was superseded resolves to ``cancelled`` regardless of what the
   transport eventually returned.

Results are returned, never raised. The only exception that escapes ``send``
is ``asyncio.CancelledError`` when the caller's own task is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from api_url import create_api_url
from auth_context import AuthContext, auth_headers
from inflight_registry import CancelHandle, InFlightRegistry, default_registry
from relay.canonical_json import canonical_dumps
from relay.idempotency import IDEMPOTENCY_HEADER, generate_key, is_mutating
from request_errors import (
    CANCELLED,
    CONFLICT,
    DEFAULT_ERROR_MESSAGE,
    SERVER_ERROR,
    UNAUTHORIZED,
    RequestResult,
    classify_response,
    classify_transport_error,
    validation_failed,
)

logger = logging.getLogger("relay.requests")

DEFAULT_TIMEOUT_S = 30.0


def _timeout_seconds() -> float:
    raw = (os.getenv("PORTAL_HTTP_TIMEOUT_S") or "").strip()
    if not raw:
        return DEFAULT_TIMEOUT_S
    try:
        value = float(raw)
    except ValueError:
        logger.warning("invalid_timeout value=%s default=%s", raw, DEFAULT_TIMEOUT_S)
        return DEFAULT_TIMEOUT_S
    return max(0.1, value)


@dataclass
class RequestDescriptor:
    method: str
    url: str
    body: Any = None
    params: Optional[Dict[str, Any]] = None
    dedupe_key: Optional[str] = None
    idempotency_prefix: Optional[str] = None
    idempotency_key: Optional[str] = None
    default_message: str = DEFAULT_ERROR_MESSAGE
    conflict_message: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.method = str(self.method or "GET").upper()

    @property
    def key(self) -> str:
        return self.dedupe_key or f"{self.method} {self.url}"

    @property
    def mutating(self) -> bool:
        return is_mutating(self.method)


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class RequestOrchestrator:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        registry: InFlightRegistry | None = None,
        timeout: float | None = None,
        auth_provider: Callable[[], AuthContext] | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout if timeout is not None else _timeout_seconds()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)
        self._registry = registry if registry is not None else default_registry()
        self._auth_provider = auth_provider

    @property
    def registry(self) -> InFlightRegistry:
        return self._registry

    async def __aenter__(self) -> "RequestOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def resolve_url(self, url: str) -> str:
        return create_api_url(url, self._base_url)

    def build_headers(self, descriptor: RequestDescriptor, auth: AuthContext | None, has_body: bool) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for name, value in (descriptor.headers or {}).items():
            # Lowercase spelling from older call sites collapses onto the canonical header.
            if name.lower() == IDEMPOTENCY_HEADER.lower():
                continue
            if value is not None:
                headers[name] = str(value)
        headers["Accept"] = "application/json"
        if has_body:
            headers["Content-Type"] = "application/json"
        headers.update(auth_headers(auth))
        if descriptor.mutating:
            headers[IDEMPOTENCY_HEADER] = self._idempotency_key(descriptor)
        return headers

    def _idempotency_key(self, descriptor: RequestDescriptor) -> str:
        if descriptor.idempotency_key:
            return descriptor.idempotency_key
        for name, value in (descriptor.headers or {}).items():
            if name.lower() == IDEMPOTENCY_HEADER.lower() and value:
                return str(value)
        prefix = descriptor.idempotency_prefix or f"request:{descriptor.method.lower()}"
        return generate_key(prefix)

    async def send(self, descriptor: RequestDescriptor, auth: AuthContext | None = None) -> RequestResult:
        if auth is None and self._auth_provider is not None:
            auth = self._auth_provider()

        content = None
        if descriptor.body is not None:
            try:
                content = canonical_dumps(descriptor.body)
            except (TypeError, ValueError) as exc:
                issue = {"code": "REQUEST_BODY_INVALID", "message": str(exc), "path": "body", "detail": None}
                return validation_failed([issue])

        headers = self.build_headers(descriptor, auth, content is not None)
        url = self.resolve_url(descriptor.url)
        key = descriptor.key

        handle = self._registry.register(key)
        logger.debug("request_start method=%s url=%s key=%s handle=%s", descriptor.method, url, key, handle.id)
        task = asyncio.ensure_future(
            self._client.request(
                descriptor.method,
                url,
                content=content,
                params=descriptor.params,
                headers=headers,
            )
        )
        handle.attach(task)
        try:
            return await self._settle(task, handle, descriptor)
        finally:
            self._registry.release(key, handle)

    async def _settle(self, task: asyncio.Future, handle: CancelHandle, descriptor: RequestDescriptor) -> RequestResult:
        try:
            response = await task
        except asyncio.CancelledError:
            if handle.cancelled:
                logger.debug("request_cancelled key=%s handle=%s", handle.key, handle.id)
                return RequestResult.cancelled_result()
            # The caller's own task was cancelled; stop the transport and propagate.
            handle.cancel()
            raise
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            if handle.cancelled:
                return RequestResult.cancelled_result()
            result = classify_transport_error(exc, descriptor.default_message)
            logger.warning("request_failed kind=%s key=%s error=%s", result.kind, handle.key, exc)
            return result

        if handle.cancelled:
            # Stale response: a newer request owns this key now.
            logger.debug("request_stale_response key=%s handle=%s status=%s", handle.key, handle.id, response.status_code)
            return RequestResult.cancelled_result()

        body = _parse_body(response)
        status = response.status_code
        if 200 <= status < 300:
            logger.debug("request_done key=%s status=%s", handle.key, status)
            return RequestResult.success(body, status, dict(response.headers))

        result = classify_response(status, body, descriptor.default_message, descriptor.conflict_message)
        self._log_failure(result, handle.key)
        return result

    @staticmethod
    def _log_failure(result: RequestResult, key: str) -> None:
        kind = result.kind
        if kind == CANCELLED:
            return
        if kind in (UNAUTHORIZED, CONFLICT):
            logger.info("request_failed kind=%s key=%s status=%s", kind, key, result.status_code)
        elif kind == SERVER_ERROR:
            logger.warning(
                "request_failed kind=%s key=%s status=%s message=%s",
                kind,
                key,
                result.status_code,
                result.message,
            )

    def _descriptor(self, method: str, url: str, **kwargs: Any) -> RequestDescriptor:
        return RequestDescriptor(method=method, url=url, **kwargs)

    async def get(self, url: str, auth: AuthContext | None = None, **kwargs: Any) -> RequestResult:
        return await self.send(self._descriptor("GET", url, **kwargs), auth)

    async def post(self, url: str, body: Any = None, auth: AuthContext | None = None, **kwargs: Any) -> RequestResult:
        return await self.send(self._descriptor("POST", url, body=body, **kwargs), auth)

    async def put(self, url: str, body: Any = None, auth: AuthContext | None = None, **kwargs: Any) -> RequestResult:
        return await self.send(self._descriptor("PUT", url, body=body, **kwargs), auth)

    async def patch(self, url: str, body: Any = None, auth: AuthContext | None = None, **kwargs: Any) -> RequestResult:
        return await self.send(self._descriptor("PATCH", url, body=body, **kwargs), auth)

    async def delete(self, url: str, auth: AuthContext | None = None, **kwargs: Any) -> RequestResult:
        return await self.send(self._descriptor("DELETE", url, **kwargs), auth)
