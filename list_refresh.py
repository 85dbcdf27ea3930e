"""List-page refresh controller tied to mount / dependency change / unmount."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, Mapping

from auth_context import AuthContext
from request_errors import UNAUTHORIZED, RequestResult
from request_orchestrator import RequestDescriptor, RequestOrchestrator

logger = logging.getLogger("relay.refresh")

_controller_ids = itertools.count(1)


def unwrap_items(data: Any) -> list:
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        return list(data["items"])
    if isinstance(data, list):
        return list(data)
    return []


class ListRefreshController:
    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        descriptor_factory: Callable[[Dict[str, Any]], RequestDescriptor],
        *,
        mapper: Callable[[Any], Any] | None = None,
        on_change: Callable[["ListRefreshController"], None] | None = None,
        dedupe_key: str | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._factory = descriptor_factory
        self._mapper = mapper or unwrap_items
        self._on_change = on_change
        self._dedupe_key = dedupe_key or f"list-refresh:{next(_controller_ids)}"
        self._generation = 0
        self._mounted = False
        self._auth: AuthContext | None = None
        self._deps: Dict[str, Any] = {}
        self._task: asyncio.Task | None = None

        self.items: Any = None
        self.error: str | None = None
        self.loading = False
        self.redirect_to_login = False

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def dedupe_key(self) -> str:
        return self._dedupe_key

    def _signature(self, auth: AuthContext | None, deps: Mapping[str, Any] | None) -> tuple:
        token = auth.token if auth else None
        org_id = auth.org_id if auth else None
        dep_items = tuple(sorted((str(k), repr(v)) for k, v in (deps or {}).items()))
        return (token, org_id, dep_items)

    def mount(self, auth: AuthContext | None, deps: Mapping[str, Any] | None = None) -> asyncio.Task:
        self._mounted = True
        self._auth = auth
        self._deps = dict(deps or {})
        return self._start()

    def update(self, auth: AuthContext | None, deps: Mapping[str, Any] | None = None) -> asyncio.Task | None:
        if not self._mounted:
            return None
        if self._signature(auth, deps) == self._signature(self._auth, self._deps):
            return None
        self._auth = auth
        self._deps = dict(deps or {})
        return self._start()

    def refresh(self) -> asyncio.Task | None:
        if not self._mounted:
            return None
        return self._start()

    def unmount(self) -> None:
        self._mounted = False
        self._generation += 1
        self._orchestrator.registry.cancel(self._dedupe_key)
        self.loading = False
        logger.debug("list_unmounted key=%s", self._dedupe_key)

    async def wait(self) -> None:
        task = self._task
        while task is not None:
            await asyncio.gather(task, return_exceptions=True)
            if task is self._task:
                return
            task = self._task

    def _start(self) -> asyncio.Task:
        self._generation += 1
        generation = self._generation
        # Whatever is still in flight for this list is now stale.
        self._orchestrator.registry.cancel(self._dedupe_key)
        self.loading = True
        self._task = asyncio.ensure_future(self._fetch(generation, self._auth, dict(self._deps)))
        return self._task

    async def _fetch(self, generation: int, auth: AuthContext | None, deps: Dict[str, Any]) -> RequestResult:
        descriptor = self._factory(deps)
        descriptor.dedupe_key = self._dedupe_key
        result = await self._orchestrator.send(descriptor, auth)
        if result.cancelled or generation != self._generation or not self._mounted:
            logger.debug("list_result_dropped key=%s generation=%s current=%s", self._dedupe_key, generation, self._generation)
            return result
        self._apply(result)
        return result

    def _apply(self, result: RequestResult) -> None:
        self.loading = False
        if result.ok:
            self.items = self._mapper(result.data)
            self.error = None
            self.redirect_to_login = False
        elif result.kind == UNAUTHORIZED:
            self.redirect_to_login = True
        else:
            self.items = []
            self.error = result.message
        if self._on_change is not None:
            self._on_change(self)
