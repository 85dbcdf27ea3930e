"""Registry of in-flight requests keyed by dedupe key (last write wins)."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Dict, List

logger = logging.getLogger("relay.requests")

_handle_ids = itertools.count(1)


class CancelHandle:
    def __init__(self, key: str) -> None:
        self.key = key
        self.id = next(_handle_ids)
        self._cancelled = False
        self._task: asyncio.Future | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, task: asyncio.Future) -> None:
        self._task = task
        if self._cancelled and not task.done():
            task.cancel()

    def cancel(self) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        state = "cancelled" if self._cancelled else "active"
        return f"<CancelHandle key={self.key!r} id={self.id} {state}>"


class InFlightRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, CancelHandle] = {}

    def register(self, key: str) -> CancelHandle:
        previous = self._entries.pop(key, None)
        if previous is not None and previous.cancel():
            logger.debug("request_superseded key=%s handle=%s", key, previous.id)
        handle = CancelHandle(key)
        self._entries[key] = handle
        return handle

    def release(self, key: str, handle: CancelHandle) -> bool:
        current = self._entries.get(key)
        if current is not handle:
            return False
        del self._entries[key]
        return True

    def active(self, key: str) -> CancelHandle | None:
        return self._entries.get(key)

    def cancel(self, key: str) -> bool:
        handle = self._entries.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self, prefix: str | None = None) -> int:
        keys = [k for k in self._entries if prefix is None or k.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


_DEFAULT_REGISTRY = InFlightRegistry()


def default_registry() -> InFlightRegistry:
    return _DEFAULT_REGISTRY
