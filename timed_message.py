"""Transient UI messages with an explicit expiry."""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class TimedMessage:
    text: str
    expires_at: float

    @classmethod
    def after(cls, text: str, seconds: float, now: float | None = None) -> "TimedMessage":
        start = time.monotonic() if now is None else now
        return cls(text=text, expires_at=start + max(0.0, seconds))

    def is_active(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return current < self.expires_at


def current(message: TimedMessage | None, now: float | None = None) -> str | None:
    if message is None or not message.is_active(now):
        return None
    return message.text
