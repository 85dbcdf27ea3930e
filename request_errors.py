"""Outcome types and error classification for orchestrated requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

UNAUTHORIZED = "unauthorized"
CONFLICT = "conflict"
VALIDATION_FAILED = "validation_failed"
CANCELLED = "cancelled"
SERVER_ERROR = "server_error"

ERROR_KINDS = frozenset({UNAUTHORIZED, CONFLICT, VALIDATION_FAILED, CANCELLED, SERVER_ERROR})

AUTH_STATUSES = frozenset({401, 403})
CONFLICT_STATUS = 409
CONFLICT_MARKERS = ("already exists", "unique constraint")

DEFAULT_ERROR_MESSAGE = "Request failed"


@dataclass(frozen=True)
class RequestError:
    kind: str
    message: str | None = None
    status_code: int | None = None
    detail: Any = None

    def __post_init__(self) -> None:
        if self.kind not in ERROR_KINDS:
            raise ValueError(f"Unknown error kind: {self.kind}")

    @property
    def user_visible(self) -> bool:
        return self.kind in (CONFLICT, VALIDATION_FAILED, SERVER_ERROR)


@dataclass(frozen=True)
class RequestResult:
    ok: bool
    data: Any = None
    status_code: int | None = None
    error: RequestError | None = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def kind(self) -> str | None:
        return self.error.kind if self.error else None

    @property
    def cancelled(self) -> bool:
        return self.kind == CANCELLED

    @property
    def message(self) -> str | None:
        return self.error.message if self.error else None

    @classmethod
    def success(cls, data: Any, status_code: int | None = 200, headers: Dict[str, str] | None = None) -> "RequestResult":
        return cls(ok=True, data=data, status_code=status_code, headers=dict(headers or {}))

    @classmethod
    def failure(
        cls,
        kind: str,
        message: str | None = None,
        status_code: int | None = None,
        detail: Any = None,
    ) -> "RequestResult":
        return cls(
            ok=False,
            status_code=status_code,
            error=RequestError(kind=kind, message=message, status_code=status_code, detail=detail),
        )

    @classmethod
    def cancelled_result(cls) -> "RequestResult":
        return cls(ok=False, error=RequestError(kind=CANCELLED))


def _body_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    if isinstance(message, list):
        parts = [str(m).strip() for m in message if str(m).strip()]
        if parts:
            return "; ".join(parts)
    # Error envelopes: {"ok": false, "errors": [{"message": ...}]}
    errors = body.get("errors")
    if isinstance(errors, list):
        for err in errors:
            if isinstance(err, dict) and isinstance(err.get("message"), str) and err["message"].strip():
                return err["message"].strip()
    return None


def extract_message(body: Any, exc: BaseException | None = None, default: str | None = None) -> str:
    message = _body_message(body)
    if message:
        return message
    if exc is not None:
        text = str(exc).strip()
        if text:
            return text
    return default or DEFAULT_ERROR_MESSAGE


def is_conflict(status_code: int | None, message: str | None) -> bool:
    if status_code == CONFLICT_STATUS:
        return True
    text = (message or "").lower()
    return any(marker in text for marker in CONFLICT_MARKERS)


def classify_response(
    status_code: int,
    body: Any,
    default_message: str | None = None,
    conflict_message: Optional[str] = None,
) -> RequestResult:
    if status_code in AUTH_STATUSES:
        return RequestResult.failure(UNAUTHORIZED, None, status_code)
    message = extract_message(body, None, default_message)
    if is_conflict(status_code, _body_message(body)):
        return RequestResult.failure(CONFLICT, conflict_message or message, status_code, detail=body)
    return RequestResult.failure(SERVER_ERROR, message, status_code, detail=body)


def classify_transport_error(exc: BaseException, default_message: str | None = None) -> RequestResult:
    message = extract_message(None, exc, default_message)
    if is_conflict(None, message):
        return RequestResult.failure(CONFLICT, message, None)
    return RequestResult.failure(SERVER_ERROR, message, None, detail={"error": type(exc).__name__})


def validation_failed(issues: list, message: str | None = None) -> RequestResult:
    if message is None:
        first = issues[0] if issues else None
        message = first.get("message") if isinstance(first, dict) else "Validation failed"
    return RequestResult.failure(VALIDATION_FAILED, message, None, detail=list(issues))
