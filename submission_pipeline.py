"""Form submission pipeline (validate, submit, classify)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

from auth_context import AuthContext
from field_normalize import CHECKBOX, SELECT, FieldModel, field_key, field_options, field_required
from relay.idempotency import generate_key
from request_errors import CONFLICT, SERVER_ERROR, UNAUTHORIZED, VALIDATION_FAILED, RequestError, RequestResult
from request_orchestrator import RequestDescriptor, RequestOrchestrator

logger = logging.getLogger("relay.submit")

IDLE = "idle"
VALIDATING = "validating"
SUBMITTING = "submitting"
SUCCEEDED = "succeeded"
FAILED = "failed"

Issue = Dict[str, Any]
DescriptorFactory = Callable[[Dict[str, Any], str], RequestDescriptor]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def validate_values(fields: List[FieldModel], values: Mapping[str, Any]) -> List[Issue]:
    issues: List[Issue] = []
    values = values or {}
    for item in fields:
        key = field_key(item)
        value = values.get(key)
        label = item.label or key
        if field_required(item):
            if item.type == CHECKBOX:
                if not value:
                    issues.append(_issue("FIELD_REQUIRED", f"{label} is required", key))
                continue
            if _is_blank(value):
                issues.append(_issue("FIELD_REQUIRED", f"{label} is required", key))
                continue
        if item.type == SELECT and not _is_blank(value):
            options = field_options(item)
            if options and str(value) not in options:
                issues.append(
                    _issue("FIELD_OPTION_INVALID", f"{label} must be one of the listed options", key, {"options": options})
                )
        if item.type == CHECKBOX and value is not None and not isinstance(value, bool):
            issues.append(_issue("FIELD_TYPE_INVALID", f"{label} must be true or false", key))
    return issues


def build_payload(fields: List[FieldModel], values: Mapping[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    values = values or {}
    for item in fields:
        key = field_key(item)
        value = values.get(key)
        if item.type == CHECKBOX:
            payload[key] = bool(value)
        elif isinstance(value, str):
            payload[key] = value.strip()
        elif value is not None:
            payload[key] = value
    return payload


@dataclass
class SubmissionOutcome:
    state: str
    ok: bool = False
    data: Any = None
    error: RequestError | None = None
    message: str | None = None
    redirect_to_login: bool = False
    ignored: bool = False
    issues: List[Issue] = field(default_factory=list)
    idempotency_key: str | None = None


class SubmissionPipeline:
    """One pipeline per logical form instance.

    The instance guards against re-entrant submits itself; the UI disabling
    its submit trigger is not relied on.
    """

    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        descriptor_factory: DescriptorFactory,
        idempotency_prefix: str = "submission:create",
        entity_id: str | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._factory = descriptor_factory
        self._prefix = idempotency_prefix
        self._entity_id = entity_id
        self._state = IDLE
        self._last: SubmissionOutcome | None = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def last_outcome(self) -> SubmissionOutcome | None:
        return self._last

    def acknowledge(self) -> None:
        if self._state in (SUCCEEDED, FAILED):
            self._state = IDLE

    def _finish(self, outcome: SubmissionOutcome) -> SubmissionOutcome:
        self._last = outcome
        # Failures are retryable right away; success waits for acknowledge().
        self._state = IDLE if outcome.state == FAILED else outcome.state
        return outcome

    async def submit(self, fields: List[FieldModel], values: Mapping[str, Any], auth: AuthContext | None) -> SubmissionOutcome:
        if self._state in (VALIDATING, SUBMITTING):
            logger.info("submit_ignored state=%s", self._state)
            return SubmissionOutcome(state=self._state, ignored=True)

        self._state = VALIDATING
        issues = validate_values(fields, values)
        if issues:
            error = RequestError(kind=VALIDATION_FAILED, message=issues[0]["message"], detail=issues)
            logger.debug("submit_validation_failed issues=%s", len(issues))
            return self._finish(SubmissionOutcome(state=FAILED, error=error, message=error.message, issues=issues))

        self._state = SUBMITTING
        try:
            key = generate_key(self._prefix, self._entity_id)
            descriptor = self._factory(build_payload(fields, values), key)
            descriptor.idempotency_key = key
            result = await self._orchestrator.send(descriptor, auth)
        except BaseException:
            self._state = IDLE
            raise
        return self._finish(self._outcome(result, key))

    def _outcome(self, result: RequestResult, key: str) -> SubmissionOutcome:
        if result.ok:
            return SubmissionOutcome(state=SUCCEEDED, ok=True, data=result.data, idempotency_key=key)
        kind = result.kind
        if kind == UNAUTHORIZED:
            return SubmissionOutcome(state=FAILED, error=result.error, redirect_to_login=True, idempotency_key=key)
        if kind in (CONFLICT, SERVER_ERROR, VALIDATION_FAILED):
            logger.info("submit_failed kind=%s", kind)
            return SubmissionOutcome(
                state=FAILED,
                error=result.error,
                message=result.message,
                issues=list(result.error.detail) if kind == VALIDATION_FAILED and isinstance(result.error.detail, list) else [],
                idempotency_key=key,
            )
        # Cancelled: nothing to show, the form is simply idle again.
        return SubmissionOutcome(state=FAILED, error=result.error, idempotency_key=key)
