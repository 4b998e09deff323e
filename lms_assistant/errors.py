"""
Error taxonomy for the chat pipeline and the single place that turns a
failure into a caller-visible status code and body.

Components raise (or return) typed failures; `classify_error` is the only
function that decides what a caller sees. Raw upstream payloads, tokens and
exception text never leave this module; they go to server-side logs.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from lms_assistant.utils import utcnow

logger = structlog.get_logger("errors")


class ErrorKind(str, Enum):
    VALIDATION = "ValidationError"
    PERMISSION = "PermissionError"
    RATE_LIMIT = "RateLimitError"
    ENTITY_RESOLUTION = "EntityResolutionError"
    UPSTREAM = "UpstreamError"
    INTERNAL = "InternalError"


ERROR_CODES = {
    ErrorKind.VALIDATION: "E001",
    ErrorKind.PERMISSION: "E003",
    ErrorKind.RATE_LIMIT: "E004",
    ErrorKind.ENTITY_RESOLUTION: "E005",
    ErrorKind.UPSTREAM: "E101",
    ErrorKind.INTERNAL: "E103",
}

SAFE_MESSAGES = {
    ErrorKind.VALIDATION: "The request contains invalid data. Please check your input.",
    ErrorKind.PERMISSION: "You don't have permission to perform this action.",
    ErrorKind.RATE_LIMIT: "Too many requests. Please slow down and try again later.",
    ErrorKind.ENTITY_RESOLUTION: "I couldn't identify everything you referred to.",
    ErrorKind.UPSTREAM: "The learning platform is currently unavailable. Please try again later.",
    ErrorKind.INTERNAL: "An internal error occurred. Please try again.",
}


class AssistantError(Exception):
    kind = ErrorKind.INTERNAL
    status_code = 500

    def __init__(self, message: str = "", *, public_message: str | None = None) -> None:
        super().__init__(message or SAFE_MESSAGES[self.kind])
        self.public_message = public_message or SAFE_MESSAGES[self.kind]

    @property
    def code(self) -> str:
        return ERROR_CODES[self.kind]


class InvalidRequestError(AssistantError):
    kind = ErrorKind.VALIDATION
    status_code = 400

    def __init__(
        self,
        message: str = "",
        *,
        errors: list[str] | None = None,
        threats: list[str] | None = None,
        public_message: str | None = None,
    ) -> None:
        super().__init__(message, public_message=public_message)
        self.errors = list(errors or [])
        self.threats = list(threats or [])


class PermissionDeniedError(AssistantError):
    kind = ErrorKind.PERMISSION
    status_code = 200

    def __init__(self, role: str, intent: str, allowed: list[str]) -> None:
        super().__init__(
            f"role {role} may not perform {intent}",
            public_message=f"Your role ({role}) doesn't have permission to perform: {intent}",
        )
        self.role = role
        self.intent = intent
        self.allowed = allowed


class RateLimitExceededError(AssistantError):
    kind = ErrorKind.RATE_LIMIT
    status_code = 429

    def __init__(self, retry_after_ms: int, headers: dict[str, str] | None = None) -> None:
        super().__init__(f"rate limit exceeded, retry in {retry_after_ms}ms")
        self.retry_after_ms = retry_after_ms
        self.headers = dict(headers or {})


class EntityResolutionError(AssistantError):
    kind = ErrorKind.ENTITY_RESOLUTION
    status_code = 200

    def __init__(
        self,
        entity_kind: str,
        reference: str,
        candidates: list[dict[str, Any]] | None = None,
        suggestion: bool = False,
    ) -> None:
        candidates = list(candidates or [])
        super().__init__(f"could not resolve {entity_kind} {reference!r}")
        self.entity_kind = entity_kind
        self.reference = reference
        self.candidates = candidates
        self.suggestion = suggestion

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1


class UpstreamError(AssistantError):
    kind = ErrorKind.UPSTREAM
    status_code = 502

    def __init__(self, message: str, *, service: str = "lms", timeout: bool = False, status: int | None = None) -> None:
        super().__init__(message)
        self.service = service
        self.timeout = timeout
        self.upstream_status = status
        if timeout:
            self.status_code = 504
        if service == "classifier":
            self.public_message = "The AI service is currently unavailable. Please try again later."


class InternalError(AssistantError):
    kind = ErrorKind.INTERNAL
    status_code = 500


@dataclass(frozen=True)
class RequestMeta:
    request_id: str | None = None
    path: str | None = None
    client_id: str | None = None
    role: str | None = None


@dataclass(frozen=True)
class ClassifiedError:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def _envelope(kind: ErrorKind, message: str, meta: RequestMeta, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": {"type": kind.value, "message": message, "code": ERROR_CODES[kind]},
        "meta": {
            "timestamp": utcnow().isoformat(),
            "request_id": meta.request_id,
            "path": meta.path,
        },
    }
    body["error"].update(extra)
    return body


def classify_error(error: BaseException, meta: RequestMeta | None = None) -> ClassifiedError:
    meta = meta or RequestMeta()

    if isinstance(error, InvalidRequestError):
        extra: dict[str, Any] = {}
        if error.errors:
            extra["details"] = error.errors
        if error.threats:
            extra["threats_detected"] = error.threats
        logger.info("request_rejected", kind=error.kind.value, errors=error.errors, threats=error.threats)
        return ClassifiedError(400, _envelope(error.kind, error.public_message, meta, **extra))

    if isinstance(error, RateLimitExceededError):
        retry_after = max(1, math.ceil(error.retry_after_ms / 1000))
        headers = {**error.headers, "Retry-After": str(retry_after)}
        logger.info("request_throttled", retry_after_ms=error.retry_after_ms)
        body = _envelope(
            error.kind,
            error.public_message,
            meta,
            retry_after=retry_after,
            retry_after_ms=error.retry_after_ms,
        )
        return ClassifiedError(429, body, headers)

    if isinstance(error, PermissionDeniedError):
        body = {
            "intent": "permission_denied",
            "success": False,
            "response": error.public_message,
            "allowed_actions": error.allowed,
            "actions": [],
            "meta": {"timestamp": utcnow().isoformat(), "functions_called": []},
        }
        return ClassifiedError(200, body)

    if isinstance(error, EntityResolutionError):
        body = {
            "intent": "error",
            "success": False,
            "response": error.public_message,
            "actions": [],
            "meta": {"timestamp": utcnow().isoformat(), "functions_called": []},
        }
        return ClassifiedError(200, body)

    if isinstance(error, UpstreamError):
        logger.warning(
            "upstream_failure",
            service=error.service,
            timeout=error.timeout,
            upstream_status=error.upstream_status,
            cause=str(error),
        )
        return ClassifiedError(error.status_code, _envelope(error.kind, error.public_message, meta))

    if isinstance(error, AssistantError):
        logger.error("assistant_error", kind=error.kind.value, cause=str(error))
        return ClassifiedError(error.status_code, _envelope(error.kind, error.public_message, meta))

    logger.exception("unhandled_error", error_type=type(error).__name__, request_id=meta.request_id)
    return ClassifiedError(500, _envelope(ErrorKind.INTERNAL, SAFE_MESSAGES[ErrorKind.INTERNAL], meta))
