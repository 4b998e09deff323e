"""
Structural validation of the inbound chat body and security screening of
the message text.

`validate` never raises: every problem comes back as an itemised
"field: reason" string. `validate_security` reports every threat kind that
matched; only the sanitized copy of a safe message is handed downstream.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from pydantic import ValidationError

from lms_assistant.schemas.chat import ChatRequest
from lms_assistant.utils import truncate

logger = structlog.get_logger("validation")

PREVIEW_LENGTH = 80


class ThreatKind(str, Enum):
    XSS = "xss"
    SQL_INJECTION = "sql_injection"
    PATH_TRAVERSAL = "path_traversal"
    CHAR_FLOODING = "char_flooding"
    COMMAND_INJECTION = "command_injection"


THREAT_PATTERNS: dict[ThreatKind, tuple[re.Pattern[str], ...]] = {
    ThreatKind.XSS: (
        re.compile(r"<\s*script", re.IGNORECASE),
        re.compile(r"javascript\s*:", re.IGNORECASE),
        re.compile(r"<[^>]*\bon\w+\s*=", re.IGNORECASE),
        re.compile(r"<\s*(iframe|object|embed)", re.IGNORECASE),
        re.compile(r"data\s*:\s*text/html", re.IGNORECASE),
    ),
    ThreatKind.SQL_INJECTION: (
        re.compile(r"\bunion\s+(all\s+)?select\b", re.IGNORECASE),
        re.compile(r"\bselect\s+\*\s+from\b", re.IGNORECASE),
        re.compile(r";\s*(drop|delete|truncate|alter|insert|update)\s", re.IGNORECASE),
        re.compile(r"\b(drop|truncate)\s+table\b", re.IGNORECASE),
        re.compile(r"'\s*(or|and)\s+'?\d+'?\s*=\s*'?\d+", re.IGNORECASE),
        re.compile(r"'\s*;?\s*--"),
        re.compile(r"/\*.*?\*/", re.DOTALL),
        re.compile(r"\bexec(ute)?\s+(xp_|sp_)\w+", re.IGNORECASE),
    ),
    ThreatKind.PATH_TRAVERSAL: (
        re.compile(r"\.\./"),
        re.compile(r"\.\.\\"),
        re.compile(r"%2e%2e(%2f|%5c|/|\\)", re.IGNORECASE),
        re.compile(r"/etc/(passwd|shadow)", re.IGNORECASE),
    ),
    ThreatKind.COMMAND_INJECTION: (
        re.compile(r"\$\("),
        re.compile(r"`[^`]*`"),
        re.compile(r"(;|&&|\|\|)\s*(rm|wget|curl|nc|telnet|bash|sh)\b", re.IGNORECASE),
    ),
}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TAGS = re.compile(r"<[^<>]*>")
_ANGLES = re.compile(r"[<>]")
_WHITESPACE = re.compile(r"\s+")


def sanitize(text: str, max_length: int = 2000) -> str:
    """Strip control characters and markup, collapse whitespace, truncate.

    Applying it twice yields the same string as applying it once.
    """
    cleaned = _CONTROL_CHARS.sub("", text)
    cleaned = _TAGS.sub("", cleaned)
    cleaned = _ANGLES.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:max_length].strip()


@dataclass(frozen=True)
class ValidationResult:
    safe: bool
    sanitized_message: str
    threats_detected: frozenset[ThreatKind] = frozenset()


@dataclass(frozen=True)
class StructuralValidation:
    success: bool
    data: ChatRequest | None = None
    errors: list[str] = field(default_factory=list)


def _depth(value: Any, level: int = 1) -> int:
    if isinstance(value, Mapping):
        return max([_depth(item, level + 1) for item in value.values()] or [level])
    if isinstance(value, list):
        return max([_depth(item, level + 1) for item in value] or [level])
    return level - 1


def _format_pydantic_errors(exc: ValidationError) -> list[str]:
    errors = []
    for issue in exc.errors():
        location = ".".join(str(part) for part in issue["loc"]) or "body"
        errors.append(f"{location}: {issue['msg']}")
    return errors


class InputValidator:
    def __init__(
        self,
        max_message_length: int = 2000,
        max_body_bytes: int = 16384,
        max_depth: int = 10,
        flood_repeat_threshold: int = 20,
    ) -> None:
        self.max_message_length = max_message_length
        self.max_body_bytes = max_body_bytes
        self.max_depth = max_depth
        self._flooding = re.compile(r"(\S)\1{%d,}" % flood_repeat_threshold)

    def _decode(self, raw_body: bytes | str | Mapping) -> tuple[Any, list[str]]:
        if isinstance(raw_body, Mapping):
            size = len(json.dumps(raw_body, default=str).encode("utf-8"))
            if size > self.max_body_bytes:
                return None, [f"body: exceeds {self.max_body_bytes} bytes"]
            return dict(raw_body), []

        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        if not isinstance(raw_body, (bytes, bytearray)):
            return None, ["body: unsupported payload type"]
        if len(raw_body) > self.max_body_bytes:
            return None, [f"body: exceeds {self.max_body_bytes} bytes"]
        if not raw_body.strip():
            return None, ["body: is required"]
        try:
            return json.loads(raw_body), []
        except UnicodeDecodeError:
            return None, ["body: must be UTF-8 encoded"]
        except json.JSONDecodeError:
            return None, ["body: must be valid JSON"]
        except RecursionError:
            return None, [f"body: nesting exceeds {self.max_depth} levels"]

    def validate(self, raw_body: bytes | str | Mapping) -> StructuralValidation:
        payload, errors = self._decode(raw_body)
        if errors:
            return StructuralValidation(success=False, errors=errors)
        if not isinstance(payload, dict):
            return StructuralValidation(success=False, errors=["body: must be a JSON object"])
        if _depth(payload) > self.max_depth:
            return StructuralValidation(
                success=False, errors=[f"body: nesting exceeds {self.max_depth} levels"]
            )

        try:
            request = ChatRequest.model_validate(payload)
        except ValidationError as exc:
            return StructuralValidation(success=False, errors=_format_pydantic_errors(exc))

        if len(request.message) > self.max_message_length:
            return StructuralValidation(
                success=False,
                errors=[f"message: Message too long (max {self.max_message_length} characters)"],
            )
        return StructuralValidation(success=True, data=request)

    def detect_threats(self, message: str) -> frozenset[ThreatKind]:
        found = {
            kind
            for kind, patterns in THREAT_PATTERNS.items()
            if any(pattern.search(message) for pattern in patterns)
        }
        if self._flooding.search(message):
            found.add(ThreatKind.CHAR_FLOODING)
        return frozenset(found)

    def validate_security(self, message: str) -> ValidationResult:
        threats = self.detect_threats(message)
        preview = truncate(sanitize(message, PREVIEW_LENGTH), PREVIEW_LENGTH)
        if threats:
            logger.warning(
                "message_rejected",
                threats=sorted(kind.value for kind in threats),
                preview=preview,
            )
            return ValidationResult(safe=False, sanitized_message="", threats_detected=threats)
        return ValidationResult(safe=True, sanitized_message=sanitize(message, self.max_message_length))
