import re
from typing import Any

import structlog
from dateutil import parser as date_parser

from lms_assistant.schemas.chat import Intent, PreviousRequest

logger = structlog.get_logger("clarification")

LIST_FIELDS = ("users", "courses", "learning_plans", "sessions", "groups")
SCALAR_FIELDS = (
    "user_identifier",
    "course_identifier",
    "search_query",
    "priority",
    "due_date",
    "status",
    "date_from",
    "date_to",
    "reason",
)
DATE_FIELDS = ("due_date", "date_from", "date_to")
TARGET_FIELDS = ("courses", "learning_plans", "sessions")

# A requirement is satisfied when any entity in its group is non-empty.
FIELD_GROUPS: dict[str, tuple[str, ...]] = {
    "user_identifier": ("user_identifier", "users"),
    "course_identifier": ("course_identifier", "courses"),
    "stats_scope": ("courses", "learning_plans", "sessions", "users"),
    "users": ("users",),
    "groups": ("groups",),
    "targets": TARGET_FIELDS,
    "search_query": ("search_query",),
}

REQUIRED_FIELDS: dict[Intent, tuple[str, ...]] = {
    Intent.GET_USER_ENROLLMENTS: ("user_identifier",),
    Intent.GET_COURSE_ENROLLMENTS: ("course_identifier",),
    Intent.GET_ENROLLMENT_STATS: ("stats_scope",),
    Intent.ENROLL_USERS: ("users", "targets"),
    Intent.ENROLL_GROUPS: ("groups", "targets"),
    Intent.UNENROLL_USERS: ("users", "targets"),
    Intent.UPDATE_ENROLLMENTS: ("users", "targets"),
    Intent.SEARCH_USERS: ("search_query",),
    Intent.SEARCH_COURSES: ("search_query",),
    Intent.SEARCH_LEARNING_PLANS: ("search_query",),
    Intent.SEARCH_SESSIONS: ("search_query",),
    Intent.SEARCH_GROUPS: ("search_query",),
}

QUESTION_MAP = {
    "user_identifier": "user identifier (email, name, or ID)",
    "course_identifier": "course identifier (course name or ID)",
    "stats_scope": "at least one of: course names, learning plan names, session names, or user identifiers",
    "users": "user identifiers (emails, names, or IDs)",
    "groups": "group names or IDs",
    "targets": "at least one of: courses, learning plans, or sessions",
    "search_query": "what to search for",
    "due_date": "due date (YYYY-MM-DD)",
    "date_from": "start date (YYYY-MM-DD)",
    "date_to": "end date (YYYY-MM-DD)",
    "priority": "priority (low, medium, or high)",
    "status": "enrollment status",
}

PRIORITY_ALIASES = {
    "urgent": "high",
    "critical": "high",
    "high": "high",
    "medium": "medium",
    "normal": "medium",
    "low": "low",
}

AFFIRMATIVE_REPLIES = frozenset(
    {
        "yes",
        "y",
        "yeah",
        "yep",
        "confirm",
        "confirmed",
        "proceed",
        "go ahead",
        "do it",
        "ok",
        "okay",
        "sure",
        "yes please",
        "yes proceed",
        "yes go ahead",
        "yes do it",
        "confirm_action",
    }
)
NEGATIVE_REPLIES = frozenset(
    {
        "no",
        "n",
        "nope",
        "cancel",
        "stop",
        "abort",
        "don't",
        "do not",
        "never mind",
        "nevermind",
        "no thanks",
        "no cancel",
        "cancel_action",
    }
)

# Words that point back at entities from an earlier turn.
REFERENCE_WORDS = {
    "users": ("them", "they", "him", "her", "those users", "these users", "same users", "that user", "this user"),
    "courses": ("it", "that course", "this course", "same course", "those courses"),
    "learning_plans": ("that plan", "this plan", "that learning plan", "same learning plan"),
    "sessions": ("that session", "this session", "same session"),
    "groups": ("that group", "this group", "those groups", "same group"),
}
_CARRY_SOURCES = {
    "users": ("users", "user_identifier"),
    "courses": ("courses", "course_identifier"),
    "learning_plans": ("learning_plans",),
    "sessions": ("sessions",),
    "groups": ("groups",),
}


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        candidates = re.split(r"[,;]", value)
    elif isinstance(value, (list, tuple, set)):
        candidates = [str(item) for item in value if item is not None]
    else:
        candidates = [str(value)]
    seen: set[str] = set()
    result = []
    for candidate in candidates:
        cleaned = candidate.strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result


def _normalize_date(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date_parser.parse(value, fuzzy=True).date().isoformat()
    except (ValueError, OverflowError):
        logger.info("date_unparseable", field_value=value[:40])
        return None


def normalize_entities(entities: dict[str, Any] | None) -> dict[str, Any]:
    """Coerce classifier output into the closed entity vocabulary."""
    normalized: dict[str, Any] = {}
    for key, value in (entities or {}).items():
        if key in LIST_FIELDS:
            items = _as_list(value)
            if items:
                normalized[key] = items
        elif key in DATE_FIELDS:
            parsed = _normalize_date(value)
            if parsed:
                normalized[key] = parsed
        elif key == "priority":
            priority = PRIORITY_ALIASES.get(str(value).strip().lower())
            if priority:
                normalized[key] = priority
        elif key in SCALAR_FIELDS:
            if isinstance(value, (list, tuple)):
                value = value[0] if value else None
            if value is not None and str(value).strip():
                text = str(value).strip()
                normalized[key] = text.lower() if key == "status" else text
    return normalized


def missing_fields(intent: Intent, entities: dict[str, Any], reported: frozenset[str] | set[str] = frozenset()) -> list[str]:
    """Required groups that are empty, plus classifier-reported fields that are still empty."""
    missing = [
        group
        for group in REQUIRED_FIELDS.get(intent, ())
        if all(_is_missing(entities.get(name)) for name in FIELD_GROUPS[group])
    ]
    for name in sorted(reported):
        if name in missing or name not in QUESTION_MAP:
            continue
        group = FIELD_GROUPS.get(name, (name,))
        if all(_is_missing(entities.get(field)) for field in group):
            missing.append(name)
    return missing


def input_type(field: str) -> str:
    if field in DATE_FIELDS:
        return "date"
    if field in ("users", "user_identifier"):
        return "email"
    return "text"


def describe_missing(fields: list[str]) -> list[str]:
    return [QUESTION_MAP.get(field, field) for field in fields]


def parse_confirmation_reply(message: str) -> bool | None:
    """True for an affirmative reply, False for a negative one, None otherwise."""
    text = re.sub(r"[^\w\s']", " ", message.lower())
    text = re.sub(r"\s+", " ", text).strip()
    if text in AFFIRMATIVE_REPLIES:
        return True
    if text in NEGATIVE_REPLIES:
        return False
    return None


def carry_over(
    intent: Intent,
    entities: dict[str, Any],
    message: str,
    previous_requests: list[PreviousRequest],
) -> dict[str, Any]:
    """Fill pronoun references ("them", "that course") from the most recent request that had them."""
    required = {field for group in REQUIRED_FIELDS.get(intent, ()) for field in FIELD_GROUPS[group]}
    lowered = message.lower()
    result = dict(entities)
    for field, words in REFERENCE_WORDS.items():
        current = result.get(field) or []
        explicit = [value for value in current if value.lower() not in words]
        referenced = len(explicit) != len(current)
        if not referenced and not current and field in required:
            referenced = any(re.search(rf"\b{re.escape(word)}\b", lowered) for word in words)
        if not referenced:
            continue
        carried = _previous_values(field, previous_requests)
        merged = _as_list(explicit + carried)
        if merged:
            result[field] = merged
        else:
            result.pop(field, None)
        if carried:
            logger.info("entities_carried_over", field=field, count=len(carried))
    return result


def _previous_values(field: str, previous_requests: list[PreviousRequest]) -> list[str]:
    for previous in reversed(previous_requests):
        for source in _CARRY_SOURCES[field]:
            values = _as_list(previous.entities.get(source))
            if values:
                return values
    return []


def describe_action(intent: Intent, entities: dict[str, Any]) -> str:
    """Human-readable one-liner used in confirmation prompts."""
    users = ", ".join(entities.get("users", []))
    groups = ", ".join(entities.get("groups", []))
    targets = ", ".join(
        value for field in TARGET_FIELDS for value in entities.get(field, [])
    )
    if intent == Intent.ENROLL_USERS:
        text = f"Enroll {users} in {targets}"
    elif intent == Intent.ENROLL_GROUPS:
        text = f"Enroll group(s) {groups} in {targets}"
    elif intent == Intent.UNENROLL_USERS:
        text = f"Unenroll {users} from {targets}"
    elif intent == Intent.UPDATE_ENROLLMENTS:
        text = f"Update enrollments of {users} in {targets}"
    else:
        return intent.value.replace("_", " ")
    extras = []
    if entities.get("priority"):
        extras.append(f"priority {entities['priority']}")
    if entities.get("due_date"):
        extras.append(f"due {entities['due_date']}")
    if entities.get("status"):
        extras.append(f"status {entities['status']}")
    return f"{text} ({', '.join(extras)})" if extras else text
