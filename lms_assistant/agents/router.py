import asyncio
import re
from typing import Any, Protocol

import structlog
from langsmith import traceable

from lms_assistant.agents.clarification import QUESTION_MAP, normalize_entities
from lms_assistant.errors import UpstreamError
from lms_assistant.llm_client import call_llm_json
from lms_assistant.schemas.chat import ChatContext, Intent, IntentClassification, as_intent
from lms_assistant.state import ChatState

logger = structlog.get_logger("router_agent")

LLM_SYSTEM_PROMPT = (
    "You classify requests for a learning management system assistant. "
    "Return only a single JSON object with keys intent, entities, confidence, "
    "missing_required_fields and natural_language_summary. "
    "Do not include reasoning, code fences, or any other text. "
    "intent must be one of: " + ", ".join(intent.value for intent in Intent) + ". "
    "entities may contain: users (list), courses (list), learning_plans (list), sessions (list), "
    "groups (list), user_identifier, course_identifier, search_query, priority (high|medium|low), "
    "due_date (YYYY-MM-DD), status, date_from, date_to, reason. "
    "Use 'me' for the requester. confidence is a number between 0 and 1. "
    "If unsure, use help with a low confidence."
)

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PRIORITY_PATTERN = re.compile(
    r"\b(?:(high|medium|low)\s+priority|priority\s+(?:of\s+)?(high|medium|low)|(urgent))\b",
    re.IGNORECASE,
)
DUE_PATTERN = re.compile(
    r"\b(?:due|by)\s+(\d{4}-\d{2}-\d{2}|[A-Za-z]+\s+\d{1,2}(?:,?\s+\d{4})?)",
    re.IGNORECASE,
)
TARGET_TAIL = r"(?:\s+(?:with|due|by|as|at)\b.*)?$"
ENROLL_TARGET = re.compile(r"\b(?:in|into|to|for)\s+(?:the\s+)?(.+?)" + TARGET_TAIL, re.IGNORECASE)
REMOVE_TARGET = re.compile(r"\bfrom\s+(?:the\s+)?(.+?)" + TARGET_TAIL, re.IGNORECASE)
COURSE_ENROLLED = re.compile(r"\bwho(?:'s| is| are)\s+enrolled\s+in\s+(?:the\s+)?(.+?)\??$", re.IGNORECASE)
SEARCH_QUERY = re.compile(r"\b(?:for|about|named|called|matching|on)\s+(.+?)\??$", re.IGNORECASE)
SELF_PATTERN = re.compile(r"\b(me|myself)\b", re.IGNORECASE)

SEARCH_KINDS = (
    ("learning plan", Intent.SEARCH_LEARNING_PLANS),
    ("session", Intent.SEARCH_SESSIONS),
    ("group", Intent.SEARCH_GROUPS),
    ("user", Intent.SEARCH_USERS),
    ("course", Intent.SEARCH_COURSES),
)


class IntentClassifier(Protocol):
    async def classify(self, message: str, context: ChatContext) -> IntentClassification: ...


def _target_field(text: str) -> str:
    lower = text.lower()
    if "learning plan" in lower:
        return "learning_plans"
    if "session" in lower:
        return "sessions"
    return "courses"


def _common_entities(message: str) -> dict[str, Any]:
    entities: dict[str, Any] = {}
    priority = PRIORITY_PATTERN.search(message)
    if priority:
        entities["priority"] = next(group for group in priority.groups() if group)
    due = DUE_PATTERN.search(message)
    if due:
        entities["due_date"] = due.group(1)
    return entities


def _users(message: str) -> list[str]:
    users = EMAIL_PATTERN.findall(message)
    if SELF_PATTERN.search(message):
        users.append("me")
    return users


def heuristic_classify(message: str) -> IntentClassification:
    """Keyword fallback when the model is unavailable or answered nonsense."""
    lower = message.lower()
    entities = _common_entities(message)
    users = _users(message)
    intent = Intent.HELP
    confidence = 0.3

    if re.search(r"\b(unenroll|remove|drop)\b", lower):
        intent, confidence = Intent.UNENROLL_USERS, 0.7
        if users:
            entities["users"] = users
        target = REMOVE_TARGET.search(message)
        if target:
            entities[_target_field(target.group(1))] = [target.group(1).strip()]
    elif re.search(r"\benroll\b", lower) and "group" in lower:
        intent, confidence = Intent.ENROLL_GROUPS, 0.6
        target = ENROLL_TARGET.search(message)
        if target:
            entities[_target_field(target.group(1))] = [target.group(1).strip()]
    elif re.search(r"\benroll\b", lower) and "enrolled" not in lower:
        intent, confidence = Intent.ENROLL_USERS, 0.7
        if users:
            entities["users"] = users
        target = ENROLL_TARGET.search(message)
        if target:
            entities[_target_field(target.group(1))] = [target.group(1).strip()]
    elif COURSE_ENROLLED.search(message):
        intent, confidence = Intent.GET_COURSE_ENROLLMENTS, 0.6
        entities["course_identifier"] = COURSE_ENROLLED.search(message).group(1).strip()
    elif re.search(r"\b(stats|statistics|report|completion rate)\b", lower):
        intent, confidence = Intent.GET_ENROLLMENT_STATS, 0.6
        if users:
            entities["users"] = users
        target = ENROLL_TARGET.search(message)
        if target:
            entities[_target_field(target.group(1))] = [target.group(1).strip()]
    elif re.search(r"\b(update|change|extend)\b", lower) and "enrol" in lower:
        intent, confidence = Intent.UPDATE_ENROLLMENTS, 0.6
        if users:
            entities["users"] = users
    elif users and re.search(r"\b(enrolled|enrollments?|courses)\b", lower):
        intent, confidence = Intent.GET_USER_ENROLLMENTS, 0.8
        entities["user_identifier"] = users[0]
    elif re.search(r"\b(search|find|look for|list|show)\b", lower):
        for keyword, search_intent in SEARCH_KINDS:
            if keyword in lower:
                intent, confidence = search_intent, 0.6
                query = SEARCH_QUERY.search(message)
                if query:
                    entities["search_query"] = query.group(1).strip()
                break
    if intent == Intent.HELP and re.search(r"\b(help|what can you do|how do i)\b", lower):
        confidence = 0.9

    return IntentClassification(
        intent=intent,
        entities=normalize_entities(entities),
        confidence=confidence,
        summary=f"heuristic {intent.value}",
    )


def parse_classifier_payload(payload: Any) -> IntentClassification | None:
    if not isinstance(payload, dict) or not isinstance(payload.get("intent"), str):
        return None
    try:
        confidence = float(payload.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    reported = payload.get("missing_required_fields") or payload.get("missing_fields") or []
    entities = payload.get("entities")
    return IntentClassification(
        intent=as_intent(payload["intent"]),
        entities=normalize_entities(entities if isinstance(entities, dict) else {}),
        confidence=min(1.0, max(0.0, confidence)),
        missing_fields=frozenset(
            field for field in reported if isinstance(field, str) and field in QUESTION_MAP
        ),
        summary=str(payload.get("natural_language_summary") or ""),
    )


def apply_threshold(classification: IntentClassification, threshold: float) -> IntentClassification:
    if classification.intent != Intent.ERROR and classification.confidence < threshold:
        return classification.model_copy(update={"intent": Intent.ERROR})
    return classification


class LlmIntentClassifier:
    def __init__(self, confidence_threshold: float = 0.5, timeout_seconds: float = 15.0) -> None:
        self.confidence_threshold = confidence_threshold
        self.timeout_seconds = timeout_seconds

    def _user_message(self, message: str, context: ChatContext) -> str:
        lines = [f"User role: {context.role.value}"]
        if context.previous_requests:
            last = context.previous_requests[-1]
            lines.append(f"Previous request: {last.intent.value} {last.entities}")
        lines.append(f"Message: {message}")
        return "\n".join(lines)

    @traceable(name="classify_intent", run_type="chain")
    async def classify(self, message: str, context: ChatContext) -> IntentClassification:
        try:
            payload = await asyncio.wait_for(
                call_llm_json(LLM_SYSTEM_PROMPT, self._user_message(message, context), max_tokens=400),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamError("classifier timed out", service="classifier", timeout=True) from exc

        classification = parse_classifier_payload(payload)
        if classification is None:
            logger.warning("classifier_output_unusable")
            classification = heuristic_classify(message)
        else:
            logger.info(
                "intent_classified",
                intent=classification.intent.value,
                confidence=classification.confidence,
            )
        return apply_threshold(classification, self.confidence_threshold)


def _add_event(state: ChatState, event_type: str, data: dict | None = None) -> None:
    state.setdefault("events", []).append({"type": event_type, "data": data or {}})


def make_router_node(classifier: IntentClassifier, confidence_threshold: float):
    @traceable(name="router_node", run_type="chain")
    async def router_node(state: ChatState) -> ChatState:
        _add_event(state, "agent_started", {"agent": "RouterAgent"})
        classification = await classifier.classify(state["message"], state["context"])
        state["classification"] = apply_threshold(classification, confidence_threshold)
        _add_event(
            state,
            "router_classified",
            {"intent": state["classification"].intent.value, "confidence": classification.confidence},
        )
        _add_event(state, "agent_finished", {"agent": "RouterAgent"})
        return state

    return router_node
