import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

import httpx
import structlog
from langsmith import traceable

from lms_assistant.agents.clarification import (
    QUESTION_MAP,
    TARGET_FIELDS,
    carry_over,
    describe_action,
    describe_missing,
    input_type,
    missing_fields,
    normalize_entities,
)
from lms_assistant.agents.guardrail import PermissionGate
from lms_assistant.agents.resolver import EntityResolver
from lms_assistant.agents.tools import LmsClient, LmsRecord
from lms_assistant.audit import record_audit_event
from lms_assistant.errors import EntityResolutionError, UpstreamError
from lms_assistant.memory.session_store import SessionStore
from lms_assistant.observability import record_intent, record_lms_call
from lms_assistant.schemas.chat import (
    ChatAction,
    ChatContext,
    ChatMeta,
    ChatResult,
    Intent,
    IntentClassification,
    PendingConfirmation,
    PreviousRequest,
    RequiredInput,
)
from lms_assistant.state import ChatState
from lms_assistant.utils import utcnow

logger = structlog.get_logger("dispatcher")


class DispatchState(str, Enum):
    AWAITING_ENTITIES = "awaiting_entities"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_DISAMBIGUATION = "awaiting_disambiguation"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


CONFIRM_ACTIONS = (
    ChatAction(id="confirm", label="Yes, Proceed", kind="primary", action="confirm_action"),
    ChatAction(id="cancel", label="Cancel", kind="secondary", action="cancel_action"),
)

FAILURE_MESSAGES = {
    Intent.GET_USER_ENROLLMENTS: "I couldn't retrieve that user's enrollments right now. Please try again later.",
    Intent.GET_COURSE_ENROLLMENTS: "I couldn't retrieve the enrollments for that course right now. Please try again later.",
    Intent.GET_ENROLLMENT_STATS: "I couldn't load enrollment statistics right now. Please try again later.",
    Intent.ENROLL_USERS: "The enrollment could not be completed. No confirmation was received from the learning platform.",
    Intent.ENROLL_GROUPS: "The group enrollment could not be completed. Please try again later.",
    Intent.UNENROLL_USERS: "The unenrollment could not be completed. Please try again later.",
    Intent.UPDATE_ENROLLMENTS: "The enrollment update could not be completed. Please try again later.",
    Intent.SEARCH_USERS: "User search is unavailable right now. Please try again later.",
    Intent.SEARCH_COURSES: "Course search is unavailable right now. Please try again later.",
    Intent.SEARCH_LEARNING_PLANS: "Learning plan search is unavailable right now. Please try again later.",
    Intent.SEARCH_SESSIONS: "Session search is unavailable right now. Please try again later.",
    Intent.SEARCH_GROUPS: "Group search is unavailable right now. Please try again later.",
}

HELP_TEXT = (
    "I can help with enrollments in the learning platform:\n"
    "- Check what a user is enrolled in, or who is enrolled in a course\n"
    "- Show enrollment and completion statistics\n"
    "- Enroll, unenroll or update users and groups (I'll ask you to confirm first)\n"
    "- Search users, courses, learning plans, sessions and groups\n"
    "Examples: \"Is john@company.com enrolled in Python?\", \"Enroll sarah@test.com in Excel course\""
)
NOT_UNDERSTOOD_TEXT = (
    "I'm not sure what you'd like me to do. Try rephrasing, for example "
    "\"Who is enrolled in Leadership Training?\" or ask for help."
)

SEARCH_LABELS = {
    Intent.SEARCH_USERS: "users",
    Intent.SEARCH_COURSES: "courses",
    Intent.SEARCH_LEARNING_PLANS: "learning plans",
    Intent.SEARCH_SESSIONS: "sessions",
    Intent.SEARCH_GROUPS: "groups",
}
ENTITY_KIND_LABELS = {
    "user": "user",
    "course": "course",
    "learning_plan": "learning plan",
    "session": "session",
    "group": "group",
}
FIELD_KINDS = {"users": "user", "courses": "course", "learning_plans": "learning_plan", "sessions": "session", "groups": "group"}


@dataclass
class _Trace:
    functions_called: list[str] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)


def _meta(trace: _Trace, state: DispatchState) -> ChatMeta:
    return ChatMeta(
        functions_called=tuple(trace.functions_called),
        state=state.value,
        diagnostics=dict(trace.diagnostics),
    )


def _add_event(state: ChatState, event_type: str, data: dict | None = None) -> None:
    state.setdefault("events", []).append({"type": event_type, "data": data or {}})


def format_success(intent: Intent, data: Any) -> str:
    if intent == Intent.GET_USER_ENROLLMENTS:
        return (
            f"**User Enrollments**: Found {data.get('total_enrollments', 0)} total enrollments\n\n"
            f"- Courses: {len(data.get('courses', []))}\n"
            f"- Learning Plans: {len(data.get('learning_plans', []))}\n"
            f"- Sessions: {len(data.get('sessions', []))}"
        )
    if intent == Intent.GET_COURSE_ENROLLMENTS:
        rate = (data.get("completion_stats") or {}).get("completion_rate", 0)
        return f"**Course Enrollments**: {data.get('total_enrolled', 0)} users enrolled\n\nCompletion rate: {rate}%"
    if intent == Intent.GET_ENROLLMENT_STATS:
        return (
            f"**Enrollment Statistics**: {data.get('total_enrolled', 0)} enrolled, "
            f"{data.get('completed', 0)} completed, {data.get('in_progress', 0)} in progress, "
            f"{data.get('not_started', 0)} not started\n\nCompletion rate: {data.get('completion_rate', 0)}%"
        )
    if intent in (Intent.ENROLL_USERS, Intent.ENROLL_GROUPS, Intent.UNENROLL_USERS, Intent.UPDATE_ENROLLMENTS):
        title = {
            Intent.ENROLL_USERS: "Enrollment Complete",
            Intent.ENROLL_GROUPS: "Group Enrollment Complete",
            Intent.UNENROLL_USERS: "Unenrollment Complete",
            Intent.UPDATE_ENROLLMENTS: "Update Complete",
        }[intent]
        return (
            f"**{title}**: {len(data.get('successful', []))} successful, "
            f"{len(data.get('failed', []))} failed"
        )
    if intent in SEARCH_LABELS:
        label = SEARCH_LABELS[intent]
        if not data:
            return f"No {label} matched your search."
        lines = [f"Found {len(data)} {label}:"]
        for record in data[:10]:
            suffix = f" ({record['email']})" if record.get("email") else ""
            lines.append(f"- {record['name'] or record['id']}{suffix}")
        return "\n".join(lines)
    return "Done."


def _resolution_prompt(error: EntityResolutionError) -> str:
    label = ENTITY_KIND_LABELS.get(error.entity_kind, error.entity_kind)
    if error.suggestion:
        c = error.candidates[0]
        return (
            f"I couldn't find a {label} named exactly \"{error.reference}\". "
            f"Did you mean {c['name'] or c['id']} (id {c['id']})?\n"
            "Nothing was changed. Please repeat the request with the exact name or ID."
        )
    if error.candidates:
        options = "\n".join(
            f"- {c['name'] or c['id']}" + (f" ({c['email']})" if c.get("email") else f" (id {c['id']})")
            for c in error.candidates
        )
        return f"I found more than one {label} matching \"{error.reference}\". Which one did you mean?\n{options}"
    return f"I couldn't find a {label} matching \"{error.reference}\". Please check the name or use an email or ID."


class ActionDispatcher:
    """Drives intent + entities to LMS operations.

    Non-destructive intents run immediately once their entities are complete.
    Destructive ones are parked as a PendingConfirmation and run only when
    `resolve_confirmation` receives an affirmative reply within the TTL.
    """

    def __init__(
        self,
        lms: LmsClient,
        resolver: EntityResolver,
        session_store: SessionStore,
        destructive_intents: frozenset[Intent],
        confirmation_ttl_seconds: int = 300,
        lms_timeout_seconds: float = 10.0,
        gate: PermissionGate | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.lms = lms
        self.resolver = resolver
        self.session_store = session_store
        self.destructive_intents = destructive_intents
        self.confirmation_ttl = timedelta(seconds=confirmation_ttl_seconds)
        self.lms_timeout_seconds = lms_timeout_seconds
        self.gate = gate
        self.clock = clock

    async def _call(self, trace: _Trace, method: str, **kwargs: Any) -> Any:
        trace.functions_called.append(method)
        try:
            result = await asyncio.wait_for(getattr(self.lms, method)(**kwargs), timeout=self.lms_timeout_seconds)
        except asyncio.TimeoutError as exc:
            record_lms_call(method, "timeout")
            raise UpstreamError(f"{method} timed out", timeout=True) from exc
        except UpstreamError:
            record_lms_call(method, "error")
            raise
        except httpx.HTTPError as exc:
            record_lms_call(method, "error")
            raise UpstreamError(f"{method} failed: {exc}") from exc
        record_lms_call(method, "ok")
        return result

    def _search(self, trace: _Trace):
        async def search(method: str, query: str, limit: int) -> list[LmsRecord]:
            return await self._call(trace, method, query=query, limit=limit)

        return search

    async def _resolve_targets(
        self, trace: _Trace, entities: dict[str, Any], user_id: str | None, exact_only: bool = False
    ) -> dict[str, list[str]]:
        search = self._search(trace)
        resolved = {}
        for name in TARGET_FIELDS:
            if entities.get(name):
                resolved[name] = await self.resolver.resolve_all(
                    FIELD_KINDS[name], entities[name], search, user_id, exact_only
                )
        return resolved

    async def _run(self, intent: Intent, entities: dict[str, Any], context: ChatContext, trace: _Trace) -> Any:
        search = self._search(trace)
        resolve_all = self.resolver.resolve_all
        user_id = context.user_id

        if intent == Intent.GET_USER_ENROLLMENTS:
            reference = entities.get("user_identifier") or entities["users"][0]
            resolved_user = await self.resolver.resolve("user", reference, search, user_id)
            return await self._call(trace, "get_user_enrollments", user_id=resolved_user)

        if intent == Intent.GET_COURSE_ENROLLMENTS:
            reference = entities.get("course_identifier") or entities["courses"][0]
            course_id = await self.resolver.resolve("course", reference, search, user_id)
            return await self._call(trace, "get_course_enrollments", course_id=course_id)

        if intent == Intent.GET_ENROLLMENT_STATS:
            filters: dict[str, Any] = {}
            targets = await self._resolve_targets(trace, entities, user_id)
            for name, ids in targets.items():
                filters[f"{FIELD_KINDS[name]}_ids"] = ids
            if entities.get("users"):
                filters["user_ids"] = await resolve_all("user", entities["users"], search, user_id)
            filters["date_from"] = entities.get("date_from")
            filters["date_to"] = entities.get("date_to")
            return await self._call(trace, "get_enrollment_stats", **filters)

        if intent in (Intent.ENROLL_USERS, Intent.ENROLL_GROUPS, Intent.UNENROLL_USERS, Intent.UPDATE_ENROLLMENTS):
            if intent == Intent.ENROLL_GROUPS:
                members = await resolve_all("group", entities["groups"], search, user_id, exact_only=True)
            else:
                members = await resolve_all("user", entities["users"], search, user_id, exact_only=True)
            targets = await self._resolve_targets(trace, entities, user_id, exact_only=True)

            if intent == Intent.ENROLL_USERS:
                return await self._call(
                    trace,
                    "enroll_users",
                    users=members,
                    priority=entities.get("priority", "medium"),
                    due_date=entities.get("due_date"),
                    **targets,
                )
            if intent == Intent.ENROLL_GROUPS:
                return await self._call(
                    trace,
                    "enroll_groups",
                    groups=members,
                    priority=entities.get("priority", "medium"),
                    due_date=entities.get("due_date"),
                    **targets,
                )
            if intent == Intent.UNENROLL_USERS:
                return await self._call(trace, "unenroll_users", users=members, reason=entities.get("reason"), **targets)

            updates = []
            target_keys = {"courses": "course_id", "learning_plans": "learning_plan_id", "sessions": "session_id"}
            for member in members:
                for name, ids in targets.items():
                    for target_id in ids:
                        updates.append(
                            {
                                "user_id": member,
                                target_keys[name]: target_id,
                                "priority": entities.get("priority"),
                                "due_date": entities.get("due_date"),
                                "status": entities.get("status"),
                            }
                        )
            return await self._call(trace, "update_enrollments", updates=updates)

        if intent in SEARCH_LABELS:
            records = await self._call(trace, intent.value, query=entities["search_query"], limit=25)
            return [record.model_dump() for record in records]

        raise ValueError(f"no LMS operation for intent {intent.value}")

    async def _execute(self, intent: Intent, entities: dict[str, Any], context: ChatContext, trace: _Trace) -> ChatResult:
        try:
            data = await self._run(intent, entities, context, trace)
        except EntityResolutionError as exc:
            state = DispatchState.AWAITING_DISAMBIGUATION if exc.ambiguous or exc.suggestion else DispatchState.FAILED
            record_intent(intent.value, state.value)
            field_name = next((name for name, kind in FIELD_KINDS.items() if kind == exc.entity_kind), exc.entity_kind)
            return ChatResult(
                intent=intent.value,
                success=False,
                response=_resolution_prompt(exc),
                data={"candidates": exc.candidates} if exc.candidates else None,
                requires_input=RequiredInput(
                    field=field_name,
                    message=f"Please specify the {ENTITY_KIND_LABELS.get(exc.entity_kind, exc.entity_kind)}",
                    type=input_type(field_name),
                ),
                meta=_meta(trace, state),
            )
        except UpstreamError as exc:
            trace.diagnostics.update({"cause": str(exc), "timeout": exc.timeout, "upstream_status": exc.upstream_status})
            logger.warning(
                "lms_operation_failed",
                intent=intent.value,
                functions_called=trace.functions_called,
                timeout=exc.timeout,
                cause=str(exc),
            )
            record_intent(intent.value, DispatchState.FAILED.value)
            return ChatResult(
                intent=intent.value,
                success=False,
                response=FAILURE_MESSAGES[intent],
                meta=_meta(trace, DispatchState.FAILED),
            )

        record_intent(intent.value, DispatchState.COMPLETED.value)
        return ChatResult(
            intent=intent.value,
            success=True,
            response=format_success(intent, data),
            data=data,
            meta=_meta(trace, DispatchState.COMPLETED),
        )

    def _missing_result(self, intent: Intent, missing: list[str], summary: str) -> ChatResult:
        described = describe_missing(missing)
        bullets = "\n".join(f"- {item}" for item in described)
        action = summary or intent.value.replace("_", " ")
        record_intent(intent.value, DispatchState.AWAITING_ENTITIES.value)
        return ChatResult(
            intent=intent.value,
            success=False,
            response=(
                f"**Missing Information**: To {action}, I need the following information:\n\n{bullets}\n\n"
                "Please provide this information and I'll help you complete the request."
            ),
            requires_input=RequiredInput(
                field=missing[0],
                message=f"Please provide: {QUESTION_MAP.get(missing[0], missing[0])}",
                type=input_type(missing[0]),
            ),
            meta=ChatMeta(state=DispatchState.AWAITING_ENTITIES.value),
        )

    async def _request_confirmation(self, intent: Intent, entities: dict[str, Any], context: ChatContext) -> ChatResult:
        now = self.clock()
        summary = describe_action(intent, entities)
        pending = PendingConfirmation(
            action_id=uuid.uuid4().hex,
            intent=intent,
            entities=entities,
            summary=summary,
            requested_at=now,
            expires_at=now + self.confirmation_ttl,
        )
        await self.session_store.set_pending(context.session_id, pending)
        record_intent(intent.value, DispatchState.AWAITING_CONFIRMATION.value)
        logger.info("confirmation_requested", intent=intent.value, action_id=pending.action_id)
        return ChatResult(
            intent=intent.value,
            success=False,
            response=(
                f"**Confirmation Required**: {summary}\n\n"
                "Please confirm if you want to proceed with this action."
            ),
            data={"action_id": pending.action_id, "expires_at": pending.expires_at.isoformat()},
            actions=CONFIRM_ACTIONS,
            meta=ChatMeta(state=DispatchState.AWAITING_CONFIRMATION.value),
        )

    @traceable(name="dispatch", run_type="chain")
    async def dispatch(self, classification: IntentClassification, context: ChatContext, message: str = "") -> ChatResult:
        intent = classification.intent
        if intent == Intent.HELP:
            record_intent(intent.value, DispatchState.COMPLETED.value)
            return ChatResult(intent=intent.value, success=True, response=HELP_TEXT, meta=ChatMeta(state=DispatchState.COMPLETED.value))
        if intent == Intent.ERROR:
            record_intent(intent.value, DispatchState.FAILED.value)
            return ChatResult(intent=intent.value, success=False, response=NOT_UNDERSTOOD_TEXT, meta=ChatMeta(state=DispatchState.FAILED.value))

        entities = carry_over(intent, normalize_entities(classification.entities), message, context.previous_requests)
        await self.session_store.append_request(context.session_id, PreviousRequest(intent=intent, entities=entities))

        missing = missing_fields(intent, entities, classification.missing_fields)
        if missing:
            return self._missing_result(intent, missing, classification.summary)

        if intent in self.destructive_intents:
            return await self._request_confirmation(intent, entities, context)

        return await self._execute(intent, entities, context, _Trace())

    @traceable(name="resolve_confirmation", run_type="chain")
    async def resolve_confirmation(self, context: ChatContext, affirmed: bool) -> ChatResult:
        pending = await self.session_store.take_pending(context.session_id)
        actor = context.user_id or context.session_id
        if pending is None:
            return ChatResult(
                intent=Intent.ERROR.value,
                success=False,
                response="There is no pending action to confirm.",
                meta=ChatMeta(state=DispatchState.FAILED.value),
            )

        intent = pending.intent
        if not affirmed:
            record_audit_event(actor, "cancelled", intent.value, "cancelled", {"action_id": pending.action_id})
            record_intent(intent.value, "cancelled")
            return ChatResult(
                intent=intent.value,
                success=False,
                response=f"Cancelled: {pending.summary}. No changes were made.",
                meta=ChatMeta(state=DispatchState.FAILED.value),
            )

        if pending.is_expired(self.clock()):
            record_audit_event(actor, "cancelled", intent.value, "expired", {"action_id": pending.action_id})
            record_intent(intent.value, "expired")
            return ChatResult(
                intent=intent.value,
                success=False,
                response="That confirmation has expired, so nothing was changed. Please send the request again.",
                meta=ChatMeta(state=DispatchState.FAILED.value),
            )

        if self.gate is not None:
            self.gate.enforce(context.role, intent)

        logger.info("confirmation_accepted", intent=intent.value, action_id=pending.action_id)
        result = await self._execute(intent, pending.entities, context, _Trace())
        record_audit_event(
            actor,
            "executed",
            intent.value,
            result.meta.state or "",
            {"action_id": pending.action_id, "functions_called": list(result.meta.functions_called)},
        )
        return result


def make_dispatch_node(dispatcher: ActionDispatcher):
    @traceable(name="dispatch_node", run_type="chain")
    async def dispatch_node(state: ChatState) -> ChatState:
        _add_event(state, "agent_started", {"agent": "DispatchAgent"})
        state["result"] = await dispatcher.dispatch(state["classification"], state["context"], state.get("message", ""))
        _add_event(state, "dispatch_finished", {"state": state["result"].meta.state})
        _add_event(state, "agent_finished", {"agent": "DispatchAgent"})
        return state

    return dispatch_node
