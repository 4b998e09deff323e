import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from lms_assistant.agents.dispatcher import FAILURE_MESSAGES, HELP_TEXT, ActionDispatcher
from lms_assistant.agents.guardrail import PermissionGate, RolePermissionTable
from lms_assistant.agents.resolver import EntityResolver
from lms_assistant.config import DEFAULT_DESTRUCTIVE_INTENTS, DEFAULT_ROLE_PERMISSIONS
from lms_assistant.errors import PermissionDeniedError
from lms_assistant.memory.session_store import InMemorySessionStore
from lms_assistant.schemas.chat import ChatContext, Intent, IntentClassification, Role


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _dispatcher(lms, store=None, clock=None, timeout=10.0):
    return ActionDispatcher(
        lms,
        EntityResolver(),
        store or InMemorySessionStore(ttl_seconds=3600),
        frozenset(Intent(intent) for intent in DEFAULT_DESTRUCTIVE_INTENTS),
        confirmation_ttl_seconds=300,
        lms_timeout_seconds=timeout,
        gate=PermissionGate(RolePermissionTable(DEFAULT_ROLE_PERMISSIONS)),
        clock=clock or _Clock(),
    )


def _context(role=Role.SUPERADMIN, user_id="7"):
    return ChatContext(role=role, user_id=user_id, session_id="s1")


UNENROLL = IntentClassification(
    intent=Intent.UNENROLL_USERS,
    entities={"users": ["mike@company.com"], "courses": ["JavaScript Training"]},
    confidence=0.95,
)


def test_help_needs_no_lms_call(lms):
    result = asyncio.run(_dispatcher(lms).dispatch(IntentClassification(intent=Intent.HELP), _context()))

    assert result.success is True
    assert result.response == HELP_TEXT
    assert lms.calls == []


def test_missing_entities_prompt_without_side_effects(lms):
    store = InMemorySessionStore(ttl_seconds=3600)
    dispatcher = _dispatcher(lms, store)
    classification = IntentClassification(intent=Intent.ENROLL_USERS, entities={"users": "sarah@x.com"})

    async def scenario():
        result = await dispatcher.dispatch(classification, _context(), "enroll sarah@x.com")
        return result, await store.peek_pending("s1")

    result, pending = asyncio.run(scenario())

    assert result.success is False
    assert result.meta.state == "awaiting_entities"
    assert result.requires_input.field == "targets"
    assert "Missing Information" in result.response
    assert pending is None
    assert lms.calls == []


def test_destructive_intent_waits_for_confirmation(lms):
    store = InMemorySessionStore(ttl_seconds=3600)
    dispatcher = _dispatcher(lms, store)

    async def scenario():
        result = await dispatcher.dispatch(UNENROLL, _context(), "Remove mike@company.com from JavaScript Training")
        return result, await store.peek_pending("s1")

    result, pending = asyncio.run(scenario())

    assert result.success is False
    assert result.meta.state == "awaiting_confirmation"
    assert [action.id for action in result.actions] == ["confirm", "cancel"]
    assert result.data["action_id"] == pending.action_id
    assert pending.intent is Intent.UNENROLL_USERS
    assert "Unenroll mike@company.com from JavaScript Training" in result.response
    assert lms.calls == []


def test_affirmative_reply_executes_once(lms):
    store = InMemorySessionStore(ttl_seconds=3600)
    dispatcher = _dispatcher(lms, store)

    async def scenario():
        await dispatcher.dispatch(UNENROLL, _context(), "")
        first = await dispatcher.resolve_confirmation(_context(), True)
        second = await dispatcher.resolve_confirmation(_context(), True)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.success is True
    assert first.meta.state == "completed"
    assert first.meta.functions_called == ("search_users", "search_courses", "unenroll_users")
    assert lms.called("unenroll_users") == [
        {"users": ["102"], "courses": ["502"], "learning_plans": None, "sessions": None}
    ]
    assert second.intent == "error"
    assert second.response == "There is no pending action to confirm."


def test_confirmation_outcomes_are_audited(lms, monkeypatch):
    from lms_assistant.agents import dispatcher as dispatcher_module

    events = []
    monkeypatch.setattr(dispatcher_module, "record_audit_event", lambda *args: events.append(args))
    dispatcher = _dispatcher(lms)

    async def scenario():
        await dispatcher.dispatch(UNENROLL, _context(), "")
        await dispatcher.resolve_confirmation(_context(), False)
        await dispatcher.dispatch(UNENROLL, _context(), "")
        await dispatcher.resolve_confirmation(_context(), True)

    asyncio.run(scenario())

    assert [(actor, action, intent, outcome) for actor, action, intent, outcome, _ in events] == [
        ("7", "cancelled", "unenroll_users", "cancelled"),
        ("7", "executed", "unenroll_users", "completed"),
    ]
    assert events[1][4]["functions_called"] == ["search_users", "search_courses", "unenroll_users"]


def test_concurrent_confirmations_execute_exactly_once(lms):
    store = InMemorySessionStore(ttl_seconds=3600)
    dispatcher = _dispatcher(lms, store)

    async def scenario():
        await dispatcher.dispatch(UNENROLL, _context(), "")
        return await asyncio.gather(
            dispatcher.resolve_confirmation(_context(), True),
            dispatcher.resolve_confirmation(_context(), True),
        )

    results = asyncio.run(scenario())

    assert sorted(result.success for result in results) == [False, True]
    assert len(lms.called("unenroll_users")) == 1


def test_negative_reply_cancels_without_calls(lms):
    store = InMemorySessionStore(ttl_seconds=3600)
    dispatcher = _dispatcher(lms, store)

    async def scenario():
        await dispatcher.dispatch(UNENROLL, _context(), "")
        result = await dispatcher.resolve_confirmation(_context(), False)
        return result, await store.peek_pending("s1")

    result, pending = asyncio.run(scenario())

    assert result.success is False
    assert result.response.startswith("Cancelled:")
    assert pending is None
    assert lms.calls == []


def test_expired_confirmation_is_not_executed(lms):
    clock = _Clock()
    dispatcher = _dispatcher(lms, clock=clock)

    async def scenario():
        await dispatcher.dispatch(UNENROLL, _context(), "")
        clock.now += timedelta(seconds=301)
        return await dispatcher.resolve_confirmation(_context(), True)

    result = asyncio.run(scenario())

    assert result.success is False
    assert "expired" in result.response
    assert lms.calls == []


def test_confirmation_rechecks_permission(lms):
    dispatcher = _dispatcher(lms)

    async def scenario():
        await dispatcher.dispatch(UNENROLL, _context(), "")
        await dispatcher.resolve_confirmation(_context(role=Role.USER), True)

    with pytest.raises(PermissionDeniedError):
        asyncio.run(scenario())
    assert lms.calls == []


def test_self_reference_resolves_to_caller(lms):
    classification = IntentClassification(intent=Intent.GET_USER_ENROLLMENTS, entities={"user_identifier": "me"})
    result = asyncio.run(_dispatcher(lms).dispatch(classification, _context(role=Role.USER)))

    assert result.success is True
    assert lms.calls == [("get_user_enrollments", {"user_id": "7"})]
    assert "Found 1 total enrollments" in result.response


def test_ambiguous_reference_asks_to_disambiguate(lms):
    classification = IntentClassification(intent=Intent.GET_USER_ENROLLMENTS, entities={"user_identifier": "John"})
    result = asyncio.run(_dispatcher(lms).dispatch(classification, _context()))

    assert result.success is False
    assert result.meta.state == "awaiting_disambiguation"
    assert {c["id"] for c in result.data["candidates"]} == {"103", "104"}
    assert result.requires_input.field == "users"
    assert lms.called("get_user_enrollments") == []


def test_unknown_reference_is_reported(lms):
    classification = IntentClassification(intent=Intent.GET_COURSE_ENROLLMENTS, entities={"course_identifier": "Basket Weaving"})
    result = asyncio.run(_dispatcher(lms).dispatch(classification, _context()))

    assert result.success is False
    assert result.meta.state == "failed"
    assert "couldn't find a course" in result.response
    assert lms.called("get_course_enrollments") == []


def test_stats_resolve_scope_before_querying(lms):
    classification = IntentClassification(
        intent=Intent.GET_ENROLLMENT_STATS, entities={"courses": ["Python Programming"]}
    )
    result = asyncio.run(_dispatcher(lms).dispatch(classification, _context()))

    assert result.success is True
    assert lms.called("get_enrollment_stats") == [{"course_ids": ["503"], "date_from": None, "date_to": None}]
    assert result.data["completion_rate"] == 25


def test_update_builds_one_update_per_user_and_target(lms):
    dispatcher = _dispatcher(lms)
    classification = IntentClassification(
        intent=Intent.UPDATE_ENROLLMENTS,
        entities={"users": ["sarah@x.com"], "courses": ["Excel Fundamentals"], "priority": "urgent"},
    )

    async def scenario():
        await dispatcher.dispatch(classification, _context(), "")
        return await dispatcher.resolve_confirmation(_context(), True)

    result = asyncio.run(scenario())

    assert result.success is True
    assert lms.called("update_enrollments") == [
        {"updates": [{"user_id": "101", "course_id": "501", "priority": "high", "due_date": None, "status": None}]}
    ]


def test_confirmed_removal_never_acts_on_a_fuzzy_match(lms):
    dispatcher = _dispatcher(lms)
    classification = IntentClassification(
        intent=Intent.UNENROLL_USERS,
        entities={"users": ["mike@company.com"], "courses": ["Excel"]},
    )

    async def scenario():
        prompt = await dispatcher.dispatch(classification, _context(), "")
        return prompt, await dispatcher.resolve_confirmation(_context(), True)

    prompt, result = asyncio.run(scenario())

    assert "Unenroll mike@company.com from Excel" in prompt.response
    assert result.success is False
    assert result.meta.state == "awaiting_disambiguation"
    assert "Did you mean Excel Fundamentals (id 501)?" in result.response
    assert result.data == {"candidates": [{"id": "501", "name": "Excel Fundamentals", "email": None}]}
    assert lms.called("unenroll_users") == []


def test_read_only_lookup_still_accepts_a_fuzzy_match(lms):
    classification = IntentClassification(intent=Intent.GET_COURSE_ENROLLMENTS, entities={"course_identifier": "Excel"})
    result = asyncio.run(_dispatcher(lms).dispatch(classification, _context()))

    assert result.success is True
    assert lms.called("get_course_enrollments") == [{"course_id": "501"}]


def test_pronoun_carries_users_from_previous_request(lms):
    store = InMemorySessionStore(ttl_seconds=3600)
    dispatcher = _dispatcher(lms, store)

    async def scenario():
        lookup = IntentClassification(intent=Intent.GET_USER_ENROLLMENTS, entities={"user_identifier": "sarah@x.com"})
        await dispatcher.dispatch(lookup, await store.load_context("s1", Role.SUPERADMIN, "7"), "")
        enroll = IntentClassification(intent=Intent.ENROLL_USERS, entities={"courses": ["Excel"]})
        context = await store.load_context("s1", Role.SUPERADMIN, "7")
        result = await dispatcher.dispatch(enroll, context, "Enroll her in Excel")
        return result, await store.peek_pending("s1")

    result, pending = asyncio.run(scenario())

    assert result.meta.state == "awaiting_confirmation"
    assert pending.entities["users"] == ["sarah@x.com"]


def test_lms_failure_returns_generic_message(lms):
    lms.fail_with = httpx.ConnectError("connection refused to 10.0.0.5")
    classification = IntentClassification(intent=Intent.SEARCH_COURSES, entities={"search_query": "excel"})
    result = asyncio.run(_dispatcher(lms).dispatch(classification, _context()))

    assert result.success is False
    assert result.response == FAILURE_MESSAGES[Intent.SEARCH_COURSES]
    assert "10.0.0.5" in result.meta.diagnostics["cause"]
    assert "10.0.0.5" not in json.dumps(result.public_dict())
    assert "diagnostics" not in result.public_dict()["meta"]


def test_slow_lms_call_times_out(lms):
    lms.delay = 0.5
    classification = IntentClassification(intent=Intent.SEARCH_COURSES, entities={"search_query": "excel"})
    result = asyncio.run(_dispatcher(lms, timeout=0.01).dispatch(classification, _context()))

    assert result.success is False
    assert result.meta.state == "failed"
    assert result.meta.diagnostics["timeout"] is True


def test_search_returns_records(lms):
    classification = IntentClassification(intent=Intent.SEARCH_COURSES, entities={"search_query": "excel"})
    result = asyncio.run(_dispatcher(lms).dispatch(classification, _context(role=Role.USER)))

    assert result.success is True
    assert result.data[0]["id"] == "501"
    assert result.response.startswith("Found 1 courses:")
