import asyncio
from datetime import datetime, timedelta, timezone

from lms_assistant.memory.session_store import InMemorySessionStore, RedisSessionStore
from lms_assistant.schemas.chat import Intent, PendingConfirmation, PreviousRequest, Role

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _pending(action_id="a1"):
    return PendingConfirmation(
        action_id=action_id,
        intent=Intent.UNENROLL_USERS,
        entities={"users": ["mike@company.com"], "courses": ["JavaScript"]},
        summary="Unenroll mike@company.com from JavaScript",
        requested_at=NOW,
        expires_at=NOW + timedelta(minutes=5),
    )


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_history_is_bounded_and_ordered():
    store = InMemorySessionStore(ttl_seconds=60, history_limit=2)

    async def scenario():
        for intent in (Intent.SEARCH_USERS, Intent.SEARCH_COURSES, Intent.SEARCH_GROUPS):
            await store.append_request("s1", PreviousRequest(intent=intent))
        return await store.load_context("s1", Role.USER, "7")

    context = asyncio.run(scenario())

    assert [request.intent for request in context.previous_requests] == [Intent.SEARCH_COURSES, Intent.SEARCH_GROUPS]
    assert context.role is Role.USER
    assert context.pending_confirmation is None


def test_take_pending_clears_record():
    store = InMemorySessionStore(ttl_seconds=60)

    async def scenario():
        await store.set_pending("s1", _pending())
        peeked = await store.peek_pending("s1")
        taken = await store.take_pending("s1")
        again = await store.take_pending("s1")
        return peeked, taken, again

    peeked, taken, again = asyncio.run(scenario())

    assert peeked.action_id == taken.action_id == "a1"
    assert again is None


def test_new_pending_replaces_previous():
    store = InMemorySessionStore(ttl_seconds=60)

    async def scenario():
        await store.set_pending("s1", _pending("a1"))
        await store.set_pending("s1", _pending("a2"))
        return await store.take_pending("s1")

    assert asyncio.run(scenario()).action_id == "a2"


def test_sweep_skips_sessions_in_use():
    clock = _Clock()
    store = InMemorySessionStore(ttl_seconds=10, clock=clock)

    async def scenario():
        await store.append_request("busy", PreviousRequest(intent=Intent.HELP))
        await store.append_request("idle", PreviousRequest(intent=Intent.HELP))
        clock.now = 20
        async with store._sessions["busy"].lock:
            first = await store.sweep()
        second = await store.sweep()
        return first, second

    first, second = asyncio.run(scenario())

    assert (first, second) == (1, 1)
    assert store._sessions == {}


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key, value):
        self.values[key] = value

    async def get(self, key):
        return self.values.get(key)

    async def getdel(self, key):
        return self.values.pop(key, None)

    async def expire(self, key, seconds):
        self.ttls[key] = seconds

    async def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)

    async def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        self.lists[key] = items[start:] if end == -1 else items[start : end + 1]

    async def lrange(self, key, start, end):
        return list(self.lists.get(key, []))


def test_redis_store_round_trips_context():
    store = RedisSessionStore("redis://unused", ttl_seconds=120, history_limit=2)
    fake = _FakeRedis()
    store._redis = fake

    async def scenario():
        for intent in (Intent.SEARCH_USERS, Intent.SEARCH_COURSES, Intent.SEARCH_GROUPS):
            await store.append_request("s1", PreviousRequest(intent=intent, entities={"search_query": "x"}))
        await store.set_pending("s1", _pending())
        context = await store.load_context("s1", Role.SUPERADMIN, "7")
        taken = await store.take_pending("s1")
        after = await store.peek_pending("s1")
        return context, taken, after

    context, taken, after = asyncio.run(scenario())

    assert [request.intent for request in context.previous_requests] == [Intent.SEARCH_COURSES, Intent.SEARCH_GROUPS]
    assert context.pending_confirmation == _pending()
    assert taken.action_id == "a1"
    assert after is None
    assert fake.ttls == {"request_history:s1": 120, "pending_confirmation:s1": 120}
