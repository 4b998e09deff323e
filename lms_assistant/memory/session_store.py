import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Protocol

import structlog
from redis.asyncio import Redis

from lms_assistant.schemas.chat import ChatContext, PendingConfirmation, PreviousRequest, Role

logger = structlog.get_logger("session_store")


class SessionStore(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def load_context(self, session_id: str, role: Role, user_id: str | None) -> ChatContext: ...

    async def append_request(self, session_id: str, request: PreviousRequest) -> None: ...

    async def set_pending(self, session_id: str, pending: PendingConfirmation) -> None: ...

    async def peek_pending(self, session_id: str) -> PendingConfirmation | None: ...

    async def take_pending(self, session_id: str) -> PendingConfirmation | None:
        """Read and clear the pending record in one atomic step."""
        ...

    async def sweep(self) -> int: ...


@dataclass
class _Session:
    history: deque
    pending: PendingConfirmation | None = None
    last_seen: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class InMemorySessionStore:
    def __init__(
        self,
        ttl_seconds: int,
        history_limit: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._history_limit = history_limit
        self._clock = clock
        self._sessions: dict[str, _Session] = {}

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        self._sessions.clear()

    def _session(self, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = _Session(history=deque(maxlen=self._history_limit))
            self._sessions[session_id] = session
        session.last_seen = self._clock()
        return session

    async def load_context(self, session_id: str, role: Role, user_id: str | None) -> ChatContext:
        session = self._session(session_id)
        async with session.lock:
            return ChatContext(
                role=role,
                user_id=user_id,
                session_id=session_id,
                previous_requests=list(session.history),
                pending_confirmation=session.pending,
            )

    async def append_request(self, session_id: str, request: PreviousRequest) -> None:
        session = self._session(session_id)
        async with session.lock:
            session.history.append(request)

    async def set_pending(self, session_id: str, pending: PendingConfirmation) -> None:
        session = self._session(session_id)
        async with session.lock:
            session.pending = pending

    async def peek_pending(self, session_id: str) -> PendingConfirmation | None:
        session = self._sessions.get(session_id)
        return session.pending if session else None

    async def take_pending(self, session_id: str) -> PendingConfirmation | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        async with session.lock:
            pending, session.pending = session.pending, None
            return pending

    async def sweep(self) -> int:
        now = self._clock()
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if now - session.last_seen >= self._ttl_seconds and not session.lock.locked()
        ]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info("session_sweep", evicted=len(expired))
        return len(expired)


class RedisSessionStore:
    def __init__(self, redis_url: str, ttl_seconds: int, history_limit: int = 10) -> None:
        self._redis_url = redis_url
        self._ttl_seconds = ttl_seconds
        self._history_limit = history_limit
        self._redis: Redis | None = None

    async def connect(self) -> None:
        self._redis = Redis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    def _pending_key(self, session_id: str) -> str:
        return f"pending_confirmation:{session_id}"

    def _history_key(self, session_id: str) -> str:
        return f"request_history:{session_id}"

    def _client(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("RedisSessionStore used before connect()")
        return self._redis

    async def load_context(self, session_id: str, role: Role, user_id: str | None) -> ChatContext:
        redis = self._client()
        items = await redis.lrange(self._history_key(session_id), 0, -1)
        return ChatContext(
            role=role,
            user_id=user_id,
            session_id=session_id,
            previous_requests=[PreviousRequest.model_validate_json(item) for item in items],
            pending_confirmation=await self.peek_pending(session_id),
        )

    async def append_request(self, session_id: str, request: PreviousRequest) -> None:
        redis = self._client()
        key = self._history_key(session_id)
        await redis.rpush(key, request.model_dump_json())
        await redis.ltrim(key, -self._history_limit, -1)
        await redis.expire(key, self._ttl_seconds)

    async def set_pending(self, session_id: str, pending: PendingConfirmation) -> None:
        redis = self._client()
        key = self._pending_key(session_id)
        # Kept past the confirmation window; expiry is judged from expires_at.
        await redis.set(key, pending.model_dump_json())
        await redis.expire(key, self._ttl_seconds)

    async def peek_pending(self, session_id: str) -> PendingConfirmation | None:
        payload = await self._client().get(self._pending_key(session_id))
        if not payload:
            return None
        return PendingConfirmation.model_validate_json(payload)

    async def take_pending(self, session_id: str) -> PendingConfirmation | None:
        payload = await self._client().getdel(self._pending_key(session_id))
        if not payload:
            return None
        return PendingConfirmation.model_validate_json(payload)

    async def sweep(self) -> int:
        # Key expiry does the work.
        return 0
