import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lms_assistant.agents.tools import LmsRecord  # noqa: E402
from lms_assistant.config import Settings  # noqa: E402
from lms_assistant.main import create_app  # noqa: E402
from lms_assistant.memory.session_store import InMemorySessionStore  # noqa: E402
from lms_assistant.schemas.chat import Intent, IntentClassification  # noqa: E402

USERS = [
    LmsRecord(id="101", name="Sarah Connor", email="sarah@x.com"),
    LmsRecord(id="102", name="Mike Ross", email="mike@company.com"),
    LmsRecord(id="103", name="John Smith", email="john@company.com"),
    LmsRecord(id="104", name="John Smyth", email="jsmyth@company.com"),
]
COURSES = [
    LmsRecord(id="501", name="Excel Fundamentals", code="XL-101"),
    LmsRecord(id="502", name="JavaScript Training", code="JS-200"),
    LmsRecord(id="503", name="Python Programming", code="PY-100"),
]
LEARNING_PLANS = [LmsRecord(id="701", name="New Hire Onboarding")]
SESSIONS = [LmsRecord(id="801", name="Excel Workshop March")]
GROUPS = [LmsRecord(id="901", name="Sales Team")]


def _matching(records: list[LmsRecord], query: str) -> list[LmsRecord]:
    wanted = query.lower()
    first = wanted.split()[0] if wanted.split() else wanted
    return [
        record
        for record in records
        if record.id == wanted
        or first in record.name.lower()
        or wanted in (record.email or "").lower()
        or wanted == (record.code or "").lower()
    ]


class FakeLmsClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: Exception | None = None
        self.delay = 0.0
        self.stats = {
            "total_enrolled": 40,
            "completed": 10,
            "in_progress": 20,
            "not_started": 10,
            "completion_rate": 25,
        }

    async def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    def called(self, name: str) -> list[dict]:
        return [kwargs for method, kwargs in self.calls if method == name]

    async def search_users(self, query, limit=25):
        await self._record("search_users", query=query, limit=limit)
        return _matching(USERS, query)[:limit]

    async def search_courses(self, query, limit=25):
        await self._record("search_courses", query=query, limit=limit)
        return _matching(COURSES, query)[:limit]

    async def search_learning_plans(self, query, limit=25):
        await self._record("search_learning_plans", query=query, limit=limit)
        return _matching(LEARNING_PLANS, query)[:limit]

    async def search_sessions(self, query, limit=25):
        await self._record("search_sessions", query=query, limit=limit)
        return _matching(SESSIONS, query)[:limit]

    async def search_groups(self, query, limit=25):
        await self._record("search_groups", query=query, limit=limit)
        return _matching(GROUPS, query)[:limit]

    async def get_user_enrollments(self, user_id):
        await self._record("get_user_enrollments", user_id=user_id)
        return {"courses": [{"course_id": "501"}], "learning_plans": [], "sessions": [], "total_enrollments": 1}

    async def get_course_enrollments(self, course_id):
        await self._record("get_course_enrollments", course_id=course_id)
        return {"users": [{"user_id": "101"}], "total_enrolled": 1, "completion_stats": {"completion_rate": 100}}

    async def get_enrollment_stats(self, **filters):
        await self._record("get_enrollment_stats", **filters)
        return dict(self.stats)

    async def enroll_users(self, users, courses=None, learning_plans=None, sessions=None, priority="medium", due_date=None):
        await self._record(
            "enroll_users",
            users=users,
            courses=courses,
            learning_plans=learning_plans,
            sessions=sessions,
            priority=priority,
            due_date=due_date,
        )
        return {"successful": [{"type": "course", "id": c} for c in courses or []], "failed": [], "summary": "ok"}

    async def enroll_groups(self, groups, courses=None, learning_plans=None, sessions=None, priority="medium", due_date=None):
        await self._record("enroll_groups", groups=groups, courses=courses, learning_plans=learning_plans, sessions=sessions)
        return {"successful": [{"type": "course", "id": c} for c in courses or []], "failed": [], "summary": "ok"}

    async def unenroll_users(self, users, courses=None, learning_plans=None, sessions=None, reason=None):
        await self._record("unenroll_users", users=users, courses=courses, learning_plans=learning_plans, sessions=sessions)
        return {"successful": [{"type": "course", "user_id": u} for u in users], "failed": [], "summary": "ok"}

    async def update_enrollments(self, updates):
        await self._record("update_enrollments", updates=updates)
        return {"successful": [{"update": u} for u in updates], "failed": [], "summary": "ok"}


class FakeClassifier:
    def __init__(self) -> None:
        self.responses: dict[str, IntentClassification] = {}
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.default = IntentClassification(intent=Intent.HELP, confidence=0.9)

    async def classify(self, message, context):
        self.calls.append(message)
        if self.error is not None:
            raise self.error
        return self.responses.get(message, self.default)


@pytest.fixture()
def lms():
    return FakeLmsClient()


@pytest.fixture()
def classifier():
    return FakeClassifier()


@pytest.fixture()
def app_settings():
    return Settings(sweep_interval_seconds=3600)


@pytest.fixture()
def app(app_settings, classifier, lms):
    return create_app(
        app_settings,
        classifier=classifier,
        lms=lms,
        session_store=InMemorySessionStore(ttl_seconds=3600),
    )


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client
