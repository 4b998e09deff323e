from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, Field

from lms_assistant.errors import UpstreamError

logger = structlog.get_logger("lms_client")


class LmsRecord(BaseModel):
    id: str
    name: str = ""
    email: str | None = None
    code: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class LmsClient(Protocol):
    """One coroutine per intent. Implementations raise UpstreamError on failure."""

    async def get_user_enrollments(self, user_id: str) -> dict[str, Any]: ...

    async def get_course_enrollments(self, course_id: str) -> dict[str, Any]: ...

    async def get_enrollment_stats(self, **filters: Any) -> dict[str, Any]: ...

    async def enroll_users(
        self,
        users: list[str],
        courses: list[str] | None = None,
        learning_plans: list[str] | None = None,
        sessions: list[str] | None = None,
        priority: str = "medium",
        due_date: str | None = None,
    ) -> dict[str, Any]: ...

    async def enroll_groups(
        self,
        groups: list[str],
        courses: list[str] | None = None,
        learning_plans: list[str] | None = None,
        sessions: list[str] | None = None,
        priority: str = "medium",
        due_date: str | None = None,
    ) -> dict[str, Any]: ...

    async def unenroll_users(
        self,
        users: list[str],
        courses: list[str] | None = None,
        learning_plans: list[str] | None = None,
        sessions: list[str] | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]: ...

    async def update_enrollments(self, updates: list[dict[str, Any]]) -> dict[str, Any]: ...

    async def search_users(self, query: str, limit: int = 25) -> list[LmsRecord]: ...

    async def search_courses(self, query: str, limit: int = 25) -> list[LmsRecord]: ...

    async def search_learning_plans(self, query: str, limit: int = 25) -> list[LmsRecord]: ...

    async def search_sessions(self, query: str, limit: int = 25) -> list[LmsRecord]: ...

    async def search_groups(self, query: str, limit: int = 25) -> list[LmsRecord]: ...


# Source field names per record kind: id, name, email, code.
RECORD_FIELDS = {
    "user": ("user_id", "fullname", "email", "username"),
    "course": ("course_id", "course_name", None, "course_code"),
    "learning_plan": ("learning_plan_id", "name", None, "code"),
    "session": ("session_id", "session_name", None, None),
    "group": ("group_id", "group_name", None, None),
}


def normalize_record(kind: str, item: dict[str, Any]) -> LmsRecord:
    id_key, name_key, email_key, code_key = RECORD_FIELDS[kind]
    name = item.get(name_key) or item.get("name") or ""
    if not name and kind == "user":
        name = " ".join(part for part in (item.get("first_name"), item.get("last_name")) if part)
    used = {id_key, name_key, email_key, code_key}
    return LmsRecord(
        id=str(item.get(id_key) if item.get(id_key) is not None else item.get("id", "")),
        name=name,
        email=item.get(email_key) if email_key else None,
        code=item.get(code_key) if code_key else None,
        extra={k: v for k, v in item.items() if k not in used},
    )


def _summary(verb: str, successful: list, failed: list) -> str:
    return f"{verb} completed: {len(successful)} successful, {len(failed)} failed"


class HttpLmsClient:
    """Thin httpx adapter over the LMS REST API."""

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        timeout: float = 10.0,
        page_size: int = 25,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._page_size = page_size
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            response = await self._client.request(method, url, params=query, json=payload, headers=headers)
            response.raise_for_status()
            body = response.json() if response.content else {}
        except httpx.TimeoutException as exc:
            logger.warning("lms_request_timeout", method=method, path=path)
            raise UpstreamError(f"{method} {path} timed out", timeout=True) from exc
        except httpx.HTTPStatusError as exc:
            logger.warning("lms_request_failed", method=method, path=path, status_code=exc.response.status_code)
            raise UpstreamError(
                f"{method} {path} returned {exc.response.status_code}: {exc.response.text[:200]}",
                status=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("lms_request_failed", method=method, path=path, error=str(exc))
            raise UpstreamError(f"{method} {path} failed: {exc}") from exc
        data = body.get("data", body) if isinstance(body, dict) else {}
        return data if isinstance(data, dict) else {"items": data}

    async def _items(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        data = await self._request("GET", path, params=params)
        items = data.get("items", [])
        return items if isinstance(items, list) else []

    async def _search(self, kind: str, path: str, query: str, limit: int) -> list[LmsRecord]:
        items = await self._items(path, {"search_text": query, "page_size": min(limit, self._page_size)})
        return [normalize_record(kind, item) for item in items]

    async def search_users(self, query: str, limit: int = 25) -> list[LmsRecord]:
        return await self._search("user", "/manage/v1/user", query, limit)

    async def search_courses(self, query: str, limit: int = 25) -> list[LmsRecord]:
        return await self._search("course", "/learn/v1/courses", query, limit)

    async def search_learning_plans(self, query: str, limit: int = 25) -> list[LmsRecord]:
        return await self._search("learning_plan", "/learn/v1/learningplans", query, limit)

    async def search_sessions(self, query: str, limit: int = 25) -> list[LmsRecord]:
        return await self._search("session", "/learn/v1/sessions", query, limit)

    async def search_groups(self, query: str, limit: int = 25) -> list[LmsRecord]:
        return await self._search("group", "/manage/v1/groups", query, limit)

    async def get_user_enrollments(self, user_id: str) -> dict[str, Any]:
        courses = await self._items(f"/learn/v1/enrollments/users/{user_id}", {"include_progress": "true"})
        learning_plans = await self._items(f"/learn/v1/learningplans/users/{user_id}")
        sessions = await self._items(f"/learn/v1/sessions/users/{user_id}")
        return {
            "courses": courses,
            "learning_plans": learning_plans,
            "sessions": sessions,
            "total_enrollments": len(courses) + len(learning_plans) + len(sessions),
        }

    async def get_course_enrollments(self, course_id: str) -> dict[str, Any]:
        data = await self._request(
            "GET",
            f"/learn/v1/enrollments/courses/{course_id}",
            params={"include_progress": "true", "include_stats": "true"},
        )
        users = data.get("items", []) or []
        return {"users": users, "total_enrolled": len(users), "completion_stats": data.get("stats", {}) or {}}

    async def get_enrollment_stats(self, **filters: Any) -> dict[str, Any]:
        params = {k: ",".join(v) if isinstance(v, list) else v for k, v in filters.items() if v}
        data = await self._request("GET", "/analytics/v1/enrollments/stats", params=params)
        return {
            "total_enrolled": data.get("total_enrolled", 0),
            "completed": data.get("completed", 0),
            "in_progress": data.get("in_progress", 0),
            "not_started": data.get("not_started", 0),
            "completion_rate": data.get("completion_rate", 0),
            "average_progress": data.get("average_progress", 0),
        }

    async def _bulk(self, verb: str, calls: list[tuple[dict[str, Any], str, str, dict[str, Any]]]) -> dict[str, Any]:
        """Run per-target calls; raise only when every one of them failed."""
        successful: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []
        last_error: UpstreamError | None = None
        for label, method, path, payload in calls:
            try:
                result = await self._request(method, path, payload=payload)
            except UpstreamError as exc:
                last_error = exc
                failed.append({**label, "error": "request failed"})
                continue
            successful.append({**label, "result": result})
        if calls and not successful and last_error is not None:
            raise last_error
        return {"successful": successful, "failed": failed, "summary": _summary(verb, successful, failed)}

    async def enroll_users(
        self,
        users: list[str],
        courses: list[str] | None = None,
        learning_plans: list[str] | None = None,
        sessions: list[str] | None = None,
        priority: str = "medium",
        due_date: str | None = None,
    ) -> dict[str, Any]:
        calls = []
        for course_id in courses or []:
            body = {"users": users, "courses": [course_id], "priority": priority, "due_date": due_date}
            calls.append(({"type": "course", "id": course_id}, "POST", "/learn/v1/enrollments", body))
        for plan_id in learning_plans or []:
            body = {"users": users, "learning_plans": [plan_id], "priority": priority, "due_date": due_date}
            calls.append(({"type": "learning_plan", "id": plan_id}, "POST", "/learn/v1/learningplans/enrollments", body))
        for session_id in sessions or []:
            body = {"users": users, "sessions": [session_id], "priority": priority}
            calls.append(({"type": "session", "id": session_id}, "POST", "/learn/v1/sessions/enrollments", body))
        return await self._bulk("Enrollment", calls)

    async def enroll_groups(
        self,
        groups: list[str],
        courses: list[str] | None = None,
        learning_plans: list[str] | None = None,
        sessions: list[str] | None = None,
        priority: str = "medium",
        due_date: str | None = None,
    ) -> dict[str, Any]:
        members: list[str] = []
        for group_id in groups:
            for item in await self._items(f"/manage/v1/groups/{group_id}/users"):
                user_id = str(item.get("user_id", ""))
                if user_id and user_id not in members:
                    members.append(user_id)
        if not members:
            raise UpstreamError("no users found in the requested groups")
        result = await self.enroll_users(members, courses, learning_plans, sessions, priority, due_date)
        for item in result["successful"]:
            item["enrolled_via_groups"] = list(groups)
        return result

    async def unenroll_users(
        self,
        users: list[str],
        courses: list[str] | None = None,
        learning_plans: list[str] | None = None,
        sessions: list[str] | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        body = {"reason": reason or "Requested via assistant", "send_notification": True}
        calls = []
        for user_id in users:
            for course_id in courses or []:
                path = f"/learn/v1/enrollments/users/{user_id}/courses/{course_id}"
                calls.append(({"type": "course", "user_id": user_id, "id": course_id}, "DELETE", path, body))
            for plan_id in learning_plans or []:
                path = f"/learn/v1/learningplans/users/{user_id}/plans/{plan_id}"
                calls.append(({"type": "learning_plan", "user_id": user_id, "id": plan_id}, "DELETE", path, body))
            for session_id in sessions or []:
                path = f"/learn/v1/sessions/users/{user_id}/sessions/{session_id}"
                calls.append(({"type": "session", "user_id": user_id, "id": session_id}, "DELETE", path, body))
        return await self._bulk("Unenrollment", calls)

    async def update_enrollments(self, updates: list[dict[str, Any]]) -> dict[str, Any]:
        calls = []
        for update in updates:
            user_id = update["user_id"]
            if update.get("course_id"):
                path = f"/learn/v1/enrollments/users/{user_id}/courses/{update['course_id']}"
            elif update.get("learning_plan_id"):
                path = f"/learn/v1/learningplans/users/{user_id}/plans/{update['learning_plan_id']}"
            elif update.get("session_id"):
                path = f"/learn/v1/sessions/users/{user_id}/sessions/{update['session_id']}"
            else:
                continue
            body = {k: update.get(k) for k in ("priority", "due_date", "status") if update.get(k) is not None}
            calls.append(({"update": update}, "PUT", path, body))
        return await self._bulk("Update", calls)
