"""
Role-specific finishing of dispatcher results.

`compose` is a pure function of (result, role): same inputs, same output,
no I/O. Permission denials never reach it.
"""

from typing import Any

from langsmith import traceable

from lms_assistant.schemas.chat import ChatAction, ChatResult, Intent, Role
from lms_assistant.state import ChatState

MAX_ACTIONS = 3
MAX_INTENT_ACTIONS = 2

ROLE_NOTES: dict[tuple[str, Role], str] = {
    (Intent.ENROLL_USERS.value, Role.SUPERADMIN): (
        "**Admin Actions Available**:\n"
        "- Bulk enroll multiple users\n"
        "- Set custom due dates and priorities\n"
        "- Override enrollment restrictions\n"
        "- View detailed enrollment logs"
    ),
    (Intent.GET_ENROLLMENT_STATS.value, Role.USER_MANAGER): (
        "**Manager View**: Statistics limited to users under your management. "
        "Contact admin for system-wide reports."
    ),
    (Intent.GET_USER_ENROLLMENTS.value, Role.USER): (
        "**Note**: You can only view your own enrollments. Contact your manager for enrollment requests."
    ),
}

FAILURE_ACTIONS = (
    ChatAction(id="help", label="Get Help", kind="primary", action="show_help"),
    ChatAction(id="retry", label="Try Again", kind="secondary", action="retry_request"),
)

INTENT_ACTIONS: dict[str, tuple[ChatAction, ...]] = {
    Intent.GET_USER_ENROLLMENTS.value: (
        ChatAction(id="export_enrollments", label="Export List", kind="secondary", action="export_user_enrollments"),
    ),
    Intent.GET_COURSE_ENROLLMENTS.value: (
        ChatAction(id="enroll_more", label="Enroll More Users", kind="primary", action="additional_enrollment"),
        ChatAction(id="course_stats", label="Course Statistics", kind="secondary", action="show_stats"),
    ),
    Intent.GET_ENROLLMENT_STATS.value: (
        ChatAction(id="export_data", label="Export Data", kind="secondary", action="export_enrollment_data"),
    ),
    Intent.SEARCH_COURSES.value: (
        ChatAction(id="course_enrollments", label="Who Is Enrolled", kind="secondary", action="show_course_enrollments"),
    ),
}

ROLE_ACTIONS: dict[Role, tuple[ChatAction, ...]] = {
    Role.SUPERADMIN: (
        ChatAction(id="bulk_enroll", label="Bulk Enroll", kind="primary", action="bulk_enrollment_form"),
        ChatAction(id="advanced_stats", label="Advanced Analytics", kind="primary", action="show_analytics"),
        ChatAction(id="manage_groups", label="Manage Groups", kind="secondary", action="group_management"),
        ChatAction(id="export_data", label="Export Data", kind="secondary", action="export_enrollment_data"),
    ),
    Role.POWER_USER: (
        ChatAction(id="enroll_users", label="Enroll Users", kind="primary", action="enrollment_form"),
        ChatAction(id="view_stats", label="View Statistics", kind="primary", action="show_stats"),
        ChatAction(id="search_courses", label="Search Courses", kind="secondary", action="course_search"),
    ),
    Role.USER_MANAGER: (
        ChatAction(id="team_stats", label="Team Statistics", kind="primary", action="team_analytics"),
        ChatAction(id="user_progress", label="User Progress", kind="primary", action="progress_tracking"),
    ),
    Role.USER: (
        ChatAction(id="my_courses", label="My Courses", kind="primary", action="view_my_courses"),
        ChatAction(id="search_catalog", label="Course Catalog", kind="secondary", action="browse_catalog"),
    ),
}


def _completion_insight(data: Any) -> str | None:
    if not isinstance(data, dict) or "completion_rate" not in data:
        return None
    try:
        rate = float(data["completion_rate"])
    except (TypeError, ValueError):
        return None
    if rate < 50:
        return (
            f"**Alert**: Low completion rate ({rate:g}%). "
            "Consider reviewing course difficulty or providing additional support."
        )
    if rate > 80:
        return f"**Excellent**: High completion rate ({rate:g}%)! Great engagement."
    return None


def _actions(result: ChatResult, role: Role) -> tuple[ChatAction, ...]:
    if result.actions:
        return result.actions
    if not result.success:
        return FAILURE_ACTIONS
    chosen: list[ChatAction] = []
    seen: set[str] = set()
    candidates = list(INTENT_ACTIONS.get(result.intent, ())[:MAX_INTENT_ACTIONS]) + list(ROLE_ACTIONS[role])
    for action in candidates:
        if action.id in seen:
            continue
        seen.add(action.id)
        chosen.append(action)
        if len(chosen) == MAX_ACTIONS:
            break
    return tuple(chosen)


def compose(result: ChatResult, role: Role) -> ChatResult:
    response = result.response
    if result.success and result.data is not None:
        note = ROLE_NOTES.get((result.intent, role))
        if note:
            response += f"\n\n{note}"
        if result.intent == Intent.GET_ENROLLMENT_STATS.value:
            insight = _completion_insight(result.data)
            if insight:
                response += f"\n\n{insight}"
    return result.model_copy(update={"response": response, "actions": _actions(result, role)})


def make_compose_node():
    @traceable(name="compose_node", run_type="chain")
    async def compose_node(state: ChatState) -> ChatState:
        state["result"] = compose(state["result"], state["identity"].role)
        return state

    return compose_node
