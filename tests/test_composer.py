import pytest
from pydantic import ValidationError

from lms_assistant.agents.composer import FAILURE_ACTIONS, MAX_ACTIONS, compose
from lms_assistant.agents.dispatcher import CONFIRM_ACTIONS
from lms_assistant.schemas.chat import ChatAction, ChatResult, Role


def _stats(rate):
    return ChatResult(
        intent="get_enrollment_stats",
        success=True,
        response="**Enrollment Statistics**",
        data={"total_enrolled": 10, "completion_rate": rate},
    )


def test_manager_stats_get_scope_note():
    result = compose(_stats(60), Role.USER_MANAGER)

    assert "**Manager View**" in result.response
    assert "Alert" not in result.response
    assert "Excellent" not in result.response


@pytest.mark.parametrize("rate, marker", [(25, "**Alert**: Low completion rate (25%)"), (92.5, "**Excellent**")])
def test_completion_insight_thresholds(rate, marker):
    assert marker in compose(_stats(rate), Role.SUPERADMIN).response


def test_user_enrollment_note_for_plain_user():
    result = ChatResult(intent="get_user_enrollments", success=True, response="Found 2", data={"total_enrollments": 2})

    composed = compose(result, Role.USER)

    assert composed.response.startswith("Found 2\n\n**Note**")
    assert [action.id for action in composed.actions] == ["export_enrollments", "my_courses", "search_catalog"]


def test_failures_get_help_and_retry_without_notes():
    result = ChatResult(intent="get_enrollment_stats", success=False, response="unavailable")

    composed = compose(result, Role.USER_MANAGER)

    assert composed.response == "unavailable"
    assert composed.actions == FAILURE_ACTIONS


def test_existing_actions_are_preserved():
    result = ChatResult(intent="unenroll_users", success=False, response="Confirm?", actions=CONFIRM_ACTIONS)
    assert compose(result, Role.SUPERADMIN).actions == CONFIRM_ACTIONS


def test_actions_are_capped_and_unique():
    result = ChatResult(intent="get_enrollment_stats", success=True, response="ok", data={"completion_rate": 70})

    actions = compose(result, Role.SUPERADMIN).actions
    ids = [action.id for action in actions]

    assert len(actions) == MAX_ACTIONS
    assert len(set(ids)) == len(ids)
    assert ids[0] == "export_data"


def test_compose_is_pure():
    original = _stats(25)

    first = compose(original, Role.SUPERADMIN)
    second = compose(original, Role.SUPERADMIN)

    assert first == second
    assert original.response == "**Enrollment Statistics**"
    assert original.actions == ()


def test_action_kind_is_primary_or_secondary():
    with pytest.raises(ValidationError):
        ChatAction(id="x", label="X", kind="danger", action="noop")
