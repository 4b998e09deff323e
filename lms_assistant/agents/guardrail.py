from collections.abc import Iterable, Mapping

import structlog
from langsmith import traceable

from lms_assistant.errors import PermissionDeniedError
from lms_assistant.observability import record_intent
from lms_assistant.schemas.chat import (
    ALWAYS_ALLOWED,
    PERMISSION_DENIED,
    ChatMeta,
    ChatResult,
    Intent,
    Role,
)
from lms_assistant.state import ChatState

logger = structlog.get_logger("guardrail_agent")


def _add_event(state: ChatState, event_type: str, data: dict | None = None) -> None:
    state.setdefault("events", []).append({"type": event_type, "data": data or {}})


class RolePermissionTable:
    """Immutable role -> allowed intents lookup, validated at load time."""

    def __init__(self, table: Mapping[str, Iterable[str]]) -> None:
        configured: dict[Role, frozenset[Intent]] = {}
        for role_name, intents in table.items():
            configured[Role(role_name)] = frozenset(Intent(intent) for intent in intents)
        self._configured = configured

    def configured(self, role: Role) -> frozenset[Intent]:
        return self._configured.get(role, frozenset())

    def allowed(self, role: Role) -> frozenset[Intent]:
        return self.configured(role) | ALWAYS_ALLOWED

    def as_dict(self) -> dict[str, list[str]]:
        return {role.value: self.allowed_actions(role) for role in Role}

    def allowed_actions(self, role: Role) -> list[str]:
        return sorted(intent.value for intent in self.configured(role))


class PermissionGate:
    def __init__(self, table: RolePermissionTable) -> None:
        self.table = table

    def authorize(self, role: Role, intent: Intent) -> bool:
        return intent in ALWAYS_ALLOWED or intent in self.table.allowed(role)

    def enforce(self, role: Role, intent: Intent) -> None:
        if not self.authorize(role, intent):
            logger.warning("permission_denied", role=role.value, intent=intent.value)
            raise PermissionDeniedError(role.value, intent.value, self.table.allowed_actions(role))


def denied_result(error: PermissionDeniedError) -> ChatResult:
    return ChatResult(
        intent=PERMISSION_DENIED,
        success=False,
        response=error.public_message,
        allowed_actions=tuple(error.allowed),
        meta=ChatMeta(state="denied"),
    )


def make_guardrail_node(gate: PermissionGate):
    @traceable(name="guardrail_node", run_type="chain")
    async def guardrail_node(state: ChatState) -> ChatState:
        _add_event(state, "agent_started", {"agent": "GuardrailAgent"})
        role = state["identity"].role
        intent = state["classification"].intent
        try:
            gate.enforce(role, intent)
            state["denied"] = False
        except PermissionDeniedError as exc:
            state["denied"] = True
            state["result"] = denied_result(exc)
            record_intent(intent.value, "denied")
            _add_event(state, "guardrail_blocked", {"intent": intent.value, "role": role.value})
        _add_event(state, "agent_finished", {"agent": "GuardrailAgent"})
        return state

    return guardrail_node


def route_after_guardrail(state: ChatState) -> str:
    return "denied" if state.get("denied") else "dispatch"
