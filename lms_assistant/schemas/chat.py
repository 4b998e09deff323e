from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lms_assistant.utils import utcnow


class Role(str, Enum):
    SUPERADMIN = "superadmin"
    POWER_USER = "power_user"
    USER_MANAGER = "user_manager"
    USER = "user"


ANONYMOUS_TIER = "anonymous"


class Intent(str, Enum):
    GET_USER_ENROLLMENTS = "get_user_enrollments"
    GET_COURSE_ENROLLMENTS = "get_course_enrollments"
    GET_ENROLLMENT_STATS = "get_enrollment_stats"
    ENROLL_USERS = "enroll_users"
    ENROLL_GROUPS = "enroll_groups"
    UNENROLL_USERS = "unenroll_users"
    UPDATE_ENROLLMENTS = "update_enrollments"
    SEARCH_USERS = "search_users"
    SEARCH_COURSES = "search_courses"
    SEARCH_LEARNING_PLANS = "search_learning_plans"
    SEARCH_SESSIONS = "search_sessions"
    SEARCH_GROUPS = "search_groups"
    HELP = "help"
    ERROR = "error"


ALWAYS_ALLOWED = frozenset({Intent.HELP, Intent.ERROR})
PERMISSION_DENIED = "permission_denied"


def as_intent(value: Any) -> Intent:
    """Map arbitrary classifier output onto the closed catalog."""
    if isinstance(value, Intent):
        return value
    if isinstance(value, str):
        try:
            return Intent(value.strip().lower())
        except ValueError:
            return Intent.ERROR
    return Intent.ERROR


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    role: Role = Role.USER
    user_id: str | None = None
    authenticated: bool = False

    @property
    def rate_tier(self) -> str:
        return self.role.value if self.authenticated else ANONYMOUS_TIER


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    user_id: str | None = Field(default=None, alias="userId", max_length=100)
    user_role: Role = Field(default=Role.USER, alias="userRole")
    session_id: str | None = Field(default=None, alias="sessionId", max_length=128)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message cannot be empty")
        return value


class IntentClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: Intent
    entities: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    missing_fields: frozenset[str] = frozenset()
    summary: str = ""


class PreviousRequest(BaseModel):
    intent: Intent
    entities: dict[str, Any] = Field(default_factory=dict)


class PendingConfirmation(BaseModel):
    model_config = ConfigDict(frozen=True)

    action_id: str
    intent: Intent
    entities: dict[str, Any] = Field(default_factory=dict)
    summary: str = ""
    requested_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ChatContext(BaseModel):
    role: Role
    user_id: str | None = None
    session_id: str
    previous_requests: list[PreviousRequest] = Field(default_factory=list)
    pending_confirmation: PendingConfirmation | None = None


class ChatAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    kind: Literal["primary", "secondary"] = "secondary"
    action: str


class RequiredInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    message: str
    type: str = "text"


class ChatMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    processing_time_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)
    functions_called: tuple[str, ...] = ()
    state: str | None = None
    # raw upstream causes; server-side only
    diagnostics: dict[str, Any] = Field(default_factory=dict, exclude=True)


class ChatResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: str
    success: bool
    response: str
    data: Any = None
    actions: tuple[ChatAction, ...] = ()
    allowed_actions: tuple[str, ...] | None = None
    requires_input: RequiredInput | None = None
    meta: ChatMeta = Field(default_factory=ChatMeta)

    def public_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
