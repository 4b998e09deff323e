from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    capacity: int = Field(gt=0)
    refill_per_second: float = Field(gt=0)


DEFAULT_RATE_LIMITS: dict[str, dict[str, float]] = {
    "superadmin": {"capacity": 200, "refill_per_second": 200 / 60},
    "power_user": {"capacity": 100, "refill_per_second": 100 / 60},
    "user_manager": {"capacity": 50, "refill_per_second": 50 / 60},
    "user": {"capacity": 30, "refill_per_second": 30 / 60},
    "anonymous": {"capacity": 10, "refill_per_second": 10 / 60},
}

DEFAULT_ROLE_PERMISSIONS: dict[str, list[str]] = {
    "superadmin": [
        "get_user_enrollments",
        "get_course_enrollments",
        "get_enrollment_stats",
        "enroll_users",
        "enroll_groups",
        "unenroll_users",
        "update_enrollments",
        "search_users",
        "search_courses",
        "search_learning_plans",
        "search_sessions",
        "search_groups",
    ],
    "power_user": [
        "get_user_enrollments",
        "get_course_enrollments",
        "get_enrollment_stats",
        "enroll_users",
        "search_users",
        "search_courses",
        "search_learning_plans",
        "search_sessions",
    ],
    "user_manager": [
        "get_user_enrollments",
        "get_course_enrollments",
        "get_enrollment_stats",
        "search_users",
        "search_courses",
    ],
    "user": ["get_user_enrollments", "search_courses", "search_learning_plans"],
}

DEFAULT_DESTRUCTIVE_INTENTS = ["enroll_users", "enroll_groups", "unenroll_users", "update_enrollments"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, env_prefix="", case_sensitive=False)

    app_name: str = "lms-assistant"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # session state: in-memory when redis_url is unset
    redis_url: str | None = None
    session_ttl_seconds: int = 86400
    history_limit: int = 10
    sweep_interval_seconds: float = 60.0

    # admission control
    rate_limits: dict[str, RateLimitPolicy] = {
        role: RateLimitPolicy(**policy) for role, policy in DEFAULT_RATE_LIMITS.items()
    }
    rate_limit_idle_ttl_seconds: float = 600.0

    # authorization
    role_permissions: dict[str, list[str]] = DEFAULT_ROLE_PERMISSIONS
    destructive_intents: list[str] = DEFAULT_DESTRUCTIVE_INTENTS
    confirmation_ttl_seconds: int = 300

    # input validation
    max_message_length: int = 2000
    max_body_bytes: int = 16384
    max_body_depth: int = 10
    flood_repeat_threshold: int = 20

    # classification and entity resolution
    classifier_confidence_threshold: float = 0.5
    classifier_timeout_seconds: float = 15.0
    fuzzy_match_threshold: float = 0.75
    fuzzy_tie_margin: float = 0.05
    resolution_candidate_limit: int = 5

    llm_base_url: str = "http://llm:11434"
    llm_chat_path: str = "/v1/chat/completions"
    llm_model: str = "qwen3:0.6b"
    llm_api_key: str | None = None
    llm_timeout_seconds: float = 10.0

    lms_base_url: str = "https://lms.example.com"
    lms_api_token: str | None = None
    lms_timeout_seconds: float = 10.0
    lms_page_size: int = 25


settings = Settings()
