import asyncio
from contextlib import asynccontextmanager, suppress

import structlog
from fastapi import FastAPI

from lms_assistant.agents.dispatcher import ActionDispatcher
from lms_assistant.agents.guardrail import PermissionGate, RolePermissionTable
from lms_assistant.agents.resolver import EntityResolver
from lms_assistant.agents.router import IntentClassifier, LlmIntentClassifier
from lms_assistant.agents.tools import HttpLmsClient, LmsClient
from lms_assistant.api import router
from lms_assistant.chat_service import ChatPipeline
from lms_assistant.config import Settings, settings
from lms_assistant.logging_config import configure_logging
from lms_assistant.memory.session_store import InMemorySessionStore, RedisSessionStore, SessionStore
from lms_assistant.observability import RequestContextMiddleware, metrics_endpoint
from lms_assistant.rate_limit import RateLimiter
from lms_assistant.schemas.chat import Intent
from lms_assistant.validation import InputValidator

logger = structlog.get_logger("lms-assistant")


async def _sweep_forever(rate_limiter: RateLimiter, session_store: SessionStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            rate_limiter.sweep()
            await session_store.sweep()
        except Exception:
            logger.exception("sweep_failed")


def _session_store(app_settings: Settings) -> SessionStore:
    if app_settings.redis_url:
        return RedisSessionStore(app_settings.redis_url, app_settings.session_ttl_seconds, app_settings.history_limit)
    return InMemorySessionStore(app_settings.session_ttl_seconds, app_settings.history_limit)


def create_app(
    app_settings: Settings | None = None,
    classifier: IntentClassifier | None = None,
    lms: LmsClient | None = None,
    session_store: SessionStore | None = None,
) -> FastAPI:
    app_settings = app_settings or settings
    configure_logging(app_settings.log_level)

    store = session_store or _session_store(app_settings)
    http_lms = None
    if lms is None:
        http_lms = HttpLmsClient(
            app_settings.lms_base_url,
            app_settings.lms_api_token,
            timeout=app_settings.lms_timeout_seconds,
            page_size=app_settings.lms_page_size,
        )
        lms = http_lms
    classifier = classifier or LlmIntentClassifier(
        app_settings.classifier_confidence_threshold, app_settings.classifier_timeout_seconds
    )

    permission_table = RolePermissionTable(app_settings.role_permissions)
    gate = PermissionGate(permission_table)
    dispatcher = ActionDispatcher(
        lms,
        EntityResolver(
            app_settings.fuzzy_match_threshold,
            app_settings.fuzzy_tie_margin,
            app_settings.resolution_candidate_limit,
        ),
        store,
        frozenset(Intent(intent) for intent in app_settings.destructive_intents),
        confirmation_ttl_seconds=app_settings.confirmation_ttl_seconds,
        lms_timeout_seconds=app_settings.lms_timeout_seconds,
        gate=gate,
    )
    rate_limiter = RateLimiter(app_settings.rate_limits, app_settings.rate_limit_idle_ttl_seconds)
    validator = InputValidator(
        max_message_length=app_settings.max_message_length,
        max_body_bytes=app_settings.max_body_bytes,
        max_depth=app_settings.max_body_depth,
        flood_repeat_threshold=app_settings.flood_repeat_threshold,
    )
    pipeline = ChatPipeline(
        validator,
        rate_limiter,
        classifier,
        gate,
        dispatcher,
        store,
        confidence_threshold=app_settings.classifier_confidence_threshold,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.connect()
        sweeper = asyncio.create_task(
            _sweep_forever(rate_limiter, store, app_settings.sweep_interval_seconds)
        )
        yield
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await store.close()
        if http_lms is not None:
            await http_lms.close()

    app = FastAPI(title=app_settings.app_name, lifespan=lifespan)
    app.state.settings = app_settings
    app.state.pipeline = pipeline
    app.state.rate_limiter = rate_limiter
    app.state.session_store = store
    app.state.permission_table = permission_table
    app.state.dispatcher = dispatcher
    app.add_middleware(RequestContextMiddleware)
    app.include_router(router, prefix=app_settings.api_prefix)
    app.add_api_route("/metrics", metrics_endpoint, include_in_schema=False)
    return app


app = create_app()
