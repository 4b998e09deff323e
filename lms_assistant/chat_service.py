import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog
from langsmith import traceable

from lms_assistant.agents.clarification import parse_confirmation_reply
from lms_assistant.agents.composer import compose
from lms_assistant.agents.dispatcher import ActionDispatcher
from lms_assistant.agents.guardrail import PermissionGate
from lms_assistant.agents.langgraph_flow import build_graph
from lms_assistant.agents.router import IntentClassifier
from lms_assistant.errors import InvalidRequestError, RateLimitExceededError, RequestMeta, classify_error
from lms_assistant.identity import resolve_identity
from lms_assistant.memory.session_store import SessionStore
from lms_assistant.observability import record_threats
from lms_assistant.rate_limit import RateLimiter, rate_limit_headers
from lms_assistant.schemas.chat import ChatContext, ChatResult, Identity
from lms_assistant.state import ChatState
from lms_assistant.utils import truncate
from lms_assistant.validation import InputValidator

logger = structlog.get_logger("chat_service")


@dataclass(frozen=True)
class PipelineResponse:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def session_key(identity: Identity, session_id: str | None) -> str:
    # a sessionId only names a conversation within one caller's own namespace
    return f"{identity.client_id}:{identity.user_id or 'anonymous'}:{session_id or 'default'}"


class ChatPipeline:
    """Validate, admit, screen, then classify -> gate -> dispatch -> compose.

    Every failure on the way is turned into a response by `classify_error`;
    nothing escapes `handle` unclassified.
    """

    def __init__(
        self,
        validator: InputValidator,
        rate_limiter: RateLimiter,
        classifier: IntentClassifier,
        gate: PermissionGate,
        dispatcher: ActionDispatcher,
        session_store: SessionStore,
        confidence_threshold: float = 0.5,
    ) -> None:
        self.validator = validator
        self.rate_limiter = rate_limiter
        self.classifier = classifier
        self.gate = gate
        self.dispatcher = dispatcher
        self.session_store = session_store
        self.graph = build_graph(classifier, gate, dispatcher, confidence_threshold).compile()

    async def _respond(self, message: str, identity: Identity, context: ChatContext) -> ChatResult:
        if context.pending_confirmation is not None:
            reply = parse_confirmation_reply(message)
            if reply is not None:
                result = await self.dispatcher.resolve_confirmation(context, reply)
                return compose(result, identity.role)

        state: ChatState = {
            "message": message,
            "identity": identity,
            "context": context,
            "events": [],
        }
        final: ChatState = await self.graph.ainvoke(state)
        return final["result"]

    @traceable(name="handle_chat", run_type="chain")
    async def handle(
        self,
        raw_body: bytes | str | Mapping,
        headers: Mapping[str, str],
        peer: str | None = None,
        request_id: str | None = None,
        path: str | None = None,
    ) -> PipelineResponse:
        start = time.perf_counter()
        meta = RequestMeta(request_id=request_id, path=path)
        rate_headers: dict[str, str] = {}
        try:
            structural = self.validator.validate(raw_body)
            if not structural.success or structural.data is None:
                raise InvalidRequestError("structural validation failed", errors=structural.errors)
            request = structural.data

            identity = resolve_identity(headers, peer, request)
            meta = RequestMeta(request_id=request_id, path=path, client_id=identity.client_id, role=identity.role.value)
            decision = self.rate_limiter.admit(identity)
            rate_headers = rate_limit_headers(decision)
            if not decision.allowed:
                raise RateLimitExceededError(decision.retry_after_ms, rate_headers)

            security = self.validator.validate_security(request.message)
            if not security.safe:
                threats = sorted(kind.value for kind in security.threats_detected)
                record_threats(threats)
                raise InvalidRequestError(
                    "message failed security screening",
                    threats=threats,
                    public_message="Message contains potentially harmful content.",
                )
            if not security.sanitized_message:
                raise InvalidRequestError("message empty after sanitization", errors=["message: Message cannot be empty"])

            context = await self.session_store.load_context(
                session_key(identity, request.session_id), identity.role, identity.user_id
            )
            result = await self._respond(security.sanitized_message, identity, context)
        except Exception as exc:
            classified = classify_error(exc, meta)
            return PipelineResponse(classified.status_code, classified.body, {**rate_headers, **classified.headers})

        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        result = result.model_copy(update={"meta": result.meta.model_copy(update={"processing_time_ms": elapsed_ms})})
        logger.info(
            "chat_handled",
            intent=result.intent,
            success=result.success,
            state=result.meta.state,
            functions_called=list(result.meta.functions_called),
            preview=truncate(security.sanitized_message, 80),
            duration_ms=elapsed_ms,
        )
        return PipelineResponse(200, result.public_dict(), rate_headers)
