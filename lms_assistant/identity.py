import hashlib
from collections.abc import Mapping

from structlog.contextvars import bind_contextvars

from lms_assistant.schemas.chat import ChatRequest, Identity

UNKNOWN_ORIGIN = "unknown"


def client_origin(headers: Mapping[str, str], peer: str | None) -> str:
    """First of cf-connecting-ip, x-real-ip, x-forwarded-for[0], socket peer."""
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value
    forwarded = headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return peer or UNKNOWN_ORIGIN


def auth_token(headers: Mapping[str, str]) -> str | None:
    authorization = (headers.get("authorization") or "").strip()
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if token:
            return token
    api_key = (headers.get("x-api-key") or "").strip()
    return api_key or None


def client_digest(origin: str, token: str | None) -> str:
    return hashlib.sha256(f"{origin}|{token or ''}".encode("utf-8")).hexdigest()[:32]


def resolve_identity(headers: Mapping[str, str], peer: str | None, request: ChatRequest) -> Identity:
    token = auth_token(headers)
    identity = Identity(
        client_id=client_digest(client_origin(headers, peer), token),
        role=request.user_role,
        user_id=request.user_id,
        authenticated=bool(token or request.user_id),
    )
    bind_contextvars(client_id=identity.client_id, role=identity.role.value)
    return identity
