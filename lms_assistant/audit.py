from typing import Any

import structlog

logger = structlog.get_logger("audit")


def record_audit_event(
    actor_id: str,
    action: str,
    intent: str,
    outcome: str,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit an audit line for destructive actions that were executed or abandoned."""
    logger.info(
        "audit_event",
        actor_id=actor_id,
        action=action,
        intent=intent,
        outcome=outcome,
        details=details or {},
    )
