from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware UTC now helper to avoid naive datetimes."""
    return datetime.now(timezone.utc)


def truncate(text: str, length: int) -> str:
    return text if len(text) <= length else f"{text[:length]}..."
