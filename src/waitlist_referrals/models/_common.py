from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def enum_values(enum_cls) -> list[str]:
    """Persist enum values (``"active"``) rather than member names (``"ACTIVE"``)."""

    return [member.value for member in enum_cls]
