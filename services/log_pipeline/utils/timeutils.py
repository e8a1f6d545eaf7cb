from datetime import datetime, timezone


def utcnow() -> datetime:
    """Текущее время UTC без tzinfo — так даты хранятся во всех таблицах."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
