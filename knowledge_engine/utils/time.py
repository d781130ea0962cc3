from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable across SQLite and PostgreSQL columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
