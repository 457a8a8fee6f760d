from datetime import datetime, timezone
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session
import logging
log = logging.getLogger(__name__)


def dialect_insert(session: Session, model):
    """Return an INSERT construct that supports ON CONFLICT for the session's backend.

    Production runs on PostgreSQL; the test-suite uses SQLite. Both dialects
    expose ``on_conflict_do_nothing`` / ``on_conflict_do_update``.
    """
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        return pg_insert(model)
    if bind.dialect.name == "sqlite":
        return sqlite_insert(model)
    raise ValueError(f"Unsupported dialect for upserts: {bind.dialect.name}")


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
