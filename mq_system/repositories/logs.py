from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from mq_system.db.models import LogEntry


def list_recent_logs(db: Session, *, limit: int = 200) -> list[LogEntry]:
    stmt = select(LogEntry).order_by(LogEntry.timestamp.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())
