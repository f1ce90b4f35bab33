from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mq_system.dependencies import get_log_db
from mq_system.repositories.logs import list_recent_logs
from mq_system.schemas.logs import LogEntryResponse


router = APIRouter(prefix="/api", tags=["logs"])

_LEVEL_NAMES = {
    5: "trace",
    10: "debug",
    20: "info",
    30: "warning",
    40: "error",
    50: "critical",
}


@router.get("/logs", response_model=list[LogEntryResponse])
def get_recent_logs(
    limit: int = Query(default=200, ge=1, le=5000),
    db: Session = Depends(get_log_db),
) -> list[LogEntryResponse]:
    return [
        LogEntryResponse(
            timestamp=datetime.fromtimestamp(entry.timestamp / 1_000_000_000, tz=timezone.utc),
            level=entry.level,
            level_name=_LEVEL_NAMES.get(entry.level, str(entry.level)),
            thread=entry.thread,
            logger=entry.logger,
            message=entry.message,
        )
        for entry in list_recent_logs(db, limit=limit)
    ]
