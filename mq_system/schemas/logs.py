from datetime import datetime

from pydantic import BaseModel


class LogEntryResponse(BaseModel):
    timestamp: datetime
    level: int
    level_name: str
    thread: int | None
    logger: str | None
    message: str | None
