from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class LatestValueResponse(BaseModel):
    sensor_id: int
    sensor_name: str
    value_name: str
    unit: str | None
    value: float | None
    timestamp: datetime


class HistoryPoint(BaseModel):
    timestamp: datetime
    value: float | None


class SensorSeriesResponse(BaseModel):
    sensor_id: int
    sensor_name: str
    points: list[HistoryPoint]
    average: float | None
    spread: float | None


class HistoryResponse(BaseModel):
    value_name: str
    unit: str | None
    date_from: datetime
    date_to: datetime
    series: list[SensorSeriesResponse]
