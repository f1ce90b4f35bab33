from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from mq_system.core.config import WebSettings
from mq_system.dependencies import get_history_db, get_settings_from_app
from mq_system.repositories.history import (
    SamplePoint,
    get_value_unit,
    list_latest_values,
    list_real_series,
)
from mq_system.schemas.history import (
    HistoryPoint,
    HistoryResponse,
    LatestValueResponse,
    SensorSeriesResponse,
)


router = APIRouter(prefix="/api", tags=["history"])


def _to_storage_time(value: datetime) -> datetime:
    # samples are stored as naive UTC
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _left_step_average(points: Sequence[SamplePoint]) -> float | None:
    known = [point for point in points if point.value is not None]
    if not known:
        return None
    if len(known) == 1:
        return known[0].value
    span = (known[-1].timestamp - known[0].timestamp).total_seconds()
    if span <= 0:
        return sum(point.value for point in known) / len(known)
    area = 0.0
    for current, following in zip(known, known[1:]):
        area += current.value * (following.timestamp - current.timestamp).total_seconds()
    return area / span


def _spread(points: Sequence[SamplePoint]) -> float | None:
    values = [point.value for point in points if point.value is not None]
    if not values:
        return None
    return max(values) - min(values)


@router.get("/values", response_model=list[LatestValueResponse])
def get_latest_values(
    value: str | None = Query(default=None, max_length=128),
    db: Session = Depends(get_history_db),
) -> list[LatestValueResponse]:
    return [
        LatestValueResponse(
            sensor_id=item.sensor_id,
            sensor_name=item.sensor_name,
            value_name=item.value_name,
            unit=item.unit,
            value=item.value,
            timestamp=item.timestamp,
        )
        for item in list_latest_values(db, value_name=value)
    ]


@router.get("/history", response_model=HistoryResponse)
def get_history(
    value: str = Query(min_length=1, max_length=128),
    sensors: list[int] | None = Query(default=None),
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    db: Session = Depends(get_history_db),
    settings: WebSettings = Depends(get_settings_from_app),
) -> HistoryResponse:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    upper = _to_storage_time(date_to) if date_to is not None else now
    lower = (
        _to_storage_time(date_from)
        if date_from is not None
        else upper - timedelta(hours=settings.history_default_hours)
    )
    if lower >= upper:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="date_from must be before date_to",
        )

    points = list_real_series(db, value_name=value, sensor_ids=sensors or [], date_from=lower, date_to=upper)
    grouped: dict[int, list[SamplePoint]] = {}
    for point in points:
        grouped.setdefault(point.sensor_id, []).append(point)

    series = [
        SensorSeriesResponse(
            sensor_id=sensor_id,
            sensor_name=items[0].sensor_name,
            points=[HistoryPoint(timestamp=item.timestamp, value=item.value) for item in items],
            average=_left_step_average(items),
            spread=_spread(items),
        )
        for sensor_id, items in sorted(grouped.items(), key=lambda entry: entry[1][0].sensor_name)
    ]
    return HistoryResponse(
        value_name=value,
        unit=get_value_unit(db, value),
        date_from=lower,
        date_to=upper,
        series=series,
    )
