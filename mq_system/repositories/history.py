from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mq_system.core.errors import StoreError
from mq_system.db.models import Sensor, Unit, ValueBool, ValueName, ValueReal, ValueSensor


@dataclass(frozen=True)
class ValueNameSnapshot:
    id: int
    name: str
    unit_id: int | None


@dataclass(frozen=True)
class LatestValueSnapshot:
    sensor_id: int
    sensor_name: str
    value_name: str
    unit: str | None
    value: float | None
    timestamp: datetime


@dataclass(frozen=True)
class SamplePoint:
    sensor_id: int
    sensor_name: str
    timestamp: datetime
    value: float | None


def get_or_create_sensor_id(db: Session, name: str) -> int:
    return _get_or_create_id(db, Sensor, name=name)


def get_or_create_unit_id(db: Session, name: str) -> int:
    return _get_or_create_id(db, Unit, name=name)


def get_or_create_value_name(db: Session, name: str, unit_id: int) -> ValueNameSnapshot:
    """Return the ValueName row for ``name``; its unit is whatever was seen first."""
    try:
        row = db.execute(select(ValueName).where(ValueName.name == name)).scalar_one_or_none()
        if row is None:
            row = ValueName(name=name, unit_id=unit_id)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                row = db.execute(select(ValueName).where(ValueName.name == name)).scalar_one()
        return ValueNameSnapshot(id=row.id, name=row.name, unit_id=row.unit_id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"valname lookup failed name={name}: {exc}") from exc


def _get_or_create_id(db: Session, model, *, name: str) -> int:
    try:
        existing = db.execute(select(model.id).where(model.name == name)).scalar_one_or_none()
        if existing is not None:
            return int(existing)
        row = model(name=name)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return int(db.execute(select(model.id).where(model.name == name)).scalar_one())
        return int(row.id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"{model.__tablename__} lookup failed name={name}: {exc}") from exc


def insert_real_sample(
    db: Session,
    *,
    timestamp: datetime,
    sensor_id: int,
    valname_id: int,
    value: float,
) -> None:
    _insert_sample(
        db,
        ValueReal(timestamp=timestamp, sensor_id=sensor_id, valname_id=valname_id, value=value),
    )


def insert_bool_sample(
    db: Session,
    *,
    timestamp: datetime,
    sensor_id: int,
    valname_id: int,
    value: bool,
) -> None:
    _insert_sample(
        db,
        ValueBool(timestamp=timestamp, sensor_id=sensor_id, valname_id=valname_id, value=value),
    )


def _insert_sample(db: Session, row: ValueReal | ValueBool) -> None:
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"{row.__tablename__} insert failed: {exc}") from exc


def get_latest_real_value(db: Session, *, sensor_name: str, value_name: str) -> float | None:
    stmt = (
        select(ValueReal.value)
        .join(Sensor, ValueReal.sensor_id == Sensor.id)
        .join(ValueName, ValueReal.valname_id == ValueName.id)
        .where(Sensor.name == sensor_name, ValueName.name == value_name)
        .order_by(ValueReal.timestamp.desc())
        .limit(1)
    )
    try:
        return db.execute(stmt).scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StoreError(f"latest value lookup failed sensor={sensor_name} value={value_name}: {exc}") from exc


def list_latest_values(db: Session, *, value_name: str | None = None) -> list[LatestValueSnapshot]:
    stmt = (
        select(
            ValueSensor.sensor_id,
            Sensor.name.label("sensor_name"),
            ValueName.name.label("value_name"),
            Unit.name.label("unit"),
            ValueSensor.value,
            ValueSensor.timestamp,
        )
        .join(Sensor, ValueSensor.sensor_id == Sensor.id)
        .join(ValueName, ValueSensor.valname_id == ValueName.id)
        .outerjoin(Unit, ValueName.unit_id == Unit.id)
        .order_by(Sensor.name, ValueName.name)
    )
    if value_name is not None:
        stmt = stmt.where(ValueName.name == value_name)
    return [
        LatestValueSnapshot(
            sensor_id=row.sensor_id,
            sensor_name=row.sensor_name,
            value_name=row.value_name,
            unit=row.unit,
            value=row.value,
            timestamp=row.timestamp,
        )
        for row in db.execute(stmt).all()
    ]


def get_value_unit(db: Session, value_name: str) -> str | None:
    stmt = (
        select(Unit.name)
        .join(ValueName, ValueName.unit_id == Unit.id)
        .where(ValueName.name == value_name)
    )
    return db.execute(stmt).scalar_one_or_none()


def list_real_series(
    db: Session,
    *,
    value_name: str,
    sensor_ids: list[int],
    date_from: datetime,
    date_to: datetime,
) -> list[SamplePoint]:
    stmt = (
        select(
            ValueReal.sensor_id,
            Sensor.name.label("sensor_name"),
            ValueReal.timestamp,
            ValueReal.value,
        )
        .join(Sensor, ValueReal.sensor_id == Sensor.id)
        .join(ValueName, ValueReal.valname_id == ValueName.id)
        .where(
            ValueName.name == value_name,
            ValueReal.timestamp > date_from,
            ValueReal.timestamp < date_to,
        )
        .order_by(ValueReal.timestamp)
    )
    if sensor_ids:
        stmt = stmt.where(ValueReal.sensor_id.in_(sensor_ids))
    return [
        SamplePoint(
            sensor_id=row.sensor_id,
            sensor_name=row.sensor_name,
            timestamp=row.timestamp,
            value=row.value,
        )
        for row in db.execute(stmt).all()
    ]
