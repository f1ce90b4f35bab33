from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mq_system.db.base import Base


class Sensor(Base):
    __tablename__ = "sensor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)


class Unit(Base):
    __tablename__ = "unit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)


class ValueName(Base):
    __tablename__ = "valname"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    unit_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("unit.id"), nullable=True)

    unit: Mapped["Unit | None"] = relationship()


class ValueReal(Base):
    __tablename__ = "valreal"
    __table_args__ = (PrimaryKeyConstraint("timestamp", "sensor_id", "valname_id"),)

    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sensor_id: Mapped[int] = mapped_column(Integer, ForeignKey("sensor.id"), nullable=False)
    valname_id: Mapped[int] = mapped_column(Integer, ForeignKey("valname.id"), nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)


class ValueBool(Base):
    __tablename__ = "valbool"
    __table_args__ = (PrimaryKeyConstraint("timestamp", "sensor_id", "valname_id"),)

    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sensor_id: Mapped[int] = mapped_column(Integer, ForeignKey("sensor.id"), nullable=False)
    valname_id: Mapped[int] = mapped_column(Integer, ForeignKey("valname.id"), nullable=False)
    value: Mapped[bool | None] = mapped_column(Boolean, nullable=True)


class ValueSensor(Base):
    """Latest real sample per (value name, sensor); maintained by a trigger on valreal."""

    __tablename__ = "valsensor"
    __table_args__ = (PrimaryKeyConstraint("valname_id", "sensor_id"),)

    valname_id: Mapped[int] = mapped_column(Integer, ForeignKey("valname.id"), nullable=False)
    sensor_id: Mapped[int] = mapped_column(Integer, ForeignKey("sensor.id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)

    sensor: Mapped["Sensor"] = relationship()
    valname: Mapped["ValueName"] = relationship()


class Script(Base):
    __tablename__ = "script"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")


class LogEntry(Base):
    __tablename__ = "log"

    timestamp: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    thread: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    msgid: Mapped[int | None] = mapped_column(Integer, nullable=True)
    logger: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)


HISTORY_TABLES = (
    Sensor.__table__,
    Unit.__table__,
    ValueName.__table__,
    ValueReal.__table__,
    ValueBool.__table__,
    ValueSensor.__table__,
)
SCRIPT_TABLES = (Script.__table__,)
LOG_TABLES = (LogEntry.__table__,)
