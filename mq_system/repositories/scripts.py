from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mq_system.core.errors import StoreError
from mq_system.db.models import Script


@dataclass(frozen=True)
class ScriptSnapshot:
    name: str
    body: str


def list_scripts(db: Session) -> list[ScriptSnapshot]:
    try:
        rows = db.execute(select(Script).order_by(Script.name)).scalars().all()
    except SQLAlchemyError as exc:
        raise StoreError(f"unable to read scripts: {exc}") from exc
    return [ScriptSnapshot(name=row.name, body=row.body or "") for row in rows]


def get_script(db: Session, name: str) -> ScriptSnapshot | None:
    row = db.get(Script, name)
    if row is None:
        return None
    return ScriptSnapshot(name=row.name, body=row.body or "")


def upsert_script(db: Session, *, name: str, body: str) -> tuple[ScriptSnapshot, bool]:
    """Store ``body`` under ``name``; the flag tells whether the row is new."""
    try:
        row = db.get(Script, name)
        created = row is None
        if row is None:
            row = Script(name=name, body=body)
            db.add(row)
        else:
            row.body = body
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"unable to store script name={name}: {exc}") from exc
    return ScriptSnapshot(name=name, body=body), created


def delete_script(db: Session, name: str) -> bool:
    try:
        result = db.execute(delete(Script).where(Script.name == name))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreError(f"unable to delete script name={name}: {exc}") from exc
    return bool(result.rowcount)
