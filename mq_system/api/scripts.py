from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from mq_system.core.errors import ScriptError, StoreError
from mq_system.core.topics import RELOAD_TOPIC, is_value_name
from mq_system.dependencies import get_bus, get_script_db
from mq_system.repositories.scripts import delete_script, get_script, list_scripts, upsert_script
from mq_system.schemas.scripts import ReloadResponse, ScriptBody, ScriptResponse, ScriptSummary
from mq_system.services.bus import BusClient
from mq_system.services.script_catalog import check_script


router = APIRouter(prefix="/api", tags=["scripts"])
logger = logging.getLogger("mq_system.scripts_api")


def _check_name(name: str) -> None:
    if not is_value_name(name):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Script name may contain only letters, digits and underscore",
        )


def _raise_store_error(exc: StoreError) -> None:
    logger.error("script store failure error=%s", exc)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Script store failure")


@router.get("/scripts", response_model=list[ScriptSummary])
def get_all_scripts(db: Session = Depends(get_script_db)) -> list[ScriptSummary]:
    try:
        scripts = list_scripts(db)
    except StoreError as exc:
        _raise_store_error(exc)
    return [ScriptSummary(name=script.name, size=len(script.body)) for script in scripts]


@router.get("/scripts/{name}", response_model=ScriptResponse)
def get_script_endpoint(name: str, db: Session = Depends(get_script_db)) -> ScriptResponse:
    script = get_script(db, name)
    if script is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Script not found")
    try:
        _tree, references = check_script(script.name, script.body)
        topics = sorted({reference.status_topic for reference in references})
    except ScriptError:
        topics = []
    return ScriptResponse(name=script.name, body=script.body, topics=topics)


@router.put("/scripts/{name}", response_model=ScriptResponse)
def put_script_endpoint(
    name: str,
    payload: ScriptBody,
    response: Response,
    db: Session = Depends(get_script_db),
) -> ScriptResponse:
    _check_name(name)
    try:
        _tree, references = check_script(name, payload.body)
    except ScriptError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    try:
        script, created = upsert_script(db, name=name, body=payload.body)
    except StoreError as exc:
        _raise_store_error(exc)
    if created:
        response.status_code = status.HTTP_201_CREATED
    logger.info("script stored name=%s created=%s", name, created)
    return ScriptResponse(
        name=script.name,
        body=script.body,
        topics=sorted({reference.status_topic for reference in references}),
    )


@router.delete("/scripts/{name}", status_code=status.HTTP_204_NO_CONTENT)
def delete_script_endpoint(name: str, db: Session = Depends(get_script_db)) -> Response:
    try:
        deleted = delete_script(db, name)
    except StoreError as exc:
        _raise_store_error(exc)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Script not found")
    logger.info("script deleted name=%s", name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/scripts/reload", response_model=ReloadResponse, status_code=status.HTTP_202_ACCEPTED)
def reload_scripts_endpoint(bus: BusClient = Depends(get_bus)) -> ReloadResponse:
    if not bus.publish(RELOAD_TOPIC, "{}"):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Reload request not published")
    return ReloadResponse(status="requested", topic=RELOAD_TOPIC)
