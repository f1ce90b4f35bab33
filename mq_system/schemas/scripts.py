from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ScriptBody(BaseModel):
    body: str = Field(default="", max_length=1_000_000)


class ScriptSummary(BaseModel):
    name: str
    size: int


class ScriptResponse(BaseModel):
    name: str
    body: str
    topics: list[str] = Field(default_factory=list)


class ReloadResponse(BaseModel):
    status: Literal["requested"]
    topic: str
