"""
Request and response models for the HTTP surface.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WriteResponse(BaseModel):
    ok: bool
    versionstamp: str


class EntryResponse(BaseModel):
    path: str
    value: Any
    versionstamp: str


class ListResponse(BaseModel):
    items: List[EntryResponse]
    count: int
    has_more: bool


class PingResponse(BaseModel):
    ok: bool
    entity: str
    last_ping: float


class NotifyResponse(BaseModel):
    ok: bool
    format: str
    silent: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    backend: str
    db_health: bool
    deadman_enabled: bool
    scheduler: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    detail: str
    error_type: str
    debug: Optional[str] = None
