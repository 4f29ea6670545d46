# app/models/schemas.py
"""
Pydantic schemas for sessions, routes, events and API inputs/outputs.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # rows and sessions written before timestamps carried an offset are UTC
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class VoiceSettings(BaseModel):
    voice: Optional[str] = None
    language: Optional[str] = None


class RouteEntry(BaseModel):
    number: str
    flow_id: str
    flow_name: Optional[str] = None
    voice_settings: VoiceSettings = Field(default_factory=VoiceSettings)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("updated_at")
    @classmethod
    def updated_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class RouteIn(BaseModel):
    number: str = Field(..., min_length=3, description="Destination number, e.g. +15550002222")
    flow_id: str
    flow_name: Optional[str] = None
    voice_settings: VoiceSettings = Field(default_factory=VoiceSettings)


class Session(BaseModel):
    """Per-call context. Only the session store writes these."""

    call_id: str
    flow_id: str
    flow_version: int
    current_node: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    awaiting_input: bool = False
    attempts: int = 0
    terminal: bool = False
    status: str = "initiated"
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    voice: Optional[str] = None
    language: Optional[str] = None
    steps: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "last_activity")
    @classmethod
    def times_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def touch(self) -> "Session":
        return self.model_copy(update={"last_activity": utcnow()})


class FlowSummary(BaseModel):
    flow_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    active_version: int
    versions: List[int]
    entry_node: Optional[str] = None
    node_count: int


class CallEvent(BaseModel):
    type: str
    call_id: Optional[str] = None
    flow_id: Optional[str] = None
    node_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())
