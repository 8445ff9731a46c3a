# gamepulse/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# --- INGESTION ---

class EventSchema(BaseModel):
    """Shape check for one incoming event. Payload contents are not inspected."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_type: str = Field(min_length=1, max_length=50)
    subject_id: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("subject_id", "user_id", "device_id"),
    )
    payload: Dict[str, Any] = Field(default_factory=dict)
    client_timestamp: Optional[float] = None

    @field_validator("event_type", "subject_id", mode="before")
    @classmethod
    def strip_identifiers(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("payload", mode="before")
    @classmethod
    def default_payload(cls, value):
        return {} if value is None else value


class IngestAck(BaseModel):
    accepted: bool = True
    count: int


# --- SERVING ---

class AggregateResponse(BaseModel):
    view: str
    filters: Dict[str, Any]
    rows: List[Dict[str, Any]]
    last_updated: str


class TournamentCreate(BaseModel):
    id: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_\-]+$")
    name: str = Field(min_length=1, max_length=200)
    starts_at: datetime
    ends_at: datetime

    @field_validator("ends_at")
    @classmethod
    def ends_after_start(cls, value, info):
        starts_at = info.data.get("starts_at")
        if starts_at is not None and value <= starts_at:
            raise ValueError("ends_at must be after starts_at")
        return value


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    subject_id: str
    payload: Any
    client_timestamp: Optional[float] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
    status: str
    processing_attempts: int
    processing_error: Optional[str] = None
