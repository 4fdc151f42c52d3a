import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..services.errors import ValidationFailed
from ..services.geofence import _is_finite
from ..services.time_rules import parse_occurred_at, ensure_utc


# Enums
class GeofenceEventType(str, Enum):
    enter = "enter"
    exit = "exit"


class TimeEntryEventType(str, Enum):
    clock_in = "clock_in"
    clock_out = "clock_out"
    manager_clock_out = "manager_clock_out"
    edit = "edit"


class EventSource(str, Enum):
    mobile = "mobile"
    web = "web"
    system = "system"


def _finite_coordinate(value):
    if value is None:
        return None
    if not _is_finite(value):
        raise ValueError("must be a finite number")
    return float(value)


# Inputs
class GeofenceEventIn(BaseModel):
    project_id: uuid.UUID
    event_type: GeofenceEventType
    occurred_at: datetime = Field(default=None, validate_default=True)
    lat: float
    lng: float
    time_entry_id: Optional[uuid.UUID] = None
    source: EventSource = EventSource.mobile

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _occurred_at(cls, v):
        return parse_occurred_at(v)

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def _coordinates(cls, v):
        if v is None:
            raise ValueError("is required")
        return _finite_coordinate(v)

    @field_validator("source", mode="before")
    @classmethod
    def _source(cls, v):
        return v or EventSource.mobile


class TimeEntryEventIn(BaseModel):
    time_entry_id: uuid.UUID
    event_type: TimeEntryEventType
    occurred_at: datetime = Field(default=None, validate_default=True)
    lat: Optional[float] = None
    lng: Optional[float] = None
    project_id: Optional[uuid.UUID] = None
    source: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _occurred_at(cls, v):
        return parse_occurred_at(v)

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def _coordinates(cls, v):
        return _finite_coordinate(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, v):
        return v if isinstance(v, dict) else {}

    @model_validator(mode="after")
    def _lat_lng_together(self):
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be provided together")
        return self


class NearbySitesIn(BaseModel):
    lat: float
    lng: float

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def _coordinates(cls, v):
        if v is None:
            raise ValueError("is required")
        return _finite_coordinate(v)


# Outputs
class GeofenceEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    business_id: uuid.UUID
    project_id: uuid.UUID
    employee_id: uuid.UUID
    time_entry_id: Optional[uuid.UUID] = None
    event_type: str
    occurred_at: datetime
    lat: float
    lng: float
    distance_m: Optional[int] = None
    inside: Optional[bool] = None
    source: str

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class TimeEntryEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    business_id: uuid.UUID
    time_entry_id: uuid.UUID
    employee_id: uuid.UUID
    event_type: str
    occurred_at: datetime
    lat: Optional[float] = None
    lng: Optional[float] = None
    distance_m: Optional[int] = None
    inside: Optional[bool] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="event_metadata")

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, v):
        return v or {}


class NearbySiteOut(BaseModel):
    project_id: uuid.UUID
    business_id: uuid.UUID
    name: str
    distance_m: int
    radius_m: float


class NearbySitesOut(BaseModel):
    match: Optional[NearbySiteOut] = None
    candidates: List[NearbySiteOut] = Field(default_factory=list)
    ambiguous: bool = False


# Field-specific codes; anything else is INVALID_PAYLOAD
_MISSING_CODES = {
    "project_id": "PROJECT_ID_REQUIRED",
    "time_entry_id": "TIME_ENTRY_ID_REQUIRED",
}
_FIELD_CODES = {
    "lat": "INVALID_COORDINATES",
    "lng": "INVALID_COORDINATES",
    "occurred_at": "INVALID_OCCURRED_AT",
}

M = TypeVar("M", bound=BaseModel)


def parse_payload(model: Type[M], payload: Any) -> M:
    """Validate a raw JSON body into `model`, raising ValidationFailed with a field-level reason."""
    if not isinstance(payload, dict):
        raise ValidationFailed("Invalid JSON body.")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        err = e.errors()[0]
        loc = err.get("loc") or ()
        field = str(loc[0]) if loc else None
        if err.get("type") == "missing" and field in _MISSING_CODES:
            raise ValidationFailed(f"{field} is required.", code=_MISSING_CODES[field], field=field)
        if field is None and "lat and lng" in err.get("msg", ""):
            raise ValidationFailed("lat and lng must be provided together.", code="INVALID_COORDINATES")
        code = _FIELD_CODES.get(field, "INVALID_PAYLOAD")
        message = err.get("msg", "Invalid payload.")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        raise ValidationFailed(f"{field}: {message}" if field else message, code=code, field=field)
