"""Pydantic schemas for request bodies and responses."""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, model_validator

from models import ClinicProfile, VisitStatus

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class RegisterRequest(BaseModel):
    name: str
    contact: str


class CompleteRequest(BaseModel):
    visit_id: Optional[str] = None


class VisitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    contact: str
    serial_number: int
    service_day: date
    status: VisitStatus
    created_at: datetime
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WaitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    patients_ahead: int
    minutes: int
    label: str


class RegisterResponse(BaseModel):
    visit: VisitOut
    wait: Optional[WaitOut] = None
    message: str


class VisitDetail(BaseModel):
    visit: VisitOut
    wait: Optional[WaitOut] = None


class CallNextResponse(BaseModel):
    visit: Optional[VisitOut] = None
    message: str


class ClinicStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    is_open: bool
    session: Optional[str] = None
    label: str


class TodaySummary(BaseModel):
    day: date
    waiting_count: int
    completed_count: int
    next_serial_number: int
    current: Optional[VisitOut] = None
    clinic_status: ClinicStatusOut


class HistoryDay(BaseModel):
    day: date
    visits: List[VisitOut]


class TimelineEntry(BaseModel):
    event_type: str
    at: datetime
    visit_id: str
    serial_number: int
    name: str


class Window(BaseModel):
    start: str = Field(pattern=HHMM_PATTERN)
    end: str = Field(pattern=HHMM_PATTERN)

    @model_validator(mode="after")
    def start_before_end(self) -> "Window":
        if self.start >= self.end:
            raise ValueError("window start must be before its end")
        return self


def _window(start: Optional[str], end: Optional[str]) -> Optional[Window]:
    if start and end:
        return Window(start=start, end=end)
    return None


class ProfileOut(BaseModel):
    doctor_name: str
    clinic_name: str
    morning: Optional[Window] = None
    evening: Optional[Window] = None
    avg_consultation_minutes: int

    @classmethod
    def from_model(cls, profile: ClinicProfile) -> "ProfileOut":
        return cls(
            doctor_name=profile.doctor_name,
            clinic_name=profile.clinic_name,
            morning=_window(profile.morning_start, profile.morning_end),
            evening=_window(profile.evening_start, profile.evening_end),
            avg_consultation_minutes=profile.avg_consultation_minutes,
        )


class ProfileUpdate(BaseModel):
    """Partial update.  Omitted fields keep their value; a window sent as
    null removes it."""

    doctor_name: Optional[str] = Field(default=None, min_length=1)
    clinic_name: Optional[str] = Field(default=None, min_length=1)
    morning: Optional[Window] = None
    evening: Optional[Window] = None
    avg_consultation_minutes: Optional[PositiveInt] = None

    def to_changes(self) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        for field in ("doctor_name", "clinic_name", "avg_consultation_minutes"):
            value = getattr(self, field)
            if field in self.model_fields_set and value is not None:
                changes[field] = value
        for session in ("morning", "evening"):
            if session in self.model_fields_set:
                window = getattr(self, session)
                changes[f"{session}_start"] = window.start if window else None
                changes[f"{session}_end"] = window.end if window else None
        return changes
