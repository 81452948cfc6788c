"""SQLModel tables for the clinic queue.

``Visit`` rows are keyed by service day and serial number.  ``VisitEvent``
records each status transition of a visit, and ``ClinicProfile`` is a
single row with the doctor, opening windows and average consultation time.
Timestamps are naive local time.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class VisitStatus(str, Enum):
    """Possible statuses for a visit.  Only ever moves forward."""

    waiting = "waiting"
    in_progress = "in-progress"
    completed = "completed"


# Enum columns store member names, so the partial index matches on the name.
_IN_PROGRESS_ONLY = text("status = 'in_progress'")


def new_visit_id() -> str:
    return uuid.uuid4().hex


class Visit(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("service_day", "serial_number", name="uq_visit_day_serial"),
        Index(
            "uq_visit_day_in_progress",
            "service_day",
            unique=True,
            sqlite_where=_IN_PROGRESS_ONLY,
            postgresql_where=_IN_PROGRESS_ONLY,
        ),
    )

    id: str = Field(default_factory=new_visit_id, primary_key=True)
    name: str
    contact: str = Field(index=True)
    serial_number: int
    service_day: date = Field(index=True)
    status: VisitStatus = Field(default=VisitStatus.waiting, index=True)
    created_at: datetime = Field(default_factory=datetime.now, sa_column=Column(DateTime(timezone=False), nullable=False))
    called_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=False), nullable=True))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=False), nullable=True))


class EventType(str, Enum):
    registered = "registered"
    called = "called"
    completed = "completed"


class VisitEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    visit_id: str = Field(foreign_key="visit.id", index=True)
    event_type: EventType
    at: datetime = Field(default_factory=datetime.now, sa_column=Column(DateTime(timezone=False), nullable=False))


class ClinicProfile(SQLModel, table=True):
    id: Optional[int] = Field(default=1, primary_key=True)
    doctor_name: str = Field(default="Dr. John Doe")
    clinic_name: str = Field(default="Wellness Medical Center")
    morning_start: Optional[str] = Field(default="09:00")
    morning_end: Optional[str] = Field(default="12:00")
    evening_start: Optional[str] = Field(default="17:00")
    evening_end: Optional[str] = Field(default="20:00")
    avg_consultation_minutes: int = Field(default=15)
