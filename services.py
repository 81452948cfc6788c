"""Queue business logic.

``QueueService`` owns the rules of the walk-in queue: serial numbers are
handed out per calendar day starting at 1, the lowest waiting serial of the
day is called next, and a visit moves ``waiting -> in-progress ->
completed`` and never back.  Storage goes through ``QueueRepository``;
nothing here keeps state between calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from itertools import groupby
from typing import Any, Callable, Dict, List, Optional, Tuple

import config
from errors import NotFoundError, RateLimitedError, ValidationError
from events import QueueEvents
from models import ClinicProfile, Visit, VisitEvent, VisitStatus
from repository import QueueRepository

logger = logging.getLogger(__name__)

CLOSED_LABEL = "Clinic is currently closed"


@dataclass
class WaitEstimate:
    patients_ahead: int
    minutes: int
    label: str


@dataclass
class ClinicStatus:
    is_open: bool
    session: Optional[str]
    label: str


def format_wait(minutes: int) -> str:
    """Render minutes as "45 minutes", "1 hr 15 mins" or "2 hrs"."""
    if minutes < 60:
        return f"{minutes} minutes"
    hours, rest = divmod(minutes, 60)
    label = f"{hours} hr{'s' if hours > 1 else ''}"
    if rest:
        label += f" {rest} min{'s' if rest > 1 else ''}"
    return label


def _hour(hhmm: str) -> int:
    return int(hhmm.split(":")[0])


def is_clinic_open(now: datetime, profile: ClinicProfile) -> ClinicStatus:
    """Check ``now`` against the morning, then the evening window.

    Only hours are compared: with a 09:00-12:30 window the clinic reads as
    closed from 12:00.
    """
    windows = (
        ("morning", profile.morning_start, profile.morning_end),
        ("evening", profile.evening_start, profile.evening_end),
    )
    for session, start, end in windows:
        if not start or not end:
            continue
        if _hour(start) <= now.hour < _hour(end):
            return ClinicStatus(True, session, f"{session.title()}: {start} - {end}")
    return ClinicStatus(False, None, CLOSED_LABEL)


class QueueService:
    def __init__(
        self,
        repository: QueueRepository,
        events: Optional[QueueEvents] = None,
        min_contact_length: int = config.MIN_CONTACT_LENGTH,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.repository = repository
        self.events = events or QueueEvents()
        self.min_contact_length = min_contact_length
        self.clock = clock

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock()

    # ----- queue operations -----

    def register(self, name: str, contact: str, now: Optional[datetime] = None) -> Visit:
        """Register a walk-in patient and return the visit with its serial number."""
        name = (name or "").strip()
        contact = (contact or "").strip()
        if not name:
            raise ValidationError("Please enter your name.")
        if len(contact) < self.min_contact_length:
            raise ValidationError(
                f"Please enter a valid mobile number (at least {self.min_contact_length} characters)."
            )
        if not self.events.allow_registration(contact):
            raise RateLimitedError("Too many registrations. Please wait a few minutes before trying again.")

        visit = self.repository.create_visit(name, contact, self._now(now))
        self.events.record_registration(contact)
        logger.info("Registered %s for %s: your serial number is %d", visit.id, visit.service_day, visit.serial_number)
        self.events.publish("registered", visit)
        return visit

    def call_next(self, now: Optional[datetime] = None) -> Optional[Visit]:
        """Call the lowest waiting serial of today, or return None if nobody waits."""
        now = self._now(now)
        visit = self.repository.claim_next(now.date(), now)
        if visit is None:
            logger.info("No waiting patients for %s", now.date())
            return None
        logger.info("Now serving serial #%d (%s)", visit.serial_number, visit.id)
        self.events.publish("called", visit)
        return visit

    def complete(self, visit_id: Optional[str] = None, now: Optional[datetime] = None) -> Visit:
        """Complete ``visit_id``, or today's current visit when no id is given."""
        now = self._now(now)
        if visit_id is None:
            current = self.repository.get_current(now.date())
            if current is None:
                raise NotFoundError("No patient is currently in progress.")
            visit_id = current.id
        visit = self.repository.mark_completed(visit_id, now)
        logger.info("Completed serial #%d (%s)", visit.serial_number, visit.id)
        self.events.publish("completed", visit)
        return visit

    def today(self, now: Optional[datetime] = None) -> date:
        return self._now(now).date()

    def current(self, now: Optional[datetime] = None) -> Optional[Visit]:
        return self.repository.get_current(self._now(now).date())

    def estimate_wait(self, target_serial: int, now: Optional[datetime] = None) -> WaitEstimate:
        """Linear estimate: waiting patients ahead times the average consultation."""
        day = self._now(now).date()
        ahead = self.repository.count_waiting_before(day, target_serial)
        minutes = ahead * self.repository.get_profile().avg_consultation_minutes
        return WaitEstimate(ahead, minutes, format_wait(minutes))

    def clinic_status(self, now: Optional[datetime] = None) -> ClinicStatus:
        return is_clinic_open(self._now(now), self.repository.get_profile())

    # ----- read models -----

    def get_visit(self, visit_id: str) -> Visit:
        visit = self.repository.get_visit(visit_id)
        if visit is None:
            raise NotFoundError(f"Visit {visit_id} not found.")
        return visit

    def today_summary(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = self._now(now)
        counts = self.repository.count_by_status(now.date())
        return {
            "day": now.date(),
            "waiting_count": counts[VisitStatus.waiting],
            "completed_count": counts[VisitStatus.completed],
            "next_serial_number": sum(counts.values()) + 1,
            "current": self.repository.get_current(now.date()),
            "clinic_status": self.clinic_status(now),
        }

    def history(self) -> List[Tuple[date, List[Visit]]]:
        """All visits grouped by day, newest day first."""
        visits = self.repository.list_visits()
        by_day = [(day, list(group)) for day, group in groupby(visits, key=lambda v: v.service_day)]
        by_day.reverse()
        return by_day

    def timeline(self, limit: int = 50) -> List[Tuple[VisitEvent, Visit]]:
        return self.repository.list_events(limit)

    # ----- clinic profile -----

    def profile(self) -> ClinicProfile:
        return self.repository.get_profile()

    def update_profile(self, changes: Dict[str, Any]) -> ClinicProfile:
        minutes = changes.get("avg_consultation_minutes")
        if minutes is not None and minutes < 1:
            raise ValidationError("Average consultation time must be at least 1 minute.")
        for session in ("morning", "evening"):
            start_key, end_key = f"{session}_start", f"{session}_end"
            if (start_key in changes) != (end_key in changes):
                raise ValidationError(f"Set both the start and end of the {session} window.")
        profile = self.repository.update_profile(changes)
        logger.info("Clinic profile updated: %s", ", ".join(sorted(changes)) or "no changes")
        return profile
