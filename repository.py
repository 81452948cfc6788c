"""Database access for the clinic queue.

All reads and writes of visits, events and the clinic profile go through
``QueueRepository``.  Each public method runs in its own session and
transaction; any SQLAlchemy failure is rolled back, logged and re-raised as
``PersistenceError`` so callers never see a half-applied change.

Two constraints on the ``visit`` table keep the queue consistent when
several requests race: ``(service_day, serial_number)`` is unique, and at
most one visit per day may be ``in-progress`` (a partial unique index).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

import config
from errors import AlreadyInProgressError, NotFoundError, PersistenceError
from models import ClinicProfile, EventType, Visit, VisitEvent, VisitStatus

logger = logging.getLogger(__name__)

PROFILE_ID = 1


def get_engine(url: str = config.DATABASE_URL) -> Engine:
    """Return an engine for ``url``.  SQLite connections may cross threads."""
    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=config.SQL_ECHO, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """Create tables if they do not exist and seed the clinic profile."""
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        if session.get(ClinicProfile, PROFILE_ID) is None:
            session.add(ClinicProfile(id=PROFILE_ID))
            session.commit()
            logger.info("Seeded default clinic profile")


class QueueRepository:
    def __init__(self, engine: Engine, registration_attempts: int = config.REGISTRATION_ATTEMPTS) -> None:
        self.engine = engine
        self.registration_attempts = max(1, registration_attempts)

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        session = Session(self.engine)
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Database error while trying to %s: %s", action, exc)
            raise PersistenceError(f"Could not {action}. Please try again.") from exc
        finally:
            session.close()

    # ----- visits -----

    def create_visit(self, name: str, contact: str, created_at: datetime) -> Visit:
        """Insert a waiting visit with the next serial number of its day.

        The serial is the number of visits already registered that day plus
        one.  Counting and inserting share a transaction; if another
        registration took the same serial first, the unique constraint
        rejects ours and we count again.
        """
        day = created_at.date()
        for attempt in range(1, self.registration_attempts + 1):
            with self._session("register the patient") as session:
                serial = self._count_day(session, day) + 1
                visit = Visit(
                    name=name,
                    contact=contact,
                    serial_number=serial,
                    service_day=day,
                    created_at=created_at,
                )
                session.add(visit)
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    logger.warning(
                        "Serial #%d for %s was taken concurrently (attempt %d/%d)",
                        serial, day, attempt, self.registration_attempts,
                    )
                    continue
                session.add(VisitEvent(visit_id=visit.id, event_type=EventType.registered, at=created_at))
                try:
                    session.commit()
                except SQLAlchemyError as exc:
                    session.rollback()
                    logger.error("Commit of registration serial #%d for %s failed: %s", serial, day, exc)
                    raise PersistenceError(
                        "Registration may or may not have been saved. "
                        "Check today's queue before registering again.",
                        retryable=False,
                    ) from exc
                session.refresh(visit)
                return visit
        raise PersistenceError(
            f"Could not allocate a serial number for {day} after {self.registration_attempts} attempts."
        )

    def get_visit(self, visit_id: str) -> Optional[Visit]:
        with self._session("load the visit") as session:
            return session.get(Visit, visit_id)

    def list_visits(self, day: Optional[date] = None, status: Optional[VisitStatus] = None) -> List[Visit]:
        """Visits filtered by day and/or status, ordered by day then serial."""
        with self._session("list visits") as session:
            stmt = select(Visit)
            if day is not None:
                stmt = stmt.where(Visit.service_day == day)
            if status is not None:
                stmt = stmt.where(Visit.status == status)
            stmt = stmt.order_by(Visit.service_day, Visit.serial_number)
            return list(session.exec(stmt).all())

    def get_current(self, day: date) -> Optional[Visit]:
        with self._session("load the current patient") as session:
            return self._current(session, day)

    def count_by_status(self, day: date) -> Dict[VisitStatus, int]:
        with self._session("count today's visits") as session:
            rows = session.exec(
                select(Visit.status, func.count(Visit.id))
                .where(Visit.service_day == day)
                .group_by(Visit.status)
            ).all()
        counts = {status: 0 for status in VisitStatus}
        for status, count in rows:
            counts[VisitStatus(status)] = count
        return counts

    def count_waiting_before(self, day: date, serial_number: int) -> int:
        with self._session("estimate the wait") as session:
            return session.exec(
                select(func.count(Visit.id)).where(
                    Visit.service_day == day,
                    Visit.status == VisitStatus.waiting,
                    Visit.serial_number < serial_number,
                )
            ).one()

    def claim_next(self, day: date, called_at: datetime) -> Optional[Visit]:
        """Move the lowest waiting serial of ``day`` to in-progress.

        Returns None when nobody is waiting.  Raises AlreadyInProgressError
        while another visit of the day is in progress.
        """
        with self._session("call the next patient") as session:
            while True:
                current = self._current(session, day)
                if current is not None:
                    raise AlreadyInProgressError(
                        f"Serial #{current.serial_number} ({current.name}) is still in progress. "
                        "Complete the current appointment first."
                    )
                candidate = session.exec(
                    select(Visit)
                    .where(Visit.service_day == day, Visit.status == VisitStatus.waiting)
                    .order_by(Visit.serial_number)
                    .limit(1)
                ).first()
                if candidate is None:
                    return None
                try:
                    result = session.execute(
                        update(Visit)
                        .where(Visit.id == candidate.id, Visit.status == VisitStatus.waiting)
                        .values(status=VisitStatus.in_progress, called_at=called_at)
                    )
                    if result.rowcount != 1:
                        # Someone else moved this visit; look again.
                        session.rollback()
                        continue
                    session.add(VisitEvent(visit_id=candidate.id, event_type=EventType.called, at=called_at))
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    raise AlreadyInProgressError(
                        "Another patient was called at the same moment. Complete them first."
                    ) from exc
                session.refresh(candidate)
                return candidate

    def mark_completed(self, visit_id: str, completed_at: datetime) -> Visit:
        with self._session("complete the appointment") as session:
            result = session.execute(
                update(Visit)
                .where(Visit.id == visit_id, Visit.status == VisitStatus.in_progress)
                .values(status=VisitStatus.completed, completed_at=completed_at)
            )
            if result.rowcount != 1:
                session.rollback()
                visit = session.get(Visit, visit_id)
                if visit is None:
                    raise NotFoundError(f"Visit {visit_id} not found.")
                raise NotFoundError(
                    f"Serial #{visit.serial_number} is {visit.status.value}, not in progress."
                )
            session.add(VisitEvent(visit_id=visit_id, event_type=EventType.completed, at=completed_at))
            session.commit()
            return session.get(Visit, visit_id)

    def list_events(self, limit: int = 50) -> List[Tuple[VisitEvent, Visit]]:
        with self._session("load the timeline") as session:
            rows = session.exec(
                select(VisitEvent, Visit)
                .join(Visit, VisitEvent.visit_id == Visit.id)
                .order_by(VisitEvent.at.desc(), VisitEvent.id.desc())
                .limit(limit)
            ).all()
            return [(event, visit) for event, visit in rows]

    # ----- clinic profile -----

    def get_profile(self) -> ClinicProfile:
        with self._session("load the clinic profile") as session:
            profile = session.get(ClinicProfile, PROFILE_ID)
            if profile is None:
                raise NotFoundError("Clinic profile has not been initialised.")
            return profile

    def update_profile(self, changes: Dict[str, Any]) -> ClinicProfile:
        """Apply ``changes`` to the profile row; other columns are untouched."""
        with self._session("save the clinic profile") as session:
            profile = session.get(ClinicProfile, PROFILE_ID)
            if profile is None:
                profile = ClinicProfile(id=PROFILE_ID)
                session.add(profile)
            for field, value in changes.items():
                setattr(profile, field, value)
            session.commit()
            session.refresh(profile)
            return profile

    def ping(self) -> None:
        with self._session("reach the database") as session:
            session.exec(select(func.count(ClinicProfile.id))).one()

    # ----- helpers sharing the caller's session -----

    @staticmethod
    def _count_day(session: Session, day: date) -> int:
        return session.exec(select(func.count(Visit.id)).where(Visit.service_day == day)).one()

    @staticmethod
    def _current(session: Session, day: date) -> Optional[Visit]:
        return session.exec(
            select(Visit).where(Visit.service_day == day, Visit.status == VisitStatus.in_progress)
        ).first()
