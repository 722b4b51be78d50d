"""
Append-only attendance ledger.

Deduplication is enforced by the (usn, subject_code, date) unique constraint,
so two racing marks for the same student, subject and day cannot both land.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import List

from sqlalchemy.exc import IntegrityError

from errors import InvalidInput
from models import AttendanceRecord

logger = logging.getLogger(__name__)


class MarkResult(str, Enum):
    MARKED = "marked"
    ALREADY_MARKED = "already_marked"


@dataclass(frozen=True)
class AttendanceEvent:
    identity_id: str
    subject_code: str
    date: date
    time_of_mark: datetime

    def to_dict(self) -> dict:
        return {
            "usn": self.identity_id,
            "subject": self.subject_code,
            "date": self.date.isoformat(),
            "time": self.time_of_mark.strftime("%H:%M:%S"),
        }


def _to_event(row: AttendanceRecord) -> AttendanceEvent:
    return AttendanceEvent(
        identity_id=row.usn,
        subject_code=row.subject_code,
        date=row.date,
        time_of_mark=row.time_of_mark,
    )


class AttendanceLedger:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def append(self, event: AttendanceEvent) -> MarkResult:
        """Record ``event`` unless the student already has a mark for that subject and day."""
        if not event.identity_id or not event.subject_code:
            raise InvalidInput("Attendance needs a USN and a subject code")

        db = self._session_factory()
        try:
            db.add(AttendanceRecord(
                usn=event.identity_id,
                subject_code=event.subject_code,
                date=event.date,
                time_of_mark=event.time_of_mark,
            ))
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Attendance already marked: %s %s %s",
                        event.identity_id, event.subject_code, event.date)
            return MarkResult.ALREADY_MARKED
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Attendance marked: %s %s %s", event.identity_id, event.subject_code, event.date)
        return MarkResult.MARKED

    def query_by_date(self, day: date) -> List[AttendanceEvent]:
        """All marks for ``day`` in the order they were recorded."""
        db = self._session_factory()
        try:
            rows = db.query(AttendanceRecord)\
                .filter(AttendanceRecord.date == day)\
                .order_by(AttendanceRecord.id)\
                .all()
            return [_to_event(r) for r in rows]
        finally:
            db.close()
