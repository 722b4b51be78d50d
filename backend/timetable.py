"""
Weekly timetable: which subject is being taught at a given moment.

Slots are half-open minute ranges [start, end). A slot ending at 10:00 and
another starting at 10:00 on the same day do not overlap, and at 10:00 only
the second one is active.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from itertools import combinations
from typing import Iterable, List, Optional

from errors import InvalidInput, OverlapConflict
from models import TimetableSlot

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


class DayOfWeek(str, Enum):
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @classmethod
    def of(cls, moment: datetime) -> "DayOfWeek":
        return list(cls)[moment.weekday()]


def local_time(moment: datetime) -> datetime:
    """Naive local wall-clock time for ``moment``; aware values are converted first."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


def parse_time(value: str) -> int:
    """Parse "HH:MM" into minutes past midnight. "24:00" is accepted as end of day."""
    try:
        hours, minutes = value.strip().split(":")
        hours, minutes = int(hours), int(minutes)
    except (AttributeError, ValueError) as e:
        raise InvalidInput(f"Invalid time {value!r}, expected HH:MM") from e

    if not (0 <= minutes < 60) or not (0 <= hours < 24 or (hours == 24 and minutes == 0)):
        raise InvalidInput(f"Invalid time {value!r}, expected HH:MM")
    return hours * 60 + minutes


def format_time(minute: int) -> str:
    return f"{minute // 60:02d}:{minute % 60:02d}"


@dataclass(frozen=True)
class ScheduledSlot:
    subject_code: str
    subject_name: str
    day: DayOfWeek
    start_minute: int
    end_minute: int

    @classmethod
    def from_strings(cls, subject_code: str, subject_name: str, day: str,
                     start_time: str, end_time: str) -> "ScheduledSlot":
        try:
            day_of_week = DayOfWeek(day)
        except ValueError as e:
            raise InvalidInput(f"Invalid day {day!r}") from e
        return cls(
            subject_code=subject_code,
            subject_name=subject_name,
            day=day_of_week,
            start_minute=parse_time(start_time),
            end_minute=parse_time(end_time),
        )

    @property
    def start_time(self) -> str:
        return format_time(self.start_minute)

    @property
    def end_time(self) -> str:
        return format_time(self.end_minute)

    def contains(self, minute: int) -> bool:
        return self.start_minute <= minute < self.end_minute

    def overlaps(self, other: "ScheduledSlot") -> bool:
        return (self.day == other.day
                and self.start_minute < other.end_minute
                and other.start_minute < self.end_minute)

    def describe(self) -> str:
        return f"{self.day.value} {self.start_time}-{self.end_time}"

    def to_dict(self) -> dict:
        return {
            "code": self.subject_code,
            "name": self.subject_name,
            "day": self.day.value,
            "startTime": self.start_time,
            "endTime": self.end_time,
        }


def validate_slots(slots: Iterable[ScheduledSlot]) -> List[ScheduledSlot]:
    """Check each slot and reject any same-day overlap. Returns the slots as a list."""
    slots = list(slots)
    for slot in slots:
        if not (slot.subject_code or "").strip():
            raise InvalidInput("Subject code must not be empty")
        if not 0 <= slot.start_minute < slot.end_minute <= MINUTES_PER_DAY:
            raise InvalidInput(f"Slot {slot.subject_code} must start before it ends ({slot.describe()})")

    for first, second in combinations(slots, 2):
        if first.overlaps(second):
            raise OverlapConflict(first, second)
    return slots


def _to_slot(row: TimetableSlot) -> ScheduledSlot:
    return ScheduledSlot(
        subject_code=row.subject_code,
        subject_name=row.subject_name,
        day=DayOfWeek(row.day),
        start_minute=row.start_minute,
        end_minute=row.end_minute,
    )


class Timetable:
    """The single active timetable, stored as one table of slots."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def replace(self, slots: Iterable[ScheduledSlot]) -> List[ScheduledSlot]:
        """Validate and swap in a whole new timetable. Nothing changes on failure."""
        slots = validate_slots(slots)

        db = self._session_factory()
        try:
            db.query(TimetableSlot).delete()
            for slot in slots:
                db.add(TimetableSlot(
                    subject_code=slot.subject_code,
                    subject_name=slot.subject_name,
                    day=slot.day.value,
                    start_minute=slot.start_minute,
                    end_minute=slot.end_minute,
                ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Timetable replaced with %d slots", len(slots))
        return slots

    def slots(self) -> List[ScheduledSlot]:
        db = self._session_factory()
        try:
            rows = db.query(TimetableSlot).all()
        finally:
            db.close()
        order = list(DayOfWeek)
        return sorted((_to_slot(r) for r in rows), key=lambda s: (order.index(s.day), s.start_minute))

    def current_slot(self, now: datetime) -> Optional[ScheduledSlot]:
        """The slot running at ``now``, or None when no class is scheduled."""
        now = local_time(now)
        day = DayOfWeek.of(now)
        minute = now.hour * 60 + now.minute

        db = self._session_factory()
        try:
            rows = db.query(TimetableSlot).filter(
                TimetableSlot.day == day.value,
                TimetableSlot.start_minute <= minute,
                TimetableSlot.end_minute > minute,
            ).all()
        finally:
            db.close()

        return _to_slot(rows[0]) if rows else None
