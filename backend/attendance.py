"""
Attendance workflows tying matching, the timetable and the ledger together.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from embedding_store import EmbeddingStore
from errors import MultipleFacesDetected, NoActiveClass, NoFaceDetected
from ledger import AttendanceEvent, AttendanceLedger, MarkResult
from recognition import MATCH_THRESHOLD, Detection, MatchResult, match
from timetable import ScheduledSlot, Timetable, local_time

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Confirmation:
    """Outcome of confirm_attendance together with the class it was recorded for."""
    result: MarkResult
    slot: ScheduledSlot
    event: AttendanceEvent


class AttendanceService:
    def __init__(self, store: EmbeddingStore, timetable: Timetable, ledger: AttendanceLedger,
                 threshold: float = MATCH_THRESHOLD):
        self.store = store
        self.timetable = timetable
        self.ledger = ledger
        self.threshold = threshold

    def identify(self, probe) -> MatchResult:
        """Match a probe embedding against every registered student."""
        return match(probe, self.store.all(), self.threshold)

    def confirm_attendance(self, usn: str, now: datetime) -> Confirmation:
        """
        Mark ``usn`` present for the subject scheduled at ``now``.

        ``now`` is read as local time; aware values are converted first.
        Raises NoActiveClass when nothing is scheduled; the ledger is left
        untouched. A second mark for the same subject and day comes back as
        ALREADY_MARKED.
        """
        now = local_time(now)
        slot = self.timetable.current_slot(now)
        if slot is None:
            logger.info("No active class for %s at %s", usn, now.isoformat(timespec="minutes"))
            raise NoActiveClass(now)

        event = AttendanceEvent(
            identity_id=usn,
            subject_code=slot.subject_code,
            date=now.date(),
            time_of_mark=now,
        )
        return Confirmation(self.ledger.append(event), slot, event)

    def register_face(self, usn: str, detections: Sequence[Detection], name: Optional[str] = None,
                      photo_data: Optional[str] = None) -> bool:
        """
        Register the single face in ``detections`` under ``usn``.

        Registration needs exactly one face; the store is not touched otherwise.
        Returns True when a new student was created.
        """
        if not detections:
            raise NoFaceDetected()
        if len(detections) > 1:
            raise MultipleFacesDetected(len(detections))
        return self.store.upsert(usn, detections[0].embedding, name=name, photo_data=photo_data)
