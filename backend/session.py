"""
Live attendance sessions.

A SessionController follows one camera stream. Every sampled frame is
reduced to a face count and, for a single unheld face, a match against the
registered students. A match is held for HOLD_SECONDS; if nothing cancels
the hold, the student is marked present for the current class and the
session ignores samples for COOLDOWN_SECONDS before listening again.
"""
import logging
import math
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Union

from attendance import AttendanceService
from errors import NoActiveClass, SessionNotFound
from ledger import MarkResult
from recognition import Detection, MatchResult

logger = logging.getLogger(__name__)

# Seconds a recognised face is held before attendance is marked
HOLD_SECONDS = 5.0
# Seconds samples are ignored after a mark so the result can be shown
COOLDOWN_SECONDS = 2.0
# Only every Nth offered frame is run through detection and matching
SAMPLE_EVERY_N_FRAMES = 15


@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class Holding:
    identity_id: str
    since: datetime
    name = "holding"


@dataclass(frozen=True)
class Unmatched:
    name = "unmatched"


SessionState = Union[Idle, Holding, Unmatched]

IDLE = Idle()
UNMATCHED = Unmatched()


@dataclass
class SampleResult:
    """What happened to one offered frame or detection batch."""
    status: str  # skipped, busy, cooling_down, stale, no_face, multiple_faces, holding, matched, unmatched
    state: SessionState
    face_count: int = 0
    match: Optional[MatchResult] = None
    bbox: Optional[List[int]] = None

    @property
    def register_first(self) -> bool:
        return self.status == "unmatched"

    def to_dict(self) -> dict:
        # inf when nobody is registered, which JSON cannot carry
        distance = self.match.distance if self.match else None
        if distance is not None and math.isinf(distance):
            distance = None
        return {
            "status": self.status,
            "state": self.state.name,
            "face_count": self.face_count,
            "identity_id": self.match.identity_id if self.match else None,
            "distance": distance,
            "bbox": self.bbox,
            "register_first": self.register_first,
        }


@dataclass(frozen=True)
class ConfirmationOutcome:
    identity_id: str
    status: str  # marked, already_marked, no_active_class, error
    message: str
    at: datetime

    def to_dict(self) -> dict:
        return {
            "identity_id": self.identity_id,
            "status": self.status,
            "message": self.message,
            "at": self.at.isoformat(),
        }


class SessionController:
    """State machine for one live attendance session."""

    def __init__(
        self,
        session_id: str,
        service: AttendanceService,
        detector=None,
        hold_seconds: float = HOLD_SECONDS,
        cooldown_seconds: float = COOLDOWN_SECONDS,
        sample_every: int = SAMPLE_EVERY_N_FRAMES,
        clock: Callable[[], datetime] = datetime.now,
        timer_factory=threading.Timer,
    ):
        self.session_id = session_id
        self.hold_seconds = max(float(hold_seconds), 0.0)
        self.cooldown_seconds = max(float(cooldown_seconds), 0.0)
        self.sample_every = max(int(sample_every), 1)
        self._service = service
        self._detector = detector
        self._clock = clock
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._busy = threading.Lock()
        self._state: SessionState = IDLE
        self._timer = None
        self._generation = 0
        self._frame_count = 0
        self._resume_at: Optional[datetime] = None
        self._last_outcome: Optional[ConfirmationOutcome] = None
        self._closed = False

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def last_outcome(self) -> Optional[ConfirmationOutcome]:
        with self._lock:
            return self._last_outcome

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------
    def offer_frame(self, image) -> SampleResult:
        """Offer a raw frame; only every ``sample_every``-th one is processed."""
        if self._detector is None:
            raise RuntimeError("Session has no face detector")

        with self._lock:
            self._frame_count = (self._frame_count + 1) % self.sample_every
            if self._frame_count != 0:
                return SampleResult("skipped", self._state)

        return self._sample(lambda: self._detector.detect_faces(image))

    def submit_detections(self, detections: Sequence[Detection]) -> SampleResult:
        """Process detections produced outside the session (already sampled)."""
        return self._sample(lambda: detections)

    def _sample(self, detect) -> SampleResult:
        if not self._busy.acquire(blocking=False):
            return SampleResult("busy", self.state)
        try:
            now = self._clock()
            with self._lock:
                if self._closed:
                    raise SessionNotFound(self.session_id)
                if self._resume_at is not None and now < self._resume_at:
                    return SampleResult("cooling_down", self._state)
                self._resume_at = None
            return self._process(list(detect()), now)
        finally:
            self._busy.release()

    def _process(self, detections: List[Detection], now: datetime) -> SampleResult:
        count = len(detections)
        with self._lock:
            if count == 0:
                if isinstance(self._state, Holding):
                    self._generation += 1
                self._cancel_timer()
                self._state = IDLE
                return SampleResult("no_face", IDLE)

            bbox = detections[0].bbox if count == 1 else None
            if isinstance(self._state, Holding):
                return SampleResult("holding", self._state, count, bbox=bbox)
            if count > 1:
                return SampleResult("multiple_faces", self._state, count)
            generation = self._generation

        result = self._service.identify(detections[0].embedding)

        with self._lock:
            if generation != self._generation:
                # Reset or closed while matching
                return SampleResult("stale", self._state, count, result, bbox)

            if result.matched:
                self._state = Holding(result.identity_id, now)
                self._start_timer(result.identity_id)
                logger.info("[%s] Holding %s (distance %.3f)", self.session_id, result.identity_id, result.distance)
                return SampleResult("matched", self._state, count, result, bbox)

            self._state = UNMATCHED
            return SampleResult("unmatched", UNMATCHED, count, result, bbox)

    # ------------------------------------------------------------------
    # Countdown
    # ------------------------------------------------------------------
    def _start_timer(self, identity_id: str) -> None:
        self._cancel_timer()
        self._generation += 1
        timer = self._timer_factory(self.hold_seconds, self._on_hold_elapsed,
                                    args=(self._generation, identity_id))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_hold_elapsed(self, generation: int, identity_id: str) -> None:
        # The mark is written under the session lock so a reset or close
        # either lands before it (and nothing is written) or after it.
        with self._lock:
            state = self._state
            if (self._closed or generation != self._generation
                    or not isinstance(state, Holding) or state.identity_id != identity_id):
                return
            self._timer = None

            now = self._clock()
            try:
                confirmation = self._service.confirm_attendance(identity_id, now)
                result = confirmation.result
                message = (f"Marked attendance for {identity_id} in {confirmation.slot.subject_code}"
                           if result is MarkResult.MARKED
                           else f"{identity_id} is already marked for {confirmation.slot.subject_code}")
                outcome = ConfirmationOutcome(identity_id, result.value, message, now)
            except NoActiveClass as e:
                outcome = ConfirmationOutcome(identity_id, "no_active_class", str(e), now)
            except Exception as e:
                # Timer thread: every other failure becomes the error outcome
                logger.exception("[%s] Could not confirm attendance for %s", self.session_id, identity_id)
                outcome = ConfirmationOutcome(identity_id, "error", str(e), now)

            self._last_outcome = outcome
            self._state = IDLE
            self._resume_at = now + timedelta(seconds=self.cooldown_seconds)

        logger.info("[%s] %s", self.session_id, outcome.message)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def reset(self) -> None:
        """Cancel any pending mark and start listening again immediately."""
        with self._lock:
            self._generation += 1
            self._cancel_timer()
            self._state = IDLE
            self._resume_at = None

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._generation += 1
            self._cancel_timer()
            self._state = IDLE

    def snapshot(self) -> dict:
        with self._lock:
            state = self._state
            now = self._clock()
            return {
                "session_id": self.session_id,
                "state": state.name,
                "identity_id": state.identity_id if isinstance(state, Holding) else None,
                "since": state.since.isoformat() if isinstance(state, Holding) else None,
                "cooling_down": self._resume_at is not None and now < self._resume_at,
                "last_outcome": self._last_outcome.to_dict() if self._last_outcome else None,
                "sample_every": self.sample_every,
            }


class SessionRegistry:
    """Live sessions by id. Closing a session cancels its countdown."""

    def __init__(self, factory: Callable[..., SessionController]):
        self._factory = factory
        self._sessions: Dict[str, SessionController] = {}
        self._lock = threading.Lock()

    def create(self, **options) -> SessionController:
        session_id = uuid.uuid4().hex
        controller = self._factory(session_id, **options)
        with self._lock:
            self._sessions[session_id] = controller
        logger.info("Session %s opened", session_id)
        return controller

    def get(self, session_id: str) -> SessionController:
        with self._lock:
            controller = self._sessions.get(session_id)
        if controller is None:
            raise SessionNotFound(session_id)
        return controller

    def close(self, session_id: str) -> None:
        with self._lock:
            controller = self._sessions.pop(session_id, None)
        if controller is None:
            raise SessionNotFound(session_id)
        controller.close()
        logger.info("Session %s closed", session_id)

    def close_all(self) -> None:
        with self._lock:
            controllers = list(self._sessions.values())
            self._sessions.clear()
        for controller in controllers:
            controller.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
