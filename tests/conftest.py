import os
import tempfile
from datetime import datetime, timedelta

import numpy as np
import pytest
from sqlalchemy.orm import sessionmaker

# The application module builds its engine and log handler at import time
_TMP_DIR = tempfile.mkdtemp(prefix="attendance-tests-")
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(_TMP_DIR, "api.db"))
os.environ.setdefault("LOG_FILE", os.path.join(_TMP_DIR, "requests.log"))

from attendance import AttendanceService  # noqa: E402
from database import make_engine  # noqa: E402
from embedding_store import EmbeddingStore  # noqa: E402
from ledger import AttendanceLedger  # noqa: E402
from models import Base  # noqa: E402
from recognition import Detection  # noqa: E402
from timetable import ScheduledSlot, Timetable  # noqa: E402

# 2024-01-01 was a Monday
MONDAY_0930 = datetime(2024, 1, 1, 9, 30)


class FakeTimer:
    """Stands in for threading.Timer; tests fire it by hand."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class TimerRecorder:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    @property
    def last(self):
        return self.timers[-1]


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeDetector:
    """Returns whatever faces the test put in front of the camera."""

    def __init__(self, faces=None):
        self.faces = list(faces or [])
        self.calls = 0

    def detect_faces(self, image):
        self.calls += 1
        return list(self.faces)


def face(*values, bbox=None):
    return Detection(bbox=bbox or [10, 10, 100, 100], embedding=np.array(values, dtype=np.float64))


def cs101_monday():
    return ScheduledSlot.from_strings("CS101", "Data Structures", "Monday", "09:00", "10:00")


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return EmbeddingStore(session_factory)


@pytest.fixture
def timetable(session_factory):
    return Timetable(session_factory)


@pytest.fixture
def ledger(session_factory):
    return AttendanceLedger(session_factory)


@pytest.fixture
def service(store, timetable, ledger):
    return AttendanceService(store, timetable, ledger)


@pytest.fixture
def timers():
    return TimerRecorder()


@pytest.fixture
def clock():
    return FakeClock(MONDAY_0930)
