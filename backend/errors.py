"""
Exception taxonomy for the attendance service.
Each error carries the HTTP status the API maps it to.
"""


class AttendanceError(Exception):
    """Base exception for the attendance service."""
    status_code = 400


class InvalidInput(AttendanceError):
    """Raised for malformed embeddings, vector length mismatches and bad slots."""
    status_code = 400


class NoFaceDetected(AttendanceError):
    """Raised when registration finds no face in the image."""
    status_code = 422

    def __init__(self, message: str = "No face detected. Please face the camera."):
        super().__init__(message)


class MultipleFacesDetected(AttendanceError):
    """Raised when registration finds more than one face."""
    status_code = 422

    def __init__(self, count: int):
        super().__init__(f"Multiple faces detected ({count}). Please capture with a single face.")
        self.count = count


class NoActiveClass(AttendanceError):
    """Raised when no timetable slot is active at the requested time."""
    status_code = 409

    def __init__(self, at=None):
        when = f" at {at:%A %H:%M}" if at is not None else ""
        super().__init__(f"There is no active class{when} according to the timetable")
        self.at = at


class OverlapConflict(AttendanceError):
    """Raised when two timetable slots on the same day overlap."""
    status_code = 409

    def __init__(self, first, second):
        super().__init__(
            f"Slot {first.subject_code} ({first.describe()}) overlaps "
            f"{second.subject_code} ({second.describe()})"
        )
        self.first = first
        self.second = second


class SessionNotFound(AttendanceError):
    """Raised when a live session id is unknown or already closed."""
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id
