import os
import base64
import binascii
import logging
from datetime import date, datetime
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Form, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
import numpy as np
import cv2

import recognition
import session as live
from attendance import AttendanceService
from database import SessionLocal, init_db
from embedding_store import EmbeddingStore
from errors import AttendanceError, InvalidInput
from ledger import AttendanceEvent, AttendanceLedger, MarkResult
from logger_helper import configure_logging, create_logging_middleware, setup_logger
from recognition import Detection, FaceRecognizer
from reports import attendance_csv, attendance_pdf
from session import SessionController, SessionRegistry
from timetable import ScheduledSlot, Timetable

# Configuration
MATCH_THRESHOLD = float(os.getenv("MATCH_THRESHOLD", str(recognition.MATCH_THRESHOLD)))
HOLD_SECONDS = float(os.getenv("HOLD_SECONDS", str(live.HOLD_SECONDS)))
COOLDOWN_SECONDS = float(os.getenv("COOLDOWN_SECONDS", str(live.COOLDOWN_SECONDS)))
SAMPLE_EVERY_N_FRAMES = int(os.getenv("SAMPLE_EVERY_N_FRAMES", str(live.SAMPLE_EVERY_N_FRAMES)))
FACE_MODEL_NAME = os.getenv("FACE_MODEL_NAME", "buffalo_l")
USE_GPU = os.getenv("USE_GPU", "1") == "1"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logger = logging.getLogger(__name__)

# Shared stores, one per process
embedding_store = EmbeddingStore(SessionLocal)
timetable = Timetable(SessionLocal)
ledger = AttendanceLedger(SessionLocal)
attendance_service = AttendanceService(embedding_store, timetable, ledger, threshold=MATCH_THRESHOLD)

# Face detector, loaded on startup unless one was injected
recognizer = None


def _new_session(session_id: str, sample_every: int = SAMPLE_EVERY_N_FRAMES) -> SessionController:
    return SessionController(
        session_id,
        attendance_service,
        detector=recognizer,
        hold_seconds=HOLD_SECONDS,
        cooldown_seconds=COOLDOWN_SECONDS,
        sample_every=sample_every,
    )


sessions = SessionRegistry(_new_session)


# Request Models
class RegisterIdentityRequest(BaseModel):
    usn: str
    embedding: list
    name: Optional[str] = None
    photo_data: Optional[str] = None

class MarkAttendanceRequest(BaseModel):
    usn: str
    subject_code: str
    date: date
    time: Optional[str] = None

class ConfirmAttendanceRequest(BaseModel):
    usn: str
    at: Optional[datetime] = None

class SubjectModel(BaseModel):
    code: str
    name: str
    day: str
    startTime: str
    endTime: str

class TimetableRequest(BaseModel):
    subjects: List[SubjectModel] = Field(default_factory=list)

class OpenSessionRequest(BaseModel):
    sample_every: Optional[int] = None

class FaceModel(BaseModel):
    embedding: list
    bbox: Optional[List[int]] = None

class DetectionsRequest(BaseModel):
    faces: List[FaceModel] = Field(default_factory=list)


def _load_recognizer():
    """Load InsightFace, on GPU when possible."""
    try:
        return FaceRecognizer(model_name=FACE_MODEL_NAME, use_gpu=USE_GPU)
    except ImportError as e:
        logger.warning("Face detector unavailable (%s); install the 'vision' extra for image endpoints", e)
        return None
    except Exception as e:
        if not USE_GPU:
            raise
        logger.warning("GPU initialization failed: %s. Falling back to CPU", e)
        return FaceRecognizer(model_name=FACE_MODEL_NAME, use_gpu=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize resources on startup."""
    global recognizer

    configure_logging()
    init_db()
    logger.info("Database initialized")

    if recognizer is None:
        recognizer = _load_recognizer()

    yield

    sessions.close_all()
    logger.info("Shutting down...")

app = FastAPI(
    title="Classroom Face Attendance",
    description="Face-matched classroom attendance with a weekly timetable",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

create_logging_middleware(app, setup_logger())


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def decode_image(image_base64: str) -> np.ndarray:
    """Decode a base64 (optionally data URL) image into a BGR array."""
    try:
        image_data = base64.b64decode(image_base64.split(',')[1] if ',' in image_base64 else image_base64)
    except (binascii.Error, ValueError) as e:
        raise InvalidInput("Invalid base64 image") from e

    nparr = np.frombuffer(image_data, np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR) if nparr.size else None
    if img is None:
        raise InvalidInput("Invalid image format")
    return img


def require_recognizer():
    if not recognizer:
        raise HTTPException(status_code=503, detail="Recognizer not initialized")
    return recognizer


@app.get("/")
async def root():
    return {"message": "Classroom Face Attendance API is running", "docs": "/docs"}

@app.get("/health")
async def health_check():
    """Health check endpoint with detector info."""
    info = recognizer.get_provider_info() if hasattr(recognizer, "get_provider_info") else {"providers": [], "using_gpu": False}
    return {
        "status": "running",
        "detector": recognizer is not None,
        "threshold": MATCH_THRESHOLD,
        "gpu_enabled": info["using_gpu"],
        "providers": info["providers"],
        "active_sessions": len(sessions),
    }

# Identity Endpoints

@app.post("/identities")
async def register_identity(request: RegisterIdentityRequest):
    """Register or update a student's reference embedding."""
    created = embedding_store.upsert(request.usn, request.embedding, name=request.name, photo_data=request.photo_data)
    return JSONResponse(
        status_code=201 if created else 200,
        content={
            "message": "Student registered" if created else "Student updated",
            "usn": request.usn.strip(),
            "created": created,
        },
    )

@app.post("/identities/capture")
async def capture_identity(
    usn: str = Form(...),
    image_base64: str = Form(...),
    name: Optional[str] = Form(None)
):
    """Register a student from a camera capture (base64 image). Exactly one face is required."""
    detector = require_recognizer()
    img = decode_image(image_base64)
    faces = detector.detect_faces(img)

    photo = image_base64 if image_base64.startswith("data:") else f"data:image/jpeg;base64,{image_base64}"
    created = attendance_service.register_face(usn, faces, name=name, photo_data=photo)
    return JSONResponse(
        status_code=201 if created else 200,
        content={
            "message": "Face registered successfully",
            "usn": usn.strip(),
            "created": created,
            "bbox": [int(v) for v in faces[0].bbox],
        },
    )

@app.get("/identities")
async def list_identities():
    """List registered students without their embeddings."""
    return {"students": embedding_store.list_identities()}

@app.get("/identities/embeddings")
async def list_embeddings():
    """All reference embeddings, for client-side matching."""
    return {
        "students": [
            {"usn": usn, "embedding": vector.tolist()}
            for usn, vector in embedding_store.all()
        ]
    }

@app.get("/identities/{usn}")
async def get_identity(usn: str):
    """One student's record, with the reference embedding for recognition."""
    student = embedding_store.get(usn.strip())
    if student is None:
        raise HTTPException(status_code=404, detail=f"Student {usn} not found")
    student["embedding"] = student["embedding"].tolist()
    return student

# Attendance Endpoints

def _parse_mark_time(day: date, value: Optional[str]) -> datetime:
    if not value:
        return datetime.combine(day, datetime.now().time().replace(microsecond=0))
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.combine(day, datetime.strptime(value, fmt).time())
        except ValueError:
            continue
    raise InvalidInput(f"Invalid time {value!r}, expected HH:MM[:SS]")

@app.post("/attendance")
async def mark_attendance(request: MarkAttendanceRequest):
    """Append an attendance mark; a repeat for the same student, subject and day is a no-op."""
    event = AttendanceEvent(
        identity_id=request.usn.strip(),
        subject_code=request.subject_code.strip(),
        date=request.date,
        time_of_mark=_parse_mark_time(request.date, request.time),
    )
    result = ledger.append(event)
    return JSONResponse(
        status_code=201 if result is MarkResult.MARKED else 200,
        content={"status": result.value, "record": event.to_dict()},
    )

@app.post("/attendance/confirm")
async def confirm_attendance(request: ConfirmAttendanceRequest):
    """Mark a student present for whichever class the timetable has running."""
    confirmation = attendance_service.confirm_attendance(request.usn.strip(), request.at or datetime.now())
    return {
        "status": confirmation.result.value,
        "usn": confirmation.event.identity_id,
        "subject": confirmation.slot.to_dict(),
        "date": confirmation.event.date.isoformat(),
        "time": confirmation.event.time_of_mark.strftime("%H:%M:%S"),
    }

@app.get("/attendance/{day}")
async def attendance_by_date(day: date):
    """All attendance records for a calendar day."""
    return {"date": day.isoformat(), "records": [e.to_dict() for e in ledger.query_by_date(day)]}

def _records_or_404(day: date):
    events = ledger.query_by_date(day)
    if not events:
        raise HTTPException(status_code=404, detail="No attendance records found")
    return events

@app.get("/attendance/{day}/csv")
async def attendance_csv_export(day: date):
    events = _records_or_404(day)
    return Response(
        content=attendance_csv(events),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="attendance-{day.isoformat()}.csv"'},
    )

@app.get("/attendance/{day}/pdf")
async def attendance_pdf_export(day: date):
    events = _records_or_404(day)
    return Response(
        content=attendance_pdf(day, events),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="attendance-{day.isoformat()}.pdf"'},
    )

# Timetable Endpoints

@app.post("/timetable", status_code=201)
async def save_timetable(request: TimetableRequest):
    """Replace the whole timetable. Overlapping slots on the same day are rejected."""
    slots = [
        ScheduledSlot.from_strings(s.code, s.name, s.day, s.startTime, s.endTime)
        for s in request.subjects
    ]
    saved = timetable.replace(slots)
    return {"subjects": [s.to_dict() for s in saved]}

@app.get("/timetable")
async def get_timetable():
    return {"subjects": [s.to_dict() for s in timetable.slots()]}

@app.get("/timetable/current")
async def current_subject(at: Optional[datetime] = None):
    """The class running now (or at ``at``), null outside class hours."""
    slot = timetable.current_slot(at or datetime.now())
    return {"subject": slot.to_dict() if slot else None}

# Live Session Endpoints

@app.post("/sessions", status_code=201)
async def open_session(request: Optional[OpenSessionRequest] = None):
    """Open a live attendance session for one camera stream."""
    options = {}
    if request and request.sample_every:
        options["sample_every"] = request.sample_every
    controller = sessions.create(**options)
    return controller.snapshot()

@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    return sessions.get(session_id).snapshot()

@app.post("/sessions/{session_id}/frames")
def offer_frame(session_id: str, image_base64: str = Form(...)):
    """Offer a video frame. Only sampled frames are run through detection."""
    controller = sessions.get(session_id)
    require_recognizer()
    result = controller.offer_frame(decode_image(image_base64))
    return {"sample": result.to_dict(), "session": controller.snapshot()}

@app.post("/sessions/{session_id}/detections")
def submit_detections(session_id: str, request: DetectionsRequest):
    """Submit faces detected by the client for one sampled frame."""
    controller = sessions.get(session_id)
    detections = [
        Detection(bbox=face.bbox or [], embedding=recognition.as_vector(face.embedding))
        for face in request.faces
    ]
    result = controller.submit_detections(detections)
    return {"sample": result.to_dict(), "session": controller.snapshot()}

@app.post("/sessions/{session_id}/reset")
async def reset_session(session_id: str):
    controller = sessions.get(session_id)
    controller.reset()
    return controller.snapshot()

@app.delete("/sessions/{session_id}")
async def close_session(session_id: str):
    sessions.close(session_id)
    return {"message": f"Session {session_id} closed"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
