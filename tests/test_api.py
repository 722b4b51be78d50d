import base64
from datetime import datetime, timedelta, timezone

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

import database
import main
from conftest import FakeDetector, face
from models import Base

USN = "1VE22IS001"
CS101 = {"code": "CS101", "name": "Data Structures", "day": "Monday",
         "startTime": "09:00", "endTime": "10:00"}


@pytest.fixture
def detector(monkeypatch):
    fake = FakeDetector([face(0.1, 0.0, 0.0, bbox=[5, 6, 50, 60])])
    monkeypatch.setattr(main, "recognizer", fake)
    return fake


@pytest.fixture
def client(detector):
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield TestClient(main.app)
    main.sessions.close_all()


def encoded_image():
    ok, buffer = cv2.imencode(".jpg", np.zeros((32, 32, 3), dtype=np.uint8))
    assert ok
    return base64.b64encode(buffer.tobytes()).decode()


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "running"
    assert body["threshold"] == 0.6
    assert body["detector"] is True


# Identities

def test_register_then_update_identity(client):
    first = client.post("/identities", json={"usn": USN, "embedding": [0.0, 0.0, 0.0], "name": "Asha"})
    assert first.status_code == 201
    assert first.json()["created"] is True

    again = client.post("/identities", json={"usn": USN, "embedding": [0.5, 0.0, 0.0]})
    assert again.status_code == 200
    assert again.json()["created"] is False

    students = client.get("/identities").json()["students"]
    assert [(s["usn"], s["name"]) for s in students] == [(USN, "Asha")]
    embeddings = client.get("/identities/embeddings").json()["students"]
    assert embeddings == [{"usn": USN, "embedding": [0.5, 0.0, 0.0]}]


def test_register_rejects_bad_embedding(client):
    response = client.post("/identities", json={"usn": USN, "embedding": ["a", "b"]})
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidInput"


def test_capture_registers_single_face(client):
    response = client.post("/identities/capture", data={"usn": USN, "image_base64": encoded_image()})
    assert response.status_code == 201
    assert response.json()["bbox"] == [5, 6, 50, 60]


def test_capture_rejects_two_faces(client, detector):
    detector.faces = [face(0.1, 0.0), face(0.2, 0.0)]
    response = client.post("/identities/capture", data={"usn": USN, "image_base64": encoded_image()})
    assert response.status_code == 422
    assert response.json()["error"] == "MultipleFacesDetected"
    assert client.get("/identities").json()["students"] == []


def test_capture_rejects_no_face(client, detector):
    detector.faces = []
    response = client.post("/identities/capture", data={"usn": USN, "image_base64": encoded_image()})
    assert response.status_code == 422
    assert response.json()["error"] == "NoFaceDetected"


def test_capture_rejects_garbage_image(client):
    response = client.post("/identities/capture", data={"usn": USN, "image_base64": "bm90IGFuIGltYWdl"})
    assert response.status_code == 400


def test_capture_without_detector(client, monkeypatch):
    monkeypatch.setattr(main, "recognizer", None)
    response = client.post("/identities/capture", data={"usn": USN, "image_base64": encoded_image()})
    assert response.status_code == 503


# Timetable

def test_save_and_read_timetable(client):
    saved = client.post("/timetable", json={"subjects": [CS101]})
    assert saved.status_code == 201
    assert client.get("/timetable").json() == {"subjects": [CS101]}

    current = client.get("/timetable/current", params={"at": "2024-01-01T09:30:00"}).json()
    assert current["subject"]["code"] == "CS101"
    later = client.get("/timetable/current", params={"at": "2024-01-01T10:00:00"}).json()
    assert later["subject"] is None


def test_overlapping_timetable_is_rejected(client):
    client.post("/timetable", json={"subjects": [CS101]})
    clash = dict(CS101, code="CS102", startTime="09:30", endTime="10:30")
    response = client.post("/timetable", json={"subjects": [CS101, clash]})
    assert response.status_code == 409
    assert response.json()["error"] == "OverlapConflict"
    assert client.get("/timetable").json() == {"subjects": [CS101]}


def test_bad_time_is_rejected(client):
    response = client.post("/timetable", json={"subjects": [dict(CS101, startTime="9am")]})
    assert response.status_code == 400


# Attendance

def test_mark_attendance_is_idempotent(client):
    body = {"usn": USN, "subject_code": "CS101", "date": "2024-01-01", "time": "09:30"}
    first = client.post("/attendance", json=body)
    assert first.status_code == 201
    assert first.json()["status"] == "marked"

    second = client.post("/attendance", json=dict(body, time="09:45"))
    assert second.status_code == 200
    assert second.json()["status"] == "already_marked"

    records = client.get("/attendance/2024-01-01").json()["records"]
    assert records == [{"usn": USN, "subject": "CS101", "date": "2024-01-01", "time": "09:30:00"}]


def test_confirm_uses_current_class(client):
    client.post("/timetable", json={"subjects": [CS101]})
    response = client.post("/attendance/confirm", json={"usn": USN, "at": "2024-01-01T09:30:00"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "marked"
    assert body["subject"]["code"] == "CS101"

    again = client.post("/attendance/confirm", json={"usn": USN, "at": "2024-01-01T09:50:00"})
    assert again.json()["status"] == "already_marked"


def test_confirm_outside_class_hours(client):
    client.post("/timetable", json={"subjects": [CS101]})
    response = client.post("/attendance/confirm", json={"usn": USN, "at": "2024-01-01T12:00:00"})
    assert response.status_code == 409
    assert response.json()["error"] == "NoActiveClass"
    assert client.get("/attendance/2024-01-01").json()["records"] == []


def test_exports(client):
    for usn, subject in [("A", "CS101"), ("B", "CS101"), ("A", "MA201")]:
        client.post("/attendance", json={"usn": usn, "subject_code": subject,
                                         "date": "2024-01-01", "time": "09:30:00"})

    csv_response = client.get("/attendance/2024-01-01/csv")
    assert csv_response.status_code == 200
    assert csv_response.headers["content-type"].startswith("text/csv")
    lines = csv_response.text.splitlines()
    assert lines[0] == "USN,Subject,Time"
    assert lines[1:] == ["A,CS101,09:30:00", "B,CS101,09:30:00", "A,MA201,09:30:00"]

    pdf_response = client.get("/attendance/2024-01-01/pdf")
    assert pdf_response.status_code == 200
    assert pdf_response.content.startswith(b"%PDF")


def test_exports_without_records(client):
    assert client.get("/attendance/2024-02-02/csv").status_code == 404
    assert client.get("/attendance/2024-02-02/pdf").status_code == 404


# Live sessions

def test_session_lifecycle(client):
    client.post("/identities", json={"usn": USN, "embedding": [0.0, 0.0, 0.0]})
    opened = client.post("/sessions", json={"sample_every": 1})
    assert opened.status_code == 201
    session_id = opened.json()["session_id"]
    assert opened.json()["state"] == "idle"

    result = client.post(f"/sessions/{session_id}/detections",
                         json={"faces": [{"embedding": [0.1, 0.0, 0.0]}]}).json()
    assert result["sample"]["status"] == "matched"
    assert result["session"]["state"] == "holding"
    assert result["session"]["identity_id"] == USN

    assert client.post(f"/sessions/{session_id}/reset").json()["state"] == "idle"

    assert client.delete(f"/sessions/{session_id}").status_code == 200
    missing = client.get(f"/sessions/{session_id}")
    assert missing.status_code == 404
    assert missing.json()["error"] == "SessionNotFound"


def test_session_unknown_face(client):
    session_id = client.post("/sessions").json()["session_id"]
    result = client.post(f"/sessions/{session_id}/detections",
                         json={"faces": [{"embedding": [0.1, 0.0, 0.0]}]}).json()
    assert result["sample"]["status"] == "unmatched"
    assert result["sample"]["register_first"] is True
    assert result["sample"]["distance"] is None


def test_session_frames_are_sampled(client, detector):
    session_id = client.post("/sessions", json={"sample_every": 2}).json()["session_id"]
    image = encoded_image()

    first = client.post(f"/sessions/{session_id}/frames", data={"image_base64": image}).json()
    assert first["sample"]["status"] == "skipped"
    assert detector.calls == 0

    second = client.post(f"/sessions/{session_id}/frames", data={"image_base64": image}).json()
    assert second["sample"]["status"] == "unmatched"
    assert detector.calls == 1


def test_get_identity(client):
    client.post("/identities", json={"usn": USN, "embedding": [0.25, 0.5, 0.0], "name": "Asha"})

    response = client.get(f"/identities/{USN}")
    assert response.status_code == 200
    body = response.json()
    assert body["usn"] == USN
    assert body["name"] == "Asha"
    assert body["embedding"] == [0.25, 0.5, 0.0]

    # the literal route still wins over the USN path
    assert client.get("/identities/embeddings").json()["students"][0]["usn"] == USN


def test_get_unknown_identity(client):
    assert client.get("/identities/1VE22IS999").status_code == 404


def test_register_rejects_embedding_of_another_length(client):
    client.post("/identities", json={"usn": USN, "embedding": [0.0, 0.0, 0.0]})
    response = client.post("/identities", json={"usn": "1VE22IS002", "embedding": [0.0, 0.0]})
    assert response.status_code == 400
    assert [s["usn"] for s in client.get("/identities").json()["students"]] == [USN]


def test_offset_timestamps_are_read_as_local_time(client):
    client.post("/timetable", json={"subjects": [CS101]})
    local = datetime(2024, 1, 1, 4, 0).astimezone()
    # 04:00 local written on a clock five and a half hours ahead reads 09:30
    ahead = local.astimezone(timezone(local.utcoffset() + timedelta(hours=5, minutes=30))).isoformat()

    current = client.get("/timetable/current", params={"at": ahead}).json()
    assert current["subject"] is None

    response = client.post("/attendance/confirm", json={"usn": USN, "at": ahead})
    assert response.status_code == 409
    assert client.get("/attendance/2024-01-01").json()["records"] == []

    in_class = datetime(2024, 1, 1, 9, 30).astimezone()
    shifted = in_class.astimezone(timezone(in_class.utcoffset() + timedelta(hours=5))).isoformat()
    marked = client.post("/attendance/confirm", json={"usn": USN, "at": shifted}).json()
    assert marked["status"] == "marked"
    assert marked["subject"]["code"] == "CS101"
    assert marked["date"] == "2024-01-01"
    assert marked["time"] == "09:30:00"
