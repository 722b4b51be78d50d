"""
Registered face embeddings, keyed by student USN.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import numpy as np
from sqlalchemy.exc import IntegrityError

from errors import InvalidInput
from models import Student
from recognition import as_vector

logger = logging.getLogger(__name__)


def _decode(student: Student) -> np.ndarray:
    return np.frombuffer(student.embedding, dtype=np.float64, count=student.dim)


class EmbeddingStore:
    """
    Reference embeddings for every registered identity.

    Registrations are permanent: there is no delete. Re-registering an
    existing USN replaces its embedding.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def upsert(self, usn: str, embedding, name: Optional[str] = None,
               photo_data: Optional[str] = None) -> bool:
        """Insert or replace the embedding for ``usn``. Returns True when created."""
        usn = (usn or "").strip()
        if not usn:
            raise InvalidInput("USN must not be empty")
        vector = as_vector(embedding)

        try:
            return self._write(usn, vector, name, photo_data)
        except IntegrityError:
            # A concurrent registration created the row first; overwrite it
            logger.info("Concurrent registration for %s, retrying as update", usn)
            return self._write(usn, vector, name, photo_data)

    def _write(self, usn, vector, name, photo_data) -> bool:
        db = self._session_factory()
        try:
            # Every reference embedding must have the same length or matching breaks for everyone
            other = db.query(Student.dim).filter(Student.usn != usn).first()
            if other is not None and other.dim != vector.shape[0]:
                raise InvalidInput(
                    f"Embedding has {vector.shape[0]} dimensions, registered students use {other.dim}"
                )

            now = datetime.now()
            student = db.query(Student).filter(Student.usn == usn).first()
            created = student is None
            if created:
                student = Student(usn=usn, created_at=now)
                db.add(student)

            student.embedding = vector.tobytes()
            student.dim = int(vector.shape[0])
            student.updated_at = now
            if name is not None:
                student.name = name
            if photo_data is not None:
                student.photo_data = photo_data

            db.commit()
            logger.info("%s student %s (dim=%d)", "Registered" if created else "Updated", usn, vector.shape[0])
            return created
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def all(self) -> List[Tuple[str, np.ndarray]]:
        """Snapshot of (usn, embedding) pairs for matching."""
        db = self._session_factory()
        try:
            students = db.query(Student).order_by(Student.id).all()
            return [(s.usn, _decode(s)) for s in students]
        finally:
            db.close()

    def get(self, usn: str) -> Optional[Dict]:
        db = self._session_factory()
        try:
            student = db.query(Student).filter(Student.usn == usn).first()
            if student is None:
                return None
            return {
                "usn": student.usn,
                "name": student.name,
                "embedding": _decode(student),
                "photo_data": student.photo_data,
            }
        finally:
            db.close()

    def list_identities(self) -> List[Dict]:
        """Registered students without their embeddings or photos."""
        db = self._session_factory()
        try:
            students = db.query(Student).order_by(Student.id).all()
            return [
                {
                    "usn": s.usn,
                    "name": s.name or "",
                    "registered_at": s.created_at.isoformat(),
                }
                for s in students
            ]
        finally:
            db.close()
