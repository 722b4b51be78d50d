"""
SQLAlchemy models for the attendance system.
"""
from sqlalchemy import Column, Integer, String, Text, Date, DateTime, LargeBinary, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Student(Base):
    """Registered student with a reference face embedding."""
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    usn = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    photo_data = Column(Text, nullable=True)  # base64 data URL of the capture
    embedding = Column(LargeBinary, nullable=False)  # float64 bytes
    dim = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class TimetableSlot(Base):
    """One weekly class slot. The table as a whole is the single active timetable."""
    __tablename__ = "timetable_slots"

    id = Column(Integer, primary_key=True, index=True)
    subject_code = Column(String, nullable=False)
    subject_name = Column(String, nullable=False)
    day = Column(String, nullable=False, index=True)
    start_minute = Column(Integer, nullable=False)  # minutes past midnight
    end_minute = Column(Integer, nullable=False)  # exclusive


class AttendanceRecord(Base):
    """Append-only attendance mark, unique per student, subject and day."""
    __tablename__ = "attendance"

    id = Column(Integer, primary_key=True, index=True)
    usn = Column(String, nullable=False, index=True)
    subject_code = Column(String, nullable=False)
    date = Column(Date, nullable=False, index=True)
    time_of_mark = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("usn", "subject_code", "date", name="uq_attendance_usn_subject_date"),
    )
