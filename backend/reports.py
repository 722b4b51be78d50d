"""
Daily attendance exports: CSV for spreadsheets, PDF grouped by subject.
"""
import csv
import io
from collections import OrderedDict
from datetime import date
from typing import Dict, List, Sequence

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from ledger import AttendanceEvent

CSV_HEADER = ["USN", "Subject", "Time"]


def group_by_subject(events: Sequence[AttendanceEvent]) -> Dict[str, List[AttendanceEvent]]:
    """Events per subject code, subjects in order of first appearance."""
    grouped: Dict[str, List[AttendanceEvent]] = OrderedDict()
    for event in events:
        grouped.setdefault(event.subject_code, []).append(event)
    return grouped


def attendance_csv(events: Sequence[AttendanceEvent]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADER)
    for event in events:
        writer.writerow([event.identity_id, event.subject_code, event.time_of_mark.strftime("%H:%M:%S")])
    return buffer.getvalue()


def attendance_pdf(day: date, events: Sequence[AttendanceEvent]) -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4
    line_height = 16
    bottom_margin = 60

    c.setTitle(f"Attendance Report - {day.isoformat()}")
    c.setFont("Helvetica-Bold", 16)
    c.drawCentredString(width / 2, height - 50, f"Attendance Report - {day.isoformat()}")
    y = height - 90

    def ensure_room(y, lines=1):
        if y - lines * line_height < bottom_margin:
            c.showPage()
            # A new page starts with the default font
            c.setFont("Helvetica", 11)
            return height - 60
        return y

    for subject, records in group_by_subject(events).items():
        y = ensure_room(y, 3)
        c.setFont("Helvetica-Bold", 13)
        c.drawString(50, y, f"Subject: {subject}")
        y -= line_height * 1.5

        c.setFont("Helvetica-Bold", 11)
        c.drawString(100, y, "USN")
        c.drawString(260, y, "Time")
        y -= line_height

        c.setFont("Helvetica", 11)
        for record in records:
            y = ensure_room(y)
            c.drawString(100, y, record.identity_id)
            c.drawString(260, y, record.time_of_mark.strftime("%H:%M:%S"))
            y -= line_height
        y -= line_height

    c.showPage()
    c.save()
    return buffer.getvalue()
