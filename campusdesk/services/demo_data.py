"""
CampusDesk
Demo data loader for local development (``flask seed-demo``).

Idempotent: rows whose primary key already exists are skipped.  Only
flushes; the CLI command commits.
"""

import logging
from datetime import date

from campusdesk.models import db
from campusdesk.models.school import KnowledgeArticle, MonthlyAttendance, SchoolClass, Student, TuitionInvoice

logger = logging.getLogger(__name__)

DEMO_CLASSES = [
    {"id": "C2024A", "name": "April 2024 Intake A", "level": "INTERMEDIATE", "capacity": 20},
    {"id": "C2024B", "name": "April 2024 Intake B", "level": "BEGINNER", "capacity": 20},
]

DEMO_STUDENTS = [
    {"id": "S101", "name_en": "Nguyen Van An", "nationality": "Vietnam", "class_id": "C2024A",
     "status": "ENROLLED", "enrolled_on": date(2024, 4, 8)},
    {"id": "S102", "name_en": "Li Wei", "name_kanji": "李偉", "nationality": "China", "class_id": "C2024A",
     "status": "ENROLLED", "enrolled_on": date(2024, 4, 8)},
    {"id": "S123", "name_en": "Bishnu Thapa", "nationality": "Nepal", "class_id": "C2024B",
     "status": "ENROLLED", "enrolled_on": date(2024, 4, 8)},
]

DEMO_ARTICLES = [
    {"slug": "attendance-policy", "title": "Attendance policy",
     "body": "Students must keep monthly attendance at or above 80%. Below 90% triggers a warning; "
             "below 80% is reported to the immigration office."},
    {"slug": "tuition-payments", "title": "Tuition payments",
     "body": "Tuition is billed monthly and due on the 25th. Partial payments are recorded as PARTIAL."},
]


def _add_missing(model, rows, key="id"):
    added = 0
    for row in rows:
        if db.session.get(model, row[key]) is None:
            db.session.add(model(**row))
            added += 1
    db.session.flush()
    return added


def seed_demo_data() -> dict:
    counts = {
        "classes": _add_missing(SchoolClass, DEMO_CLASSES),
        "students": _add_missing(Student, DEMO_STUDENTS),
        "articles": _add_missing(KnowledgeArticle, [dict(a, version=1, updated_by="system")
                                                    for a in DEMO_ARTICLES], key="slug"),
        "invoices": 0,
        "attendance": 0,
    }

    for sid, paid in (("S101", 60000), ("S102", 0), ("S123", 30000)):
        exists = TuitionInvoice.query.filter_by(student_id=sid, year_month="2024-05").first()
        if exists is None:
            db.session.add(TuitionInvoice(
                student_id=sid, year_month="2024-05", amount_due=60000, amount_paid=paid,
                status="PAID" if paid >= 60000 else ("PARTIAL" if paid else "UNPAID"),
                due_date=date(2024, 5, 25),
            ))
            counts["invoices"] += 1

    for sid, rate, alert in (("S101", 0.965, "NONE"), ("S102", 0.86, "WARNING"), ("S123", 0.742, "DANGER")):
        exists = MonthlyAttendance.query.filter_by(student_id=sid, year_month="2024-05").first()
        if exists is None:
            db.session.add(MonthlyAttendance(
                student_id=sid, year_month="2024-05", rate=rate, required_hours=80.0,
                attended_hours=round(80.0 * rate, 1), alert_level=alert,
            ))
            counts["attendance"] += 1

    db.session.flush()
    logger.info("Demo data loaded: %s", counts)
    return counts
