"""
CampusDesk
School records models — the underlying store the approval pipeline mutates.

Models:
    - SchoolClass: a teaching class (cohort) students are assigned to
    - Student: core student record
    - TuitionInvoice: monthly tuition billing line per student
    - MonthlyAttendance: aggregated monthly attendance rate per student
    - KnowledgeArticle: staff knowledge-base page (versioned in place)
"""

from datetime import datetime, timezone

from campusdesk.models import db
from campusdesk.models.vocab import (
    ATTENDANCE_ALERT_LEVEL,
    CLASS_LEVEL,
    INVOICE_STATUS,
    STUDENT_STATUS,
)


def _now():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── SchoolClass ──────────────────────────────────────────────────────────────

class SchoolClass(db.Model):
    """A class students are enrolled in (e.g. ``C2024A``)."""

    __tablename__ = "school_classes"

    id = db.Column(db.String(20), primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    level = db.Column(db.String(20), nullable=False, default="BEGINNER")
    capacity = db.Column(db.Integer, default=20)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    students = db.relationship("Student", backref="school_class", lazy="dynamic", passive_deletes=True)

    __table_args__ = (
        db.CheckConstraint(f"level IN ({CLASS_LEVEL.sql_in()})", name="ck_class_level"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "level": self.level,
            "level_label": CLASS_LEVEL.label(self.level),
            "capacity": self.capacity,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<SchoolClass {self.id} {self.name}>"


# ── Student ──────────────────────────────────────────────────────────────────

class Student(db.Model):
    """Student master record. Identifiers are school-assigned codes like ``S123``."""

    __tablename__ = "students"

    id = db.Column(db.String(20), primary_key=True)
    name_en = db.Column(db.String(150), nullable=False)
    name_kanji = db.Column(db.String(150), nullable=True)
    nationality = db.Column(db.String(60), default="")
    status = db.Column(db.String(20), nullable=False, default="ENROLLED", index=True)
    class_id = db.Column(
        db.String(20),
        db.ForeignKey("school_classes.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    email = db.Column(db.String(200), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    enrolled_on = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    invoices = db.relationship("TuitionInvoice", backref="student", lazy="dynamic",
                               cascade="all, delete-orphan", passive_deletes=True)
    attendance = db.relationship("MonthlyAttendance", backref="student", lazy="dynamic",
                                 cascade="all, delete-orphan",
                                 order_by="MonthlyAttendance.year_month.desc()",
                                 passive_deletes=True)

    __table_args__ = (
        db.CheckConstraint(f"status IN ({STUDENT_STATUS.sql_in()})", name="ck_student_status"),
    )

    @property
    def display_name(self):
        return self.name_kanji or self.name_en

    def to_dict(self):
        return {
            "id": self.id,
            "name_en": self.name_en,
            "name_kanji": self.name_kanji,
            "nationality": self.nationality,
            "status": self.status,
            "status_label": STUDENT_STATUS.label(self.status),
            "class_id": self.class_id,
            "email": self.email,
            "phone": self.phone,
            "enrolled_on": _iso(self.enrolled_on),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Student {self.id} [{self.status}]>"


# ── TuitionInvoice ───────────────────────────────────────────────────────────

class TuitionInvoice(db.Model):
    """One month of tuition billed to a student (amounts in yen)."""

    __tablename__ = "tuition_invoices"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.String(20),
        db.ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    year_month = db.Column(db.String(7), nullable=False, comment="YYYY-MM")
    amount_due = db.Column(db.Integer, nullable=False, default=0)
    amount_paid = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="UNPAID")
    due_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    __table_args__ = (
        db.CheckConstraint(f"status IN ({INVOICE_STATUS.sql_in()})", name="ck_invoice_status"),
        db.UniqueConstraint("student_id", "year_month", name="uq_invoice_student_month"),
    )

    @property
    def balance(self):
        return (self.amount_due or 0) - (self.amount_paid or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "student_id": self.student_id,
            "year_month": self.year_month,
            "amount_due": self.amount_due,
            "amount_paid": self.amount_paid,
            "balance": self.balance,
            "status": self.status,
            "status_label": INVOICE_STATUS.label(self.status),
            "due_date": _iso(self.due_date),
        }

    def __repr__(self):
        return f"<TuitionInvoice {self.id} {self.student_id} {self.year_month}>"


# ── MonthlyAttendance ────────────────────────────────────────────────────────

class MonthlyAttendance(db.Model):
    """Aggregated attendance for one student and month. ``rate`` is 0.0 – 1.0."""

    __tablename__ = "monthly_attendance"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.String(20),
        db.ForeignKey("students.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    year_month = db.Column(db.String(7), nullable=False)
    rate = db.Column(db.Float, nullable=False, default=0.0)
    required_hours = db.Column(db.Float, default=0.0)
    attended_hours = db.Column(db.Float, default=0.0)
    late_count = db.Column(db.Integer, default=0)
    alert_level = db.Column(db.String(20), nullable=False, default="NONE")

    __table_args__ = (
        db.CheckConstraint(
            f"alert_level IN ({ATTENDANCE_ALERT_LEVEL.sql_in()})", name="ck_attendance_alert",
        ),
        db.UniqueConstraint("student_id", "year_month", name="uq_attendance_student_month"),
    )

    def to_dict(self):
        return {
            "student_id": self.student_id,
            "year_month": self.year_month,
            "attendance_rate": round((self.rate or 0) * 100),
            "required_hours": self.required_hours,
            "attended_hours": self.attended_hours,
            "late_count": self.late_count,
            "alert_level": self.alert_level,
        }


# ── KnowledgeArticle ─────────────────────────────────────────────────────────

class KnowledgeArticle(db.Model):
    """
    Staff knowledge-base page (procedures, regulations, FAQs).

    Edits proposed through chat bump ``version``; the previous body is kept
    in the audit trail's before/after snapshot rather than a history table.
    """

    __tablename__ = "knowledge_articles"

    slug = db.Column(db.String(120), primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, nullable=False, default="")
    version = db.Column(db.Integer, nullable=False, default=1)
    updated_by = db.Column(db.String(150), default="system")

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self, include_body=True):
        d = {
            "slug": self.slug,
            "title": self.title,
            "version": self.version,
            "updated_by": self.updated_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_body:
            d["body"] = self.body
        return d

    def __repr__(self):
        return f"<KnowledgeArticle {self.slug} v{self.version}>"
