"""campusdesk_initial_schema

Creates the records store and the chat approval pipeline tables:
  - school_classes, students, tuition_invoices, monthly_attendance
  - knowledge_articles
  - chat_sessions, chat_messages
  - approval_requests, approval_executions
  - audit_logs

Tables created conditionally (IF NOT EXISTS semantics) so the migration is
safe against databases that already received them via db.create_all().

Revision ID: c0a1d2e3f401
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'c0a1d2e3f401'
down_revision = None
branch_labels = None
depends_on = None

_TS = sa.DateTime(timezone=True)


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Records store ─────────────────────────────────────────────────────
    if "school_classes" not in existing:
        op.create_table(
            "school_classes",
            sa.Column("id", sa.String(length=20), primary_key=True),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("level", sa.String(length=20), nullable=False, server_default="BEGINNER"),
            sa.Column("capacity", sa.Integer(), nullable=True),
            sa.Column("created_at", _TS, nullable=True),
            sa.Column("updated_at", _TS, nullable=True),
            sa.CheckConstraint(
                "level IN ('BEGINNER', 'ELEMENTARY', 'INTERMEDIATE', 'ADVANCED')",
                name="ck_class_level",
            ),
        )

    if "students" not in existing:
        op.create_table(
            "students",
            sa.Column("id", sa.String(length=20), primary_key=True),
            sa.Column("name_en", sa.String(length=150), nullable=False),
            sa.Column("name_kanji", sa.String(length=150), nullable=True),
            sa.Column("nationality", sa.String(length=60), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ENROLLED"),
            sa.Column("class_id", sa.String(length=20), nullable=True),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("phone", sa.String(length=40), nullable=True),
            sa.Column("enrolled_on", sa.Date(), nullable=True),
            sa.Column("created_at", _TS, nullable=True),
            sa.Column("updated_at", _TS, nullable=True),
            sa.ForeignKeyConstraint(["class_id"], ["school_classes.id"], ondelete="SET NULL"),
            sa.CheckConstraint(
                "status IN ('PRE_ENROLLMENT', 'ENROLLED', 'ON_LEAVE', 'WITHDRAWN', "
                "'EXPELLED', 'GRADUATED', 'COMPLETED')",
                name="ck_student_status",
            ),
        )
        op.create_index("ix_students_status", "students", ["status"])
        op.create_index("ix_students_class_id", "students", ["class_id"])

    if "tuition_invoices" not in existing:
        op.create_table(
            "tuition_invoices",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("student_id", sa.String(length=20), nullable=False),
            sa.Column("year_month", sa.String(length=7), nullable=False, comment="YYYY-MM"),
            sa.Column("amount_due", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("amount_paid", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="UNPAID"),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("created_at", _TS, nullable=True),
            sa.Column("updated_at", _TS, nullable=True),
            sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
            sa.CheckConstraint("status IN ('UNPAID', 'PARTIAL', 'PAID')", name="ck_invoice_status"),
            sa.UniqueConstraint("student_id", "year_month", name="uq_invoice_student_month"),
        )
        op.create_index("ix_tuition_invoices_student_id", "tuition_invoices", ["student_id"])

    if "monthly_attendance" not in existing:
        op.create_table(
            "monthly_attendance",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("student_id", sa.String(length=20), nullable=False),
            sa.Column("year_month", sa.String(length=7), nullable=False),
            sa.Column("rate", sa.Float(), nullable=False, server_default="0"),
            sa.Column("required_hours", sa.Float(), nullable=True),
            sa.Column("attended_hours", sa.Float(), nullable=True),
            sa.Column("late_count", sa.Integer(), nullable=True),
            sa.Column("alert_level", sa.String(length=20), nullable=False, server_default="NONE"),
            sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="CASCADE"),
            sa.CheckConstraint("alert_level IN ('NONE', 'WARNING', 'DANGER')", name="ck_attendance_alert"),
            sa.UniqueConstraint("student_id", "year_month", name="uq_attendance_student_month"),
        )
        op.create_index("ix_monthly_attendance_student_id", "monthly_attendance", ["student_id"])

    if "knowledge_articles" not in existing:
        op.create_table(
            "knowledge_articles",
            sa.Column("slug", sa.String(length=120), primary_key=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("updated_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", _TS, nullable=True),
            sa.Column("updated_at", _TS, nullable=True),
        )

    # ── Chat sessions & messages ──────────────────────────────────────────
    if "chat_sessions" not in existing:
        op.create_table(
            "chat_sessions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(length=150), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=True),
            sa.Column("message_count", sa.Integer(), nullable=True),
            sa.Column("created_at", _TS, nullable=True),
            sa.Column("updated_at", _TS, nullable=True),
            sa.Column("archived_at", _TS, nullable=True),
        )
        op.create_index("ix_chat_sessions_user_id", "chat_sessions", ["user_id"])
        op.create_index("ix_chat_sessions_archived_at", "chat_sessions", ["archived_at"])

    if "chat_messages" not in existing:
        op.create_table(
            "chat_messages",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("session_id", sa.Integer(), nullable=False),
            sa.Column("seq", sa.Integer(), nullable=False, comment="Order within the session (1-based)"),
            sa.Column("role", sa.String(length=20), nullable=False, comment="USER | ASSISTANT | SYSTEM"),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("tool_calls_json", sa.Text(), nullable=True),
            sa.Column("model", sa.String(length=80), nullable=True),
            sa.Column("prompt_tokens", sa.Integer(), nullable=True),
            sa.Column("completion_tokens", sa.Integer(), nullable=True),
            sa.Column("latency_ms", sa.Integer(), nullable=True),
            sa.Column("created_at", _TS, nullable=True),
            sa.ForeignKeyConstraint(["session_id"], ["chat_sessions.id"], ondelete="CASCADE"),
            sa.CheckConstraint("role IN ('USER', 'ASSISTANT', 'SYSTEM')", name="ck_chat_msg_role"),
            sa.UniqueConstraint("session_id", "seq", name="uq_chat_msg_seq"),
        )
        op.create_index("ix_chat_messages_session_id", "chat_messages", ["session_id"])

    # ── Approval pipeline ─────────────────────────────────────────────────
    if "approval_requests" not in existing:
        op.create_table(
            "approval_requests",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("type", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("message_id", sa.Integer(), nullable=True),
            sa.Column("session_id", sa.Integer(), nullable=True),
            sa.Column("tool_call_id", sa.String(length=100), nullable=True),
            sa.Column("requested_by", sa.String(length=150), nullable=False),
            sa.Column("entity_type", sa.String(length=40), nullable=False),
            sa.Column("target_id", sa.String(length=120), nullable=True),
            sa.Column("operation", sa.String(length=10), nullable=False),
            sa.Column("descriptor_json", sa.Text(), nullable=False),
            sa.Column("summary", sa.String(length=500), nullable=True),
            sa.Column("decided_by", sa.String(length=150), nullable=True),
            sa.Column("decided_at", _TS, nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("execution_status", sa.String(length=20), nullable=False,
                      server_default="NOT_STARTED"),
            sa.Column("execution_error", sa.Text(), nullable=True),
            sa.Column("executed_at", _TS, nullable=True),
            sa.Column("created_at", _TS, nullable=True),
            sa.ForeignKeyConstraint(["message_id"], ["chat_messages.id"], ondelete="SET NULL"),
            sa.CheckConstraint("type IN ('DATA_CHANGE', 'KNOWLEDGE_UPDATE')", name="ck_approval_type"),
            sa.CheckConstraint("status IN ('PENDING', 'APPROVED', 'REJECTED')", name="ck_approval_status"),
            sa.CheckConstraint(
                "execution_status IN ('NOT_STARTED','EXECUTED','FAILED')",
                name="ck_approval_exec_status",
            ),
        )
        op.create_index("idx_approval_status_created", "approval_requests", ["status", "created_at"])
        op.create_index("ix_approval_requests_message_id", "approval_requests", ["message_id"])
        op.create_index("ix_approval_requests_session_id", "approval_requests", ["session_id"])

    if "approval_executions" not in existing:
        op.create_table(
            "approval_executions",
            sa.Column("approval_request_id", sa.Integer(), primary_key=True),
            sa.Column("executed_by", sa.String(length=150), nullable=False),
            sa.Column("audit_log_id", sa.Integer(), nullable=True),
            sa.Column("executed_at", _TS, nullable=True),
            sa.ForeignKeyConstraint(["approval_request_id"], ["approval_requests.id"], ondelete="RESTRICT"),
        )

    # ── Audit trail ───────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=120), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("source", sa.String(length=10), nullable=False, server_default="chat"),
            sa.Column("approval_request_id", sa.Integer(), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", _TS, nullable=False),
            sa.ForeignKeyConstraint(["approval_request_id"], ["approval_requests.id"], ondelete="SET NULL"),
            sa.CheckConstraint(
                "action IN ('CREATE', 'UPDATE', 'DELETE', 'KNOWLEDGE_UPDATE')", name="ck_audit_action",
            ),
            sa.CheckConstraint("source IN ('chat','api')", name="ck_audit_source"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
        op.create_index("ix_audit_logs_approval_request_id", "audit_logs", ["approval_request_id"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("approval_executions")
    op.drop_table("approval_requests")
    op.drop_table("chat_messages")
    op.drop_table("chat_sessions")
    op.drop_table("knowledge_articles")
    op.drop_table("monthly_attendance")
    op.drop_table("tuition_invoices")
    op.drop_table("students")
    op.drop_table("school_classes")
