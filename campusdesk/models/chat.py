"""
CampusDesk
Chat & approval pipeline models.

Models:
    - ChatSession: one conversation owned by a staff user (soft-archived, never hard-deleted)
    - ChatMessage: one turn inside a session (append-only)
    - ApprovalRequest: a model-proposed change awaiting a human decision
    - ApprovalExecution: persisted execution marker (at most one per approval request)
"""

import json
from datetime import datetime, timezone

from sqlalchemy import event, inspect

from campusdesk.core.exceptions import ImmutableRecordError
from campusdesk.models import db
from campusdesk.models.vocab import APPROVAL_STATUS, APPROVAL_TYPE, MESSAGE_ROLE


def _now():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

EXECUTION_STATUSES = {"NOT_STARTED", "EXECUTED", "FAILED"}
MUTATION_OPERATIONS = {"create", "update", "delete"}

# Derived sub-state surfaced to operators for manual remediation.
APPROVED_EXECUTION_FAILED = "APPROVED_EXECUTION_FAILED"
APPROVAL_LIST_STATES = set(APPROVAL_STATUS.values) | {APPROVED_EXECUTION_FAILED}


# ── ChatSession ──────────────────────────────────────────────────────────────

class ChatSession(db.Model):
    """A conversation between one staff user and the assistant."""

    __tablename__ = "chat_sessions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(150), nullable=False, index=True)
    title = db.Column(db.String(300), default="")
    message_count = db.Column(db.Integer, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    messages = db.relationship("ChatMessage", backref="session",
                               cascade="all, delete-orphan", order_by="ChatMessage.seq",
                               lazy="dynamic")

    @property
    def is_archived(self):
        return self.archived_at is not None

    def archive(self):
        self.archived_at = _now()

    def to_dict(self, include_messages=False):
        d = {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "message_count": self.message_count,
            "archived": self.is_archived,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "archived_at": _iso(self.archived_at),
        }
        if include_messages:
            d["messages"] = [m.to_dict() for m in self.messages.all()]
        return d

    def __repr__(self):
        return f"<ChatSession {self.id} user={self.user_id} msgs={self.message_count}>"


# ── ChatMessage ──────────────────────────────────────────────────────────────

class ChatMessage(db.Model):
    """A single persisted turn. Never updated after insert."""

    __tablename__ = "chat_messages"

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey("chat_sessions.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    seq = db.Column(db.Integer, nullable=False, comment="Order within the session (1-based)")
    role = db.Column(db.String(20), nullable=False, comment="USER | ASSISTANT | SYSTEM")
    content = db.Column(db.Text, nullable=False, default="")
    tool_calls_json = db.Column(db.Text, nullable=True,
                                comment="JSON: tool calls the model emitted in this turn")

    # Completion metadata (assistant messages only)
    model = db.Column(db.String(80), nullable=True)
    prompt_tokens = db.Column(db.Integer, default=0)
    completion_tokens = db.Column(db.Integer, default=0)
    latency_ms = db.Column(db.Integer, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    __table_args__ = (
        db.CheckConstraint(f"role IN ({MESSAGE_ROLE.sql_in()})", name="ck_chat_msg_role"),
        db.UniqueConstraint("session_id", "seq", name="uq_chat_msg_seq"),
    )

    @property
    def tool_calls(self) -> list:
        try:
            return json.loads(self.tool_calls_json or "[]")
        except (json.JSONDecodeError, TypeError):
            return []

    def to_dict(self):
        return {
            "id": self.id,
            "session_id": self.session_id,
            "seq": self.seq,
            "role": self.role,
            "content": self.content,
            "tool_calls": self.tool_calls,
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "latency_ms": self.latency_ms,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ChatMessage session={self.session_id} seq={self.seq} role={self.role}>"


@event.listens_for(ChatMessage, "before_update")
def _chat_message_is_append_only(mapper, connection, target):
    raise ImmutableRecordError("ChatMessage", target.id)


# ── ApprovalRequest ──────────────────────────────────────────────────────────

class ApprovalRequest(db.Model):
    """
    A proposed DATA_CHANGE or KNOWLEDGE_UPDATE awaiting a human decision.

    Workflow: PENDING → APPROVED | REJECTED (terminal, decided exactly once).
    Execution of an approved request is tracked separately in
    ``execution_status`` so a failed apply never re-opens the decision.
    """

    __tablename__ = "approval_requests"
    __table_args__ = (
        db.CheckConstraint(f"type IN ({APPROVAL_TYPE.sql_in()})", name="ck_approval_type"),
        db.CheckConstraint(f"status IN ({APPROVAL_STATUS.sql_in()})", name="ck_approval_status"),
        db.CheckConstraint(
            "execution_status IN ('NOT_STARTED','EXECUTED','FAILED')",
            name="ck_approval_exec_status",
        ),
        db.Index("idx_approval_status_created", "status", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING")

    # Origin (weak references; the ledger outlives session archival)
    message_id = db.Column(db.Integer, db.ForeignKey("chat_messages.id", ondelete="SET NULL"),
                           nullable=True, index=True)
    session_id = db.Column(db.Integer, nullable=True, index=True)
    tool_call_id = db.Column(db.String(100), nullable=True)
    requested_by = db.Column(db.String(150), nullable=False)

    # Target (lookup-only; lifecycle governed by the records store)
    entity_type = db.Column(db.String(40), nullable=False,
                            comment="student | school_class | tuition_invoice | knowledge_article")
    target_id = db.Column(db.String(120), nullable=True, comment="NULL when operation=create")
    operation = db.Column(db.String(10), nullable=False, comment="create | update | delete")
    descriptor_json = db.Column(db.Text, nullable=False, default="{}",
                                comment="JSON: normalized mutation descriptor")
    summary = db.Column(db.String(500), default="")

    # Decision
    decided_by = db.Column(db.String(150), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    note = db.Column(db.Text, nullable=True)

    # Execution
    execution_status = db.Column(db.String(20), nullable=False, default="NOT_STARTED")
    execution_error = db.Column(db.Text, nullable=True)
    executed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    origin_message = db.relationship("ChatMessage", foreign_keys=[message_id])

    @property
    def descriptor(self) -> dict:
        try:
            return json.loads(self.descriptor_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def state(self) -> str:
        if self.status == "APPROVED" and self.execution_status == "FAILED":
            return APPROVED_EXECUTION_FAILED
        return self.status

    def proposal_preview(self) -> dict:
        """Display-only view of the proposed change (not an executable payload)."""
        d = self.descriptor
        return {
            "entity_type": self.entity_type,
            "target_id": self.target_id,
            "operation": self.operation,
            "changes": [
                {"field": field, "proposed": value}
                for field, value in sorted((d.get("changes") or {}).items())
            ],
            "reason": d.get("reason", ""),
        }

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "type_label": APPROVAL_TYPE.label(self.type),
            "status": self.status,
            "state": self.state,
            "message_id": self.message_id,
            "session_id": self.session_id,
            "requested_by": self.requested_by,
            "summary": self.summary,
            "proposal": self.proposal_preview(),
            "decided_by": self.decided_by,
            "decided_at": _iso(self.decided_at),
            "note": self.note,
            "execution_status": self.execution_status,
            "execution_error": self.execution_error,
            "executed_at": _iso(self.executed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ApprovalRequest {self.id} {self.type} [{self.state}]>"


_DECISION_FIELDS = ("status", "decided_by", "decided_at", "note")


@event.listens_for(ApprovalRequest, "before_update")
def _decision_is_write_once(mapper, connection, target):
    """Refuse ORM flushes that would rewrite an already-recorded decision."""
    state = inspect(target)
    status_hist = state.attrs.status.history
    previous = status_hist.deleted[0] if status_hist.deleted else target.status
    if previous == "PENDING":
        return
    for field in _DECISION_FIELDS:
        if state.attrs[field].history.has_changes():
            raise ImmutableRecordError("ApprovalRequest decision", target.id)


# ── ApprovalExecution ────────────────────────────────────────────────────────

class ApprovalExecution(db.Model):
    """
    Execution marker: the primary key *is* the approval request id, so a
    second insert for the same request fails at the database.
    """

    __tablename__ = "approval_executions"

    approval_request_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_requests.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    executed_by = db.Column(db.String(150), nullable=False)
    audit_log_id = db.Column(db.Integer, nullable=True)
    executed_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "approval_request_id": self.approval_request_id,
            "executed_by": self.executed_by,
            "audit_log_id": self.audit_log_id,
            "executed_at": _iso(self.executed_at),
        }
