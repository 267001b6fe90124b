"""
CampusDesk
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for applied record changes.
"""

import json
from datetime import UTC, datetime

from sqlalchemy import event

from campusdesk.core.exceptions import ImmutableRecordError
from campusdesk.models import db
from campusdesk.models.vocab import AUDIT_ACTION

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "student", "school_class", "tuition_invoice", "knowledge_article",
}

AUDIT_SOURCES = {"chat", "api"}


class AuditLog(db.Model):
    """
    Immutable audit trail for every applied change.

    One row per mutation.  ``diff_json`` carries ``{field: {old, new}}`` for
    updates and a ``{before, after}`` snapshot for creates/deletes.  Rows
    written by the approval pipeline point back at the approval request.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.CheckConstraint(f"action IN ({AUDIT_ACTION.sql_in()})", name="ck_audit_action"),
        db.CheckConstraint("source IN ('chat','api')", name="ck_audit_source"),
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="student | school_class | tuition_invoice | knowledge_article",
    )
    entity_id = db.Column(
        db.String(120), nullable=False,
        comment="PK of the referenced entity (string id, slug or int-as-string)",
    )

    # What happened
    action = db.Column(
        db.String(30), nullable=False,
        comment="CREATE | UPDATE | DELETE | KNOWLEDGE_UPDATE",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    source = db.Column(db.String(10), nullable=False, default="chat")
    approval_request_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Change payload
    diff_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {field: {old, new}} for updates, {before, after} otherwise",
    )

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "action_label": AUDIT_ACTION.label(self.action),
            "actor": self.actor,
            "source": self.source,
            "approval_request_id": self.approval_request_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Append-only guards ───────────────────────────────────────────────────────

@event.listens_for(AuditLog, "before_update")
def _audit_no_update(mapper, connection, target):
    raise ImmutableRecordError("AuditLog", target.id)


@event.listens_for(AuditLog, "before_delete")
def _audit_no_delete(mapper, connection, target):
    raise ImmutableRecordError("AuditLog", target.id)
