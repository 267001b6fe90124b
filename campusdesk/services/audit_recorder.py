"""
CampusDesk
Audit recorder — appends one immutable row per applied record change.

``record`` only flushes so the caller keeps transaction control: the audit
row commits together with the mutation it describes, or not at all.

Usage:
    from campusdesk.services import audit_recorder
    audit_recorder.record(
        action="UPDATE", actor="tanaka", entity_type="student",
        entity_id="S123", diff={"status": {"old": "ENROLLED", "new": "WITHDRAWN"}},
        approval_request_id=42,
    )
"""

import json
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from campusdesk.core.exceptions import NotFoundError, StorageUnavailable, ValidationError
from campusdesk.models import db
from campusdesk.models.audit import AUDIT_ENTITY_TYPES, AUDIT_SOURCES, AuditLog
from campusdesk.models.vocab import AUDIT_ACTION

logger = logging.getLogger(__name__)

# Descriptor operation → audit action
ACTION_FOR_OPERATION = {"create": "CREATE", "update": "UPDATE", "delete": "DELETE"}


def record(
    *,
    action: str,
    actor: str,
    entity_type: str,
    entity_id,
    diff: dict | None = None,
    approval_request_id: int | None = None,
    source: str = "chat",
) -> AuditLog:
    """
    Append a single audit row (flush only).

    Raises:
        StorageUnavailable: the insert could not be flushed.
    """
    AUDIT_ACTION.validate(action)
    if source not in AUDIT_SOURCES:
        raise ValueError(f"source must be one of: {', '.join(sorted(AUDIT_SOURCES))}")

    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        source=source,
        approval_request_id=approval_request_id,
        diff_json=json.dumps(diff or {}, default=str, ensure_ascii=False),
    )
    try:
        db.session.add(log)
        db.session.flush()
    except SQLAlchemyError as exc:
        logger.error("Audit write failed for %s/%s: %s", entity_type, entity_id, exc,
                     extra={"approval_id": approval_request_id})
        raise StorageUnavailable("Audit trail could not be written") from exc
    return log


def list_entries(filters: dict | None = None, page: int = 1, per_page: int = 50) -> dict:
    """Newest-first page of audit rows.

    Supported filters: entity_type, entity_id, action, actor, source,
    approval_request_id, since, until (ISO datetimes).
    """
    from campusdesk.utils.helpers import paginate_envelope

    filters = filters or {}
    q = AuditLog.query

    entity_type = filters.get("entity_type")
    if entity_type:
        if entity_type not in AUDIT_ENTITY_TYPES:
            raise ValidationError(
                f"Invalid entity_type '{entity_type}'",
                details={"entity_type": f"must be one of: {', '.join(sorted(AUDIT_ENTITY_TYPES))}"},
            )
        q = q.filter(AuditLog.entity_type == entity_type)
    if filters.get("entity_id"):
        q = q.filter(AuditLog.entity_id == str(filters["entity_id"]))
    if filters.get("action"):
        action = filters["action"].upper()
        if action not in AUDIT_ACTION:
            raise ValidationError(
                f"Invalid action '{action}'",
                details={"action": f"must be one of: {', '.join(AUDIT_ACTION.values)}"},
            )
        q = q.filter(AuditLog.action == action)
    if filters.get("actor"):
        q = q.filter(AuditLog.actor == filters["actor"])
    if filters.get("source"):
        q = q.filter(AuditLog.source == filters["source"])
    if filters.get("approval_request_id") is not None:
        q = q.filter(AuditLog.approval_request_id == filters["approval_request_id"])

    since = _parse_bound(filters, "since")
    if since is not None:
        q = q.filter(AuditLog.timestamp >= since)
    until = _parse_bound(filters, "until")
    if until is not None:
        q = q.filter(AuditLog.timestamp <= until)

    q = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    return paginate_envelope(q, page, per_page)


def _parse_bound(filters: dict, key: str):
    raw = filters.get(key)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Invalid {key}", details={key: "must be an ISO datetime"}) from None


def get_entry(audit_id: int) -> AuditLog:
    log = db.session.get(AuditLog, audit_id)
    if log is None:
        raise NotFoundError(resource="AuditLog", resource_id=audit_id)
    return log
