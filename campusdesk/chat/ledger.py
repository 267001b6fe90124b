"""
Approval ledger service — the approval queue for model-proposed changes.

Manages the lifecycle of every ``ApprovalRequest``:

    PENDING → APPROVED | REJECTED   (decided exactly once)
    APPROVED + execution FAILED     → surfaced as APPROVED_EXECUTION_FAILED

Design decisions:
    - A decision is a conditional UPDATE (``WHERE status = 'PENDING'``).
      Of two concurrent decisions exactly one matches a row; the other
      gets ``AlreadyDecided``.  No read-then-write window.
    - Self-approval is refused here, never in the blueprint, unless
      ``APPROVAL_ALLOW_SELF_APPROVAL`` is set.
    - The ledger never applies a change; ``chat.executor`` does that after
      an APPROVED decision has been committed.
    - Requests are never deleted. Session archival does not touch them.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, select, update

from campusdesk.chat import conversation
from campusdesk.chat.prompt_registry import get_registry
from campusdesk.core.exceptions import AlreadyDecided, NotFoundError, PermissionDenied, ValidationError
from campusdesk.models import db
from campusdesk.models.chat import APPROVAL_LIST_STATES, APPROVED_EXECUTION_FAILED, ApprovalRequest
from campusdesk.models.vocab import APPROVAL_TYPE, DECISIONS

logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 2000


# ── Create / read ────────────────────────────────────────────────────────────


def create(descriptor, origin_message, requested_by: str, session_id: int | None = None) -> ApprovalRequest:
    """Record a validated descriptor as a PENDING request (flush only).

    Args:
        descriptor:     MutationDescriptor or KnowledgeEditDescriptor from the codec.
        origin_message: The ASSISTANT ChatMessage that carried the tool call (may be None).
        requested_by:   user_id of the staff member whose turn produced the proposal.
        session_id:     Originating chat session; defaults to the message's session.
    """
    approval = ApprovalRequest(
        type=descriptor.approval_type,
        status="PENDING",
        message_id=origin_message.id if origin_message is not None else None,
        session_id=session_id if session_id is not None else getattr(origin_message, "session_id", None),
        tool_call_id=descriptor.tool_call_id,
        requested_by=requested_by,
        entity_type=descriptor.entity_type,
        target_id=descriptor.target_id,
        operation=descriptor.operation,
        descriptor_json=json.dumps(descriptor.to_dict(), ensure_ascii=False),
        summary=descriptor.summary[:500],
        execution_status="NOT_STARTED",
    )
    db.session.add(approval)
    db.session.flush()
    logger.info(
        "Approval request created",
        extra={"approval_id": approval.id, "actor": requested_by, "session_id": approval.session_id},
    )
    return approval


def get(approval_id: int) -> ApprovalRequest:
    approval = db.session.get(ApprovalRequest, approval_id)
    if approval is None:
        raise NotFoundError(resource="ApprovalRequest", resource_id=approval_id)
    return approval


def _filtered_query(status: str | None = None, type_: str | None = None):
    q = ApprovalRequest.query
    if status:
        status = status.upper()
        if status not in APPROVAL_LIST_STATES:
            raise ValidationError(
                f"Invalid status '{status}'",
                details={"status": f"must be one of: {', '.join(sorted(APPROVAL_LIST_STATES))}"},
            )
        if status == APPROVED_EXECUTION_FAILED:
            q = q.filter(ApprovalRequest.status == "APPROVED",
                         ApprovalRequest.execution_status == "FAILED")
        else:
            q = q.filter(ApprovalRequest.status == status)
    if type_:
        type_ = type_.upper()
        if type_ not in APPROVAL_TYPE:
            raise ValidationError(
                f"Invalid type '{type_}'",
                details={"type": f"must be one of: {', '.join(APPROVAL_TYPE.values)}"},
            )
        q = q.filter(ApprovalRequest.type == type_)
    return q


def list_requests(status: str | None = None, type_: str | None = None,
                  page: int = 1, per_page: int = 30) -> dict:
    """Newest-first page of requests, optionally filtered by state and type.

    ``status`` accepts the stored statuses plus ``APPROVED_EXECUTION_FAILED``.
    """
    from campusdesk.utils.helpers import paginate_envelope

    q = _filtered_query(status, type_).order_by(ApprovalRequest.created_at.desc(),
                                                 ApprovalRequest.id.desc())
    return paginate_envelope(q, page, per_page)


def remediation_queue(page: int = 1, per_page: int = 30) -> dict:
    """Approved requests whose execution failed, oldest first."""
    from campusdesk.utils.helpers import paginate_envelope

    q = _filtered_query(APPROVED_EXECUTION_FAILED).order_by(ApprovalRequest.decided_at.asc(),
                                                             ApprovalRequest.id.asc())
    return paginate_envelope(q, page, per_page)


def pending_count() -> int:
    return db.session.execute(
        select(func.count(ApprovalRequest.id)).where(ApprovalRequest.status == "PENDING")
    ).scalar() or 0


def stats() -> dict:
    """Counts by state and by type, for the approver dashboard badge."""
    rows = db.session.execute(
        select(
            ApprovalRequest.type,
            ApprovalRequest.status,
            ApprovalRequest.execution_status,
            func.count(ApprovalRequest.id).label("cnt"),
        ).group_by(ApprovalRequest.type, ApprovalRequest.status, ApprovalRequest.execution_status)
    ).all()

    by_state = {state: 0 for state in sorted(APPROVAL_LIST_STATES)}
    by_type = {t: 0 for t in APPROVAL_TYPE}
    total = 0
    for type_, status, execution_status, cnt in rows:
        total += cnt
        by_type[type_] = by_type.get(type_, 0) + cnt
        by_state[status] += cnt
        if status == "APPROVED" and execution_status == "FAILED":
            by_state[APPROVED_EXECUTION_FAILED] += cnt
    return {"total": total, "by_state": by_state, "by_type": by_type}


# ── Decision ─────────────────────────────────────────────────────────────────


def decide(approval_id: int, decision: str, deciding_user: str, note: str | None = None) -> ApprovalRequest:
    """Record APPROVED or REJECTED on a PENDING request and commit.

    Business rules enforced here (not in blueprint):
    - decision must be APPROVED or REJECTED.
    - the requester may not decide their own request unless
      ``APPROVAL_ALLOW_SELF_APPROVAL`` is true.
    - exactly one decision wins; later ones raise ``AlreadyDecided``.

    A REJECTED outcome is posted to the originating session in the same
    transaction.  APPROVED outcomes are posted by the executor once the
    change has been applied (or has failed).

    Raises:
        ValidationError, NotFoundError, PermissionDenied, AlreadyDecided
    """
    decision = (decision or "").strip().upper()
    if decision not in DECISIONS:
        raise ValidationError(
            "decision must be APPROVED or REJECTED",
            details={"decision": f"must be one of: {', '.join(sorted(DECISIONS))}"},
        )
    note = (note or "").strip() or None
    if note and len(note) > MAX_NOTE_LENGTH:
        raise ValidationError("note is too long", details={"note": f"max {MAX_NOTE_LENGTH} characters"})

    approval = get(approval_id)
    if approval.status != "PENDING":
        raise AlreadyDecided(approval_id, approval.status)

    if approval.requested_by == deciding_user and not current_app.config.get("APPROVAL_ALLOW_SELF_APPROVAL"):
        logger.warning(
            "Self-approval refused",
            extra={"approval_id": approval_id, "actor": deciding_user},
        )
        raise PermissionDenied(
            "Self-approval is not permitted. "
            "The approver must be a different user than the requester.",
            required_role="APPROVER",
        )

    result = db.session.execute(
        update(ApprovalRequest)
        .where(ApprovalRequest.id == approval_id, ApprovalRequest.status == "PENDING")
        .values(
            status=decision,
            decided_by=deciding_user,
            decided_at=datetime.now(timezone.utc),
            note=note,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        current = db.session.get(ApprovalRequest, approval_id)
        raise AlreadyDecided(approval_id, current.status if current else None)

    db.session.refresh(approval)
    if decision == "REJECTED":
        post_outcome(approval, "rejected")
    db.session.commit()

    logger.info(
        "Approval request %s", decision.lower(),
        extra={"approval_id": approval_id, "actor": deciding_user},
    )
    return approval


def mark_execution_failed(approval_id: int, error: str) -> ApprovalRequest:
    """Flag an APPROVED request whose apply failed (flush only).

    The decision fields are untouched, so the write-once guard allows it.
    A request that already executed is left as it is.
    """
    approval = get(approval_id)
    result = db.session.execute(
        update(ApprovalRequest)
        .where(ApprovalRequest.id == approval_id, ApprovalRequest.execution_status != "EXECUTED")
        .values(execution_status="FAILED", execution_error=(error or "")[:2000])
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(approval)
    if result.rowcount != 1:
        logger.info(
            "Approval request already executed; failure not recorded: %s", error,
            extra={"approval_id": approval_id},
        )
        return approval
    logger.warning(
        "Approved request failed to execute: %s", error,
        extra={"approval_id": approval_id},
    )
    return approval


def post_outcome(approval: ApprovalRequest, outcome: str):
    """Append the decision outcome to the originating session as a SYSTEM message (flush only)."""
    text = get_registry().render_system(
        "decision_notice",
        approval_id=approval.id,
        summary=approval.summary,
        outcome=outcome,
        decided_by=approval.decided_by or "an approver",
        note=f" Note: {approval.note}" if approval.note else "",
    )
    return conversation.post_system_notice(approval.session_id, text)
