"""
CampusDesk
Execution engine — applies APPROVED requests to the records store, at most once.

    apply(approval_id, actor)     → run an approved request (idempotent)
    retry(approval_id, operator)  → explicit re-attempt from APPROVED_EXECUTION_FAILED

The execution marker (``ApprovalExecution``) is keyed by the approval id,
so inserting it is an insert-if-absent.  Marker, record change, audit row
and the EXECUTED flag commit in one transaction; any failure rolls all of
them back and leaves the request flagged for remediation.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from campusdesk.chat import codec, ledger
from campusdesk.chat.codec import KnowledgeEditDescriptor
from campusdesk.core.exceptions import StaleTarget, StorageUnavailable, ValidationError
from campusdesk.models import db
from campusdesk.models.chat import APPROVED_EXECUTION_FAILED, ApprovalExecution
from campusdesk.services import audit_recorder, records
from campusdesk.services.audit_recorder import ACTION_FOR_OPERATION

logger = logging.getLogger(__name__)


def _outcome(approval, marker, executed_now: bool) -> dict:
    return {
        "approval": approval.to_dict(),
        "executed": executed_now,
        "execution": marker.to_dict() if marker is not None else None,
    }


def _find_marker(approval_id: int):
    return db.session.get(ApprovalExecution, approval_id)


def _already_executed(approval_id: int) -> dict:
    approval = ledger.get(approval_id)
    marker = db.session.get(ApprovalExecution, approval_id)
    logger.info("Approval request already executed; no-op", extra={"approval_id": approval_id})
    return _outcome(approval, marker, executed_now=False)


def _flag_failed(approval_id: int, error: str):
    """Record the failure in its own transaction after the apply was rolled back."""
    approval = ledger.mark_execution_failed(approval_id, error)
    if approval.execution_status == "FAILED":
        ledger.post_outcome(approval, "approved but could not be applied")
    db.session.commit()


def _apply_descriptor(descriptor, approval, actor: str):
    """Run the change through the records store and audit it. Flush only."""
    if isinstance(descriptor, KnowledgeEditDescriptor):
        article, diff = records.upsert_article(descriptor.slug, descriptor.body, actor,
                                               title=descriptor.title)
        return audit_recorder.record(
            action="KNOWLEDGE_UPDATE", actor=actor, entity_type="knowledge_article",
            entity_id=article.slug, diff=diff, approval_request_id=approval.id, source="chat",
        )

    entity_type = descriptor.entity_type
    if descriptor.operation == "create":
        obj, diff = records.create_entity(entity_type, descriptor.changes)
        entity_id = obj.id
    else:
        obj = records.get_entity(entity_type, descriptor.target_id)
        entity_id = descriptor.target_id
        if descriptor.operation == "update":
            diff = records.update_entity(obj, descriptor.changes, entity_type)
        else:
            diff = records.delete_entity(obj, entity_type)

    return audit_recorder.record(
        action=ACTION_FOR_OPERATION[descriptor.operation], actor=actor,
        entity_type=entity_type, entity_id=entity_id, diff=diff,
        approval_request_id=approval.id, source="chat",
    )


def apply(approval_id: int, actor: str) -> dict:
    """
    Apply an APPROVED request exactly once and commit.

    Returns ``{approval, executed, execution}``; ``executed`` is False when
    the request had already been executed (by this or a concurrent call).

    Raises:
        ValidationError: the request is not APPROVED.
        StaleTarget: the change no longer applies; the request is flagged.
        StorageUnavailable: the store failed mid-apply; the request is flagged.
    """
    approval = ledger.get(approval_id)
    if approval.status != "APPROVED":
        raise ValidationError(
            f"Approval request {approval_id} is {approval.status}; only APPROVED requests execute",
            details={"status": approval.status},
        )
    if _find_marker(approval_id) is not None:
        return _already_executed(approval_id)

    # Claim the marker before revalidating; a concurrent winner makes this insert fail.
    marker = ApprovalExecution(approval_request_id=approval_id, executed_by=actor)
    try:
        db.session.add(marker)
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return _already_executed(approval_id)

    descriptor = codec.from_dict(approval.descriptor)
    try:
        codec.revalidate(descriptor)
    except StaleTarget as exc:
        db.session.rollback()
        _flag_failed(approval_id, f"{exc}: {exc.details}")
        raise

    try:
        audit = _apply_descriptor(descriptor, approval, actor)
    except IntegrityError as exc:
        db.session.rollback()
        _flag_failed(approval_id, f"Change conflicts with current records: {exc.orig}")
        raise StaleTarget("Change conflicts with current records",
                          details={"database": str(exc.orig)}) from exc
    except (StorageUnavailable, SQLAlchemyError) as exc:
        db.session.rollback()
        _flag_failed(approval_id, f"Storage failure during apply: {exc}")
        if isinstance(exc, StorageUnavailable):
            raise
        raise StorageUnavailable() from exc

    marker.audit_log_id = audit.id
    approval.execution_status = "EXECUTED"
    approval.execution_error = None
    approval.executed_at = datetime.now(timezone.utc)
    ledger.post_outcome(approval, "approved and applied")

    try:
        db.session.commit()
    except IntegrityError:
        # Concurrent apply committed its marker first.
        db.session.rollback()
        return _already_executed(approval_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        _flag_failed(approval_id, f"Storage failure during commit: {exc}")
        raise StorageUnavailable() from exc

    logger.info(
        "Approval request executed: %s", approval.summary,
        extra={"approval_id": approval_id, "actor": actor},
    )
    return _outcome(approval, marker, executed_now=True)


def retry(approval_id: int, operator: str) -> dict:
    """Operator-initiated re-attempt of a request whose execution failed."""
    approval = ledger.get(approval_id)
    if approval.state != APPROVED_EXECUTION_FAILED:
        raise ValidationError(
            f"Approval request {approval_id} is {approval.state}; "
            f"only {APPROVED_EXECUTION_FAILED} requests can be retried",
            details={"state": approval.state},
        )
    logger.info("Retrying execution", extra={"approval_id": approval_id, "actor": operator})
    return apply(approval_id, operator)
