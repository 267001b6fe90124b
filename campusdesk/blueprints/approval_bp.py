"""
Approval Blueprint — review surface for model-proposed changes.

Endpoints:
    GET    /api/v1/chat/approvals                        ?status=&type=&page=&per_page=
    GET    /api/v1/chat/approvals/<id>
    POST   /api/v1/chat/approvals/<id>/decide            { decision: APPROVED|REJECTED, note? }  (APPROVER)
    GET    /api/v1/chat/approvals/remediation            approved-but-failed queue               (APPROVER)
    POST   /api/v1/chat/approvals/<id>/retry-execution   operator re-attempt                     (APPROVER)
    GET    /api/v1/chat/approvals/pending-count
    GET    /api/v1/chat/approvals/stats

Layer contract:
    - Decision rules (self-approval, one winning decision) live in chat.ledger.
    - An APPROVED decision is committed first, then handed to chat.executor.
      An execution failure never undoes the decision; the response reports
      it and the request moves to the remediation queue.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from campusdesk.auth import current_actor, require_role
from campusdesk.chat import executor, ledger
from campusdesk.core.exceptions import StaleTarget, StorageUnavailable
from campusdesk.utils.errors import E, api_error
from campusdesk.utils.helpers import page_args

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1/chat/approvals")


def _execution_response(approval_id: int, exc: Exception):
    """200 body for a decided request whose execution did not complete."""
    approval = ledger.get(approval_id)
    return jsonify({
        "approval": approval.to_dict(),
        "executed": False,
        "execution": None,
        "execution_error": str(exc),
        "details": getattr(exc, "details", {}),
    })


@approval_bp.route("", methods=["GET"])
def list_approvals():
    page, per_page = page_args(default_per_page=current_app.config.get("APPROVAL_PER_PAGE", 30))
    result = ledger.list_requests(
        status=request.args.get("status") or None,
        type_=request.args.get("type") or None,
        page=page,
        per_page=per_page,
    )
    return jsonify(result)


@approval_bp.route("/pending-count", methods=["GET"])
def pending_count():
    return jsonify({"pending": ledger.pending_count()})


@approval_bp.route("/stats", methods=["GET"])
def approval_stats():
    return jsonify(ledger.stats())


@approval_bp.route("/remediation", methods=["GET"])
@require_role("APPROVER")
def remediation_queue():
    page, per_page = page_args(default_per_page=current_app.config.get("APPROVAL_PER_PAGE", 30))
    return jsonify(ledger.remediation_queue(page=page, per_page=per_page))


@approval_bp.route("/<int:approval_id>", methods=["GET"])
def get_approval(approval_id):
    return jsonify(ledger.get(approval_id).to_dict())


@approval_bp.route("/<int:approval_id>/decide", methods=["POST"])
@require_role("APPROVER")
def decide(approval_id):
    """Approve or reject a PENDING request.

    409 if another decision already landed; 403 on self-approval.
    """
    data = request.get_json(silent=True) or {}
    decision = data.get("decision")
    if not decision:
        return api_error(E.VALIDATION_REQUIRED, "decision is required")
    if not isinstance(decision, str):
        return api_error(E.VALIDATION_INVALID, "decision must be a string")
    note = data.get("note")
    if note is not None and not isinstance(note, str):
        return api_error(E.VALIDATION_INVALID, "note must be a string")

    actor = current_actor()
    approval = ledger.decide(approval_id, decision, actor.user_id, note=note)
    if approval.status != "APPROVED":
        return jsonify({"approval": approval.to_dict(), "executed": False, "execution": None})

    try:
        result = executor.apply(approval_id, actor.user_id)
    except (StaleTarget, StorageUnavailable) as exc:
        logger.warning("Approved request did not execute: %s", exc, extra={"approval_id": approval_id})
        return _execution_response(approval_id, exc)
    return jsonify(result)


@approval_bp.route("/<int:approval_id>/retry-execution", methods=["POST"])
@require_role("APPROVER")
def retry_execution(approval_id):
    try:
        result = executor.retry(approval_id, current_actor().user_id)
    except (StaleTarget, StorageUnavailable) as exc:
        return _execution_response(approval_id, exc)
    return jsonify(result)
