"""
CampusDesk
Audit blueprint — read-only view of the audit trail.

Endpoints:
    GET  /api/v1/audit               — list / filter audit logs
    GET  /api/v1/audit/<int:log_id>  — single audit entry
"""

from flask import Blueprint, jsonify, request

from campusdesk.services import audit_recorder
from campusdesk.utils.helpers import page_args

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Return paginated audit logs with optional filters.

    Query params:
        entity_type          — student | school_class | tuition_invoice | knowledge_article
        entity_id            — filter by entity PK
        action               — CREATE | UPDATE | DELETE | KNOWLEDGE_UPDATE
        actor                — filter by actor
        source               — chat | api
        approval_request_id  — rows written by one approval request
        since / until        — ISO datetime bounds
        page                 — page number (default 1)
        per_page             — items per page (default 50, max 200)
    """
    page, per_page = page_args(default_per_page=50)
    filters = {
        key: request.args.get(key)
        for key in ("entity_type", "entity_id", "action", "actor", "source", "since", "until")
        if request.args.get(key)
    }
    approval_request_id = request.args.get("approval_request_id", type=int)
    if approval_request_id is not None:
        filters["approval_request_id"] = approval_request_id

    return jsonify(audit_recorder.list_entries(filters, page=page, per_page=per_page))


@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    return jsonify(audit_recorder.get_entry(log_id).to_dict())
