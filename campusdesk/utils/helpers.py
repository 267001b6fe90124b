"""Shared blueprint/service helpers.

get_or_404:          tuple-return lookup (no abort)
parse_date:          returns None on bad input
page_args:           clamp ?page=&per_page= query params
paginate_envelope:   {items, total, page, per_page, pages} from a Flask-SQLAlchemy page
db_commit_or_error:  commit with IntegrityError → 409, anything else → 500
"""
import logging
from datetime import date, datetime

from flask import jsonify, request

from campusdesk.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(Student, sid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found", "code": "ERR_NOT_FOUND"}), 404)
    return obj, None


def parse_date(value):
    """Parse an ISO date (or ISO datetime) to a date object; None for empty/invalid input."""
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        return None


def page_args(default_per_page=30, max_per_page=200):
    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(max_per_page, max(1, request.args.get("per_page", default_per_page, type=int)))
    return page, per_page


def paginate_envelope(query, page, per_page, serializer=None):
    """Run ``query.paginate`` and wrap the page in the list envelope every list endpoint returns."""
    paginated = query.paginate(page=page, per_page=per_page, error_out=False)
    serialize = serializer or (lambda obj: obj.to_dict())
    return {
        "items": [serialize(obj) for obj in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    }


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure, ready for ``return``.

    Usage::

        err = db_commit_or_error()
        if err:
            return err

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 503 (connection / lock issues; retryable)
    Other → 500 (unexpected)
    """
    from sqlalchemy.exc import IntegrityError, OperationalError

    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return jsonify({"error": "Duplicate or constraint violation",
                        "code": "ERR_CONFLICT_DUPLICATE"}), 409
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return jsonify({"error": "Storage unavailable", "code": "ERR_STORAGE_UNAVAILABLE"}), 503
    except Exception:
        db.session.rollback()
        logger.exception("Unexpected database error on commit")
        return jsonify({"error": "Database error", "code": "ERR_DATABASE"}), 500
