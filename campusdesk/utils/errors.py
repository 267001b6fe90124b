"""Standardised API error responses.

Usage
-----
    from campusdesk.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Student not found")
    return api_error(E.VALIDATION_REQUIRED, "text is required")
    return api_error(E.CONFLICT_DECIDED, "Already decided", details={"status": "APPROVED"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business rule – HTTP 422
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    MALFORMED_PROPOSAL = "ERR_MALFORMED_PROPOSAL"
    UNKNOWN_CAPABILITY = "ERR_UNKNOWN_CAPABILITY"
    STALE_TARGET = "ERR_STALE_TARGET"

    # Auth – HTTP 401 / 403
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_DECIDED = "ERR_CONFLICT_DECIDED"

    # Client went away – HTTP 499
    CANCELLED = "ERR_CANCELLED"

    # Server – HTTP 500 / 503
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"
    UPSTREAM_UNAVAILABLE = "ERR_UPSTREAM_UNAVAILABLE"
    STORAGE_UNAVAILABLE = "ERR_STORAGE_UNAVAILABLE"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.MALFORMED_PROPOSAL: 422,
    E.UNKNOWN_CAPABILITY: 422,
    E.STALE_TARGET: 422,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_DECIDED: 409,
    E.CANCELLED: 499,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.UPSTREAM_UNAVAILABLE: 503,
    E.STORAGE_UNAVAILABLE: 503,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, current status, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
