"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter instance
is created in campusdesk/__init__.py with no default limits; this module
applies granular limits per route category, keyed by staff user when one is
bound to the request and by remote address otherwise.

Usage:
    from campusdesk.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

CHAT_LIMIT = "20/minute"
WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def actor_rate_limit_key():
    """Dynamic rate limit key: staff user if authenticated, else remote IP."""
    user = getattr(g, "current_user", None)
    if user:
        return f"user:{user}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per staff user):
        - Chat endpoints:     20/minute  (each turn calls the completion service)
        - Approvals/records:  60/minute
        - Audit/knowledge:    200/minute (read-only)
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("chat")
    if bp:
        limiter.limit(CHAT_LIMIT, key_func=actor_rate_limit_key)(bp)

    for bp_name in ("approval", "student"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT, key_func=actor_rate_limit_key)(bp)

    for bp_name in ("audit", "knowledge"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT, key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — chat: %s, write: %s, read: %s",
        CHAT_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
