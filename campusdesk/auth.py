"""
CampusDesk
Authentication & Authorization Middleware.

Provides:
    - API key authentication via X-API-Key header
    - Staff identity (user id + role) on ``flask.g`` for every /api/v1 request
    - Role-based access control (RBAC) decorator
    - CSRF mitigation for state-changing requests (JSON Content-Type only)

Security model:
    - All /api/v1/* endpoints require an authenticated actor (except /api/v1/health)
    - Record writes require ADMIN; approval decisions require APPROVER
    - API keys, their users and roles are configured via environment variables

Configuration (env vars):
    API_KEYS          — comma-separated list of "<key>:<user>:<ROLE>" entries
                        e.g. "k1:tanaka:GENERAL,k2:suzuki:ADMIN,k3:sato:APPROVER"
                        Entries without a role default to GENERAL.
    API_AUTH_ENABLED  — set to "false" to disable key checks (development only).
                        Identity is then read from X-User / X-User-Role headers.
"""

import functools
import logging
import os
from dataclasses import dataclass
from typing import Optional

from flask import current_app, g, jsonify, request

from campusdesk.models.vocab import USER_ROLE

logger = logging.getLogger(__name__)

# ── Roles ────────────────────────────────────────────────────────────────────

ROLES = set(USER_ROLE.values)

# Role hierarchy: APPROVER > ADMIN > GENERAL
ROLE_HIERARCHY = {
    "APPROVER": {"APPROVER", "ADMIN", "GENERAL"},
    "ADMIN": {"ADMIN", "GENERAL"},
    "GENERAL": {"GENERAL"},
}

DEFAULT_ROLE = "GENERAL"
DEV_USER = "dev-user"


@dataclass(frozen=True)
class Actor:
    """The authenticated staff member a request (or chat turn) acts for."""

    user_id: str
    role: str

    def has_role(self, minimum_role: str) -> bool:
        return minimum_role in ROLE_HIERARCHY.get(self.role, set())


def _normalize_role(role: str) -> str:
    role = (role or "").strip().upper()
    if role not in ROLES:
        logger.warning("Unknown role '%s', defaulting to '%s'", role, DEFAULT_ROLE)
        return DEFAULT_ROLE
    return role


def _parse_api_keys() -> dict[str, Actor]:
    """
    Parse API_KEYS env var into {key: Actor} mapping.

    Format: "key1:tanaka:GENERAL,key2:sato:APPROVER"
    """
    raw = os.getenv("API_KEYS", "")
    if not raw.strip():
        return {}

    keys = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = [p.strip() for p in entry.split(":")]
        if len(parts) >= 3:
            key, user, role = parts[0], parts[1], _normalize_role(parts[2])
        elif len(parts) == 2:
            key, user, role = parts[0], parts[1], DEFAULT_ROLE
        else:
            key, user, role = parts[0], parts[0][:8], DEFAULT_ROLE
        keys[key] = Actor(user_id=user, role=role)
    return keys


def _is_auth_enabled() -> bool:
    """Check whether authentication is enabled (env var or app config)."""
    env_val = os.getenv("API_AUTH_ENABLED", "")
    if env_val:
        return env_val.lower() not in ("false", "0", "no", "off")
    try:
        return str(current_app.config.get("API_AUTH_ENABLED", "true")).lower() not in (
            "false", "0", "no", "off",
        )
    except RuntimeError:
        # Outside app context
        return True


def _get_api_key_from_request() -> Optional[str]:
    return request.headers.get("X-API-Key", "").strip() or None


def _dev_actor() -> Actor:
    """Development identity: trusted X-User / X-User-Role headers, least privilege by default."""
    user = request.headers.get("X-User", "").strip() or DEV_USER
    role = request.headers.get("X-User-Role", "").strip()
    return Actor(user_id=user, role=_normalize_role(role) if role else DEFAULT_ROLE)


def _set_actor(actor: Actor) -> None:
    g.actor = actor
    g.current_user = actor.user_id
    g.current_user_role = actor.role


def current_actor() -> Actor:
    """Return the actor bound to this request (set by ``init_auth``)."""
    actor = getattr(g, "actor", None)
    if actor is None:
        raise RuntimeError("No authenticated actor bound to this request")
    return actor


def require_role(minimum_role: str):
    """
    Decorator: require a minimum role level.

    Usage:
        @require_role("APPROVER")
        def decide(approval_id): ...

    Role hierarchy: APPROVER > ADMIN > GENERAL
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            actor = getattr(g, "actor", None)
            if actor is None:
                return jsonify({"error": "Authentication required", "code": "ERR_UNAUTHORIZED"}), 401

            if not actor.has_role(minimum_role):
                logger.warning(
                    "Access denied: role '%s' tried to access '%s'-level endpoint %s",
                    actor.role, minimum_role, request.path,
                    extra={"actor": actor.user_id},
                )
                return jsonify({"error": "Insufficient permissions", "code": "ERR_FORBIDDEN"}), 403

            return f(*args, **kwargs)
        return decorated
    return decorator


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests (POST/PUT/PATCH/DELETE), require
    Content-Type: application/json. HTML forms cannot send that content type.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return jsonify({
                "error": "Content-Type must be application/json for state-changing requests",
                "code": "ERR_VALIDATION_INVALID",
            }), 415
    return None


# ── App-level before_request hook installer ──────────────────────────────────

def init_auth(app):
    """
    Install authentication middleware on the Flask app.

    Every /api/v1 request except health and CORS pre-flight gets an
    ``Actor`` bound to ``g.actor`` or is refused with 401.
    """
    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path == "/api/v1/health" or request.path.startswith("/api/v1/health/"):
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        if not _is_auth_enabled():
            _set_actor(_dev_actor())
            return None

        api_key = _get_api_key_from_request()
        if not api_key:
            return jsonify({"error": "Authentication required. Provide X-API-Key header.",
                            "code": "ERR_UNAUTHORIZED"}), 401

        api_keys = _parse_api_keys()
        if not api_keys:
            logger.error("API_KEYS env var is not configured but API_AUTH_ENABLED=true")
            return jsonify({"error": "Server authentication not configured",
                            "code": "ERR_INTERNAL"}), 500

        actor = api_keys.get(api_key)
        if actor is None:
            logger.warning("Invalid API key attempt: %s...", api_key[:8])
            return jsonify({"error": "Invalid API key", "code": "ERR_UNAUTHORIZED"}), 401

        _set_actor(actor)
        return None

    logger.info("Auth middleware installed (enabled=%s)", _is_auth_enabled())
