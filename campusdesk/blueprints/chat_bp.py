"""
Chat Blueprint — sessions and user turns.

Endpoints:
    POST   /api/v1/chat/sessions                      create session { title? }
    GET    /api/v1/chat/sessions                      own sessions (?include_archived=1)
    GET    /api/v1/chat/sessions/<id>                 session (+ messages with ?include_messages=1)
    PATCH  /api/v1/chat/sessions/<id>                 rename { title }
    POST   /api/v1/chat/sessions/<id>/archive         soft-archive
    GET    /api/v1/chat/sessions/<id>/messages        messages in seq order (?after_seq=)
    POST   /api/v1/chat/sessions/<id>/messages        submit a user turn { content }
    POST   /api/v1/chat/turns                         submit a turn { content, session_id? }
                                                      (creates the session on first message)

Layer contract:
    - Blueprint: parse input, resolve the actor, call the chat services.
    - Turn persistence (one commit per turn) is owned by the orchestrator.
    - Sessions are visible to their owner only; others get 404.
    - Turns posted over HTTP are not cancellable: a synchronous WSGI request
      cannot observe a client disconnect, so no ``cancel_event`` is passed.
      Callers that run ``orchestrator.submit_user_turn`` themselves (workers,
      the shell) can pass one.
"""

import logging

from flask import Blueprint, jsonify, request

from campusdesk.auth import current_actor
from campusdesk.chat import conversation, orchestrator
from campusdesk.utils.errors import E, api_error
from campusdesk.utils.helpers import db_commit_or_error, page_args, paginate_envelope

logger = logging.getLogger(__name__)

chat_bp = Blueprint("chat", __name__, url_prefix="/api/v1/chat")


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() in ("1", "true", "yes")


# ── Sessions ─────────────────────────────────────────────────────────────────


@chat_bp.route("/sessions", methods=["POST"])
def create_session():
    data = request.get_json(silent=True) or {}
    title = data.get("title", "")
    if not isinstance(title, str):
        return api_error(E.VALIDATION_INVALID, "title must be a string")

    session = conversation.create_session(current_actor().user_id, title)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(session.to_dict()), 201


@chat_bp.route("/sessions", methods=["GET"])
def list_sessions():
    page, per_page = page_args()
    q = conversation.list_sessions(current_actor().user_id, include_archived=_flag("include_archived"))
    return jsonify(paginate_envelope(q, page, per_page))


@chat_bp.route("/sessions/<int:session_id>", methods=["GET"])
def get_session(session_id):
    session = conversation.get_owned_session(session_id, current_actor().user_id)
    return jsonify(session.to_dict(include_messages=_flag("include_messages")))


@chat_bp.route("/sessions/<int:session_id>", methods=["PATCH"])
def rename_session(session_id):
    data = request.get_json(silent=True) or {}
    if "title" not in data:
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    if not isinstance(data["title"], str):
        return api_error(E.VALIDATION_INVALID, "title must be a string")

    session = conversation.get_owned_session(session_id, current_actor().user_id)
    conversation.rename_session(session, data["title"])
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(session.to_dict())


@chat_bp.route("/sessions/<int:session_id>/archive", methods=["POST"])
def archive_session(session_id):
    session = conversation.get_owned_session(session_id, current_actor().user_id)
    conversation.archive_session(session)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(session.to_dict())


# ── Messages / turns ─────────────────────────────────────────────────────────


@chat_bp.route("/sessions/<int:session_id>/messages", methods=["GET"])
def list_messages(session_id):
    session = conversation.get_owned_session(session_id, current_actor().user_id)
    after_seq = request.args.get("after_seq", type=int)
    messages = conversation.list_messages(session, after_seq=after_seq)
    return jsonify({"session_id": session.id, "items": [m.to_dict() for m in messages]})


def _turn_text(data: dict):
    content = data.get("content")
    if content is None:
        return None, api_error(E.VALIDATION_REQUIRED, "content is required")
    if not isinstance(content, str):
        return None, api_error(E.VALIDATION_INVALID, "content must be a string")
    return content, None


@chat_bp.route("/sessions/<int:session_id>/messages", methods=["POST"])
def post_message(session_id):
    data = request.get_json(silent=True) or {}
    text, err = _turn_text(data)
    if err:
        return err
    result = orchestrator.submit_user_turn(session_id, text, current_actor())
    return jsonify(result), 201


@chat_bp.route("/turns", methods=["POST"])
def post_turn():
    """Submit a turn; without ``session_id`` a new session is created for it."""
    data = request.get_json(silent=True) or {}
    text, err = _turn_text(data)
    if err:
        return err
    if not text.strip():
        return api_error(E.VALIDATION_REQUIRED, "content is required")

    actor = current_actor()
    session_id = data.get("session_id")
    if session_id is None:
        # Flushed only: commits with the turn or rolls back with it.
        session_id = conversation.create_session(actor.user_id).id
    elif not isinstance(session_id, int) or isinstance(session_id, bool):
        return api_error(E.VALIDATION_INVALID, "session_id must be an integer")

    result = orchestrator.submit_user_turn(session_id, text, actor)
    return jsonify(result), 201
