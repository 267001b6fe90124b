"""
CampusDesk
Conversation store — chat sessions and their append-only message log.

    - Create / rename / archive / list sessions (owner-scoped)
    - Append messages with a strictly increasing per-session ``seq``
    - Build the history window sent to the completion service
    - Post SYSTEM notices (approval outcomes) back into a session

Writes here only ``flush``; the caller owns the transaction.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import func

from campusdesk.core.exceptions import NotFoundError, ValidationError
from campusdesk.models import db
from campusdesk.models.chat import ChatMessage, ChatSession

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 300
DEFAULT_TITLE_LENGTH = 60

# Stored role → neutral gateway role
_MODEL_ROLES = {"USER": "user", "ASSISTANT": "assistant", "SYSTEM": "system"}


# ── Sessions ─────────────────────────────────────────────────────────────────

def create_session(user_id: str, title: str = "") -> ChatSession:
    title = (title or "").strip()
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError("title is too long", details={"title": f"max {MAX_TITLE_LENGTH} characters"})
    session = ChatSession(user_id=user_id, title=title, message_count=0)
    db.session.add(session)
    db.session.flush()
    logger.info("Chat session %d created", session.id, extra={"session_id": session.id, "actor": user_id})
    return session


def get_owned_session(session_id: int, user_id: str) -> ChatSession:
    """Return the session if *user_id* owns it; otherwise NotFoundError (never reveals others' sessions)."""
    session = db.session.get(ChatSession, session_id)
    if session is None or session.user_id != user_id:
        raise NotFoundError(resource="ChatSession", resource_id=session_id)
    return session


def list_sessions(user_id: str, include_archived: bool = False):
    q = ChatSession.query.filter(ChatSession.user_id == user_id)
    if not include_archived:
        q = q.filter(ChatSession.archived_at.is_(None))
    return q.order_by(ChatSession.updated_at.desc(), ChatSession.id.desc())


def rename_session(session: ChatSession, title: str) -> ChatSession:
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError("title is too long", details={"title": f"max {MAX_TITLE_LENGTH} characters"})
    session.title = title
    db.session.flush()
    return session


def archive_session(session: ChatSession) -> ChatSession:
    if not session.is_archived:
        session.archive()
        db.session.flush()
        logger.info("Chat session %d archived", session.id, extra={"session_id": session.id})
    return session


# ── Messages ─────────────────────────────────────────────────────────────────

def _next_seq(session_id: int) -> int:
    current = (
        db.session.query(func.max(ChatMessage.seq))
        .filter(ChatMessage.session_id == session_id)
        .scalar()
    )
    return (current or 0) + 1


def append_message(
    session: ChatSession,
    role: str,
    content: str,
    *,
    tool_calls: list | None = None,
    model: str | None = None,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    latency_ms: int = 0,
) -> ChatMessage:
    msg = ChatMessage(
        session_id=session.id,
        seq=_next_seq(session.id),
        role=role,
        content=content or "",
        tool_calls_json=json.dumps(tool_calls, ensure_ascii=False) if tool_calls else None,
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        latency_ms=latency_ms,
    )
    db.session.add(msg)
    session.message_count = msg.seq
    if role == "USER" and not session.title:
        session.title = content.strip().splitlines()[0][:DEFAULT_TITLE_LENGTH] if content.strip() else ""
    db.session.flush()
    return msg


def list_messages(session: ChatSession, after_seq: int | None = None) -> list[ChatMessage]:
    q = ChatMessage.query.filter(ChatMessage.session_id == session.id)
    if after_seq is not None:
        q = q.filter(ChatMessage.seq > after_seq)
    return q.order_by(ChatMessage.seq.asc()).all()


def history_for_model(session: ChatSession, max_messages: int) -> list[dict]:
    """
    The last *max_messages* turns in neutral gateway format, oldest first.

    Tool payloads are not replayed: only the text of each turn is sent.
    """
    recent = (
        ChatMessage.query.filter(ChatMessage.session_id == session.id)
        .order_by(ChatMessage.seq.desc())
        .limit(max_messages)
        .all()
    )
    history = []
    for m in reversed(recent):
        if not (m.content or "").strip():
            continue
        history.append({"role": _MODEL_ROLES[m.role], "content": m.content})
    return history


def post_system_notice(session_id: int | None, text: str) -> ChatMessage | None:
    """Append a SYSTEM message to *session_id* if it still exists (archived or not)."""
    if session_id is None:
        return None
    session = db.session.get(ChatSession, session_id)
    if session is None:
        return None
    return append_message(session, "SYSTEM", text)
