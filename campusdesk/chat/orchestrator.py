"""
CampusDesk
Conversation orchestrator — runs one user turn end to end.

    submit_user_turn(session_id, text, actor, cancel_event=None)

Flow:
    1. USER message appended (flushed)
    2. history + role preamble + allowed tools → completion service
    3. each tool call: authorize → decode → run query | queue proposal | refuse
    4. query results go back for another round (bounded by CHAT_MAX_TOOL_ROUNDS)
    5. ASSISTANT message + SYSTEM notes + PENDING approval requests, one commit

Nothing a tool call proposes is ever applied here; proposals only reach
the approval ledger.  A failed completion call or a cancelled turn rolls
back everything, the USER message included.
"""

import json
import logging
import threading

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from campusdesk.auth import Actor
from campusdesk.chat import codec, conversation, ledger, policy
from campusdesk.chat.codec import QueryCall
from campusdesk.chat.gateway import get_gateway
from campusdesk.chat.tools import get_tool, run_query
from campusdesk.core.exceptions import (
    CompletionServiceUnavailable,
    ConflictError,
    MalformedProposal,
    StorageUnavailable,
    TurnCancelled,
    UnknownCapability,
    ValidationError,
)
from campusdesk.models import db

logger = logging.getLogger(__name__)


def _check_cancelled(cancel_event: threading.Event | None):
    if cancel_event is not None and cancel_event.is_set():
        raise TurnCancelled("Turn cancelled by the user")


def _format_details(details: dict) -> str:
    return "; ".join(f"{field}: {reason}" for field, reason in sorted(details.items()))


class _Turn:
    """Mutable bookkeeping for one turn (tool calls seen, notes, proposals, usage)."""

    def __init__(self):
        self.contents: list[str] = []
        self.tool_calls: list[dict] = []
        self.notes: list[str] = []
        self.proposals: list = []
        self.proposal_keys: set[str] = set()
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.latency_ms = 0
        self.model = None

    def absorb(self, result: dict):
        if (result.get("content") or "").strip():
            self.contents.append(result["content"])
        self.tool_calls.extend(result.get("tool_calls") or [])
        self.prompt_tokens += result.get("prompt_tokens", 0)
        self.completion_tokens += result.get("completion_tokens", 0)
        self.latency_ms += result.get("latency_ms", 0)
        self.model = result.get("model", self.model)

    def queue(self, descriptor) -> bool:
        """Queue a proposal once per turn; a repeat of the same change is dropped."""
        data = descriptor.to_dict()
        data.pop("tool_call_id", None)
        data.pop("reason", None)
        key = json.dumps(data, sort_keys=True, default=str)
        if key in self.proposal_keys:
            return False
        self.proposal_keys.add(key)
        self.proposals.append(descriptor)
        return True


def _route_call(call: dict, actor: Actor, turn: _Turn):
    """
    Authorize and decode one tool call.

    Returns ``(tool_result_json, QueryCall | None)``; the JSON is what the
    completion service sees if another round follows.
    """
    name = call.get("name")
    spec = get_tool(name)

    # Authorization happens before the payload is looked at.
    if spec is not None and not policy.is_permitted(actor, spec):
        logger.info("Tool %s refused for role %s", name, actor.role,
                    extra={"tool": name, "actor": actor.user_id})
        turn.notes.append(f"Refused: '{name}' is not available to your role ({actor.role}).")
        return json.dumps({"error": "not permitted for this user"}), None

    try:
        decoded = codec.decode(call)
    except UnknownCapability:
        logger.warning("Unknown tool %r emitted by completion service", name, extra={"tool": str(name)})
        turn.notes.append(f"Refused: the assistant asked for an unknown tool '{name}'. Nothing was changed.")
        return json.dumps({"error": "unknown tool"}), None
    except MalformedProposal as exc:
        logger.info("Malformed proposal from %s: %s", name, exc.details, extra={"tool": name})
        turn.notes.append(
            f"Refused: the proposed change was invalid ({_format_details(exc.details)}). Nothing was queued."
        )
        return json.dumps({"error": str(exc), "details": exc.details}), None

    if isinstance(decoded, QueryCall):
        return None, decoded

    if not turn.queue(decoded):
        logger.info("Duplicate proposal dropped: %s", decoded.summary, extra={"tool": name})
        return json.dumps({"status": "already queued for human approval", "summary": decoded.summary}), None
    return json.dumps({"status": "queued for human approval", "summary": decoded.summary}), None


def submit_user_turn(session_id: int, text: str, actor: Actor,
                     cancel_event: threading.Event | None = None) -> dict:
    """
    Run one user turn and commit it.

    Returns:
        dict: {session, messages (new, in seq order), approvals (created)}

    Raises:
        NotFoundError: the session does not exist or is not the actor's.
        ValidationError: empty/oversized text or an archived session.
        CompletionServiceUnavailable: every completion attempt failed.
        TurnCancelled: ``cancel_event`` was set before tool calls were decoded.
    """
    cfg = current_app.config
    text = (text or "").strip()
    if not text:
        raise ValidationError("content is required", details={"content": "required"})
    max_chars = cfg.get("CHAT_MAX_MESSAGE_CHARS", 8000)
    if len(text) > max_chars:
        raise ValidationError("message is too long", details={"content": f"max {max_chars} characters"})

    session = conversation.get_owned_session(session_id, actor.user_id)
    if session.is_archived:
        raise ValidationError("Session is archived", details={"session": "archived sessions are read-only"})

    max_rounds = cfg.get("CHAT_MAX_TOOL_ROUNDS", 3)
    turn = _Turn()
    new_messages = []
    approvals = []

    try:
        _check_cancelled(cancel_event)
        new_messages.append(conversation.append_message(session, "USER", text))

        messages = [{"role": "system", "content": policy.build_preamble(actor)}]
        messages += conversation.history_for_model(session, cfg.get("CHAT_MAX_HISTORY_MESSAGES", 20))
        tools = policy.tool_definitions(actor)
        gateway = get_gateway()

        for round_no in range(1, max_rounds + 1):
            result = gateway.chat(messages, tools=tools or None, user=actor.user_id)
            turn.absorb(result)
            calls = result.get("tool_calls") or []
            _check_cancelled(cancel_event)
            if not calls:
                break

            tool_results = []
            queries = []
            for call in calls:
                payload, query = _route_call(call, actor, turn)
                tool_results.append((call, payload))
                if query is not None:
                    queries.append(query)

            if not queries:
                break
            if round_no == max_rounds:
                turn.notes.append(f"Stopped after {max_rounds} lookup rounds; some lookups were not run.")
                break

            messages.append({"role": "assistant", "content": result.get("content") or "",
                             "tool_calls": calls})
            for call, payload in tool_results:
                if payload is None:
                    spec = get_tool(call["name"])
                    payload = run_query(spec, call.get("input"))
                messages.append({"role": "tool", "tool_call_id": call.get("id"), "content": payload})

        assistant_msg = conversation.append_message(
            session, "ASSISTANT", "\n\n".join(turn.contents),
            tool_calls=turn.tool_calls, model=turn.model,
            prompt_tokens=turn.prompt_tokens, completion_tokens=turn.completion_tokens,
            latency_ms=turn.latency_ms,
        )
        new_messages.append(assistant_msg)

        for descriptor in turn.proposals:
            approval = ledger.create(descriptor, assistant_msg, actor.user_id, session_id=session.id)
            approvals.append(approval)
            turn.notes.append(f"Approval request #{approval.id} submitted: {approval.summary}. "
                              "It takes effect only after an approver accepts it.")
        for note in turn.notes:
            new_messages.append(conversation.append_message(session, "SYSTEM", note))

        db.session.commit()
    except (CompletionServiceUnavailable, TurnCancelled):
        db.session.rollback()
        logger.info("Turn rolled back", extra={"session_id": session_id, "actor": actor.user_id})
        raise
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Concurrent turn on session %s: %s", session_id, exc.orig,
                       extra={"session_id": session_id})
        raise ConflictError("ChatMessage", "session_id", str(session_id)) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Turn could not be stored: %s", exc, extra={"session_id": session_id})
        raise StorageUnavailable() from exc
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Turn complete: %d tool call(s), %d proposal(s)",
        len(turn.tool_calls), len(approvals),
        extra={"session_id": session_id, "actor": actor.user_id},
    )
    return {
        "session": session.to_dict(),
        "messages": [m.to_dict() for m in new_messages],
        "approvals": [a.to_dict() for a in approvals],
    }
