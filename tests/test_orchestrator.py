"""
Orchestrator tests — one user turn with a scripted completion service.

Tests cover:
  - role gating happens before decode (GENERAL never reaches the codec)
  - ADMIN proposals become PENDING approval requests, nothing applied
  - malformed / unknown tool calls are refused with a SYSTEM note
  - query tools run inline and feed another completion round
  - completion failure and cancellation leave no trace
"""

import json
import threading
from unittest.mock import patch

import pytest

from campusdesk.chat import conversation, orchestrator
from campusdesk.core.exceptions import CompletionServiceUnavailable, NotFoundError, TurnCancelled, ValidationError
from campusdesk.models import db
from campusdesk.models.audit import AuditLog
from campusdesk.models.chat import ApprovalRequest, ChatMessage
from campusdesk.models.school import Student


def reply(content="", *tool_calls):
    return {"content": content, "tool_calls": list(tool_calls)}


def call(name, payload, call_id=None):
    return {"id": call_id or f"call_{name}", "name": name, "input": payload}


WITHDRAW = {
    "entity_type": "student", "operation": "update", "target_id": "S123",
    "changes": {"status": "WITHDRAWN"}, "reason": "Moved back home",
}


def _session(actor):
    session = conversation.create_session(actor.user_id)
    db.session.commit()
    return session


class TestPermissionGate:
    def test_general_proposal_refused_before_decode(self, school, fake_gateway, general):
        session = _session(general)
        fake_gateway.script(reply("Sure.", call("propose_data_change", WITHDRAW)))

        with patch("campusdesk.chat.orchestrator.codec.decode") as decode:
            result = orchestrator.submit_user_turn(session.id, "withdraw S123", general)
        decode.assert_not_called()

        assert result["approvals"] == []
        assert ApprovalRequest.query.count() == 0
        notes = [m for m in result["messages"] if m["role"] == "SYSTEM"]
        assert len(notes) == 1
        assert "not available to your role (GENERAL)" in notes[0]["content"]

    def test_general_is_offered_read_tools_only(self, school, fake_gateway, general):
        session = _session(general)
        orchestrator.submit_user_turn(session.id, "hello", general)

        offered = set(fake_gateway.calls[0]["tools"])
        assert offered == {"search_students", "search_attendance", "search_tuition"}

    def test_approver_is_offered_review_tool(self, school, fake_gateway, approver):
        session = _session(approver)
        orchestrator.submit_user_turn(session.id, "hello", approver)

        offered = set(fake_gateway.calls[0]["tools"])
        assert "review_pending_approvals" in offered
        assert "propose_data_change" in offered

    def test_preamble_names_the_role(self, school, fake_gateway, admin):
        session = _session(admin)
        orchestrator.submit_user_turn(session.id, "hello", admin)

        system = fake_gateway.calls[0]["messages"][0]
        assert system["role"] == "system"
        assert "administrator" in system["content"]
        assert "attendance-policy" in system["content"]
        assert fake_gateway.calls[0]["user"] == "suzuki"


class TestProposals:
    def test_admin_proposal_is_queued_not_applied(self, school, fake_gateway, admin):
        session = _session(admin)
        fake_gateway.script(reply("Submitted for approval.", call("propose_data_change", WITHDRAW)))

        result = orchestrator.submit_user_turn(session.id, "S123 has withdrawn", admin)

        assert len(result["approvals"]) == 1
        approval = db.session.get(ApprovalRequest, result["approvals"][0]["id"])
        assert approval.status == "PENDING"
        assert approval.requested_by == "suzuki"
        assert approval.session_id == session.id
        assert approval.tool_call_id == "call_propose_data_change"
        assert approval.origin_message.role == "ASSISTANT"
        assert approval.descriptor["changes"] == {"status": "WITHDRAWN"}

        assert db.session.get(Student, "S123").status == "ENROLLED"
        assert AuditLog.query.count() == 0

    def test_two_proposals_in_one_turn(self, school, fake_gateway, admin):
        session = _session(admin)
        fake_gateway.script(reply(
            "Two changes prepared.",
            call("propose_data_change", WITHDRAW, "c1"),
            call("propose_knowledge_update",
                 {"slug": "attendance-policy", "body": "Updated threshold text"}, "c2"),
        ))

        result = orchestrator.submit_user_turn(session.id, "do both", admin)

        types = sorted(a["type"] for a in result["approvals"])
        assert types == ["DATA_CHANGE", "KNOWLEDGE_UPDATE"]
        seqs = [m["seq"] for m in result["messages"]]
        assert seqs == sorted(seqs)
        assert seqs == list(range(1, len(seqs) + 1))

    def test_malformed_proposal_refused(self, school, fake_gateway, admin):
        session = _session(admin)
        bad = dict(WITHDRAW, changes={"status": "ON_VACATION"})
        fake_gateway.script(reply("Done.", call("propose_data_change", bad)))

        result = orchestrator.submit_user_turn(session.id, "S123 on vacation", admin)

        assert result["approvals"] == []
        note = [m for m in result["messages"] if m["role"] == "SYSTEM"][0]
        assert "invalid" in note["content"]
        assert "status" in note["content"]

    def test_unknown_tool_refused(self, school, fake_gateway, admin):
        session = _session(admin)
        fake_gateway.script(reply("", call("delete_everything", {})))

        result = orchestrator.submit_user_turn(session.id, "clean up", admin)

        assert result["approvals"] == []
        note = [m for m in result["messages"] if m["role"] == "SYSTEM"][0]
        assert "unknown tool 'delete_everything'" in note["content"]

    def test_oddly_typed_proposal_refused_not_crashed(self, school, fake_gateway, admin):
        session = _session(admin)
        bad = dict(WITHDRAW, entity_type=["student"])
        fake_gateway.script(reply("Done.", call("propose_data_change", bad)))

        result = orchestrator.submit_user_turn(session.id, "withdraw S123", admin)

        assert result["approvals"] == []
        note = [m for m in result["messages"] if m["role"] == "SYSTEM"][0]
        assert "entity_type" in note["content"]
        assert ChatMessage.query.filter_by(session_id=session.id).count() == 3

    def test_repeated_proposal_across_rounds_queued_once(self, school, fake_gateway, admin):
        session = _session(admin)
        fake_gateway.script(
            reply("", call("search_students", {"student_id": "S123"}, "q1"),
                  call("propose_data_change", WITHDRAW, "c1")),
            reply("Queued.", call("propose_data_change", dict(WITHDRAW, reason="as requested"), "c2")),
        )

        result = orchestrator.submit_user_turn(session.id, "S123 has withdrawn", admin)

        assert len(fake_gateway.calls) == 2
        assert len(result["approvals"]) == 1
        assert ApprovalRequest.query.count() == 1
        assert db.session.get(ApprovalRequest, result["approvals"][0]["id"]).tool_call_id == "c1"


class TestQueryRounds:
    def test_query_result_fed_back(self, school, fake_gateway, general):
        session = _session(general)
        fake_gateway.script(
            reply("", call("search_attendance", {"student_id": "S123"}, "q1")),
            reply("S123 is at 74% for May."),
        )

        result = orchestrator.submit_user_turn(session.id, "How is S123's attendance?", general)

        assert len(fake_gateway.calls) == 2
        second = fake_gateway.calls[1]["messages"]
        assert second[-2]["role"] == "assistant"
        assert second[-2]["tool_calls"][0]["id"] == "q1"
        tool_msg = second[-1]
        assert tool_msg["role"] == "tool"
        assert tool_msg["tool_call_id"] == "q1"
        payload = json.loads(tool_msg["content"])
        assert payload["records"][0]["attendance_rate"] == 74

        assistant = [m for m in result["messages"] if m["role"] == "ASSISTANT"][0]
        assert assistant["content"] == "S123 is at 74% for May."
        assert assistant["prompt_tokens"] == 20

    def test_rounds_are_bounded(self, app, school, fake_gateway, general):
        app.config["CHAT_MAX_TOOL_ROUNDS"] = 2
        try:
            session = _session(general)
            looping = reply("", call("search_students", {}, "q"))
            fake_gateway.script(looping, looping, looping)

            result = orchestrator.submit_user_turn(session.id, "list students", general)
        finally:
            app.config["CHAT_MAX_TOOL_ROUNDS"] = 3

        assert len(fake_gateway.calls) == 2
        note = [m for m in result["messages"] if m["role"] == "SYSTEM"][0]
        assert "Stopped after 2 lookup rounds" in note["content"]

    def test_history_is_replayed(self, school, fake_gateway, general):
        session = _session(general)
        fake_gateway.script(reply("First answer."), reply("Second answer."))
        orchestrator.submit_user_turn(session.id, "first question", general)
        orchestrator.submit_user_turn(session.id, "second question", general)

        history = [(m["role"], m["content"]) for m in fake_gateway.calls[1]["messages"][1:]]
        assert history == [
            ("user", "first question"),
            ("assistant", "First answer."),
            ("user", "second question"),
        ]


class TestFailures:
    def test_completion_failure_leaves_no_messages(self, school, fake_gateway, admin):
        session = _session(admin)
        fake_gateway.fail_with(CompletionServiceUnavailable(provider="fake"))

        with pytest.raises(CompletionServiceUnavailable):
            orchestrator.submit_user_turn(session.id, "S123 has withdrawn", admin)

        assert ChatMessage.query.filter_by(session_id=session.id).count() == 0
        assert ApprovalRequest.query.count() == 0

    def test_cancelled_turn_creates_no_approval(self, school, fake_gateway, admin):
        session = _session(admin)
        cancel = threading.Event()

        def cancel_mid_turn(messages, tools):
            cancel.set()
            return reply("Submitted.", call("propose_data_change", WITHDRAW))

        fake_gateway.script(cancel_mid_turn)

        with pytest.raises(TurnCancelled):
            orchestrator.submit_user_turn(session.id, "S123 has withdrawn", admin, cancel_event=cancel)

        assert ApprovalRequest.query.count() == 0
        assert ChatMessage.query.filter_by(session_id=session.id).count() == 0

    def test_empty_text_rejected(self, school, admin):
        session = _session(admin)
        with pytest.raises(ValidationError):
            orchestrator.submit_user_turn(session.id, "   ", admin)

    def test_oversized_text_rejected(self, app, school, admin):
        session = _session(admin)
        limit = app.config["CHAT_MAX_MESSAGE_CHARS"]
        with pytest.raises(ValidationError):
            orchestrator.submit_user_turn(session.id, "x" * (limit + 1), admin)

    def test_archived_session_is_read_only(self, school, admin):
        session = _session(admin)
        conversation.archive_session(session)
        db.session.commit()
        with pytest.raises(ValidationError):
            orchestrator.submit_user_turn(session.id, "hello", admin)

    def test_other_users_session_not_found(self, school, admin, general):
        session = _session(admin)
        with pytest.raises(NotFoundError):
            orchestrator.submit_user_turn(session.id, "hello", general)
