"""
Approval ledger tests.

Tests cover:
  - create → PENDING with the descriptor stored as JSON
  - decide exactly once (AlreadyDecided on the second decision)
  - self-approval refusal and the config override
  - write-once guard on decision fields
  - list / filter / stats / pending count
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from campusdesk.chat import codec, conversation, ledger
from campusdesk.core.exceptions import (
    AlreadyDecided,
    ImmutableRecordError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from campusdesk.models import db
from campusdesk.models.chat import ApprovalRequest, ChatMessage


def _request(requested_by="suzuki", target="S123", status="WITHDRAWN", session=None):
    descriptor = codec.validate_mutation("student", "update", target_id=target,
                                         changes={"status": status}, reason="test")
    message = None
    if session is not None:
        message = conversation.append_message(session, "ASSISTANT", "queued")
    approval = ledger.create(descriptor, message, requested_by,
                             session_id=session.id if session is not None else None)
    db.session.commit()
    return approval


class TestCreate:
    def test_create_is_pending(self, school):
        approval = _request()
        assert approval.status == "PENDING"
        assert approval.execution_status == "NOT_STARTED"
        assert approval.type == "DATA_CHANGE"
        assert approval.operation == "update"
        assert approval.target_id == "S123"
        assert approval.descriptor["kind"] == "data_change"
        assert approval.summary == "Update student S123: status → WITHDRAWN"

    def test_create_links_origin_message(self, school):
        session = conversation.create_session("suzuki")
        approval = _request(session=session)
        assert approval.session_id == session.id
        assert approval.origin_message.content == "queued"

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            ledger.get(12345)


class TestDecide:
    def test_approve(self, school):
        approval = _request()
        decided = ledger.decide(approval.id, "approved", "sato", note="ok")
        assert decided.status == "APPROVED"
        assert decided.decided_by == "sato"
        assert decided.decided_at is not None
        assert decided.note == "ok"

    def test_second_decision_raises(self, school):
        approval = _request()
        ledger.decide(approval.id, "APPROVED", "sato")
        with pytest.raises(AlreadyDecided) as exc:
            ledger.decide(approval.id, "REJECTED", "kimura")
        assert exc.value.current_status == "APPROVED"
        assert db.session.get(ApprovalRequest, approval.id).decided_by == "sato"

    def test_losing_a_race_raises_already_decided(self, school):
        """The conditional UPDATE, not the read, decides the winner."""
        approval = _request()
        stale = SimpleNamespace(id=approval.id, status="PENDING", requested_by="suzuki")
        ledger.decide(approval.id, "REJECTED", "kimura")

        with patch("campusdesk.chat.ledger.get", return_value=stale):
            with pytest.raises(AlreadyDecided) as exc:
                ledger.decide(approval.id, "APPROVED", "sato")

        assert exc.value.current_status == "REJECTED"
        final = db.session.get(ApprovalRequest, approval.id)
        assert (final.status, final.decided_by) == ("REJECTED", "kimura")

    def test_self_approval_refused(self, school):
        approval = _request(requested_by="sato")
        with pytest.raises(PermissionDenied):
            ledger.decide(approval.id, "APPROVED", "sato")
        assert db.session.get(ApprovalRequest, approval.id).status == "PENDING"

    def test_self_rejection_also_refused(self, school):
        approval = _request(requested_by="sato")
        with pytest.raises(PermissionDenied):
            ledger.decide(approval.id, "REJECTED", "sato")

    def test_self_approval_config_override(self, app, school):
        app.config["APPROVAL_ALLOW_SELF_APPROVAL"] = True
        approval = _request(requested_by="sato")
        assert ledger.decide(approval.id, "APPROVED", "sato").status == "APPROVED"

    def test_invalid_decision(self, school):
        approval = _request()
        with pytest.raises(ValidationError):
            ledger.decide(approval.id, "PENDING", "sato")

    def test_note_too_long(self, school):
        approval = _request()
        with pytest.raises(ValidationError):
            ledger.decide(approval.id, "REJECTED", "sato", note="x" * (ledger.MAX_NOTE_LENGTH + 1))

    def test_rejection_posts_notice_to_session(self, school):
        session = conversation.create_session("suzuki")
        approval = _request(session=session)
        ledger.decide(approval.id, "REJECTED", "sato", note="Wrong student")

        notice = (
            ChatMessage.query.filter_by(session_id=session.id, role="SYSTEM")
            .order_by(ChatMessage.seq.desc()).first()
        )
        assert f"#{approval.id}" in notice.content
        assert "rejected by sato" in notice.content
        assert "Wrong student" in notice.content

    def test_decision_fields_are_write_once(self, school):
        approval = _request()
        ledger.decide(approval.id, "REJECTED", "sato")

        approval = db.session.get(ApprovalRequest, approval.id)
        approval.status = "APPROVED"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_execution_flags_still_writable_after_decision(self, school):
        approval = _request()
        ledger.decide(approval.id, "APPROVED", "sato")
        flagged = ledger.mark_execution_failed(approval.id, "boom")
        db.session.commit()
        assert flagged.state == "APPROVED_EXECUTION_FAILED"
        assert flagged.execution_error == "boom"


class TestQueries:
    def test_list_newest_first_with_filters(self, school):
        first = _request(target="S101", status="ON_LEAVE")
        second = _request(target="S102", status="ON_LEAVE")
        ledger.decide(first.id, "REJECTED", "sato")

        page = ledger.list_requests()
        assert [item["id"] for item in page["items"]] == [second.id, first.id]
        assert page["total"] == 2

        rejected = ledger.list_requests(status="rejected")
        assert [item["id"] for item in rejected["items"]] == [first.id]

        knowledge = ledger.list_requests(type_="KNOWLEDGE_UPDATE")
        assert knowledge["items"] == []

    def test_invalid_filters(self):
        with pytest.raises(ValidationError):
            ledger.list_requests(status="MAYBE")
        with pytest.raises(ValidationError):
            ledger.list_requests(type_="SHELL")

    def test_failed_execution_filter_and_remediation(self, school):
        ok = _request(target="S101", status="ON_LEAVE")
        failed = _request(target="S102", status="ON_LEAVE")
        ledger.decide(ok.id, "APPROVED", "sato")
        ledger.decide(failed.id, "APPROVED", "sato")
        ledger.mark_execution_failed(failed.id, "gone")
        db.session.commit()

        listed = ledger.list_requests(status="APPROVED_EXECUTION_FAILED")
        assert [item["id"] for item in listed["items"]] == [failed.id]
        queue = ledger.remediation_queue()
        assert [item["id"] for item in queue["items"]] == [failed.id]

    def test_pending_count_and_stats(self, school):
        a = _request(target="S101", status="ON_LEAVE")
        _request(target="S102", status="ON_LEAVE")
        ledger.decide(a.id, "APPROVED", "sato")
        ledger.mark_execution_failed(a.id, "gone")
        db.session.commit()

        assert ledger.pending_count() == 1
        stats = ledger.stats()
        assert stats["total"] == 2
        assert stats["by_state"]["PENDING"] == 1
        assert stats["by_state"]["APPROVED"] == 1
        assert stats["by_state"]["APPROVED_EXECUTION_FAILED"] == 1
        assert stats["by_state"]["REJECTED"] == 0
        assert stats["by_type"] == {"DATA_CHANGE": 2, "KNOWLEDGE_UPDATE": 0}
