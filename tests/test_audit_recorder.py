"""
Audit recorder + audit API tests.

Tests cover:
  - record() writes one row, validates action / source
  - rows are immutable (no UPDATE, no DELETE)
  - list_entries filters and ordering
  - GET /api/v1/audit and /api/v1/audit/<id>
"""

from datetime import datetime, timedelta, timezone

import pytest

from campusdesk.core.exceptions import ImmutableRecordError, NotFoundError, ValidationError
from campusdesk.models import db
from campusdesk.models.audit import AuditLog
from campusdesk.services import audit_recorder


def _log(**overrides):
    values = {
        "action": "UPDATE",
        "actor": "sato",
        "entity_type": "student",
        "entity_id": "S123",
        "diff": {"status": {"old": "ENROLLED", "new": "WITHDRAWN"}},
    }
    values.update(overrides)
    log = audit_recorder.record(**values)
    db.session.commit()
    return log


class TestRecord:
    def test_record_writes_row(self):
        log = _log()
        assert log.id is not None
        assert log.source == "chat"
        assert log.diff["status"]["new"] == "WITHDRAWN"
        assert log.timestamp is not None

    def test_entity_id_stored_as_string(self):
        log = _log(entity_type="tuition_invoice", entity_id=7, action="CREATE")
        assert log.entity_id == "7"

    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError):
            audit_recorder.record(action="PURGE", actor="sato", entity_type="student", entity_id="S1")

    def test_unknown_source_rejected(self):
        with pytest.raises(ValueError):
            audit_recorder.record(action="UPDATE", actor="sato", entity_type="student",
                                  entity_id="S1", source="batch")

    def test_rows_cannot_be_updated(self):
        log = _log()
        log.actor = "someone-else"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_rows_cannot_be_deleted(self):
        log = _log()
        db.session.delete(log)
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()
        assert AuditLog.query.count() == 1


class TestListEntries:
    def test_filters(self):
        _log()
        _log(entity_id="S101", actor="kimura", source="api")
        _log(entity_type="knowledge_article", entity_id="attendance-policy", action="KNOWLEDGE_UPDATE")

        assert audit_recorder.list_entries()["total"] == 3
        assert audit_recorder.list_entries({"entity_type": "student"})["total"] == 2
        assert audit_recorder.list_entries({"entity_id": "S101"})["items"][0]["actor"] == "kimura"
        assert audit_recorder.list_entries({"source": "api"})["total"] == 1
        assert audit_recorder.list_entries({"action": "knowledge_update"})["total"] == 1

    def test_newest_first(self):
        first = _log()
        second = _log(entity_id="S101")
        ids = [item["id"] for item in audit_recorder.list_entries()["items"]]
        assert ids == [second.id, first.id]

    def test_time_bounds(self):
        _log()
        future = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        assert audit_recorder.list_entries({"since": future})["total"] == 0
        assert audit_recorder.list_entries({"until": future})["total"] == 1

    def test_invalid_filters(self):
        with pytest.raises(ValidationError):
            audit_recorder.list_entries({"entity_type": "teacher"})
        with pytest.raises(ValidationError):
            audit_recorder.list_entries({"action": "PURGE"})
        with pytest.raises(ValidationError):
            audit_recorder.list_entries({"since": "yesterday"})

    def test_get_entry_missing(self):
        with pytest.raises(NotFoundError):
            audit_recorder.get_entry(999)


class TestAuditAPI:
    def test_list_and_get(self, client, general, as_headers):
        log = _log()
        res = client.get("/api/v1/audit?entity_type=student", headers=as_headers(general))
        assert res.status_code == 200
        assert res.get_json()["items"][0]["id"] == log.id

        res = client.get(f"/api/v1/audit/{log.id}", headers=as_headers(general))
        assert res.status_code == 200
        assert res.get_json()["action"] == "UPDATE"

    def test_bad_filter_is_422(self, client, general, as_headers):
        res = client.get("/api/v1/audit?action=PURGE", headers=as_headers(general))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"

    def test_missing_entry_is_404(self, client, general, as_headers):
        res = client.get("/api/v1/audit/999", headers=as_headers(general))
        assert res.status_code == 404
