"""
Student CRUD API tests (direct admin writes, audited with source="api").
"""

from campusdesk.models import db
from campusdesk.models.audit import AuditLog
from campusdesk.models.school import Student, TuitionInvoice


class TestRead:
    def test_list(self, client, school, general, as_headers):
        res = client.get("/api/v1/students", headers=as_headers(general))
        assert res.status_code == 200
        body = res.get_json()
        assert body["total"] == 3
        assert [s["id"] for s in body["items"]] == ["S101", "S102", "S123"]

    def test_filters(self, client, school, general, as_headers):
        res = client.get("/api/v1/students?class_id=c2024b", headers=as_headers(general))
        assert [s["id"] for s in res.get_json()["items"]] == ["S123"]

        res = client.get("/api/v1/students?q=li", headers=as_headers(general))
        assert [s["id"] for s in res.get_json()["items"]] == ["S102"]

        res = client.get("/api/v1/students?status=withdrawn", headers=as_headers(general))
        assert res.get_json()["items"] == []

    def test_invalid_status_filter(self, client, general, as_headers):
        res = client.get("/api/v1/students?status=ASLEEP", headers=as_headers(general))
        assert res.status_code == 422

    def test_get(self, client, school, general, as_headers):
        res = client.get("/api/v1/students/s123", headers=as_headers(general))
        assert res.status_code == 200
        assert res.get_json()["status_label"] == "Enrolled"

    def test_get_missing(self, client, school, general, as_headers):
        res = client.get("/api/v1/students/S999", headers=as_headers(general))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestWrite:
    def test_create(self, client, school, admin, as_headers):
        res = client.post("/api/v1/students", json={
            "id": "s200", "name_en": "Maria Santos", "nationality": "Philippines",
            "class_id": "C2024A", "enrolled_on": "2024-10-01",
        }, headers=as_headers(admin))
        assert res.status_code == 201
        assert res.get_json()["id"] == "S200"
        assert res.get_json()["enrolled_on"] == "2024-10-01"

        log = AuditLog.query.one()
        assert (log.action, log.source, log.actor) == ("CREATE", "api", "suzuki")
        assert log.approval_request_id is None

    def test_create_requires_admin(self, client, school, general, as_headers):
        res = client.post("/api/v1/students", json={"id": "S200", "name_en": "Maria Santos"},
                          headers=as_headers(general))
        assert res.status_code == 403
        assert db.session.get(Student, "S200") is None

    def test_create_duplicate(self, client, school, admin, as_headers):
        res = client.post("/api/v1/students", json={"id": "S123", "name_en": "Someone"},
                          headers=as_headers(admin))
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_MALFORMED_PROPOSAL"
        assert "id" in res.get_json()["details"]

    def test_update(self, client, school, admin, as_headers):
        res = client.patch("/api/v1/students/S101", json={"phone": "090-0000-1111", "status": "on_leave"},
                           headers=as_headers(admin))
        assert res.status_code == 200
        assert res.get_json()["status"] == "ON_LEAVE"

        log = AuditLog.query.one()
        assert log.diff == {
            "phone": {"old": None, "new": "090-0000-1111"},
            "status": {"old": "ENROLLED", "new": "ON_LEAVE"},
        }

    def test_noop_update_not_audited(self, client, school, admin, as_headers):
        res = client.patch("/api/v1/students/S101", json={"status": "ENROLLED"},
                           headers=as_headers(admin))
        assert res.status_code == 200
        assert AuditLog.query.count() == 0

    def test_update_rejects_id_change(self, client, school, admin, as_headers):
        res = client.patch("/api/v1/students/S101", json={"id": "S999"}, headers=as_headers(admin))
        assert res.status_code == 422

    def test_delete_cascades_billing(self, client, school, admin, as_headers):
        res = client.delete("/api/v1/students/S102", headers=as_headers(admin))
        assert res.status_code == 200
        assert res.get_json() == {"deleted": "S102"}
        assert db.session.get(Student, "S102") is None
        assert TuitionInvoice.query.filter_by(student_id="S102").count() == 0

        log = AuditLog.query.one()
        assert log.action == "DELETE"
        assert log.diff["before"]["name_kanji"] == "李偉"
