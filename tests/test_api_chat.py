"""
Chat API tests — sessions, messages and turns over HTTP.

Tests cover:
  - session CRUD scoped to the owner (others get 404)
  - archive makes a session read-only
  - POST /turns creates the session on first message
  - upstream failure → 503 with nothing stored
  - input validation
"""

from campusdesk.core.exceptions import CompletionServiceUnavailable
from campusdesk.models.chat import ChatMessage, ChatSession


def _create(client, headers, title=""):
    res = client.post("/api/v1/chat/sessions", json={"title": title}, headers=headers)
    assert res.status_code == 201
    return res.get_json()


class TestSessions:
    def test_create_and_list(self, client, general, as_headers):
        created = _create(client, as_headers(general), "Attendance questions")
        assert created["user_id"] == "tanaka"
        assert created["title"] == "Attendance questions"
        assert created["message_count"] == 0

        listed = client.get("/api/v1/chat/sessions", headers=as_headers(general)).get_json()
        assert [s["id"] for s in listed["items"]] == [created["id"]]

    def test_sessions_are_private(self, client, general, admin, as_headers):
        created = _create(client, as_headers(general))

        res = client.get(f"/api/v1/chat/sessions/{created['id']}", headers=as_headers(admin))
        assert res.status_code == 404
        listed = client.get("/api/v1/chat/sessions", headers=as_headers(admin)).get_json()
        assert listed["items"] == []

    def test_rename(self, client, general, as_headers):
        created = _create(client, as_headers(general))
        res = client.patch(f"/api/v1/chat/sessions/{created['id']}", json={"title": "Tuition"},
                           headers=as_headers(general))
        assert res.status_code == 200
        assert res.get_json()["title"] == "Tuition"

    def test_rename_requires_title(self, client, general, as_headers):
        created = _create(client, as_headers(general))
        res = client.patch(f"/api/v1/chat/sessions/{created['id']}", json={},
                           headers=as_headers(general))
        assert res.status_code == 400

    def test_archive_hides_and_freezes(self, client, general, as_headers):
        created = _create(client, as_headers(general))
        res = client.post(f"/api/v1/chat/sessions/{created['id']}/archive", headers=as_headers(general))
        assert res.status_code == 200
        assert res.get_json()["archived"] is True

        listed = client.get("/api/v1/chat/sessions", headers=as_headers(general)).get_json()
        assert listed["items"] == []
        with_archived = client.get("/api/v1/chat/sessions?include_archived=1",
                                   headers=as_headers(general)).get_json()
        assert len(with_archived["items"]) == 1

        res = client.post(f"/api/v1/chat/sessions/{created['id']}/messages",
                          json={"content": "hello"}, headers=as_headers(general))
        assert res.status_code == 422

    def test_archive_keeps_session_row(self, client, general, as_headers):
        created = _create(client, as_headers(general))
        client.post(f"/api/v1/chat/sessions/{created['id']}/archive", headers=as_headers(general))
        assert ChatSession.query.count() == 1


class TestTurns:
    def test_post_message_returns_new_messages(self, client, school, general, as_headers):
        created = _create(client, as_headers(general))
        res = client.post(f"/api/v1/chat/sessions/{created['id']}/messages",
                          json={"content": "hello"}, headers=as_headers(general))
        assert res.status_code == 201
        body = res.get_json()
        assert [m["role"] for m in body["messages"]] == ["USER", "ASSISTANT"]
        assert body["messages"][0]["content"] == "hello"
        assert body["session"]["title"] == "hello"

        listed = client.get(f"/api/v1/chat/sessions/{created['id']}/messages",
                            headers=as_headers(general)).get_json()
        assert [m["seq"] for m in listed["items"]] == [1, 2]

        after = client.get(f"/api/v1/chat/sessions/{created['id']}/messages?after_seq=1",
                           headers=as_headers(general)).get_json()
        assert [m["seq"] for m in after["items"]] == [2]

    def test_turn_without_session_creates_one(self, client, school, general, as_headers):
        res = client.post("/api/v1/chat/turns", json={"content": "Show tuition for S102"},
                          headers=as_headers(general))
        assert res.status_code == 201
        body = res.get_json()
        assert body["session"]["user_id"] == "tanaka"
        assistant = [m for m in body["messages"] if m["role"] == "ASSISTANT"][0]
        assert assistant["tool_calls"][0]["name"] == "search_tuition"
        assert "S102" in assistant["content"]

    def test_turn_continues_existing_session(self, client, school, general, as_headers):
        first = client.post("/api/v1/chat/turns", json={"content": "hello"},
                            headers=as_headers(general)).get_json()
        second = client.post("/api/v1/chat/turns",
                             json={"content": "hello again", "session_id": first["session"]["id"]},
                             headers=as_headers(general)).get_json()
        assert second["session"]["id"] == first["session"]["id"]
        assert second["session"]["message_count"] == 4

    def test_upstream_failure_is_503_and_stores_nothing(self, client, school, fake_gateway,
                                                        general, as_headers):
        fake_gateway.fail_with(CompletionServiceUnavailable(provider="fake"))

        res = client.post("/api/v1/chat/turns", json={"content": "hello"}, headers=as_headers(general))

        assert res.status_code == 503
        assert res.get_json()["code"] == "ERR_UPSTREAM_UNAVAILABLE"
        assert res.get_json()["details"]["retryable"] is True
        assert ChatSession.query.count() == 0
        assert ChatMessage.query.count() == 0

    def test_content_required(self, client, general, as_headers):
        res = client.post("/api/v1/chat/turns", json={}, headers=as_headers(general))
        assert res.status_code == 400

    def test_blank_content_rejected(self, client, general, as_headers):
        res = client.post("/api/v1/chat/turns", json={"content": "   "}, headers=as_headers(general))
        assert res.status_code == 400

    def test_non_integer_session_id(self, client, general, as_headers):
        res = client.post("/api/v1/chat/turns", json={"content": "hi", "session_id": "abc"},
                          headers=as_headers(general))
        assert res.status_code == 400

    def test_unknown_session_is_404(self, client, general, as_headers):
        res = client.post("/api/v1/chat/turns", json={"content": "hi", "session_id": 999},
                          headers=as_headers(general))
        assert res.status_code == 404

    def test_form_posts_are_refused(self, client, general, as_headers):
        res = client.post("/api/v1/chat/turns", data="content=hi",
                          content_type="application/x-www-form-urlencoded",
                          headers=as_headers(general))
        assert res.status_code == 415
