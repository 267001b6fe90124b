"""
Shared pytest fixtures for the CampusDesk test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - school: demo classes / students / invoices / attendance / articles
    - fake_gateway: scripted completion service injected through the gateway factory
    - general / admin / approver: staff actors and their request headers
"""

import pytest

from campusdesk import create_app
from campusdesk.auth import Actor
from campusdesk.chat.gateway import GATEWAY_FACTORY_KEY, default_gateway_factory
from campusdesk.models import db as _db


# ── Scripted completion service ──────────────────────────────────────────


class ScriptedGateway:
    """
    Stand-in for ``LLMGateway``.

    Each ``chat`` call pops the next scripted response (a dict, or a
    callable ``(messages, tools) -> dict``).  Every call is recorded so tests
    can inspect what the completion service was shown.
    """

    def __init__(self):
        self.responses = []
        self.calls = []
        self.error = None

    def script(self, *responses):
        self.responses.extend(responses)
        return self

    def fail_with(self, exc):
        self.error = exc
        return self

    @staticmethod
    def reply(content="", *tool_calls):
        return {"content": content, "tool_calls": list(tool_calls)}

    @staticmethod
    def call(name, payload, call_id=None):
        return {"id": call_id or f"call_{name}", "name": name, "input": payload}

    def chat(self, messages, tools=None, model=None, *, user="system", **kwargs):
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "tools": [t["name"] for t in (tools or [])],
            "user": user,
        })
        if self.error is not None:
            raise self.error
        response = self.responses.pop(0) if self.responses else self.reply("")
        if callable(response):
            response = response(messages, tools)
        return {
            "content": "",
            "tool_calls": [],
            "prompt_tokens": 10,
            "completion_tokens": 5,
            "model": "scripted",
            "stop_reason": "end_turn",
            "cost_usd": 0.0,
            "latency_ms": 1,
            "provider": "fake",
            **response,
        }


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    app.extensions[GATEWAY_FACTORY_KEY] = default_gateway_factory
    app.config["APPROVAL_ALLOW_SELF_APPROVAL"] = False
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def fake_gateway(app):
    """Route every completion call of this test through a ScriptedGateway."""
    gateway = ScriptedGateway()
    app.extensions[GATEWAY_FACTORY_KEY] = lambda _app: gateway
    return gateway


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def general():
    return Actor(user_id="tanaka", role="GENERAL")


@pytest.fixture()
def admin():
    return Actor(user_id="suzuki", role="ADMIN")


@pytest.fixture()
def approver():
    return Actor(user_id="sato", role="APPROVER")


def headers_for(actor):
    return {"X-User": actor.user_id, "X-User-Role": actor.role}


@pytest.fixture()
def as_headers():
    """``as_headers(actor)`` → dev-auth headers identifying *actor*."""
    return headers_for


# ── Records ──────────────────────────────────────────────────────────────


@pytest.fixture()
def school():
    """Seed the demo school (classes C2024A/B, students S101/S102/S123, May invoices & attendance)."""
    from campusdesk.services.demo_data import seed_demo_data

    counts = seed_demo_data()
    _db.session.commit()
    return counts
