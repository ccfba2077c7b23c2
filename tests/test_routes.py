"""Tests for the inbox HTTP API."""

import os
import sys
import time
from types import SimpleNamespace

import jwt
import pytest
from flask import Flask

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingestion.email.exceptions import AuthError, PersistenceError
from inbox_manager.web.auth import AUTH_COOKIE_NAME, TokenVerifier
from inbox_manager.web.routes import WebRoutes

from imap_fixtures import FakeAccountStore

SECRET = "route-test-secret-that-is-long-enough"


def _token(sub="user-1"):
    return jwt.encode(
        {"sub": sub, "aud": "authenticated", "exp": int(time.time()) + 300},
        SECRET,
        algorithm="HS256",
    )


def _auth(sub="user-1"):
    return {"Authorization": f"Bearer {_token(sub)}"}


class StubConnector:
    def __init__(self):
        self.error = None
        self.tested = []

    def test_connection(self, config):
        self.tested.append(config)
        if self.error is not None:
            raise self.error
        return {"status": "connected", "user": config.username, "mailbox": config.mailbox}


class StubAccounts(FakeAccountStore):
    def __init__(self):
        super().__init__()
        self.save_error = None

    def save_settings(self, user_id, config):
        if self.save_error is not None:
            raise self.save_error
        super().save_settings(user_id, config)

    def get_account_count(self):
        return len(self.accounts)


class StubEmails:
    def __init__(self):
        self.calls = []
        self.known = {"e1"}

    def get_unread_count(self, user_id):
        self.calls.append(("unread", user_id))
        return 4

    def get_recent_emails(self, user_id, limit=50, offset=0):
        self.calls.append(("recent", user_id, limit, offset))
        return [{"id": "e1", "subject": "Hi"}]

    def search_emails(self, user_id, query, limit=50):
        self.calls.append(("search", user_id, query))
        return []

    def get_email(self, user_id, external_id):
        self.calls.append(("get", user_id, external_id))
        if external_id != "msg-1@example.com":
            return None
        return {"id": "e1", "external_id": external_id, "subject": "Hi", "body_text": "Hello"}

    def mark_as_read(self, user_id, email_id):
        return email_id in self.known

    def delete_email(self, user_id, email_id):
        return email_id in self.known


class StubOrchestrator:
    def __init__(self):
        self.summary = {"status": "success", "user_id": "user-1"}
        self.users = []

    def sync_user(self, user_id):
        self.users.append(user_id)
        return dict(self.summary, user_id=user_id)


@pytest.fixture
def inbox():
    return SimpleNamespace(
        connector=StubConnector(),
        account_manager=StubAccounts(),
        email_manager=StubEmails(),
        orchestrator=StubOrchestrator(),
        scheduler_manager=SimpleNamespace(scheduler_status=lambda: {"running": True, "consecutive_skips": 0}),
        postgres_manager=SimpleNamespace(get_version_info=lambda: {"connected": True, "version": "PostgreSQL 16"}),
        token_verifier=TokenVerifier(secret=SECRET),
    )


@pytest.fixture
def client(inbox):
    app = Flask(__name__)
    WebRoutes(app, SimpleNamespace(IMAP_MAILBOX="INBOX"), inbox)
    return app.test_client()


IMAP_BODY = {
    "host": "imap.example.com",
    "port": 993,
    "username": "user-1@example.com",
    "password": "  app password  ",
    "tls": True,
}


# ----------------------------------------------------------------------
# authentication
@pytest.mark.parametrize(
    "method,path",
    [
        ("post", "/api/connect-imap"),
        ("post", "/api/emails/sync"),
        ("get", "/api/emails/unread-count"),
        ("get", "/api/emails/recent"),
        ("post", "/api/emails/e1/read"),
    ],
)
def test_requires_token(client, method, path):
    response = getattr(client, method)(path)
    assert response.status_code == 401
    assert "error" in response.get_json()


def test_rejects_bad_token(client):
    response = client.get("/api/emails/unread-count", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_accepts_cookie_token(client, inbox):
    client.set_cookie(AUTH_COOKIE_NAME, _token("user-9"))
    response = client.get("/api/emails/unread-count")
    assert response.status_code == 200
    assert inbox.email_manager.calls == [("unread", "user-9")]


# ----------------------------------------------------------------------
# connect-imap
def test_connect_imap_tests_then_saves(client, inbox):
    response = client.post("/api/connect-imap", json=IMAP_BODY, headers=_auth())

    assert response.status_code == 200
    body = response.get_json()
    assert body["data"]["status"] == "connected"
    saved = inbox.account_manager.accounts["user-1"]
    assert saved.password == "  app password  "
    assert saved.port == 993
    assert saved.mailbox == "INBOX"
    assert inbox.connector.tested[0].user_id == "user-1"


def test_connect_imap_rejects_invalid_body(client, inbox):
    response = client.post("/api/connect-imap", json=dict(IMAP_BODY, port=70000), headers=_auth())
    assert response.status_code == 400
    assert "port" in response.get_json()["error"]
    assert inbox.connector.tested == []


def test_connect_imap_requires_password(client):
    response = client.post("/api/connect-imap", json=dict(IMAP_BODY, password="   "), headers=_auth())
    assert response.status_code == 400


def test_connect_imap_failed_login_is_not_saved(client, inbox):
    inbox.connector.error = AuthError("invalid credentials")
    response = client.post("/api/connect-imap", json=IMAP_BODY, headers=_auth())

    assert response.status_code == 400
    assert "invalid credentials" in response.get_json()["error"]
    assert inbox.account_manager.accounts == {}


def test_connect_imap_save_failure(client, inbox):
    inbox.account_manager.save_error = PersistenceError("disk full")
    response = client.post("/api/connect-imap", json=IMAP_BODY, headers=_auth())
    assert response.status_code == 500


def test_connect_imap_clears_auth_flag(client, inbox):
    inbox.account_manager.mark_auth_failure("user-1", "old")
    client.post("/api/connect-imap", json=IMAP_BODY, headers=_auth())
    assert inbox.account_manager.auth_failures == {}


# ----------------------------------------------------------------------
# sync now
@pytest.mark.parametrize(
    "status,code",
    [
        ("success", 200),
        ("partial", 200),
        ("skipped", 409),
        ("not_configured", 404),
        ("cancelled", 503),
        ("failed", 502),
    ],
)
def test_sync_status_codes(client, inbox, status, code):
    inbox.orchestrator.summary = {"status": status}
    response = client.post("/api/emails/sync", headers=_auth())
    assert response.status_code == code
    assert response.get_json()["status"] == status
    assert inbox.orchestrator.users == ["user-1"]


# ----------------------------------------------------------------------
# reads
def test_unread_count(client):
    response = client.get("/api/emails/unread-count", headers=_auth())
    assert response.get_json() == {"unread": 4}


def test_recent_emails_defaults(client, inbox):
    response = client.get("/api/emails/recent", headers=_auth())
    assert response.status_code == 200
    assert response.get_json()["limit"] == 50
    assert inbox.email_manager.calls == [("recent", "user-1", 50, 0)]


@pytest.mark.parametrize("query", ["limit=0", "limit=501", "limit=abc", "offset=-1"])
def test_recent_emails_rejects_bad_paging(client, query):
    response = client.get(f"/api/emails/recent?{query}", headers=_auth())
    assert response.status_code == 400


def test_search_requires_query(client):
    response = client.get("/api/emails/search", headers=_auth())
    assert response.status_code == 400


def test_search(client, inbox):
    response = client.get("/api/emails/search?q=invoice", headers=_auth())
    assert response.status_code == 200
    assert inbox.email_manager.calls == [("search", "user-1", "invoice")]


def test_get_single_email(client, inbox):
    response = client.get("/api/emails/message/msg-1@example.com", headers=_auth("user-2"))
    assert response.status_code == 200
    assert response.get_json()["email"]["body_text"] == "Hello"
    assert inbox.email_manager.calls == [("get", "user-2", "msg-1@example.com")]


def test_get_single_email_missing(client):
    response = client.get("/api/emails/message/uid:7:44", headers=_auth())
    assert response.status_code == 404
    assert response.get_json() == {"error": "Email not found"}


def test_get_single_email_requires_token(client, inbox):
    assert client.get("/api/emails/message/msg-1@example.com").status_code == 401
    assert inbox.email_manager.calls == []


def test_mark_read_and_delete(client):
    assert client.post("/api/emails/e1/read", headers=_auth()).status_code == 200
    assert client.post("/api/emails/missing/read", headers=_auth()).status_code == 404
    assert client.delete("/api/emails/e1", headers=_auth()).status_code == 200
    assert client.delete("/api/emails/missing", headers=_auth()).status_code == 404


def test_database_error_maps_to_500(client, inbox):
    def broken(user_id):
        raise PersistenceError("connection lost")

    inbox.email_manager.get_unread_count = broken
    response = client.get("/api/emails/unread-count", headers=_auth())
    assert response.status_code == 500
    assert response.get_json() == {"error": "Database error"}


# ----------------------------------------------------------------------
# admin
def test_scheduler_status(client):
    response = client.get("/admin/scheduler_status")
    assert response.get_json()["running"] is True


def test_health(client, inbox):
    response = client.get("/admin/health")
    assert response.status_code == 200
    assert response.get_json()["email_accounts"] == 0

    inbox.postgres_manager.get_version_info = lambda: {"connected": False, "error": "down"}
    assert client.get("/admin/health").status_code == 503


# ----------------------------------------------------------------------
# application wiring
def test_inbox_manager_wires_routes_and_shared_stop_event():
    from inbox_manager.app import InboxManager
    from inbox_manager.core.config import Config

    db = SimpleNamespace(
        get_version_info=lambda: {"connected": True},
        close=lambda: None,
    )
    manager = InboxManager(
        Config(),
        postgres_manager=db,
        token_verifier=TokenVerifier(secret=SECRET),
        configure_logging=False,
    )

    assert manager.scheduler_manager.stop_event is manager.orchestrator.stop_event
    rules = {rule.rule for rule in manager.app.url_map.iter_rules()}
    assert {"/api/connect-imap", "/api/emails/sync", "/admin/scheduler_status"} <= rules
    manager.shutdown(timeout=1)
    assert manager.stop_event.is_set()
