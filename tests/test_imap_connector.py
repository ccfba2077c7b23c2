"""Tests for the :class:`IMAPConnector`."""

from __future__ import annotations

import imaplib
import os
import sys
from datetime import UTC, datetime

import pytest

# Ensure project root on path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingestion.email.connectors import imap_connector
from ingestion.email.connectors.imap_connector import IMAPConnector
from ingestion.email.exceptions import (
    AuthError,
    ConnectionTimeoutError,
    FetchError,
    MailConnectionError,
    NetworkError,
)
from ingestion.email.models import MessageRef

from imap_fixtures import FakeIMAPServer, account, build_message, patch_imaplib, socket_timeout


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> FakeIMAPServer:
    fake = FakeIMAPServer()
    fake.add("3", build_message(message_id="<a@example.com>"))
    fake.add("9", build_message(message_id="<b@example.com>"), "\\Seen")
    fake.add("12", build_message(message_id="<c@example.com>"), "\\Flagged")
    return patch_imaplib(monkeypatch, imap_connector, fake)


def test_connect_uses_ssl_and_selects_readonly(server: FakeIMAPServer) -> None:
    connector = IMAPConnector(timeout=5)
    session = connector.connect(account())

    conn = server.connections[0]
    assert conn.tls is True
    assert conn.timeout == 5
    assert conn.selected == ("INBOX", True)
    assert session.uidvalidity == "7"
    assert session.readonly is True


def test_plain_connection_is_upgraded_with_starttls_before_login(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    connector.connect(account(use_tls=False, port=143))

    calls = server.connections[0].calls
    assert "starttls" in calls
    assert calls.index("starttls") < calls.index("login")


def test_starttls_failure_is_network_error_and_never_logs_in(server: FakeIMAPServer) -> None:
    server.starttls_error = imaplib.IMAP4.error("STARTTLS not supported")
    connector = IMAPConnector()

    with pytest.raises(NetworkError):
        connector.connect(account(use_tls=False, port=143))

    conn = server.connections[0]
    assert "login" not in conn.calls
    assert conn.logged_out


def test_rejected_credentials_raise_auth_error(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    with pytest.raises(AuthError):
        connector.connect(account(password="wrong"))
    assert server.connections[0].logged_out


def test_abort_during_login_is_network_error(server: FakeIMAPServer) -> None:
    server.login_error = imaplib.IMAP4.abort("socket closed")
    with pytest.raises(NetworkError) as excinfo:
        IMAPConnector().connect(account())
    assert not isinstance(excinfo.value, AuthError)


def test_connect_timeout_maps_to_timeout_error(server: FakeIMAPServer) -> None:
    server.connect_error = socket_timeout()
    with pytest.raises(ConnectionTimeoutError):
        IMAPConnector().connect(account())


def test_refused_connection_maps_to_network_error(server: FakeIMAPServer) -> None:
    server.connect_error = ConnectionRefusedError("refused")
    with pytest.raises(NetworkError):
        IMAPConnector().connect(account())


def test_invalid_port_is_rejected_before_connecting(server: FakeIMAPServer) -> None:
    with pytest.raises(MailConnectionError):
        IMAPConnector().connect(account(port="not-a-port"))
    assert server.connections == []


def test_failed_select_releases_connection(server: FakeIMAPServer) -> None:
    server.select_status = "NO"
    with pytest.raises(MailConnectionError):
        IMAPConnector().connect(account())
    assert server.connections[0].logged_out


def test_list_unseen_returns_unseen_uids_in_server_order(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    session = connector.connect(account())

    refs = list(connector.list_unseen(session))

    assert [ref.uid for ref in refs] == ["3", "12"]
    assert all(ref.uidvalidity == "7" for ref in refs)
    assert server.searches[-1] == ("UNSEEN",)


def test_list_unseen_with_marker_searches_since_date(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    session = connector.connect(account())

    list(connector.list_unseen(session, since=datetime(2024, 3, 5, tzinfo=UTC)))

    assert server.searches[-1] == ("OR", "UNSEEN", "SINCE", "05-Mar-2024")


def test_batch_limit_keeps_newest(server: FakeIMAPServer) -> None:
    connector = IMAPConnector(batch_limit=1)
    session = connector.connect(account())
    assert [ref.uid for ref in connector.list_unseen(session)] == ["12"]


def test_list_unseen_on_empty_mailbox(server: FakeIMAPServer) -> None:
    server.messages.clear()
    connector = IMAPConnector()
    session = connector.connect(account())
    assert list(connector.list_unseen(session)) == []


def test_search_failure_is_network_error(server: FakeIMAPServer) -> None:
    server.search_error = imaplib.IMAP4.abort("connection reset")
    connector = IMAPConnector()
    session = connector.connect(account())
    with pytest.raises(NetworkError):
        connector.list_unseen(session)
    assert session.broken


def test_fetch_content_parses_flags_and_body(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    session = connector.connect(account())

    raw = connector.fetch_content(session, MessageRef(uid="12", uidvalidity="7"))

    assert raw.uid == "12"
    assert raw.flags == ("\\Flagged",)
    assert raw.size == len(raw.rfc822)
    assert b"Message-ID: <c@example.com>" in raw.rfc822
    assert server.connections[0].calls[-1] == "uid FETCH"


def test_fetch_error_for_missing_body(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    session = connector.connect(account())
    with pytest.raises(FetchError) as excinfo:
        connector.fetch_content(session, MessageRef(uid="404"))
    assert excinfo.value.uid == "404"


def test_fetch_status_no_is_fetch_error(server: FakeIMAPServer) -> None:
    server.fetch_status["3"] = "NO"
    connector = IMAPConnector()
    session = connector.connect(account())
    with pytest.raises(FetchError):
        connector.fetch_content(session, MessageRef(uid="3"))
    assert not session.broken


def test_dropped_socket_during_fetch_breaks_session(server: FakeIMAPServer) -> None:
    server.fetch_errors["3"] = socket_timeout()
    connector = IMAPConnector()
    session = connector.connect(account())

    with pytest.raises(FetchError):
        connector.fetch_content(session, MessageRef(uid="3"))
    assert session.broken

    with pytest.raises(NetworkError):
        connector.fetch_content(session, MessageRef(uid="12"))


def test_session_context_manager_closes_on_error(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    with pytest.raises(RuntimeError):
        with connector.session(account()) as session:
            raise RuntimeError("boom")
    assert session.closed
    assert server.connections[0].logged_out


def test_close_is_idempotent(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    session = connector.connect(account())
    connector.close(session)
    connector.close(session)
    assert server.connections[0].calls.count("logout") == 1


def test_mark_seen_disabled_by_default(server: FakeIMAPServer) -> None:
    connector = IMAPConnector()
    session = connector.connect(account())
    connector.mark_seen(session, [MessageRef(uid="3")])
    assert server.stored == []


def test_mark_seen_opens_mailbox_writable_and_stores_flag(server: FakeIMAPServer) -> None:
    connector = IMAPConnector(mark_seen=True)
    session = connector.connect(account())
    assert server.connections[0].selected == ("INBOX", False)

    connector.mark_seen(session, [MessageRef(uid="3"), MessageRef(uid="12")])

    assert server.stored == [("3,12", "+FLAGS", "(\\Seen)")]


def test_test_connection_reports_connected_and_logs_out(server: FakeIMAPServer) -> None:
    result = IMAPConnector().test_connection(account())
    assert result["status"] == "connected"
    assert result["mailbox"] == "INBOX"
    assert server.connections[0].logged_out
