"""Tests for the PostgreSQL email gateway."""

import json
import os
import sys
from datetime import UTC, datetime

import psycopg2
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ingestion.email.email_manager import UPSERT_SQL, PostgreSQLEmailManager
from ingestion.email.exceptions import PersistenceError
from ingestion.email.normalizer import normalize

from imap_fixtures import RecordingDB, raw_message


def _message(**kwargs):
    return normalize(raw_message("5", cc="carol@example.com", **kwargs), "user-1",
                     now=lambda: datetime(2024, 6, 1, tzinfo=UTC))


def test_upsert_reports_insert_and_update() -> None:
    db = RecordingDB()
    db.results.extend([[{"inserted": True}], [{"inserted": False}]])
    manager = PostgreSQLEmailManager(db)

    assert manager.upsert_email(_message()) is True
    assert manager.upsert_email(_message()) is False


def test_upsert_parameters() -> None:
    db = RecordingDB()
    db.results.append([{"inserted": True}])
    PostgreSQLEmailManager(db).upsert_email(_message(seen=True))

    query, params = db.executed[0]
    assert query == " ".join(UPSERT_SQL.split())
    assert params["user_id"] == "user-1"
    assert params["external_id"] == "msg-5@example.com"
    assert params["unread"] is False
    assert params["sent_at_synthetic"] is False
    assert json.loads(params["recipients"]) == ["bob@example.com", "carol@example.com"]
    assert json.loads(params["attachments"]) == []


def test_upsert_statement_is_keyed_and_preserves_local_state() -> None:
    sql = " ".join(UPSERT_SQL.split())
    assert "ON CONFLICT (user_id, external_id) DO UPDATE" in sql
    assert "WHEN emails.remote_unread IS DISTINCT FROM EXCLUDED.remote_unread THEN EXCLUDED.remote_unread ELSE emails.unread" in sql
    assert "WHEN EXCLUDED.sent_at_synthetic THEN emails.sent_at" in sql
    assert "RETURNING (xmax = 0) AS inserted" in sql


def test_upsert_wraps_database_errors() -> None:
    db = RecordingDB()
    db.errors.append(psycopg2.OperationalError("server closed the connection"))
    with pytest.raises(PersistenceError):
        PostgreSQLEmailManager(db).upsert_email(_message())


def test_upsert_rejects_message_without_key() -> None:
    message = _message()
    message.external_id = ""
    with pytest.raises(ValueError):
        PostgreSQLEmailManager(RecordingDB()).upsert_email(message)


def test_latest_sent_at_ignores_synthetic_dates() -> None:
    db = RecordingDB()
    latest = datetime(2024, 1, 1, tzinfo=UTC)
    db.results.append([{"latest": latest}])
    assert PostgreSQLEmailManager(db).get_latest_sent_at("user-1") == latest
    query, params = db.executed[0]
    assert "NOT sent_at_synthetic" in query
    assert params == ("user-1",)


def test_recent_emails_clamps_limit() -> None:
    db = RecordingDB()
    db.results.append([{"id": "a"}])
    rows = PostgreSQLEmailManager(db).get_recent_emails("user-1", limit=10_000, offset=-5)
    assert rows == [{"id": "a"}]
    assert db.executed[0][1] == ("user-1", 500, 0)


def test_get_email_is_scoped_to_user() -> None:
    db = RecordingDB()
    db.results.extend([[{"id": "e1", "external_id": "msg-5@example.com"}], []])
    manager = PostgreSQLEmailManager(db)

    assert manager.get_email("user-1", "msg-5@example.com")["id"] == "e1"
    assert manager.get_email("user-2", "msg-5@example.com") is None
    query, params = db.executed[0]
    assert "WHERE user_id = %s AND external_id = %s" in query
    assert params == ("user-1", "msg-5@example.com")


def test_mark_as_read_only_touches_local_flag() -> None:
    db = RecordingDB()
    assert PostgreSQLEmailManager(db).mark_as_read("user-1", "e1") is True
    query, params = db.executed[0]
    assert "SET unread = FALSE" in query
    assert "remote_unread" not in query
    assert params == ("user-1", "e1")


def test_mark_as_read_missing_row() -> None:
    db = RecordingDB()
    db.rowcount = 0
    assert PostgreSQLEmailManager(db).mark_as_read("user-1", "nope") is False


def test_unread_count() -> None:
    db = RecordingDB()
    db.results.append([{"count": 3}])
    assert PostgreSQLEmailManager(db).get_unread_count("user-1") == 3


def test_search_with_blank_query_skips_database() -> None:
    db = RecordingDB()
    assert PostgreSQLEmailManager(db).search_emails("user-1", "   ") == []
    assert db.executed == []


def test_search_uses_full_text_index() -> None:
    db = RecordingDB()
    db.results.append([])
    PostgreSQLEmailManager(db).search_emails("user-1", " invoice ")
    query, params = db.executed[0]
    assert "plainto_tsquery" in query
    assert params[:2] == ("user-1", "invoice")


def test_delete_email_is_scoped_to_user() -> None:
    db = RecordingDB()
    assert PostgreSQLEmailManager(db).delete_email("user-1", "e1") is True
    assert db.executed[0][1] == ("user-1", "e1")


def test_backfill_previews_pages_through_rows() -> None:
    db = RecordingDB()
    db.results.extend([
        [{"id": "a", "body_text": "first body"}, {"id": "b", "body_text": None}],
        [], [],
        [{"id": "c", "body_text": "third"}],
        [],
        [],
    ])
    updated = PostgreSQLEmailManager(db).backfill_previews(lambda text: text.upper(), batch_size=2)

    assert updated == 3
    updates = [params for query, params in db.executed if query.startswith("UPDATE")]
    assert updates == [("FIRST BODY", "a"), ("", "b"), ("THIRD", "c")]
    assert db.executed[3][1] == ("b", 2)


def test_count_for_user_returns_zero_on_error() -> None:
    db = RecordingDB()
    db.errors.append(psycopg2.OperationalError("down"))
    assert PostgreSQLEmailManager(db).count_for_user("user-1") == 0
