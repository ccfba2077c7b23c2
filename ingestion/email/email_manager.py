"""PostgreSQL email message manager.

Persistence gateway for synced messages. Rows are keyed on
``(user_id, external_id)`` so replaying a sync never duplicates a message.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import psycopg2

from .exceptions import PersistenceError
from .models import FetchedMessage
from .utils import mask, to_json

logger = logging.getLogger(__name__)


# ``unread`` is what the user sees in the CRM; ``remote_unread`` is the last
# value the mail server reported. A local "mark as read" survives re-syncs
# until the server-side flag actually changes.
UPSERT_SQL = """
INSERT INTO emails (
    user_id, external_id, message_id, imap_uid, folder, subject, sender,
    sender_email, recipients, to_recipients, cc_recipients, sent_at,
    sent_at_synthetic, body_text, body_html, preview, unread, remote_unread,
    attachments, in_reply_to, updated_at
)
VALUES (
    %(user_id)s, %(external_id)s, %(message_id)s, %(imap_uid)s, %(folder)s,
    %(subject)s, %(sender)s, %(sender_email)s, %(recipients)s::jsonb,
    %(to_recipients)s::jsonb, %(cc_recipients)s::jsonb, %(sent_at)s,
    %(sent_at_synthetic)s, %(body_text)s, %(body_html)s, %(preview)s,
    %(unread)s, %(unread)s, %(attachments)s::jsonb, %(in_reply_to)s, NOW()
)
ON CONFLICT (user_id, external_id) DO UPDATE SET
    message_id = EXCLUDED.message_id,
    imap_uid = EXCLUDED.imap_uid,
    folder = EXCLUDED.folder,
    subject = EXCLUDED.subject,
    sender = EXCLUDED.sender,
    sender_email = EXCLUDED.sender_email,
    recipients = EXCLUDED.recipients,
    to_recipients = EXCLUDED.to_recipients,
    cc_recipients = EXCLUDED.cc_recipients,
    sent_at = CASE
        WHEN EXCLUDED.sent_at_synthetic THEN emails.sent_at
        ELSE EXCLUDED.sent_at
    END,
    sent_at_synthetic = emails.sent_at_synthetic AND EXCLUDED.sent_at_synthetic,
    body_text = EXCLUDED.body_text,
    body_html = EXCLUDED.body_html,
    preview = EXCLUDED.preview,
    unread = CASE
        WHEN emails.remote_unread IS DISTINCT FROM EXCLUDED.remote_unread
            THEN EXCLUDED.remote_unread
        ELSE emails.unread
    END,
    remote_unread = EXCLUDED.remote_unread,
    attachments = EXCLUDED.attachments,
    in_reply_to = EXCLUDED.in_reply_to,
    updated_at = NOW()
RETURNING (xmax = 0) AS inserted
"""

_LIST_COLUMNS = """
    id, external_id, message_id, folder, subject, sender, sender_email,
    recipients, sent_at, sent_at_synthetic, preview, unread, attachments
"""


class PostgreSQLEmailManager:
    """PostgreSQL-native CRUD helper for synced email messages."""

    def __init__(self, postgresql_manager: Any) -> None:
        """Initialize with PostgreSQL manager.

        Args:
            postgresql_manager: PostgreSQL manager instance owning the pool and schema
        """
        self.postgresql_manager = postgresql_manager

    def _record_params(self, message: FetchedMessage) -> Dict[str, Any]:
        return {
            "user_id": message.account_user_id,
            "external_id": message.external_id,
            "message_id": message.message_id,
            "imap_uid": message.uid,
            "folder": message.folder,
            "subject": message.subject or "",
            "sender": message.sender,
            "sender_email": message.sender_email,
            "recipients": to_json(message.recipients),
            "to_recipients": to_json(message.to_recipients),
            "cc_recipients": to_json(message.cc_recipients),
            "sent_at": message.sent_at,
            "sent_at_synthetic": bool(message.sent_at_synthetic),
            "body_text": message.body_text,
            "body_html": message.body_html,
            "preview": message.preview,
            "unread": bool(message.is_unread),
            "attachments": to_json(message.attachments_meta),
            "in_reply_to": message.in_reply_to,
        }

    def upsert_email(self, message: FetchedMessage) -> bool:
        """Insert or update one message atomically.

        Args:
            message: Normalized message to persist

        Returns:
            True when a new row was inserted, False when an existing row was updated

        Raises:
            PersistenceError: The database rejected the statement
        """
        if not message.external_id:
            raise ValueError("message missing external_id")

        try:
            with self.postgresql_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(UPSERT_SQL, self._record_params(message))
                    row = cur.fetchone()
        except psycopg2.Error as e:
            logger.error("Failed to upsert email %s: %s", mask(message.external_id), e)
            raise PersistenceError(f"upsert failed for {message.external_id}: {e}") from e

        inserted = bool(row["inserted"]) if row else False
        logger.debug(
            "%s email %s for user %s",
            "Inserted" if inserted else "Updated",
            mask(message.external_id),
            message.account_user_id,
        )
        return inserted

    def fetch_as_dict(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dictionaries."""
        try:
            with self.postgresql_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            logger.error(f"Failed to execute query: {e}")
            raise PersistenceError(str(e)) from e

    def _execute(self, query: str, params: tuple) -> int:
        try:
            with self.postgresql_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return cur.rowcount
        except psycopg2.Error as e:
            logger.error(f"Failed to execute statement: {e}")
            raise PersistenceError(str(e)) from e

    def get_latest_sent_at(self, user_id: str) -> Optional[datetime]:
        """Newest server-reported ``sent_at`` stored for ``user_id``.

        Synthetic timestamps are ignored since they reflect the sync clock, not
        the message.
        """
        rows = self.fetch_as_dict(
            """
            SELECT MAX(sent_at) AS latest FROM emails
            WHERE user_id = %s AND NOT sent_at_synthetic
            """,
            (user_id,),
        )
        return rows[0]["latest"] if rows else None

    def get_email(self, user_id: str, external_id: str) -> Optional[Dict[str, Any]]:
        rows = self.fetch_as_dict(
            "SELECT * FROM emails WHERE user_id = %s AND external_id = %s",
            (user_id, external_id),
        )
        return rows[0] if rows else None

    def count_for_user(self, user_id: str) -> int:
        try:
            rows = self.fetch_as_dict("SELECT COUNT(*) AS count FROM emails WHERE user_id = %s", (user_id,))
        except PersistenceError:
            return 0
        return int(rows[0]["count"]) if rows else 0

    def get_recent_emails(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Most recent messages for ``user_id``, newest first."""
        return self.fetch_as_dict(
            f"""
            SELECT {_LIST_COLUMNS} FROM emails
            WHERE user_id = %s
            ORDER BY sent_at DESC
            LIMIT %s OFFSET %s
            """,
            (user_id, max(1, min(int(limit), 500)), max(0, int(offset))),
        )

    def mark_as_read(self, user_id: str, email_id: str) -> bool:
        """Mark a message read locally; the remote flag is left untouched."""
        updated = self._execute(
            "UPDATE emails SET unread = FALSE, updated_at = NOW() WHERE user_id = %s AND id = %s",
            (user_id, email_id),
        )
        return updated > 0

    def get_unread_count(self, user_id: str) -> int:
        rows = self.fetch_as_dict(
            "SELECT COUNT(*) AS count FROM emails WHERE user_id = %s AND unread",
            (user_id,),
        )
        return int(rows[0]["count"]) if rows else 0

    def search_emails(self, user_id: str, query: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Full-text search over subject and body."""
        if not query or not query.strip():
            return []
        return self.fetch_as_dict(
            f"""
            SELECT {_LIST_COLUMNS} FROM emails
            WHERE user_id = %s
              AND to_tsvector('english', COALESCE(subject, '') || ' ' || COALESCE(body_text, ''))
                  @@ plainto_tsquery('english', %s)
            ORDER BY sent_at DESC
            LIMIT %s
            """,
            (user_id, query.strip(), max(1, min(int(limit), 500))),
        )

    def delete_email(self, user_id: str, email_id: str) -> bool:
        deleted = self._execute("DELETE FROM emails WHERE user_id = %s AND id = %s", (user_id, email_id))
        if deleted:
            logger.info("Deleted email %s for user %s", email_id, user_id)
        return deleted > 0

    def backfill_previews(self, make_preview: Callable[[str], str], batch_size: int = 100) -> int:
        """Fill ``preview`` for rows stored without one.

        Args:
            make_preview: Function turning body text into a preview
            batch_size: Rows fetched per round trip

        Returns:
            Number of rows updated
        """
        total = 0
        last_id = None
        while True:
            if last_id is None:
                rows = self.fetch_as_dict(
                    "SELECT id, body_text FROM emails WHERE preview IS NULL ORDER BY id LIMIT %s",
                    (batch_size,),
                )
            else:
                rows = self.fetch_as_dict(
                    "SELECT id, body_text FROM emails WHERE preview IS NULL AND id > %s ORDER BY id LIMIT %s",
                    (last_id, batch_size),
                )
            if not rows:
                break
            for row in rows:
                self._execute(
                    "UPDATE emails SET preview = %s, updated_at = NOW() WHERE id = %s",
                    (make_preview(row.get("body_text") or ""), row["id"]),
                )
                total += 1
            last_id = rows[-1]["id"]
            logger.info("Backfilled %d previews so far", total)
        return total
