"""
Email Account Manager

Read side of the credential store: per-user IMAP settings kept in the
``user_settings`` table by the surrounding CRM. The sync pipeline only reads
accounts and flags the ones whose credentials the server rejected; saving
settings is exposed for the "connect IMAP account" route.
"""

import logging
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

import psycopg2

from ingestion.utils.crypto import InvalidToken, decrypt, encrypt
from .exceptions import PersistenceError
from .models import MailAccountConfig, is_eligible

logger = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = """
    user_id, imap_server, imap_port, main_email_address, imap_password,
    imap_tls, imap_mailbox, imap_auth_failed_at, imap_auth_error
"""


class EmailAccountManager:
    """Credential store access for IMAP accounts."""

    def __init__(self, postgres_manager: Any, *, default_mailbox: str = "INBOX") -> None:
        """Initialize with the shared PostgreSQL manager."""
        self.db_manager = postgres_manager
        self.default_mailbox = default_mailbox
        logger.info("Email Account Manager initialized")

    # ------------------------------------------------------------------
    def _decrypt_password(self, user_id: str, token: Optional[str]) -> str:
        if not token:
            return ""
        try:
            return decrypt(token)
        except (InvalidToken, RuntimeError) as exc:
            logger.warning("Could not decrypt IMAP password for user %s: %s", user_id, exc.__class__.__name__)
            return ""

    def _row_to_config(self, row: Dict[str, Any]) -> MailAccountConfig:
        user_id = str(row.get("user_id") or "")
        return MailAccountConfig(
            user_id=user_id,
            host=(row.get("imap_server") or "").strip(),
            port=row.get("imap_port"),
            username=(row.get("main_email_address") or "").strip(),
            password=self._decrypt_password(user_id, row.get("imap_password")),
            use_tls=True if row.get("imap_tls") is None else bool(row.get("imap_tls")),
            mailbox=row.get("imap_mailbox") or self.default_mailbox,
        )

    def _fetch(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        try:
            with self.db_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            logger.error("Credential store query failed: %s", e)
            raise PersistenceError(f"credential store query failed: {e}") from e

    def _execute(self, query: str, params: tuple) -> int:
        try:
            with self.db_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return cur.rowcount
        except psycopg2.Error as e:
            logger.error("Credential store write failed: %s", e)
            raise PersistenceError(f"credential store write failed: {e}") from e

    # ------------------------------------------------------------------
    def list_eligible_accounts(self) -> List[MailAccountConfig]:
        """Return every account with complete credentials and no auth-failure flag.

        Re-read on each call so an account added or fixed since the last sweep
        is picked up immediately.
        """
        rows = self._fetch(
            f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM user_settings
            WHERE imap_server IS NOT NULL
              AND imap_port IS NOT NULL
              AND main_email_address IS NOT NULL
              AND imap_password IS NOT NULL
              AND imap_auth_failed_at IS NULL
            ORDER BY user_id
            """
        )
        accounts: List[MailAccountConfig] = []
        for row in rows:
            config = self._row_to_config(row)
            if is_eligible(config):
                accounts.append(config)
            else:
                logger.debug("Skipping incomplete IMAP settings for user %s", config.user_id)
        logger.info("Retrieved %d eligible email accounts (%d configured)", len(accounts), len(rows))
        return accounts

    def get_account(self, user_id: str) -> Optional[MailAccountConfig]:
        """Return the stored configuration for ``user_id`` regardless of eligibility."""
        rows = self._fetch(
            f"SELECT {_ACCOUNT_COLUMNS} FROM user_settings WHERE user_id = %s",
            (user_id,),
        )
        if not rows:
            return None
        return self._row_to_config(rows[0])

    def get_auth_failure(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = self._fetch(
            "SELECT imap_auth_failed_at, imap_auth_error FROM user_settings WHERE user_id = %s",
            (user_id,),
        )
        if not rows or rows[0].get("imap_auth_failed_at") is None:
            return None
        return {"failed_at": rows[0]["imap_auth_failed_at"], "error": rows[0].get("imap_auth_error")}

    # ------------------------------------------------------------------
    def save_settings(self, user_id: str, config: MailAccountConfig) -> None:
        """Insert or replace the IMAP settings for ``user_id``.

        The password is encrypted before it is persisted and any previous
        authentication failure is cleared, making the account eligible again.
        """
        logger.info(
            "Saving IMAP settings for user %s on %s:%s (%s)",
            user_id,
            config.host,
            config.port,
            config.username,
        )
        self._execute(
            """
            INSERT INTO user_settings (
                user_id, imap_server, imap_port, main_email_address, imap_password,
                imap_tls, imap_mailbox, imap_auth_failed_at, imap_auth_error, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, NULL, NULL, NOW())
            ON CONFLICT (user_id) DO UPDATE SET
                imap_server = EXCLUDED.imap_server,
                imap_port = EXCLUDED.imap_port,
                main_email_address = EXCLUDED.main_email_address,
                imap_password = EXCLUDED.imap_password,
                imap_tls = EXCLUDED.imap_tls,
                imap_mailbox = EXCLUDED.imap_mailbox,
                imap_auth_failed_at = NULL,
                imap_auth_error = NULL,
                updated_at = NOW()
            """,
            (
                user_id,
                config.host.strip(),
                config.port_number,
                config.username.strip(),
                encrypt(config.password),
                bool(config.use_tls),
                config.mailbox or self.default_mailbox,
            ),
        )

    def mark_auth_failure(self, user_id: str, reason: str) -> None:
        """Flag ``user_id`` ineligible until its credentials are saved again."""
        updated = self._execute(
            """
            UPDATE user_settings
            SET imap_auth_failed_at = %s, imap_auth_error = %s, updated_at = NOW()
            WHERE user_id = %s
            """,
            (datetime.now(UTC), reason[:500], user_id),
        )
        logger.warning("Disabled IMAP sync for user %s after authentication failure (%d row)", user_id, updated)

    def clear_auth_failure(self, user_id: str) -> None:
        self._execute(
            """
            UPDATE user_settings
            SET imap_auth_failed_at = NULL, imap_auth_error = NULL, updated_at = NOW()
            WHERE user_id = %s
            """,
            (user_id,),
        )
        logger.info("Cleared IMAP authentication failure for user %s", user_id)

    def get_account_count(self) -> int:
        """Get the number of users with IMAP settings."""
        try:
            rows = self._fetch("SELECT COUNT(*) AS count FROM user_settings WHERE imap_server IS NOT NULL")
        except PersistenceError:
            return 0
        return int(rows[0]["count"]) if rows else 0
