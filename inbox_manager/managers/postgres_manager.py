"""
Connection pool and schema for the CRM inbox database.

One :class:`PostgreSQLManager` is shared by the credential store
(``user_settings``) and the email gateway (``emails``); both borrow
autocommit connections from its thread-safe pool.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from ingestion.email.exceptions import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class PostgreSQLConfig:
    """Connection settings for the inbox database."""
    host: str = 'localhost'
    port: int = 5432
    database: str = 'crm'
    user: str = 'crm_user'
    password: str = 'secure_password'
    min_connections: int = 1
    max_connections: int = 10

    @classmethod
    def from_config(cls, config: Any) -> "PostgreSQLConfig":
        """Take the ``POSTGRES_*`` settings from the application config."""
        return cls(
            host=config.POSTGRES_HOST,
            port=config.POSTGRES_PORT,
            database=config.POSTGRES_DB,
            user=config.POSTGRES_USER,
            password=config.POSTGRES_PASSWORD,
        )


SCHEMA_SQL = """
-- Enable required extensions
CREATE EXTENSION IF NOT EXISTS "uuid-ossp";

-- Per-user IMAP credentials (credential store)
CREATE TABLE IF NOT EXISTS user_settings (
    user_id TEXT PRIMARY KEY,
    imap_server TEXT,
    imap_port INTEGER,
    main_email_address TEXT,
    imap_password TEXT, -- Fernet token, never plaintext
    imap_tls BOOLEAN DEFAULT TRUE,
    imap_mailbox TEXT DEFAULT 'INBOX',
    imap_auth_failed_at TIMESTAMP WITH TIME ZONE,
    imap_auth_error TEXT,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

-- Synced messages, one row per (user_id, external_id)
CREATE TABLE IF NOT EXISTS emails (
    id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
    user_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    message_id TEXT,
    imap_uid TEXT,
    folder TEXT DEFAULT 'INBOX',
    subject TEXT NOT NULL DEFAULT '',
    sender TEXT,
    sender_email TEXT,
    recipients JSONB DEFAULT '[]'::jsonb,
    to_recipients JSONB DEFAULT '[]'::jsonb,
    cc_recipients JSONB DEFAULT '[]'::jsonb,
    sent_at TIMESTAMP WITH TIME ZONE NOT NULL,
    sent_at_synthetic BOOLEAN DEFAULT FALSE,
    body_text TEXT,
    body_html TEXT,
    preview TEXT,
    unread BOOLEAN DEFAULT TRUE,
    remote_unread BOOLEAN DEFAULT TRUE,
    attachments JSONB DEFAULT '[]'::jsonb,
    in_reply_to TEXT,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    CONSTRAINT uk_emails_user_external UNIQUE (user_id, external_id)
);

CREATE INDEX IF NOT EXISTS idx_emails_user_sent ON emails(user_id, sent_at DESC);
CREATE INDEX IF NOT EXISTS idx_emails_user_unread ON emails(user_id) WHERE unread;
CREATE INDEX IF NOT EXISTS idx_emails_preview_missing ON emails(id) WHERE preview IS NULL;

-- Full-text search index
CREATE INDEX IF NOT EXISTS idx_emails_fts ON emails
USING GIN(to_tsvector('english', COALESCE(subject, '') || ' ' || COALESCE(body_text, '')));
"""


class PostgreSQLManager:
    """Pool owner for the credential store and the email gateway.

    Scheduler threads and request handlers check connections out concurrently,
    so the pool is a :class:`ThreadedConnectionPool` sized by
    ``max_connections``.
    """

    def __init__(self, config: Optional[PostgreSQLConfig] = None, *, ensure_schema: bool = True):
        """
        Open the pool and, unless told otherwise, create missing tables.

        Args:
            config: Connection settings; library defaults when None
            ensure_schema: Run ``SCHEMA_SQL`` (idempotent) after connecting

        Raises:
            PersistenceError: The database could not be reached
        """
        self.config = config or PostgreSQLConfig()
        self.pool: Optional[ThreadedConnectionPool] = None
        self._initialize_pool()
        if ensure_schema:
            self._ensure_schema()

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "PostgreSQLManager":
        return cls(PostgreSQLConfig.from_config(config), **kwargs)

    def _initialize_pool(self) -> None:
        try:
            self.pool = ThreadedConnectionPool(
                self.config.min_connections,
                self.config.max_connections,
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
                cursor_factory=RealDictCursor
            )
        except psycopg2.Error as e:
            logger.error(f"Could not open PostgreSQL pool for {self.config.host}:{self.config.port}/{self.config.database}: {e}")
            raise PersistenceError(f"database unavailable: {e}") from e
        logger.info(
            f"PostgreSQL pool ready for {self.config.database} "
            f"({self.config.min_connections}-{self.config.max_connections} connections)"
        )

    @contextmanager
    def get_connection(self) -> Iterator[Any]:
        """Borrow an autocommit connection; it goes back to the pool on exit."""
        if not self.pool:
            raise RuntimeError("PostgreSQL pool is closed")

        conn = self.pool.getconn()
        try:
            conn.autocommit = True  # each statement commits on its own
            yield conn
        except psycopg2.Error as e:
            logger.debug(f"Statement failed on pooled connection: {e}")
            raise
        finally:
            self.pool.putconn(conn)

    def _ensure_schema(self) -> None:
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(SCHEMA_SQL)
        except psycopg2.Error as e:
            raise PersistenceError(f"could not create inbox schema: {e}") from e
        logger.info("Inbox schema verified (user_settings, emails)")

    def get_version_info(self) -> Dict[str, Any]:
        """Server version for the health check; ``connected`` is False when unreachable."""
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT version()")
                    row = cur.fetchone()
        except (psycopg2.Error, RuntimeError) as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return {"connected": False, "error": str(e)}

        full_version = row['version'] if row else "Unknown"
        return {
            "connected": True,
            "version": full_version.split(' on ')[0],
            "full_version": full_version,
        }

    def close(self) -> None:
        if self.pool:
            self.pool.closeall()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")
