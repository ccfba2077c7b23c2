"""Exceptions raised by the email ingestion pipeline.

The transport adapter and the persistence gateway raise these; the
orchestrator converts them into :class:`~ingestion.email.models.SyncRun`
results so that one account's failure never aborts a sweep.
"""

from __future__ import annotations


class EmailIngestionError(Exception):
    """Base class for all ingestion errors."""


class MailConnectionError(EmailIngestionError):
    """Opening a session against a mail server failed."""


class AuthError(MailConnectionError):
    """The mail server rejected the supplied credentials.

    Not retried on the next tick: the account is flagged ineligible until its
    credentials are saved again.
    """


class NetworkError(MailConnectionError):
    """Transport-level failure (DNS, refused connection, TLS, dropped socket).

    Transient; the account is retried on the next scheduled tick.
    """


class ConnectionTimeoutError(NetworkError):
    """The remote server did not answer within the configured interval."""


class FetchError(EmailIngestionError):
    """A single message could not be retrieved.

    The message is recorded and skipped; the rest of the batch continues.
    """

    def __init__(self, uid: str, reason: str) -> None:
        super().__init__(f"failed to fetch message {uid}: {reason}")
        self.uid = uid
        self.reason = reason


class PersistenceError(EmailIngestionError):
    """The relational store rejected a write or read."""


class InvalidSyncTransitionError(ValueError):
    """Raised when a sync run attempts an illegal state transition."""
