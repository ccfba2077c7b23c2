"""Data models shared by the email ingestion pipeline.

Field Naming Convention:
- user_id / account_user_id: owner of the mail account in the CRM
- external_id: natural key of a message within one account
- sent_at: message date in UTC
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .exceptions import InvalidSyncTransitionError


@dataclass
class MailAccountConfig:
    """Per-user IMAP credentials and endpoint, read from the credential store."""

    user_id: str
    host: str
    port: Any
    username: str
    password: str
    use_tls: bool = True
    mailbox: str = "INBOX"

    def __repr__(self) -> str:
        return (
            f"MailAccountConfig(user_id={self.user_id!r}, host={self.host!r}, "
            f"port={self.port!r}, username={self.username!r}, use_tls={self.use_tls!r})"
        )

    @property
    def port_number(self) -> int:
        return int(self.port)


def _port_is_valid(port: Any) -> bool:
    if isinstance(port, bool):
        return False
    if isinstance(port, int):
        return port > 0
    if isinstance(port, str):
        cleaned = port.strip()
        return cleaned.isdigit() and int(cleaned) > 0
    return False


def is_eligible(config: Optional[MailAccountConfig]) -> bool:
    """Return ``True`` when every credential field is present and well formed."""
    if config is None:
        return False
    for value in (config.user_id, config.host, config.username, config.password):
        if value is None or not str(value).strip():
            return False
    return _port_is_valid(config.port)


@dataclass(frozen=True)
class MessageRef:
    """Server-assigned reference to one message in a mailbox."""

    uid: str
    mailbox: str = "INBOX"
    uidvalidity: Optional[str] = None


@dataclass(frozen=True)
class RawMessage:
    """Message exactly as retrieved from the transport."""

    uid: str
    rfc822: bytes
    flags: Tuple[str, ...] = ()
    mailbox: str = "INBOX"
    uidvalidity: Optional[str] = None
    size: Optional[int] = None
    source: str = "imap"

    @property
    def is_seen(self) -> bool:
        return any(flag.lower() == "\\seen" for flag in self.flags)


@dataclass
class FetchedMessage:
    """Canonical representation of one email, ready to be upserted."""

    external_id: str
    account_user_id: str
    subject: str
    sender: str
    sender_email: str
    recipients: List[str]
    sent_at: datetime
    body_text: str
    preview: str
    is_unread: bool
    message_id: Optional[str] = None
    uid: Optional[str] = None
    folder: str = "INBOX"
    to_recipients: List[str] = field(default_factory=list)
    cc_recipients: List[str] = field(default_factory=list)
    body_html: Optional[str] = None
    attachments_meta: List[Dict[str, Any]] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    sent_at_synthetic: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        return (self.account_user_id, self.external_id)


class SyncState(str, Enum):
    """Per-account sync lifecycle."""

    IDLE = "idle"
    CONNECTING = "connecting"
    LISTING = "listing"
    FETCHING = "fetching"
    UPSERTING = "upserting"
    DONE = "done"
    FAILED = "failed"


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


VALID_TRANSITIONS: Dict[SyncState, Set[SyncState]] = {
    SyncState.IDLE: {SyncState.CONNECTING, SyncState.FAILED},
    SyncState.CONNECTING: {SyncState.LISTING, SyncState.FAILED},
    SyncState.LISTING: {SyncState.FETCHING, SyncState.DONE, SyncState.FAILED},
    SyncState.FETCHING: {SyncState.UPSERTING, SyncState.FETCHING, SyncState.DONE, SyncState.FAILED},
    SyncState.UPSERTING: {SyncState.FETCHING, SyncState.DONE, SyncState.FAILED},
    SyncState.DONE: set(),
    SyncState.FAILED: set(),
}

TERMINAL_STATES = {SyncState.DONE, SyncState.FAILED}


@dataclass
class SyncRun:
    """Bookkeeping for one pass over one account.

    Attributes:
        account_user_id: Owner of the account being synced
        started_at: When the run began
        finished_at: When the run reached a terminal state
        state: Current lifecycle state
        outcome: Final result, set when the run finishes
        messages_seen: Messages listed by the server
        messages_upserted: Messages written to the store (inserted or updated)
        messages_inserted: Subset of upserted messages that were new rows
        fetch_failures: Messages skipped because retrieval or parsing failed
        upsert_failures: Messages skipped after the upsert retry failed
        error: Reason for a failed or skipped run
        errors: Per-message failure descriptions
    """

    account_user_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None
    state: SyncState = SyncState.IDLE
    outcome: Optional[SyncOutcome] = None
    messages_seen: int = 0
    messages_upserted: int = 0
    messages_inserted: int = 0
    fetch_failures: int = 0
    upsert_failures: int = 0
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    history: List[SyncState] = field(default_factory=list)

    def advance(self, to_state: SyncState) -> None:
        """Move to ``to_state``, rejecting transitions the lifecycle forbids."""
        if to_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidSyncTransitionError(
                f"invalid sync transition {self.state.value} -> {to_state.value} "
                f"for account {self.account_user_id}"
            )
        self.history.append(self.state)
        self.state = to_state

    def fail(self, reason: str) -> None:
        if self.state not in TERMINAL_STATES:
            self.advance(SyncState.FAILED)
        self.error = reason
        self.finish(SyncOutcome.FAILED)

    def finish(self, outcome: SyncOutcome) -> None:
        self.outcome = outcome
        self.finished_at = datetime.now(UTC)

    @property
    def failures(self) -> int:
        return self.fetch_failures + self.upsert_failures

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def summary(self) -> Dict[str, Any]:
        """Flatten the run into the dict surfaced to users and logs."""
        return {
            "status": self.outcome.value if self.outcome else self.state.value,
            "user_id": self.account_user_id,
            "messages_seen": self.messages_seen,
            "messages_upserted": self.messages_upserted,
            "messages_inserted": self.messages_inserted,
            "failures": self.failures,
            "error": self.error,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def skipped(cls, account_user_id: str, reason: str) -> "SyncRun":
        run = cls(account_user_id=account_user_id)
        run.error = reason
        run.finish(SyncOutcome.SKIPPED)
        return run
