"""Email ingestion: IMAP transport, normalization and sync orchestration.

- EmailConnector / IMAPConnector: session-oriented mail transport
- normalize: raw RFC 822 message to canonical record
- EmailAccountManager: credential store access
- PostgreSQLEmailManager: idempotent persistence of synced messages
- EmailOrchestrator: per-account sync state machine and sweeps
"""

from .account_manager import EmailAccountManager
from .connectors import EmailConnector, IMAPConnector
from .email_manager import PostgreSQLEmailManager
from .models import FetchedMessage, MailAccountConfig, SyncOutcome, SyncRun, SyncState
from .normalizer import normalize
from .orchestrator import EmailOrchestrator

__all__ = [
    "EmailAccountManager",
    "EmailConnector",
    "EmailOrchestrator",
    "FetchedMessage",
    "IMAPConnector",
    "MailAccountConfig",
    "PostgreSQLEmailManager",
    "SyncOutcome",
    "SyncRun",
    "SyncState",
    "normalize",
]
