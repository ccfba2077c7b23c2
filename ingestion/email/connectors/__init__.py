"""Mail transport implementations.

- EmailConnector: Abstract base class defining the session interface
  (connect, list_unseen, fetch_content, mark_seen, close)
- IMAPConnector: IMAP implementation over :mod:`imaplib` with bounded timeouts

Example Usage:
    from ingestion.email.connectors import IMAPConnector

    connector = IMAPConnector(timeout=20)
    with connector.session(config) as session:
        for ref in connector.list_unseen(session):
            raw = connector.fetch_content(session, ref)
"""

from .base import EmailConnector
from .imap_connector import IMAPConnector, IMAPSession

__all__ = [
    "EmailConnector",
    "IMAPConnector",
    "IMAPSession",
]
