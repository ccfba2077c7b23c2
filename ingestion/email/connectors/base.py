"""Base abstract email connector class.

This module provides the abstract :class:`EmailConnector` base class that defines
the session-oriented interface all mail transports implement.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional

from ..models import MailAccountConfig, MessageRef, RawMessage


class EmailConnector(ABC):
    """Abstract base class for retrieving messages from a mail server."""

    @abstractmethod
    def connect(self, config: MailAccountConfig) -> Any:
        """Open an authenticated session for ``config``.

        Raises
        ------
        AuthError
            The server rejected the credentials.
        NetworkError
            The server could not be reached or the connection broke.
        """

    @abstractmethod
    def list_unseen(self, session: Any, since: Optional[datetime] = None) -> Iterator[MessageRef]:
        """Yield references to unseen messages, in server order."""

    @abstractmethod
    def fetch_content(self, session: Any, ref: MessageRef) -> RawMessage:
        """Retrieve one message; raises ``FetchError`` on per-message failure."""

    def mark_seen(self, session: Any, refs: Iterable[MessageRef]) -> None:
        """Flag ``refs`` as read on the server. Transports may ignore this."""

    @abstractmethod
    def close(self, session: Any) -> None:
        """Release ``session``. Must be safe to call more than once."""

    # ------------------------------------------------------------------
    @contextmanager
    def session(self, config: MailAccountConfig) -> Iterator[Any]:
        """Scoped session: closed on every exit path."""
        handle = self.connect(config)
        try:
            yield handle
        finally:
            self.close(handle)
