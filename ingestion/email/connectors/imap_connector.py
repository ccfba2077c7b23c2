"""IMAP email connector implementation.

This module provides the :class:`IMAPConnector` implementation capable of
opening a session against an IMAP server, listing unseen messages by UID and
retrieving their raw content.

Only transport concerns live here: decoding and normalisation happen in
:mod:`ingestion.email.normalizer`. Every socket operation is bounded by the
connector's timeout so one unresponsive server cannot stall a sweep.
"""

from __future__ import annotations

import imaplib
import logging
import re
import socket
import ssl
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..exceptions import (
    AuthError,
    ConnectionTimeoutError,
    FetchError,
    MailConnectionError,
    NetworkError,
)
from ..models import MailAccountConfig, MessageRef, RawMessage
from .base import EmailConnector

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20.0
FETCH_QUERY = "(UID FLAGS RFC822.SIZE BODY.PEEK[])"

_SIZE_RE = re.compile(rb"RFC822\.SIZE (\d+)")
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")


@dataclass
class IMAPSession:
    """Live IMAP connection for one sync pass."""

    conn: Any
    username: str
    host: str
    mailbox: str = "INBOX"
    uidvalidity: Optional[str] = None
    readonly: bool = True
    closed: bool = False
    broken: bool = False


class IMAPConnector(EmailConnector):
    """Retrieve emails from an IMAP server.

    When ``use_tls`` is ``False`` on the account the connector upgrades the
    plain connection with ``STARTTLS`` to avoid sending credentials in
    plaintext. A server without ``STARTTLS`` support is reported as a
    :class:`NetworkError`.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        batch_limit: Optional[int] = None,
        mark_seen: bool = False,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.timeout = timeout
        self.batch_limit = batch_limit
        self.mark_seen_enabled = mark_seen
        self.ssl_context = ssl_context

    # ------------------------------------------------------------------
    def _context(self) -> ssl.SSLContext:
        return self.ssl_context or ssl.create_default_context()

    def _open(self, config: MailAccountConfig) -> Any:
        host = (config.host or "").strip()
        try:
            port = config.port_number
        except (TypeError, ValueError) as exc:
            raise MailConnectionError(f"invalid IMAP port {config.port!r}") from exc
        if not host or port <= 0:
            raise MailConnectionError(f"invalid IMAP endpoint {host!r}:{config.port!r}")

        try:
            if config.use_tls:
                return imaplib.IMAP4_SSL(
                    host, port, ssl_context=self._context(), timeout=self.timeout
                )
            return imaplib.IMAP4(host, port, timeout=self.timeout)
        except socket.timeout as exc:
            raise ConnectionTimeoutError(
                f"timed out connecting to {host}:{port} after {self.timeout}s"
            ) from exc
        except (OSError, imaplib.IMAP4.error) as exc:
            raise NetworkError(f"could not connect to {host}:{port}: {exc}") from exc

    def _starttls(self, conn: Any) -> None:
        try:
            status, _ = conn.starttls(ssl_context=self._context())
        except (imaplib.IMAP4.error, OSError) as exc:
            raise NetworkError(
                "IMAP server requires a secure connection; STARTTLS negotiation failed"
            ) from exc
        if status != "OK":
            raise NetworkError(
                "IMAP server requires a secure connection; STARTTLS negotiation failed"
            )

    def _logout_quietly(self, conn: Any) -> None:
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.debug("Ignoring error during IMAP logout: %s", exc)

    # ------------------------------------------------------------------
    def connect(self, config: MailAccountConfig) -> IMAPSession:
        """Open, authenticate and select the mailbox for ``config``."""
        logger.info(
            "Connecting to IMAP server %s:%s mailbox=%s user=%s",
            config.host,
            config.port,
            config.mailbox,
            config.username,
        )
        conn = self._open(config)
        try:
            if not config.use_tls:
                self._starttls(conn)

            try:
                conn.login(config.username, config.password)
            except imaplib.IMAP4.abort as exc:
                raise NetworkError(f"connection dropped during login: {exc}") from exc
            except imaplib.IMAP4.error as exc:
                raise AuthError(f"IMAP login rejected for {config.username}: {exc}") from exc

            readonly = not self.mark_seen_enabled
            status, _ = conn.select(config.mailbox or "INBOX", readonly=readonly)
            if status != "OK":
                raise MailConnectionError(
                    f"IMAP select failed for mailbox {config.mailbox}: status={status}"
                )
            uidvalidity = self._uidvalidity(conn)
        except socket.timeout as exc:
            self._logout_quietly(conn)
            raise ConnectionTimeoutError(
                f"timed out talking to {config.host}:{config.port}"
            ) from exc
        except MailConnectionError:
            self._logout_quietly(conn)
            raise
        except (imaplib.IMAP4.error, OSError) as exc:
            self._logout_quietly(conn)
            raise NetworkError(f"IMAP session setup failed for {config.host}: {exc}") from exc

        logger.debug("IMAP session ready for %s (uidvalidity=%s)", config.username, uidvalidity)
        return IMAPSession(
            conn=conn,
            username=config.username,
            host=config.host,
            mailbox=config.mailbox or "INBOX",
            uidvalidity=uidvalidity,
            readonly=readonly,
        )

    def _uidvalidity(self, conn: Any) -> Optional[str]:
        try:
            _, data = conn.response("UIDVALIDITY")
        except (AttributeError, imaplib.IMAP4.error):
            return None
        if data and data[0]:
            value = data[0]
            return value.decode() if isinstance(value, bytes) else str(value)
        return None

    # ------------------------------------------------------------------
    def _search_criteria(self, since: Optional[datetime]) -> List[str]:
        if since is None:
            return ["UNSEEN"]
        return ["OR", "UNSEEN", "SINCE", since.strftime("%d-%b-%Y")]

    def list_unseen(self, session: IMAPSession, since: Optional[datetime] = None) -> Iterator[MessageRef]:
        """Search for unseen (or recent) messages and yield their references.

        UIDs are yielded in the order the server returned them and are not
        assumed to be contiguous.
        """
        criteria = self._search_criteria(since)
        try:
            status, data = session.conn.uid("SEARCH", None, *criteria)
        except socket.timeout as exc:
            session.broken = True
            raise ConnectionTimeoutError(f"IMAP search timed out on {session.host}") from exc
        except (imaplib.IMAP4.error, OSError) as exc:
            session.broken = True
            raise NetworkError(f"IMAP search failed on {session.host}: {exc}") from exc
        if status != "OK":
            raise NetworkError(f"IMAP search failed on {session.host}: status={status}")

        uids = (data[0] or b"").split() if data else []
        if self.batch_limit is not None:
            uids = uids[-self.batch_limit:]
        logger.info(
            "Found %d candidate messages for %s (criteria=%s)",
            len(uids),
            session.username,
            " ".join(criteria),
        )
        return (
            MessageRef(
                uid=uid.decode() if isinstance(uid, bytes) else str(uid),
                mailbox=session.mailbox,
                uidvalidity=session.uidvalidity,
            )
            for uid in uids
        )

    # ------------------------------------------------------------------
    def fetch_content(self, session: IMAPSession, ref: MessageRef) -> RawMessage:
        """Fetch one message body without altering its ``\\Seen`` flag."""
        if session.broken or session.closed:
            raise NetworkError(f"IMAP session to {session.host} is no longer usable")
        try:
            status, data = session.conn.uid("FETCH", ref.uid, FETCH_QUERY)
        except (socket.timeout, imaplib.IMAP4.abort, OSError) as exc:
            session.broken = True
            raise FetchError(ref.uid, f"connection error: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise FetchError(ref.uid, str(exc)) from exc
        if status != "OK":
            raise FetchError(ref.uid, f"status={status}")
        return self._parse_fetch_response(ref, data)

    def _parse_fetch_response(self, ref: MessageRef, data: Any) -> RawMessage:
        body: Optional[bytes] = None
        meta = b""
        for item in data or []:
            if isinstance(item, tuple) and len(item) >= 2:
                meta += item[0] or b""
                if body is None and isinstance(item[1], (bytes, bytearray)):
                    body = bytes(item[1])
            elif isinstance(item, (bytes, bytearray)):
                meta += bytes(item)
        if not body:
            raise FetchError(ref.uid, "empty response")

        flags: List[str] = []
        flags_match = _FLAGS_RE.search(meta)
        if flags_match:
            flags = [flag.decode() for flag in flags_match.group(1).split()]
        size_match = _SIZE_RE.search(meta)
        return RawMessage(
            uid=ref.uid,
            rfc822=body,
            flags=tuple(flags),
            mailbox=ref.mailbox,
            uidvalidity=ref.uidvalidity,
            size=int(size_match.group(1)) if size_match else len(body),
        )

    # ------------------------------------------------------------------
    def mark_seen(self, session: IMAPSession, refs: Iterable[MessageRef]) -> None:
        """Set ``\\Seen`` on ``refs`` when the connector was built with ``mark_seen``."""
        if not self.mark_seen_enabled or session.readonly:
            return
        uids = ",".join(ref.uid for ref in refs)
        if not uids:
            return
        try:
            status, _ = session.conn.uid("STORE", uids, "+FLAGS", "(\\Seen)")
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.warning("Error marking messages as read for %s: %s", session.username, exc)
            return
        if status != "OK":
            logger.warning("IMAP STORE returned %s for %s", status, session.username)
        else:
            logger.info("Marked fetched messages as read for %s", session.username)

    # ------------------------------------------------------------------
    def close(self, session: IMAPSession) -> None:
        if session.closed:
            return
        session.closed = True
        self._logout_quietly(session.conn)
        logger.debug("IMAP session closed for %s", session.username)

    # ------------------------------------------------------------------
    def test_connection(self, config: MailAccountConfig) -> Dict[str, Any]:
        """Verify that ``config`` can log in and open its mailbox."""
        with self.session(config) as session:
            logger.info("IMAP connection test succeeded for %s", config.username)
            return {"status": "connected", "user": config.username, "mailbox": session.mailbox}
