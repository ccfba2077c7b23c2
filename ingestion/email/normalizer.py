"""Normalisation of raw IMAP messages into :class:`FetchedMessage` records.

Everything here is pure: the same :class:`RawMessage` always yields the same
:class:`FetchedMessage`, except for messages whose Date header is missing or
unparseable. Those receive the normaliser's clock time and are flagged with
``sent_at_synthetic`` so the persistence layer never treats the value as a
protocol-reported send time.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from email import message_from_bytes
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from .models import FetchedMessage, RawMessage

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 160
TRUNCATION_MARKER = "…"

_WHITESPACE_RE = re.compile(r"\s+")
_ATTRIBUTION_RE = re.compile(r"^\s*On\b.*\bwrote:\s*$", re.IGNORECASE)
_SIGNATURE_RE = re.compile(r"^--\s*$")


# ------------------------------------------------------------------
def decode_header_value(raw_val: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header into text; ``""`` when absent."""
    if not raw_val:
        return ""
    try:
        parts = decode_header(raw_val)
    except HeaderParseError:
        # broken encoded-word, keep the header as sent
        return str(raw_val).strip()
    try:
        return str(make_header(parts)).strip()
    except (LookupError, UnicodeError, ValueError):
        decoded: List[str] = []
        for text, enc in parts:
            if isinstance(text, bytes):
                try:
                    decoded.append(text.decode(enc or "utf-8", errors="ignore"))
                except LookupError:
                    decoded.append(text.decode("utf-8", errors="ignore"))
            else:
                decoded.append(text)
        return "".join(decoded).strip()


# ------------------------------------------------------------------
def html_to_text(body_html: str) -> str:
    return BeautifulSoup(body_html, "html.parser").get_text("\n")


def clean_body_text(text: Optional[str]) -> str:
    """Strip quoted replies and signatures, then collapse whitespace."""
    if not text:
        return ""
    kept: List[str] = []
    for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        stripped = line.lstrip()
        if _SIGNATURE_RE.match(line):
            break
        if stripped.startswith(">"):
            continue
        if _ATTRIBUTION_RE.match(line):
            continue
        kept.append(line)
    return _WHITESPACE_RE.sub(" ", "\n".join(kept)).strip()


def extract_preview(text: Optional[str], length: int = PREVIEW_LENGTH) -> str:
    """Return the cleaned body capped at ``length`` characters.

    A truncated preview is exactly ``length + 1`` characters long: a prefix of
    the cleaned body followed by a single ellipsis character.
    """
    cleaned = clean_body_text(text)
    if len(cleaned) > length:
        return cleaned[:length] + TRUNCATION_MARKER
    return cleaned


# ------------------------------------------------------------------
def _decode_part(part: Message) -> Optional[str]:
    payload = part.get_payload(decode=True)
    if not payload:
        return None
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="ignore")
    except LookupError:
        return payload.decode("utf-8", errors="ignore")


def _addresses(msg: Message, header: str) -> List[str]:
    seen: List[str] = []
    for _, addr in getaddresses(msg.get_all(header, [])):
        addr = addr.strip().lower()
        if addr and addr not in seen:
            seen.append(addr)
    return seen


def _sender(msg: Message) -> Tuple[str, str]:
    raw_from = msg.get("From")
    if not raw_from:
        return "", ""
    addrs = getaddresses([str(raw_from)])
    if not addrs:
        return "", ""
    name, addr = addrs[0]
    addr = addr.strip().lower()
    return (decode_header_value(name) or addr), addr


def _sent_at(msg: Message, now: Callable[[], datetime]) -> Tuple[datetime, bool]:
    date_raw = msg.get("Date")
    if date_raw:
        try:
            dt = parsedate_to_datetime(str(date_raw))
        except (TypeError, ValueError, IndexError):
            dt = None
        if dt is not None:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=UTC)
            return dt.astimezone(UTC), False
    logger.debug("Missing or malformed Date header %r; using synthetic timestamp", date_raw)
    return now(), True


def _bodies(msg: Message) -> Tuple[Optional[str], Optional[str], List[Dict[str, Any]]]:
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[Dict[str, Any]] = []

    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart():
            continue
        ctype = part.get_content_type()
        disp = (part.get("Content-Disposition") or "").lower()
        filename = part.get_filename()
        if "attachment" in disp or filename:
            payload = part.get_payload(decode=True) or b""
            attachments.append(
                {
                    "name": decode_header_value(filename) if filename else "attachment",
                    "size": len(payload),
                    "mime": ctype,
                }
            )
        elif ctype == "text/plain" and body_text is None:
            body_text = _decode_part(part)
        elif ctype == "text/html" and body_html is None:
            body_html = _decode_part(part)
    return body_text, body_html, attachments


def _external_id(message_id: Optional[str], raw: RawMessage) -> str:
    if message_id:
        return message_id
    return f"uid:{raw.uidvalidity or '0'}:{raw.uid}"


# ------------------------------------------------------------------
def normalize(
    raw: RawMessage,
    account_user_id: str,
    *,
    preview_length: int = PREVIEW_LENGTH,
    now: Optional[Callable[[], datetime]] = None,
) -> FetchedMessage:
    """Convert ``raw`` into the canonical record stored for ``account_user_id``."""
    clock = now or (lambda: datetime.now(UTC))
    msg = message_from_bytes(raw.rfc822)

    message_id = (msg.get("Message-ID") or "").strip().strip("<>").strip() or None
    in_reply_to = (msg.get("In-Reply-To") or "").strip().strip("<>").strip() or None
    subject = decode_header_value(msg.get("Subject"))
    sender, sender_email = _sender(msg)
    to_addrs = _addresses(msg, "To")
    cc_addrs = _addresses(msg, "Cc")
    recipients = list(to_addrs)
    for addr in cc_addrs:
        if addr not in recipients:
            recipients.append(addr)
    sent_at, synthetic = _sent_at(msg, clock)

    body_text, body_html, attachments = _bodies(msg)
    if not body_text and body_html:
        body_text = html_to_text(body_html)
    body_text = (body_text or "").strip()

    return FetchedMessage(
        external_id=_external_id(message_id, raw),
        account_user_id=account_user_id,
        subject=subject,
        sender=sender,
        sender_email=sender_email,
        recipients=recipients,
        sent_at=sent_at,
        sent_at_synthetic=synthetic,
        body_text=body_text,
        body_html=body_html,
        preview=extract_preview(body_text, preview_length),
        is_unread=not raw.is_seen,
        message_id=message_id,
        uid=raw.uid,
        folder=raw.mailbox,
        to_recipients=to_addrs,
        cc_recipients=cc_addrs,
        attachments_meta=attachments,
        in_reply_to=in_reply_to,
    )
