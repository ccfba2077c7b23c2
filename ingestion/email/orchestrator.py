"""
This module defines the EmailOrchestrator class, which drives the synchronization of
mailboxes into the CRM. It reads account configurations from the credential store,
pulls unseen messages through a connector and persists them through the email manager.

Classes:
    EmailOrchestrator: Runs per-account sync passes and sequential sweeps over all
    eligible accounts, isolating failures so one account never aborts the others.
"""

import logging
import threading
import time
from datetime import UTC, datetime, timedelta
from email.errors import MessageError
from typing import Any, Callable, Dict, Iterable, List, Optional

from .account_manager import EmailAccountManager
from .connectors import EmailConnector
from .email_manager import PostgreSQLEmailManager
from .exceptions import (
    AuthError,
    FetchError,
    MailConnectionError,
    PersistenceError,
)
from .models import (
    FetchedMessage,
    MailAccountConfig,
    MessageRef,
    SyncOutcome,
    SyncRun,
    SyncState,
    is_eligible,
)
from .normalizer import PREVIEW_LENGTH, normalize

logger = logging.getLogger(__name__)


class EmailOrchestrator:
    """Sync mailboxes of configured accounts into the email store."""

    def __init__(
        self,
        account_manager: EmailAccountManager,
        email_manager: PostgreSQLEmailManager,
        connector: EmailConnector,
        config: Any = None,
        *,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        now: Optional[Callable[[], datetime]] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.account_manager = account_manager
        self.email_manager = email_manager
        self.connector = connector
        self.config = config

        self.lookback_days = int(getattr(config, "IMAP_INITIAL_LOOKBACK_DAYS", 7))
        self.pause_seconds = float(getattr(config, "EMAIL_ACCOUNT_PAUSE_SECONDS", 2))
        self.sweep_timeout = float(getattr(config, "EMAIL_SWEEP_TIMEOUT_SECONDS", 900) or 0)
        self.preview_length = int(getattr(config, "EMAIL_PREVIEW_LENGTH", PREVIEW_LENGTH))

        self.stop_event = stop_event or threading.Event()
        # The pause between accounts wakes up early on shutdown.
        self._sleep = sleep or self.stop_event.wait
        self._now = now or (lambda: datetime.now(UTC))
        self._monotonic = monotonic

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    def is_syncing(self, user_id: str) -> bool:
        with self._locks_guard:
            lock = self._locks.get(user_id)
        return bool(lock and lock.locked())

    def _since_marker(self, user_id: str) -> datetime:
        """Incremental marker: newest stored message date, else the lookback window."""
        latest = self.email_manager.get_latest_sent_at(user_id)
        if latest is not None:
            if latest.tzinfo is None:
                latest = latest.replace(tzinfo=UTC)
            return latest
        return self._now() - timedelta(days=self.lookback_days)

    def _flag_auth_failure(self, user_id: str, reason: str) -> None:
        try:
            self.account_manager.mark_auth_failure(user_id, reason)
        except PersistenceError as exc:
            logger.error("Could not flag account %s after authentication failure: %s", user_id, exc)

    # ------------------------------------------------------------------
    def sync_account(self, config: MailAccountConfig) -> SyncRun:
        """Run one sync pass for ``config``.

        At most one pass per account is in flight: a trigger arriving while
        another pass holds the account returns a ``skipped`` run at once.
        Never raises for mail or database failures; they are reported on the
        returned :class:`SyncRun`.
        """
        user_id = config.user_id
        lock = self._lock_for(user_id)
        if not lock.acquire(blocking=False):
            logger.info("Sync already in progress for user %s, skipping", user_id)
            return SyncRun.skipped(user_id, "sync already in progress")
        try:
            run = self._run_account(config)
        finally:
            lock.release()

        log = logger.warning if run.outcome == SyncOutcome.FAILED else logger.info
        log("Email sync for user %s finished: %s", user_id, run.summary())
        return run

    def _run_account(self, config: MailAccountConfig) -> SyncRun:
        user_id = config.user_id
        run = SyncRun(account_user_id=user_id)
        run.advance(SyncState.CONNECTING)
        logger.info("Syncing mailbox %s for user %s", config.mailbox, user_id)

        try:
            with self.connector.session(config) as session:
                self._sync_session(run, config, session)
        except AuthError as exc:
            run.fail(f"authentication failed: {exc}")
            self._flag_auth_failure(user_id, str(exc))
        except MailConnectionError as exc:
            run.fail(f"connection failed: {exc}")
        except PersistenceError as exc:
            run.fail(f"database error: {exc}")
        return run

    def _sync_session(self, run: SyncRun, config: MailAccountConfig, session: Any) -> None:
        since = self._since_marker(config.user_id)
        run.advance(SyncState.LISTING)
        refs = self.connector.list_unseen(session, since=since)

        synced: List[MessageRef] = []
        cancelled = False
        for ref in refs:
            if self.stop_event.is_set():
                cancelled = True
                break
            run.messages_seen += 1
            run.advance(SyncState.FETCHING)

            message = self._fetch_one(run, session, ref)
            if message is None:
                continue

            run.advance(SyncState.UPSERTING)
            inserted = self._upsert_with_retry(run, message)
            if inserted is None:
                continue
            run.messages_upserted += 1
            if inserted:
                run.messages_inserted += 1
            synced.append(ref)

        if synced:
            self.connector.mark_seen(session, synced)

        run.advance(SyncState.DONE)
        if cancelled:
            logger.info("Sync for user %s cancelled after %d messages", run.account_user_id, run.messages_seen)
            run.finish(SyncOutcome.CANCELLED)
        elif run.failures:
            run.finish(SyncOutcome.PARTIAL)
        else:
            run.finish(SyncOutcome.SUCCESS)

    def _fetch_one(self, run: SyncRun, session: Any, ref: MessageRef) -> Optional[FetchedMessage]:
        try:
            raw = self.connector.fetch_content(session, ref)
        except FetchError as exc:
            run.fetch_failures += 1
            run.errors.append(str(exc))
            logger.warning("Skipping message %s for user %s: %s", ref.uid, run.account_user_id, exc.reason)
            return None
        try:
            return normalize(raw, run.account_user_id, preview_length=self.preview_length, now=self._now)
        except (MessageError, ValueError, LookupError, TypeError) as exc:
            run.fetch_failures += 1
            run.errors.append(f"failed to parse message {ref.uid}: {exc}")
            logger.warning("Could not parse message %s for user %s: %s", ref.uid, run.account_user_id, exc)
            return None

    def _upsert_with_retry(self, run: SyncRun, message: FetchedMessage) -> Optional[bool]:
        """Upsert ``message``, retrying once. Returns None when both attempts fail."""
        try:
            return self.email_manager.upsert_email(message)
        except PersistenceError as exc:
            logger.warning("Upsert failed for message %s, retrying: %s", message.uid, exc)
        try:
            return self.email_manager.upsert_email(message)
        except PersistenceError as exc:
            run.upsert_failures += 1
            run.errors.append(f"failed to store message {message.uid}: {exc}")
            logger.error("Upsert retry failed for message %s of user %s: %s", message.uid, run.account_user_id, exc)
            return None

    # ------------------------------------------------------------------
    def sync_all(self, configs: Iterable[MailAccountConfig]) -> List[SyncRun]:
        """Sync ``configs`` one after another with a pause between accounts."""
        runs: List[SyncRun] = []
        deadline = self._monotonic() + self.sweep_timeout if self.sweep_timeout > 0 else None

        for index, config in enumerate(configs):
            if index and self.pause_seconds > 0:
                self._sleep(self.pause_seconds)
            if self.stop_event.is_set():
                logger.info("Shutdown requested, ending sweep after %d accounts", len(runs))
                break
            if deadline is not None and self._monotonic() >= deadline:
                logger.warning(
                    "Sweep exceeded %.0fs, deferring remaining accounts to the next tick",
                    self.sweep_timeout,
                )
                break
            try:
                runs.append(self.sync_account(config))
            except Exception as exc:
                logger.exception("Unexpected error syncing user %s", config.user_id)
                run = SyncRun(account_user_id=config.user_id)
                run.fail(f"unexpected error: {exc}")
                runs.append(run)
        return runs

    def run_sweep(self) -> List[SyncRun]:
        """Re-read eligible accounts and sync all of them."""
        accounts = self.account_manager.list_eligible_accounts()
        if not accounts:
            logger.debug("No eligible email accounts to sync")
            return []
        logger.info("Email sync sweep start: accounts=%d", len(accounts))
        runs = self.sync_all(accounts)
        failed = sum(1 for run in runs if run.outcome == SyncOutcome.FAILED)
        logger.info("Email sync sweep complete: accounts=%d failed=%d", len(runs), failed)
        return runs

    def sync_user(self, user_id: str) -> Dict[str, Any]:
        """Manual "sync now" for one user, summarized for the caller.

        Accounts flagged after an authentication failure may still be synced
        manually; a pass that gets past login clears the flag.
        """
        try:
            config = self.account_manager.get_account(user_id)
            previous_failure = self.account_manager.get_auth_failure(user_id) if config else None
        except PersistenceError as exc:
            run = SyncRun(account_user_id=user_id)
            run.fail(f"database error: {exc}")
            return run.summary()

        if not is_eligible(config):
            run = SyncRun(account_user_id=user_id)
            run.error = "no IMAP configuration"
            summary = run.summary()
            summary["status"] = "not_configured"
            return summary

        run = self.sync_account(config)
        if previous_failure and run.outcome in (SyncOutcome.SUCCESS, SyncOutcome.PARTIAL):
            try:
                self.account_manager.clear_auth_failure(user_id)
            except PersistenceError as exc:
                logger.error("Could not clear authentication failure for user %s: %s", user_id, exc)
        return run.summary()
