"""One-off email sync from the command line.

Usage::

    python -m ingestion.email.ingest --user-id <uuid>
    python -m ingestion.email.ingest --all
"""

from __future__ import annotations

import argparse
import json
import logging
import threading
from typing import Any, List, Optional, Sequence

from .account_manager import EmailAccountManager
from .connectors import IMAPConnector
from .email_manager import PostgreSQLEmailManager
from .orchestrator import EmailOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator(
    config: Any,
    postgres_manager: Any,
    *,
    stop_event: Optional[threading.Event] = None,
) -> EmailOrchestrator:
    """Wire the credential store, gateway and IMAP transport around ``postgres_manager``."""
    connector = IMAPConnector(
        timeout=config.IMAP_TIMEOUT_SECONDS,
        batch_limit=config.IMAP_BATCH_LIMIT,
        mark_seen=config.IMAP_MARK_SEEN,
    )
    return EmailOrchestrator(
        EmailAccountManager(postgres_manager, default_mailbox=config.IMAP_MAILBOX),
        PostgreSQLEmailManager(postgres_manager),
        connector,
        config,
        stop_event=stop_event,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point; returns the process exit code."""
    from inbox_manager.core.config import Config
    from inbox_manager.managers import PostgreSQLManager
    from inbox_manager.utils import setup_script_logging

    parser = argparse.ArgumentParser(description="Sync IMAP mailboxes into the CRM")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="Sync a single user's mailbox")
    target.add_argument("--all", action="store_true", help="Sync every eligible mailbox")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    setup_script_logging("email_ingest", logging.DEBUG if args.verbose else logging.INFO)

    config = Config()
    postgres_manager = PostgreSQLManager.from_config(config)
    try:
        orchestrator = build_orchestrator(config, postgres_manager)
        if args.user_id:
            summary = orchestrator.sync_user(args.user_id)
            print(json.dumps(summary, indent=2, default=str))
            return 0 if summary["status"] in ("success", "partial") else 1

        runs = orchestrator.run_sweep()
        summaries: List[dict] = [run.summary() for run in runs]
        print(json.dumps(summaries, indent=2, default=str))
        return 1 if any(s["status"] == "failed" for s in summaries) else 0
    finally:
        postgres_manager.close()


if __name__ == "__main__":  # pragma: no cover - CLI behaviour
    raise SystemExit(main())
