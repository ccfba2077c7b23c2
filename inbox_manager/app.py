"""
Main application class for the CRM inbox service.

This module contains the InboxManager class that wires the credential store,
the email gateway, the sync orchestrator, the scheduler and the web routes.
"""

import logging
import threading
from typing import Any, Optional

from flask import Flask

from ingestion.email.account_manager import EmailAccountManager
from ingestion.email.connectors import EmailConnector, IMAPConnector
from ingestion.email.email_manager import PostgreSQLEmailManager
from ingestion.email.orchestrator import EmailOrchestrator
from .core.config import Config
from .managers.postgres_manager import PostgreSQLManager
from .scheduler_manager import SchedulerManager
from .utils.logger import setup_logging
from .web.auth import TokenVerifier
from .web.routes import WebRoutes

logger = logging.getLogger(__name__)


class InboxManager:
    """
    Main application class that orchestrates email sync and the web interface.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        postgres_manager: Optional[Any] = None,
        connector: Optional[EmailConnector] = None,
        token_verifier: Optional[TokenVerifier] = None,
        configure_logging: bool = True,
    ) -> None:
        """Initialize the inbox service.

        Args:
            config: Application configuration (read from the environment when None)
            postgres_manager: Shared connection pool; created from ``config`` when None
            connector: Mail transport; an IMAP connector when None
            token_verifier: JWT verifier; built from ``config`` when None
            configure_logging: Install the stream and file log handlers
        """
        self.config = config or Config()

        if configure_logging:
            setup_logging(self.config.LOG_DIR)

        self.app = Flask(__name__)
        self.app.config['SECRET_KEY'] = self.config.SECRET_KEY

        self.postgres_manager = postgres_manager or self._initialize_database_manager()
        self.connector = connector or IMAPConnector(
            timeout=self.config.IMAP_TIMEOUT_SECONDS,
            batch_limit=self.config.IMAP_BATCH_LIMIT,
            mark_seen=self.config.IMAP_MARK_SEEN,
        )
        self.account_manager = EmailAccountManager(self.postgres_manager, default_mailbox=self.config.IMAP_MAILBOX)
        self.email_manager = PostgreSQLEmailManager(self.postgres_manager)

        # One stop signal for the scheduler loop and any in-flight sync.
        self.stop_event = threading.Event()
        self.orchestrator = EmailOrchestrator(
            self.account_manager,
            self.email_manager,
            self.connector,
            self.config,
            stop_event=self.stop_event,
        )
        self.scheduler_manager = SchedulerManager(self.orchestrator, self.config, stop_event=self.stop_event)
        self.token_verifier = token_verifier or TokenVerifier.from_config(self.config)

        self.web_routes = WebRoutes(self.app, self.config, self)
        logger.info("Inbox manager application initialized")

    def _initialize_database_manager(self) -> PostgreSQLManager:
        manager = PostgreSQLManager.from_config(self.config)
        logger.info("PostgreSQL integration initialized successfully")
        return manager

    def shutdown(self, timeout: float = 30.0) -> None:
        """Stop the scheduler, let an in-flight sync finish its message, release the pool."""
        self.scheduler_manager.stop_scheduler(timeout)
        self.postgres_manager.close()

    def run(self) -> None:
        """
        Run the Flask application.

        Starts the background scheduler (unless disabled) and the web server.
        """
        logger.info(f"Starting inbox manager on {self.config.FLASK_HOST}:{self.config.FLASK_PORT}")

        if self.config.SCHEDULER_ENABLED:
            logger.info("Starting background scheduler for email sync")
            self.scheduler_manager.start_scheduler()
        else:
            logger.info("Background scheduler disabled by configuration")

        try:
            self.app.run(
                host=self.config.FLASK_HOST,
                port=self.config.FLASK_PORT,
                debug=self.config.FLASK_DEBUG,
                use_reloader=False,
            )
        finally:
            self.shutdown()


if __name__ == "__main__":
    InboxManager().run()
