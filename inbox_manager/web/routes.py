"""
Web routes module for the CRM inbox service.

This module contains the Flask route definitions and handlers of the inbox API,
separated from the application wiring.
"""

import logging
from typing import Any, Dict, Tuple

from flask import Flask, jsonify, request

from ingestion.email.exceptions import MailConnectionError, PersistenceError
from ingestion.email.models import MailAccountConfig
from ..core.config import Config
from .auth import AuthenticationError, extract_token
from .validation import InputValidator, ValidationError

logger = logging.getLogger(__name__)

# HTTP status returned by the manual sync endpoint for each sync outcome.
SYNC_STATUS_CODES: Dict[str, int] = {
    'success': 200,
    'partial': 200,
    'skipped': 409,
    'not_configured': 404,
    'cancelled': 503,
    'failed': 502,
}


class WebRoutes:
    """
    Manages Flask routes and handlers of the inbox API.
    """

    def __init__(self, app: Flask, config: Config, inbox_manager: Any) -> None:
        """
        Initialize web routes.

        Args:
            app: Flask application instance
            config: Application configuration
            inbox_manager: Main application instance owning the managers
        """
        self.app = app
        self.config = config
        self.inbox_manager = inbox_manager

        self._register_error_handlers()
        self._register_routes()
        logger.info("Web routes initialized")

    def _current_user_id(self) -> str:
        token = extract_token(request)
        if not token:
            raise AuthenticationError("User not authenticated (no token).")
        return self.inbox_manager.token_verifier.user_id(token)

    def _register_error_handlers(self) -> None:
        @self.app.errorhandler(AuthenticationError)
        def handle_auth_error(e: AuthenticationError) -> Tuple[Any, int]:
            return jsonify({'error': str(e)}), 401

        @self.app.errorhandler(ValidationError)
        def handle_validation_error(e: ValidationError) -> Tuple[Any, int]:
            return jsonify({'error': str(e)}), 400

        @self.app.errorhandler(PersistenceError)
        def handle_persistence_error(e: PersistenceError) -> Tuple[Any, int]:
            logger.error(f"Database error while handling {request.path}: {e}")
            return jsonify({'error': 'Database error'}), 500

    def _register_routes(self) -> None:
        """Register Flask routes for the inbox API."""

        @self.app.route('/api/connect-imap', methods=['POST'])
        def connect_imap():
            """Test IMAP credentials and save them for the authenticated user."""
            user_id = self._current_user_id()
            settings = InputValidator.validate_imap_settings(request.get_json(silent=True))
            account = MailAccountConfig(
                user_id=user_id,
                host=settings['host'],
                port=settings['port'],
                username=settings['username'],
                password=settings['password'],
                use_tls=settings['use_tls'],
                mailbox=settings['mailbox'] or self.config.IMAP_MAILBOX,
            )
            logger.info("Request to connect IMAP account %s on %s:%s for user %s",
                        account.username, account.host, account.port, user_id)

            try:
                result = self.inbox_manager.connector.test_connection(account)
            except MailConnectionError as e:
                logger.warning(f"IMAP connection test failed for user {user_id}: {e}")
                return jsonify({'error': str(e) or 'Failed to connect IMAP account.'}), 400

            try:
                self.inbox_manager.account_manager.save_settings(user_id, account)
            except (PersistenceError, RuntimeError) as e:
                logger.error(f"Failed to save IMAP settings for user {user_id}: {e}")
                return jsonify({'error': 'IMAP account connected, but failed to save settings.'}), 500

            return jsonify({
                'message': 'IMAP account connected and settings saved successfully.',
                'data': result,
            }), 200

        @self.app.route('/api/emails/sync', methods=['POST'])
        def sync_emails():
            """Run a sync for the authenticated user now and report the outcome."""
            user_id = self._current_user_id()
            summary = self.inbox_manager.orchestrator.sync_user(user_id)
            return jsonify(summary), SYNC_STATUS_CODES.get(summary.get('status'), 500)

        @self.app.route('/api/emails/unread-count', methods=['GET'])
        def unread_count():
            user_id = self._current_user_id()
            return jsonify({'unread': self.inbox_manager.email_manager.get_unread_count(user_id)})

        @self.app.route('/api/emails/recent', methods=['GET'])
        def recent_emails():
            """Most recent emails of the authenticated user."""
            user_id = self._current_user_id()
            limit = InputValidator.validate_integer(request.args.get('limit'), 'limit',
                                                    min_val=1, max_val=500, required=False, default=50)
            offset = InputValidator.validate_integer(request.args.get('offset'), 'offset',
                                                     min_val=0, required=False)
            emails = self.inbox_manager.email_manager.get_recent_emails(user_id, limit=limit, offset=offset)
            return jsonify({'emails': emails, 'limit': limit, 'offset': offset})

        @self.app.route('/api/emails/search', methods=['GET'])
        def search_emails():
            user_id = self._current_user_id()
            query = InputValidator.validate_string(request.args.get('q'), 'q', max_length=500)
            emails = self.inbox_manager.email_manager.search_emails(user_id, query)
            return jsonify({'emails': emails, 'query': query})

        @self.app.route('/api/emails/message/<path:external_id>', methods=['GET'])
        def get_email(external_id: str):
            """Full stored copy of one message, looked up by its external id."""
            user_id = self._current_user_id()
            email = self.inbox_manager.email_manager.get_email(user_id, external_id)
            if email is None:
                return jsonify({'error': 'Email not found'}), 404
            return jsonify({'email': email})

        @self.app.route('/api/emails/<email_id>/read', methods=['POST'])
        def mark_email_read(email_id: str):
            user_id = self._current_user_id()
            if not self.inbox_manager.email_manager.mark_as_read(user_id, email_id):
                return jsonify({'error': 'Email not found'}), 404
            return jsonify({'status': 'ok'})

        @self.app.route('/api/emails/<email_id>', methods=['DELETE'])
        def delete_email(email_id: str):
            user_id = self._current_user_id()
            if not self.inbox_manager.email_manager.delete_email(user_id, email_id):
                return jsonify({'error': 'Email not found'}), 404
            return jsonify({'status': 'deleted'})

        @self.app.route('/admin/scheduler_status')
        def scheduler_status():
            """Diagnostic endpoint for scheduler status."""
            return jsonify(self.inbox_manager.scheduler_manager.scheduler_status())

        @self.app.route('/admin/health')
        def health():
            """Database connectivity and account count."""
            db_status = self.inbox_manager.postgres_manager.get_version_info()
            return jsonify({
                'database': db_status,
                'email_accounts': self.inbox_manager.account_manager.get_account_count(),
            }), 200 if db_status.get('connected') else 503
