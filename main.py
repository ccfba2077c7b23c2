#!/usr/bin/env python3
"""
Main entry point for the CRM inbox service.

Syncs every configured IMAP mailbox into the CRM on a fixed interval and serves
the inbox API.
"""

from inbox_manager.app import InboxManager


def main() -> None:
    """
    Main entry point for the inbox service.

    Initializes and runs the Flask web application with the email scheduler.
    """
    app_manager = InboxManager()
    app_manager.run()


if __name__ == "__main__":
    main()
