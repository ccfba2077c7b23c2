"""
CRM Inbox Manager Package

Background IMAP sync and the HTTP API for the CRM inbox.
"""

__version__ = "0.1.0"
