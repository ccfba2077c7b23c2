"""
Ingestion of external mail into the CRM.

- email/: IMAP transport, normalization, persistence and sync orchestration
- utils/: Common utilities (crypto)
"""
