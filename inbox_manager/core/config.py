"""
Core configuration module for the CRM inbox service.

All settings are read from environment variables (a local ``.env`` file is
loaded first) into a single dataclass passed to every component.
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """
    Application configuration class.

    Centralizes all configuration settings with proper type hints
    and default values from environment variables.
    """

    # Flask Configuration
    FLASK_HOST: str = os.getenv("FLASK_HOST", "0.0.0.0")
    FLASK_PORT: int = int(os.getenv("FLASK_PORT", "3000"))
    FLASK_DEBUG: bool = _env_bool("FLASK_DEBUG", "false")
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")

    # Logging
    LOG_DIR: str = os.getenv("LOG_DIR", "logs")

    # PostgreSQL Configuration
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "crm")
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "crm_user")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "secure_password")

    # IMAP transport settings
    IMAP_MAILBOX: str = os.getenv('IMAP_MAILBOX', 'INBOX')
    IMAP_TIMEOUT_SECONDS: float = float(os.getenv('IMAP_TIMEOUT_SECONDS', '20'))
    IMAP_BATCH_LIMIT: Optional[int] = int(os.getenv('IMAP_BATCH_LIMIT', '0')) or None  # 0 means no limit
    IMAP_INITIAL_LOOKBACK_DAYS: int = int(os.getenv('IMAP_INITIAL_LOOKBACK_DAYS', '7'))
    IMAP_MARK_SEEN: bool = _env_bool('IMAP_MARK_SEEN', 'false')

    # Email sync settings
    EMAIL_SYNC_INTERVAL_SECONDS: float = float(os.getenv('EMAIL_SYNC_INTERVAL_SECONDS', '120'))
    EMAIL_ACCOUNT_PAUSE_SECONDS: float = float(os.getenv('EMAIL_ACCOUNT_PAUSE_SECONDS', '2'))
    EMAIL_SWEEP_TIMEOUT_SECONDS: float = float(os.getenv('EMAIL_SWEEP_TIMEOUT_SECONDS', '900'))
    EMAIL_PREVIEW_LENGTH: int = int(os.getenv('EMAIL_PREVIEW_LENGTH', '160'))

    # Scheduler settings
    SCHEDULER_ENABLED: bool = _env_bool('SCHEDULER_ENABLED', 'true')
    SCHEDULER_MAX_CONSECUTIVE_SKIPS: int = int(os.getenv('SCHEDULER_MAX_CONSECUTIVE_SKIPS', '5'))

    # Token verification for the HTTP routes
    SUPABASE_JWKS_URL: str = os.getenv('SUPABASE_JWKS_URL', '')
    SUPABASE_JWT_SECRET: str = os.getenv('SUPABASE_JWT_SECRET', '')
    SUPABASE_JWT_AUDIENCE: str = os.getenv('SUPABASE_JWT_AUDIENCE', 'authenticated')
