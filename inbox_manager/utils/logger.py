"""
Centralized logging configuration for the CRM inbox service.

The web process, the scheduler threads and the standalone scripts all log
through the root logger configured here: one stream handler plus one file
per process under ``LOG_DIR``.
"""

import os
import logging
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s'
NOISY_LOGGERS = ('urllib3', 'werkzeug', 'bs4')


def get_log_dir() -> str:
    """Configured log directory (``LOG_DIR``, default ``logs``)."""
    return os.getenv("LOG_DIR", "logs")


def _log_file(log_dir: Optional[str], file_name: str) -> Path:
    directory = Path(log_dir or get_log_dir())
    directory.mkdir(parents=True, exist_ok=True)
    return directory / file_name


def _configure(log_file: Path, level: int) -> None:
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file)
        ]
    )

    # Werkzeug logs every request at INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> None:
    """
    Configure logging for the inbox service process.

    Args:
        log_dir: Log directory override (defaults to configured LOG_DIR)
        level: Root log level
    """
    log_file = _log_file(log_dir, 'inbox_manager.log')
    _configure(log_file, level)
    logging.getLogger(__name__).info(f"Logging configured - log file: {log_file.absolute()}")


def setup_script_logging(
    script_name: str = "script",
    log_level: int = logging.INFO,
    log_dir: Optional[str] = None
) -> logging.Logger:
    """
    Configure logging for a one-off script and return its logger.

    The script logs to ``<LOG_DIR>/<script_name>.log`` as well as stderr.
    """
    log_file = _log_file(log_dir, f'{script_name}.log')
    _configure(log_file, log_level)

    logger = logging.getLogger(script_name)
    logger.info(f"Logging configured for {script_name} - log file: {log_file.absolute()}")
    return logger
