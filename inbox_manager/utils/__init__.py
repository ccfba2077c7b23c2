"""
Utility modules for the CRM inbox service.

This package contains utility modules for common functionality
across the application.
"""

from .logger import setup_logging, setup_script_logging, get_log_dir

__all__ = [
    'setup_logging',
    'setup_script_logging',
    'get_log_dir',
]
