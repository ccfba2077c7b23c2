"""
Managers module initialization.

Contains database management components for the CRM inbox service.
"""

from .postgres_manager import PostgreSQLManager, PostgreSQLConfig

__all__ = ['PostgreSQLManager', 'PostgreSQLConfig']
