"""
Core components: configuration and shared models.
"""

from .config import Config
from .models import ScheduleState

__all__ = ['Config', 'ScheduleState']
