"""
Core data models for the CRM inbox service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class ScheduleState:
    """
    Process-wide state of the periodic email sync.

    Attributes:
        is_running: True while a sweep holds the scheduler mutex
        last_tick_at: When the last tick fired (run or skipped)
        last_sweep_started_at: Start of the most recent sweep
        last_sweep_finished_at: End of the most recent sweep
        last_error: Error raised by the most recent sweep, if any
        consecutive_skips: Ticks skipped in a row because a sweep was still running
        total_skips: Ticks skipped since start
        sweeps_completed: Sweeps that ran to completion
        last_runs: Summaries of the per-account runs of the last sweep
    """
    is_running: bool = False
    last_tick_at: Optional[datetime] = None
    last_sweep_started_at: Optional[datetime] = None
    last_sweep_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_skips: int = 0
    total_skips: int = 0
    sweeps_completed: int = 0
    last_runs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_running': self.is_running,
            'last_tick_at': self.last_tick_at.isoformat() if self.last_tick_at else None,
            'last_sweep_started_at': self.last_sweep_started_at.isoformat() if self.last_sweep_started_at else None,
            'last_sweep_finished_at': self.last_sweep_finished_at.isoformat() if self.last_sweep_finished_at else None,
            'last_error': self.last_error,
            'consecutive_skips': self.consecutive_skips,
            'total_skips': self.total_skips,
            'sweeps_completed': self.sweeps_completed,
            'last_runs': list(self.last_runs),
        }
