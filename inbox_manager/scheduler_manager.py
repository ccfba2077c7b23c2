import threading
import time
from contextlib import contextmanager
from datetime import datetime, UTC
from typing import Any, Dict, Iterator, List, Optional
import logging

from inbox_manager.core.models import ScheduleState

logger = logging.getLogger(__name__)


class SchedulerManager:
    """Fires an email sweep every ``EMAIL_SYNC_INTERVAL_SECONDS``.

    Only one sweep runs at a time. A tick that finds a sweep still running is
    skipped rather than queued.
    """

    def __init__(self, email_orchestrator, config, *, stop_event: Optional[threading.Event] = None):
        self.email_orchestrator = email_orchestrator
        self.config = config
        self.interval = float(getattr(config, 'EMAIL_SYNC_INTERVAL_SECONDS', 120))
        self.max_consecutive_skips = int(getattr(config, 'SCHEDULER_MAX_CONSECUTIVE_SKIPS', 5))
        # Shared with the orchestrator so stopping also interrupts an in-flight sweep.
        self.stop_event = stop_event or getattr(email_orchestrator, 'stop_event', None) or threading.Event()
        self.state = ScheduleState()
        self._sweep_lock = threading.Lock()
        self._scheduler_thread: Optional[threading.Thread] = None
        self._scheduler_last_cycle: Optional[float] = None
        self._sweep_threads: List[threading.Thread] = []

    @contextmanager
    def _sweep_slot(self) -> Iterator[bool]:
        """Try to take the sweep mutex; yields False when another sweep holds it."""
        if not self._sweep_lock.acquire(blocking=False):
            yield False
            return
        self.state.is_running = True
        try:
            yield True
        finally:
            self.state.is_running = False
            self._sweep_lock.release()

    def tick(self) -> bool:
        """Run one sweep unless one is already in progress.

        Returns True when a sweep ran.
        """
        self.state.last_tick_at = datetime.now(UTC)
        with self._sweep_slot() as acquired:
            if not acquired:
                self._record_skip()
                return False
            self.state.consecutive_skips = 0
            self.state.last_sweep_started_at = datetime.now(UTC)
            try:
                runs = self.email_orchestrator.run_sweep()
            except Exception as exc:
                logger.error(f"Email sweep failed: {exc}", exc_info=True)
                self.state.last_error = str(exc)
            else:
                self.state.last_error = None
                self.state.last_runs = [run.summary() for run in runs]
                self.state.sweeps_completed += 1
            finally:
                self.state.last_sweep_finished_at = datetime.now(UTC)
            return True

    def _record_skip(self) -> None:
        self.state.consecutive_skips += 1
        self.state.total_skips += 1
        logger.info(
            "Previous email sweep still running, skipping tick (consecutive skips: %d)",
            self.state.consecutive_skips,
        )
        if self.state.consecutive_skips == self.max_consecutive_skips:
            logger.error(
                "Email sweep has overrun %d consecutive ticks (started %s); sync is falling behind",
                self.state.consecutive_skips,
                self.state.last_sweep_started_at,
            )

    def start_scheduler(self):
        """Start the scheduler thread if not already running."""
        if self._scheduler_thread and self._scheduler_thread.is_alive():
            logger.debug("Scheduler thread already running")
            return
        self.stop_event.clear()
        th = threading.Thread(target=self._scheduler_loop, name="email-scheduler")
        th.daemon = True
        th.start()
        self._scheduler_thread = th
        logger.info(f"Scheduler thread started (ident={th.ident}, interval={self.interval}s)")

    def stop_scheduler(self, timeout: Optional[float] = None) -> bool:
        """Signal the loop and any in-flight sync to stop, then wait for the thread.

        Returns True when the thread exited within ``timeout``.
        """
        self.stop_event.set()
        threads = list(self._sweep_threads)
        if self._scheduler_thread is not None:
            threads.insert(0, self._scheduler_thread)
        deadline = None if timeout is None else time.monotonic() + timeout
        for th in threads:
            th.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        stopped = not any(th.is_alive() for th in threads)
        if stopped:
            self._scheduler_thread = None
            self._sweep_threads = []
            logger.info("Scheduler thread stopped")
        else:
            logger.warning("Scheduler thread did not stop within %ss", timeout)
        return stopped

    def scheduler_status(self) -> Dict[str, Any]:
        """Return current scheduler diagnostic info."""
        alive = bool(self._scheduler_thread and self._scheduler_thread.is_alive())
        last_cycle_age = None
        if self._scheduler_last_cycle:
            last_cycle_age = round(time.time() - self._scheduler_last_cycle, 2)
        status = {
            'running': alive,
            'thread_ident': getattr(self._scheduler_thread, 'ident', None),
            'interval_seconds': self.interval,
            'last_cycle_age_seconds': last_cycle_age,
        }
        status.update(self.state.to_dict())
        return status

    def _dispatch_tick(self, cycle: int) -> threading.Thread:
        """Run ``tick`` on its own thread so the timer keeps firing during long sweeps."""
        th = threading.Thread(target=self.tick, name=f"email-sweep-{cycle}")
        th.daemon = True
        th.start()
        self._sweep_threads = [t for t in self._sweep_threads if t.is_alive()] + [th]
        return th

    def _scheduler_loop(self):
        """Background loop firing a tick every interval until stopped."""
        logger.info("Scheduler started")
        cycle = 0
        while not self.stop_event.is_set():
            cycle += 1
            self._scheduler_last_cycle = time.time()
            self._dispatch_tick(cycle)
            logger.debug(f"Scheduler cycle {cycle} dispatched; sleeping {self.interval}s")
            self.stop_event.wait(self.interval)
        logger.info("Scheduler loop exited")
