"""
Background unlock loop and health state.

The scheduler drives the unlock workflow on a fixed interval and whenever
``trigger()`` is called (for example when key media appears). Health
starts Degraded, turns Ready after a full policy pass unlocks everything,
and drops back to Degraded when a pass fails or leaves datasets locked.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Tuple

from lockchain.core.exceptions import ProviderError
from lockchain.core.models import HealthState, Severity, WorkflowEvent, WorkflowReport
from lockchain.workflow import events as codes
from lockchain.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)

INITIAL_REASON = "no successful unlock cycle yet"


class UnlockScheduler:
    def __init__(self, engine: WorkflowEngine, interval: Optional[float] = None):
        self.engine = engine
        self.interval = engine.config.scheduler.interval_secs if interval is None else interval
        self.cycles = 0
        self._health = HealthState.degraded(INITIAL_REASON)
        # events of the latest pass plus any health change it caused
        self._recent: List[WorkflowEvent] = []
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._reason = "interval"
        self._thread: Optional[threading.Thread] = None

    # ---- lifecycle

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="unlock-scheduler", daemon=True)
        self._thread.start()
        logger.info("unlock scheduler started (interval %.1fs)", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("unlock scheduler stopped")

    def trigger(self, reason: str = "manual") -> None:
        """Ask the loop to run a pass now instead of waiting for the interval."""
        with self._state_lock:
            self._reason = reason
        self._wake.set()

    def _loop(self) -> None:
        # first pass runs immediately
        self.trigger("startup")
        while not self._stop.is_set():
            self._wake.wait(timeout=self.interval)
            if self._stop.is_set():
                break
            with self._state_lock:
                reason, self._reason = self._reason, "interval"
            self._wake.clear()
            try:
                self.run_once(reason)
            except Exception:
                logger.exception("unlock pass crashed")
                self._set_health(HealthState.degraded("unlock pass crashed; see logs"))

    # ---- one pass

    def run_once(self, reason: str = "manual") -> WorkflowReport:
        """Run one unlock pass over the whole policy and update health."""
        with self._run_lock:
            logger.info("unlock pass starting (%s)", reason)
            report = self.engine.unlock()
            self.cycles += 1
            with self._state_lock:
                self._recent = list(report.events)
            self._set_health(self._assess(report))
            return report

    @staticmethod
    def _assess(report: WorkflowReport) -> HealthState:
        if report.succeeded and not report.failed:
            return HealthState.ok()
        error = report.error
        if isinstance(error, ProviderError) and error.attempts:
            return HealthState.degraded(
                f"provider failure after {error.attempts} attempt(s): {error}"
            )
        if error is not None:
            return HealthState.degraded(f"{error.code}: {error}")
        return HealthState.degraded(f"{len(report.failed)} dataset(s) still locked")

    def _set_health(self, state: HealthState) -> None:
        with self._state_lock:
            previous, self._health = self._health, state
        if previous != state:
            rec = self.engine.recorder()
            event = rec.emit(
                Severity.SUCCESS if state.ready else Severity.WARNING,
                codes.HEALTH_CHANGED,
                state.render(),
            )
            with self._state_lock:
                self._recent.append(event)
            logger.info("health changed: %s", state.render())

    # ---- queries

    def health(self) -> Tuple[HealthState, List[WorkflowEvent]]:
        """Current health and the event batch of the most recent pass."""
        with self._state_lock:
            return self._health, list(self._recent)
