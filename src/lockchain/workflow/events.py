"""
Workflow event codes and the fan-out bus.

Codes are stable, namespaced identifiers that consumers route on:
- ``unlock.*``   dataset unlock outcomes
- ``provider.*`` storage-system failures and retries
- ``key.*``      key acquisition
- ``audit.*``    security-relevant actions (emergency recovery)
- ``workflow.*`` lifecycle and summaries
- ``selftest.*`` / ``doctor.*`` / ``health.*`` per-workflow detail

The bus never blocks the producer. Every subscriber gets its own bounded
buffer; when a slow subscriber falls behind, its oldest undelivered events
are dropped and counted.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

from lockchain.core.models import Severity, WorkflowEvent

logger = logging.getLogger(__name__)
event_logger = logging.getLogger("lockchain.events")

UNLOCK_SUCCESS = "unlock.success"
UNLOCK_ALREADY = "unlock.already_unlocked"
UNLOCK_PARTIAL = "unlock.partial"
UNLOCK_FAILED = "unlock.failed"
PROVIDER_RETRY = "provider.retry"
PROVIDER_EXHAUSTED = "provider.exhausted"
PROVIDER_ERROR = "provider.error"
KEY_ACQUIRED = "key.acquired"
KEY_FALLBACK = "key.fallback"
KEY_FAILED = "key.failed"
AUDIT_RECOVERY = "audit.recovery"
WORKFLOW_STATE = "workflow.state"
WORKFLOW_SUMMARY = "workflow.summary"
WORKFLOW_FAILED = "workflow.failed"
SELFTEST_STEP = "selftest.step"
SELFTEST_TEARDOWN = "selftest.teardown"
DOCTOR_CHECK = "doctor.check"
DOCTOR_REMEDY = "doctor.remedy"
DOCTOR_SUMMARY = "doctor.summary"
HEALTH_CHANGED = "health.changed"

DEFAULT_BUFFER = 256

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.SECURITY: logging.WARNING,
}


def log_event(event: WorkflowEvent) -> None:
    """Subscriber that mirrors events onto the ``lockchain.events`` logger."""
    suffix = f" [{event.dataset}]" if event.dataset else ""
    event_logger.log(_LOG_LEVELS[event.severity], "%s: %s%s", event.code, event.message, suffix)


class Subscription:
    """Bounded, drop-oldest buffer with an optional delivery thread."""

    def __init__(self, bus: "EventBus", callback: Optional[Callable[[WorkflowEvent], None]], maxlen: int, name: str):
        self.name = name
        self.dropped = 0
        self._bus = bus
        self._callback = callback
        self._buffer: Deque[WorkflowEvent] = deque(maxlen=maxlen)
        self._cond = threading.Condition()
        self._closed = False
        self._inflight = False
        self._thread: Optional[threading.Thread] = None
        if callback is not None:
            self._thread = threading.Thread(target=self._run, name=f"events-{name}", daemon=True)
            self._thread.start()

    def offer(self, event: WorkflowEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._buffer) == self._buffer.maxlen:
                self.dropped += 1
            self._buffer.append(event)
            self._cond.notify_all()

    def drain(self) -> List[WorkflowEvent]:
        """Take everything buffered (pull-mode subscribers)."""
        with self._cond:
            items = list(self._buffer)
            self._buffer.clear()
            self._cond.notify_all()
            return items

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until the delivery thread has handled everything buffered."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._buffer and not self._inflight, timeout=timeout)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._bus._remove(self)

    def _run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._buffer or self._closed)
                if self._closed and not self._buffer:
                    return
                event = self._buffer.popleft()
                self._inflight = True
            try:
                self._callback(event)
            except Exception:
                logger.exception("event subscriber %s failed on %s", self.name, event.code)
            finally:
                with self._cond:
                    self._inflight = False
                    self._cond.notify_all()


class EventBus:
    """Append-only publish to any number of independent subscribers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: List[Subscription] = []

    def subscribe(
        self,
        callback: Optional[Callable[[WorkflowEvent], None]] = None,
        maxlen: int = DEFAULT_BUFFER,
        name: Optional[str] = None,
    ) -> Subscription:
        with self._lock:
            sub = Subscription(self, callback, maxlen, name or f"sub{len(self._subs)}")
            self._subs.append(sub)
            return sub

    def publish(self, event: WorkflowEvent) -> None:
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            sub.offer(event)

    def close(self) -> None:
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            sub.close()

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)


class EventRecorder:
    """Collects a single invocation's events and forwards them to the bus."""

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus
        self.events: List[WorkflowEvent] = []

    def emit(self, severity: Severity, code: str, message: str, dataset: Optional[str] = None) -> WorkflowEvent:
        event = WorkflowEvent(severity=severity, code=code, message=message, dataset=dataset)
        self.events.append(event)
        if self.bus is not None:
            self.bus.publish(event)
        return event

    def count(self, *severities: Severity) -> int:
        return sum(1 for e in self.events if e.severity in severities)
