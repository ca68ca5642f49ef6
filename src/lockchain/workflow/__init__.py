"""Workflow engine, retry policy and event stream."""

from .engine import WorkflowEngine
from .events import EventBus, EventRecorder, Subscription, log_event
from .recovery import RECOVERY_CONFIRMATION
from .retry import Retrier, RetryPolicy

__all__ = [
    "WorkflowEngine",
    "EventBus",
    "EventRecorder",
    "Subscription",
    "log_event",
    "RECOVERY_CONFIRMATION",
    "Retrier",
    "RetryPolicy",
]
