"""
Base data models shared by the provider, workflow and daemon layers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from .exceptions import LockchainError


class KeyState(Enum):
    # Normalised keystatus of a dataset
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    UNAVAILABLE = "unavailable"


class Severity(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    SECURITY = "security"


class WorkflowState(Enum):
    # Linear progression of one workflow invocation; FAILED is terminal from anywhere
    START = "start"
    KEY_ACQUIRED = "key_acquired"
    ROOT_RESOLVED = "root_resolved"
    DESCENDANTS_ENUMERATED = "descendants_enumerated"
    KEY_APPLIED = "key_applied"
    STATUS_CONFIRMED = "status_confirmed"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class DatasetKeyDescriptor:
    dataset: str
    encryption_root: str
    state: KeyState

    def to_dict(self):
        return {
            "dataset": self.dataset,
            "encryption_root": self.encryption_root,
            "state": self.state.value,
        }


# Ordered, one entry per requested dataset
KeyStatusSnapshot = List[DatasetKeyDescriptor]


@dataclass(frozen=True)
class DatasetStatus:
    """Current key status for a dataset and its encryption root."""

    dataset: str
    encryption_root: str
    root_locked: bool
    locked_descendants: List[str]


@dataclass(frozen=True)
class WorkflowEvent:
    """Single immutable record produced by a workflow step."""

    severity: Severity
    code: str
    message: str
    dataset: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "dataset": self.dataset,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class WorkflowReport:
    """Aggregated result returned by every workflow entry point."""

    title: str
    state: WorkflowState = WorkflowState.START
    events: List[WorkflowEvent] = field(default_factory=list)
    snapshot: KeyStatusSnapshot = field(default_factory=list)
    unlocked: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error: Optional[LockchainError] = None

    @property
    def succeeded(self) -> bool:
        return self.state is WorkflowState.DONE

    def raise_for_failure(self) -> None:
        if self.state is WorkflowState.FAILED and self.error is not None:
            raise self.error

    def events_with_code(self, code: str) -> List[WorkflowEvent]:
        return [e for e in self.events if e.code == code]


@dataclass(frozen=True)
class HealthState:
    """Ready, or Degraded with a reason."""

    ready: bool
    reason: str = ""

    @classmethod
    def ok(cls) -> "HealthState":
        return cls(True)

    @classmethod
    def degraded(cls, reason: str) -> "HealthState":
        return cls(False, reason)

    def render(self) -> str:
        return "OK" if self.ready else f"DEGRADED: {self.reason}"
