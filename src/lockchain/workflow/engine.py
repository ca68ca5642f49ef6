"""
Unlock workflow engine.

One invocation walks a fixed state machine::

    START -> KEY_ACQUIRED -> ROOT_RESOLVED -> DESCENDANTS_ENUMERATED
          -> KEY_APPLIED -> STATUS_CONFIRMED -> DONE

with FAILED reachable from every state. Key material is checked out once
per invocation through the shared KeySession and wiped as soon as the key
has been applied. Requested dataset order is preserved in every snapshot.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Dict, Iterable, List, Optional

from lockchain.core.config import LockchainConfig
from lockchain.core.exceptions import LockchainError, ProviderError
from lockchain.core.models import (
    DatasetStatus,
    KeyState,
    KeyStatusSnapshot,
    Severity,
    WorkflowReport,
    WorkflowState,
)
from lockchain.provider.base import StorageProvider
from lockchain.security.material import KeyMaterial
from lockchain.security.session import KeySession
from lockchain.security.source import ORIGIN_FALLBACK, KeySource

from . import events as codes
from .events import EventBus, EventRecorder
from .retry import Retrier, RetryPolicy

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Composes key source, provider and retry policy into named workflows."""

    def __init__(
        self,
        config: LockchainConfig,
        provider: StorageProvider,
        bus: Optional[EventBus] = None,
        session: Optional[KeySession] = None,
        key_source: Optional[KeySource] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.provider = provider
        self.bus = bus
        self.session = session or KeySession()
        self.key_source = key_source or KeySource(config)
        self.retry_policy = RetryPolicy.from_config(config.retry)
        self._sleep = sleep
        self._rng = rng

    # ------------------------------------------------------------------
    # Plumbing shared with the other workflow modules
    # ------------------------------------------------------------------

    def recorder(self) -> EventRecorder:
        return EventRecorder(self.bus)

    def retrier(self, rec: EventRecorder) -> Retrier:
        return Retrier(self.retry_policy, rec.emit, sleep=self._sleep, rng=self._rng)

    @staticmethod
    def advance(rec: EventRecorder, report: WorkflowReport, state: WorkflowState) -> None:
        report.state = state
        rec.emit(Severity.INFO, codes.WORKFLOW_STATE, f"{report.title}: {state.value}")

    @staticmethod
    def fail(rec: EventRecorder, report: WorkflowReport, error: LockchainError, dataset: Optional[str] = None) -> WorkflowReport:
        """Move *report* to FAILED, attaching dataset context to *error*."""
        if error.dataset is None:
            error.dataset = dataset
        report.state = WorkflowState.FAILED
        report.error = error
        report.events = rec.events
        rec.emit(Severity.ERROR, codes.WORKFLOW_FAILED, f"{error.code}: {error}", error.dataset)
        logger.error("%s failed: %s", report.title, error)
        return report

    # ------------------------------------------------------------------
    # Unlock
    # ------------------------------------------------------------------

    def unlock(
        self,
        datasets: Optional[Iterable[str]] = None,
        strict: bool = False,
        fallback_passphrase: Optional[str] = None,
        prompt: bool = False,
        key_override: Optional[KeyMaterial] = None,
    ) -> WorkflowReport:
        """Unlock *datasets* (default: every dataset in policy).

        ``strict`` forbids the passphrase fallback. ``key_override`` hands
        over already-loaded key material; its ownership moves to this call.
        """
        rec = self.recorder()
        report = WorkflowReport(title="unlock")
        rec.emit(Severity.INFO, codes.WORKFLOW_STATE, f"{report.title}: {WorkflowState.START.value}")

        try:
            requested = self.config.require_datasets(
                self.config.policy.datasets if datasets is None else datasets
            )
        except LockchainError as e:
            if key_override is not None:
                key_override.wipe()
            return self.fail(rec, report, e)

        retrier = self.retrier(rec)
        apply_error: Optional[ProviderError] = None
        try:
            loader = self._key_loader(rec, strict, fallback_passphrase, prompt, key_override)
            with self.session.checkout(loader, holder=report.title) as key:
                self.advance(rec, report, WorkflowState.KEY_ACQUIRED)
                apply_error = self.apply_key(rec, report, retrier, requested, key)
            self.confirm(rec, report, retrier, requested)
        except LockchainError as e:
            return self.fail(rec, report, e, dataset=requested[0] if len(requested) == 1 else None)
        finally:
            # no-op once the loader has taken the bytes
            if key_override is not None:
                key_override.wipe()

        self.summarise(rec, report, requested)
        if apply_error is not None:
            return self.fail(rec, report, apply_error)
        report.state = WorkflowState.DONE
        report.events = rec.events
        return report

    def _key_loader(self, rec, strict, fallback_passphrase, prompt, key_override):
        def load() -> KeyMaterial:
            if key_override is not None:
                key = key_override.take()
                rec.emit(Severity.INFO, codes.KEY_ACQUIRED, f"using supplied key (sha256 {key.fingerprint()})")
                return key
            try:
                key, origin = self.key_source.acquire(
                    strict=strict, fallback_passphrase=fallback_passphrase, prompt=prompt
                )
            except LockchainError as e:
                rec.emit(Severity.ERROR, codes.KEY_FAILED, f"{e.code}: {e}")
                raise
            if origin == ORIGIN_FALLBACK:
                rec.emit(
                    Severity.SECURITY,
                    codes.KEY_FALLBACK,
                    f"key derived from fallback passphrase (sha256 {key.fingerprint()})",
                )
            else:
                rec.emit(
                    Severity.INFO,
                    codes.KEY_ACQUIRED,
                    f"usb key loaded from {self.config.key_path} (sha256 {key.fingerprint()})",
                )
            return key

        return load

    def apply_key(
        self,
        rec: EventRecorder,
        report: WorkflowReport,
        retrier: Retrier,
        requested: List[str],
        key: KeyMaterial,
    ) -> Optional[ProviderError]:
        """Resolve roots, enumerate locked descendants and load the key per root.

        A root whose key load fails after retries is recorded and the other
        roots continue; the first such error is returned for the caller to
        turn into FAILED once the final status is known.
        """
        provider = self.provider

        roots: Dict[str, List[str]] = {}
        for ds in requested:
            root = retrier.call("encryption_root", lambda ds=ds: provider.encryption_root(ds), ds)
            roots.setdefault(root, []).append(ds)
        self.advance(rec, report, WorkflowState.ROOT_RESOLVED)

        pending: Dict[str, List[str]] = {}
        for root in roots:
            pending[root] = retrier.call("locked_descendants", lambda root=root: provider.locked_descendants(root), root)
        self.advance(rec, report, WorkflowState.DESCENDANTS_ENUMERATED)

        first_error: Optional[ProviderError] = None
        for root, locked in pending.items():
            if not locked:
                rec.emit(Severity.INFO, codes.UNLOCK_ALREADY, f"encryption root {root} already unlocked", root)
                continue
            try:
                unlocked = retrier.call(
                    "load_key_tree", lambda root=root: provider.load_key_tree(root, key.view()), root
                )
            except ProviderError as e:
                if e.dataset is None:
                    e.dataset = root
                first_error = first_error or e
                report.failed.extend(ds for ds in locked if ds not in report.failed)
                rec.emit(Severity.ERROR, codes.UNLOCK_FAILED, f"could not unlock {root}: {e}", root)
                continue

            report.unlocked.extend(ds for ds in unlocked if ds not in report.unlocked)
            stragglers = [ds for ds in locked if ds not in unlocked]
            rec.emit(
                Severity.SUCCESS,
                codes.UNLOCK_SUCCESS,
                f"unlocked {root} ({len(unlocked)} dataset(s))",
                root,
            )
            if stragglers:
                report.failed.extend(ds for ds in stragglers if ds not in report.failed)
                rec.emit(
                    Severity.WARNING,
                    codes.UNLOCK_PARTIAL,
                    f"{len(stragglers)} descendant(s) of {root} still locked: {', '.join(stragglers)}",
                    root,
                )
        self.advance(rec, report, WorkflowState.KEY_APPLIED)
        return first_error

    def confirm(self, rec: EventRecorder, report: WorkflowReport, retrier: Retrier, requested: List[str]) -> None:
        report.snapshot = retrier.call("describe_datasets", lambda: self.provider.describe_datasets(requested))
        self.advance(rec, report, WorkflowState.STATUS_CONFIRMED)

    @staticmethod
    def summarise(rec: EventRecorder, report: WorkflowReport, requested: List[str]) -> None:
        unlocked = sum(1 for d in report.snapshot if d.state is KeyState.UNLOCKED)
        for d in report.snapshot:
            if d.state is not KeyState.UNLOCKED and d.dataset not in report.failed:
                report.failed.append(d.dataset)
        rec.emit(
            Severity.INFO,
            codes.WORKFLOW_SUMMARY,
            f"requested={len(requested)} unlocked={unlocked} failed={len(requested) - unlocked}",
        )

    # ------------------------------------------------------------------
    # Read-only workflows
    # ------------------------------------------------------------------

    def status(self, dataset: str) -> DatasetStatus:
        """Current key status for *dataset* and its encryption root."""
        self.config.require_datasets([dataset])
        retrier = self.retrier(self.recorder())
        root = retrier.call("encryption_root", lambda: self.provider.encryption_root(dataset), dataset)
        locked = retrier.call("locked_descendants", lambda: self.provider.locked_descendants(root), root)
        return DatasetStatus(
            dataset=dataset,
            encryption_root=root,
            root_locked=root in locked,
            locked_descendants=[ds for ds in locked if ds != root],
        )

    def list_keys(self) -> KeyStatusSnapshot:
        """Keystatus of every policy dataset, in policy order."""
        retrier = self.retrier(self.recorder())
        datasets = list(self.config.policy.datasets)
        return retrier.call("describe_datasets", lambda: self.provider.describe_datasets(datasets))

    def drill(self, dataset: str, strict: bool = False) -> WorkflowReport:
        """Run the unlock path for *dataset* and verify nothing stays locked."""
        report = self.unlock([dataset], strict=strict)
        report.title = f"drill {dataset}"
        if not report.succeeded:
            return report

        rec = self.recorder()
        rec.events = report.events
        retrier = self.retrier(rec)
        try:
            root = retrier.call("encryption_root", lambda: self.provider.encryption_root(dataset), dataset)
            remaining = retrier.call("locked_descendants", lambda: self.provider.locked_descendants(root), root)
        except LockchainError as e:
            return self.fail(rec, report, e, dataset=dataset)
        if remaining:
            rec.emit(
                Severity.WARNING,
                codes.UNLOCK_PARTIAL,
                f"{root} still reports locked datasets after drill: {', '.join(remaining)}",
                root,
            )
        else:
            rec.emit(Severity.INFO, codes.UNLOCK_SUCCESS, "all descendants report unlocked after drill", root)
        report.events = rec.events
        return report

    # ------------------------------------------------------------------
    # Other named workflows
    # ------------------------------------------------------------------

    def self_test(self) -> WorkflowReport:
        from .self_test import run_self_test

        return run_self_test(self)

    def recover(self, passphrase, output_path, confirmation: str, dataset: Optional[str] = None) -> WorkflowReport:
        from .recovery import recover_key

        return recover_key(self, passphrase, output_path, confirmation, dataset=dataset)

    def doctor(self) -> WorkflowReport:
        from .doctor import run_doctor

        return run_doctor(self)
