"""
End-to-end self-test against a throw-away encrypted dataset.

The USB key is loaded (never the passphrase fallback), a scratch pool and
dataset are created with it, the key is unloaded, and the regular unlock
path is driven against the scratch dataset. The scratch dataset is torn
down on every exit path.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from lockchain.core.exceptions import LockchainError, ProviderError
from lockchain.core.models import KeyState, Severity, WorkflowReport, WorkflowState

from . import events as codes

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


def _expect_state(engine: "WorkflowEngine", retrier, dataset: str, wanted: KeyState) -> None:
    snapshot = retrier.call("describe_datasets", lambda: engine.provider.describe_datasets([dataset]), dataset)
    actual = snapshot[0].state if snapshot else KeyState.UNAVAILABLE
    if actual is not wanted:
        raise ProviderError(f"expected keystatus {wanted.value}, found {actual.value}", dataset=dataset)


def run_self_test(engine: "WorkflowEngine") -> WorkflowReport:
    rec = engine.recorder()
    report = WorkflowReport(title="self-test")
    retrier = engine.retrier(rec)
    provider = engine.provider
    scratch: Optional[str] = None

    try:
        with engine.session.checkout(engine.key_source.load_usb, holder=report.title) as key:
            rec.emit(Severity.INFO, codes.KEY_ACQUIRED, f"usb key loaded (sha256 {key.fingerprint()})")
            engine.advance(rec, report, WorkflowState.KEY_ACQUIRED)
            try:
                scratch = provider.create_scratch_dataset(key.view())
                rec.emit(Severity.INFO, codes.SELFTEST_STEP, f"created scratch dataset {scratch}", scratch)

                retrier.call("unload_key", lambda: provider.unload_key(scratch), scratch)
                _expect_state(engine, retrier, scratch, KeyState.LOCKED)
                rec.emit(Severity.INFO, codes.SELFTEST_STEP, "scratch key unloaded", scratch)

                error = engine.apply_key(rec, report, retrier, [scratch], key)
                if error is not None:
                    raise error
                if scratch not in report.unlocked:
                    raise ProviderError("scratch dataset did not unlock", dataset=scratch)
                engine.confirm(rec, report, retrier, [scratch])
                _expect_state(engine, retrier, scratch, KeyState.UNLOCKED)
                rec.emit(Severity.SUCCESS, codes.SELFTEST_STEP, "unlock path verified", scratch)
            finally:
                if scratch is not None:
                    _teardown(rec, retrier, provider, scratch)
    except LockchainError as e:
        return engine.fail(rec, report, e, dataset=scratch)

    rec.emit(Severity.SUCCESS, codes.WORKFLOW_SUMMARY, "self-test passed")
    report.state = WorkflowState.DONE
    report.events = rec.events
    return report


def _teardown(rec, retrier, provider, scratch: str) -> None:
    try:
        retrier.call("destroy_scratch_dataset", lambda: provider.destroy_scratch_dataset(scratch), scratch)
    except LockchainError as e:
        # surface the teardown failure but let the original outcome stand
        logger.error("self-test teardown of %s failed: %s", scratch, e)
        rec.emit(Severity.ERROR, codes.SELFTEST_TEARDOWN, f"teardown failed: {e}", scratch)
        return
    rec.emit(Severity.INFO, codes.SELFTEST_TEARDOWN, f"destroyed scratch dataset {scratch}", scratch)
