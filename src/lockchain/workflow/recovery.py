"""
Emergency key recovery.

Derives the raw key from the fallback passphrase and writes it to a
caller-chosen path (mode 0400). Only the SHA-256 of the key is ever
reported. Every attempt, successful or not, leaves an ``audit.recovery``
security event behind.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from lockchain.core.exceptions import ConfirmationRequired, KeySourceError, LockchainError
from lockchain.core.models import Severity, WorkflowReport, WorkflowState
from lockchain.security.keyfile import write_raw_key_file

from . import events as codes

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

RECOVERY_CONFIRMATION = "I UNDERSTAND THIS WRITES KEY MATERIAL"


def recover_key(
    engine: "WorkflowEngine",
    passphrase,
    output_path,
    confirmation: str,
    dataset: Optional[str] = None,
) -> WorkflowReport:
    rec = engine.recorder()
    report = WorkflowReport(title="recover")
    output_path = Path(output_path)
    digest: Optional[str] = None

    try:
        if confirmation != RECOVERY_CONFIRMATION:
            raise ConfirmationRequired(
                f"recovery writes raw key material; pass the confirmation {RECOVERY_CONFIRMATION!r}",
                dataset=dataset,
            )
        if dataset is not None:
            engine.config.require_datasets([dataset])

        with engine.session.checkout(lambda: engine.key_source.derive_fallback(passphrase), holder=report.title) as key:
            engine.advance(rec, report, WorkflowState.KEY_ACQUIRED)
            try:
                write_raw_key_file(output_path, key.view())
            except OSError as e:
                raise KeySourceError(f"cannot write recovered key to {output_path}: {e}", dataset=dataset) from e
            digest = key.fingerprint()
    except LockchainError as e:
        rec.emit(
            Severity.SECURITY,
            codes.AUDIT_RECOVERY,
            f"emergency key recovery to {output_path} refused or failed: {e.code}",
            dataset,
        )
        return engine.fail(rec, report, e, dataset=dataset)

    rec.emit(
        Severity.SECURITY,
        codes.AUDIT_RECOVERY,
        f"derived fallback key written to {output_path} (sha256 {digest})",
        dataset,
    )
    logger.warning("recovered key material written to %s", output_path)
    report.state = WorkflowState.DONE
    report.events = rec.events
    return report
