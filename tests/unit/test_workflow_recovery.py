"""Unit tests for emergency key recovery."""

import hashlib

import pytest

from conftest import KEY, make_config
from lockchain.core.exceptions import ConfirmationRequired, DerivationFailed, FallbackDisabled
from lockchain.core.models import Severity, WorkflowState
from lockchain.provider.memory import InMemoryProvider
from lockchain.security.kdf import build_fallback_material
from lockchain.security.keyfile import KEY_FILE_MODE, key_file_mode
from lockchain.workflow import events as codes
from lockchain.workflow.engine import WorkflowEngine
from lockchain.workflow.recovery import RECOVERY_CONFIRMATION

ITERS = 1000


@pytest.fixture
def recovery_engine(tmp_path):
    salt, xor = build_fallback_material(KEY, "pw", ITERS)
    cfg = make_config(
        tmp_path / "absent",
        fallback={"enabled": True, "passphrase_salt": salt, "passphrase_xor": xor, "passphrase_iters": ITERS},
    )
    return WorkflowEngine(cfg, InMemoryProvider(key=KEY))


def _audit(report):
    return report.events_with_code(codes.AUDIT_RECOVERY)


def test_recovery_writes_key_and_audits(recovery_engine, tmp_path):
    out = tmp_path / "recovered" / "key.bin"

    report = recovery_engine.recover("pw", out, RECOVERY_CONFIRMATION)

    assert report.state is WorkflowState.DONE
    assert out.read_bytes() == KEY
    assert key_file_mode(out) == KEY_FILE_MODE
    audit = _audit(report)
    assert len(audit) == 1 and audit[0].severity is Severity.SECURITY
    assert hashlib.sha256(KEY).hexdigest() in audit[0].message
    assert KEY.hex() not in " ".join(e.message for e in report.events)
    assert recovery_engine.provider.calls["load_key_tree"] == 0


def test_recovery_requires_confirmation(recovery_engine, tmp_path):
    out = tmp_path / "key.bin"
    report = recovery_engine.recover("pw", out, "yes")
    assert isinstance(report.error, ConfirmationRequired)
    assert not out.exists()
    audit = _audit(report)
    assert len(audit) == 1 and audit[0].severity is Severity.SECURITY


def test_recovery_disabled_fallback(tmp_path):
    engine = WorkflowEngine(make_config(tmp_path / "absent"), InMemoryProvider())
    report = engine.recover("pw", tmp_path / "key.bin", RECOVERY_CONFIRMATION)
    assert isinstance(report.error, FallbackDisabled)
    assert len(_audit(report)) == 1


def test_recovery_incomplete_material(tmp_path):
    engine = WorkflowEngine(make_config(tmp_path / "absent", fallback={"enabled": True}), InMemoryProvider())
    report = engine.recover("pw", tmp_path / "key.bin", RECOVERY_CONFIRMATION)
    assert isinstance(report.error, DerivationFailed)
    assert len(_audit(report)) == 1


def test_recovery_skips_usb_even_when_present(tmp_path, key_file):
    other = bytes(32)
    salt, xor = build_fallback_material(other, "pw", ITERS)
    cfg = make_config(
        key_file,
        fallback={"enabled": True, "passphrase_salt": salt, "passphrase_xor": xor, "passphrase_iters": ITERS},
    )
    out = tmp_path / "out.bin"
    WorkflowEngine(cfg, InMemoryProvider()).recover("pw", out, RECOVERY_CONFIRMATION)
    assert out.read_bytes() == other


def test_recovery_unknown_dataset(recovery_engine, tmp_path):
    report = recovery_engine.recover("pw", tmp_path / "k", RECOVERY_CONFIRMATION, dataset="tank/zzz")
    assert report.error.code == "config.dataset_not_configured"
    assert len(_audit(report)) == 1
