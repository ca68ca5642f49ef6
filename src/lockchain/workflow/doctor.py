"""
Read-only diagnostics.

Inspects configuration, the key file, the removable media, the fallback
material and each policy dataset, and suggests remedies. Nothing here
writes to disk, changes file modes or loads keys into the storage system.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List

from lockchain.core.exceptions import DerivationFailed, KeySourceError, LockchainError, MissingKeySource
from lockchain.core.models import KeyState, Severity, WorkflowReport, WorkflowState
from lockchain.security.kdf import _as_bytes, kdf_params_to_dict
from lockchain.security.keyfile import KEY_FILE_MODE, key_file_mode, read_key_file, verify_checksum
from lockchain.security.material import KEY_LENGTH, KeyMaterial

from . import events as codes

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

DISK_BY_LABEL = Path("/dev/disk/by-label")
DISK_BY_UUID = Path("/dev/disk/by-uuid")


class _Checks:
    """Counts findings while emitting them."""

    def __init__(self, rec):
        self.rec = rec
        self.warnings = 0
        self.errors = 0

    def ok(self, message: str, dataset=None) -> None:
        self.rec.emit(Severity.SUCCESS, codes.DOCTOR_CHECK, message, dataset)

    def info(self, message: str, dataset=None) -> None:
        self.rec.emit(Severity.INFO, codes.DOCTOR_CHECK, message, dataset)

    def warn(self, message: str, remedy: str = "", dataset=None) -> None:
        self.warnings += 1
        self.rec.emit(Severity.WARNING, codes.DOCTOR_CHECK, message, dataset)
        if remedy:
            self.rec.emit(Severity.INFO, codes.DOCTOR_REMEDY, remedy, dataset)

    def error(self, message: str, remedy: str = "", dataset=None) -> None:
        self.errors += 1
        self.rec.emit(Severity.ERROR, codes.DOCTOR_CHECK, message, dataset)
        if remedy:
            self.rec.emit(Severity.INFO, codes.DOCTOR_REMEDY, remedy, dataset)


def run_doctor(engine: "WorkflowEngine") -> WorkflowReport:
    rec = engine.recorder()
    report = WorkflowReport(title="doctor")
    checks = _Checks(rec)

    _check_config(engine, checks)
    _check_key_file(engine, checks)
    _check_media(engine, checks)
    _check_fallback(engine, checks)
    _check_datasets(engine, rec, report, checks)

    rec.emit(
        Severity.WARNING if checks.errors or checks.warnings else Severity.SUCCESS,
        codes.DOCTOR_SUMMARY,
        f"warnings={checks.warnings} errors={checks.errors}",
    )
    report.state = WorkflowState.DONE
    report.events = rec.events
    return report


def _check_config(engine: "WorkflowEngine", checks: _Checks) -> None:
    cfg = engine.config
    for issue in cfg.validate():
        checks.error(f"config: {issue}", "fix the configuration file and reload the daemon")
    for note in cfg.advisories():
        checks.warn(f"config: {note}")
    checks.info(f"policy lists {len(cfg.policy.datasets)} dataset(s)")


def _check_key_file(engine: "WorkflowEngine", checks: _Checks) -> None:
    cfg = engine.config
    path = cfg.key_path
    if not path.exists():
        checks.warn(
            f"key file {path} not present",
            "insert the key media or point usb.key_hex_path / LOCKCHAIN_KEY_PATH at the key",
        )
        return

    mode = key_file_mode(path)
    if mode != KEY_FILE_MODE:
        checks.warn(f"key file {path} has mode {mode:04o}", f"chmod {KEY_FILE_MODE:04o} {path}")
    else:
        checks.ok(f"key file {path} has mode {KEY_FILE_MODE:04o}")

    converted = []

    def load() -> KeyMaterial:
        raw, was_hex = read_key_file(path)
        converted.append(was_hex)
        return KeyMaterial.adopt(raw)

    try:
        with engine.session.checkout(load, holder="doctor") as key:
            if converted[0]:
                checks.warn(
                    f"key file {path} is hex encoded",
                    "run an unlock to normalise it to 32 raw bytes",
                )
            else:
                checks.ok(f"key file {path} holds {KEY_LENGTH} raw bytes")
            if cfg.usb.expected_sha256 is None:
                checks.info(f"key sha256 {key.fingerprint()} (no expected checksum configured)")
            else:
                verify_checksum(key, cfg.usb.expected_sha256)
                checks.ok("key checksum matches usb.expected_sha256")
    except MissingKeySource as e:
        checks.error(str(e), f"check permissions on {path}")
    except KeySourceError as e:
        checks.error(f"{e.code}: {e}", "replace the key file with the correct key")


def _check_media(engine: "WorkflowEngine", checks: _Checks) -> None:
    usb = engine.config.usb
    if usb.device_label:
        if (DISK_BY_LABEL / usb.device_label).exists():
            checks.ok(f"usb device with label {usb.device_label} present")
        else:
            checks.warn(f"no usb device with label {usb.device_label}", "insert the key media")
    if usb.device_uuid:
        if (DISK_BY_UUID / usb.device_uuid).exists():
            checks.ok(f"usb device with uuid {usb.device_uuid} present")
        else:
            checks.warn(f"no usb device with uuid {usb.device_uuid}", "insert the key media")


def _check_fallback(engine: "WorkflowEngine", checks: _Checks) -> None:
    fallback = engine.config.fallback
    if not fallback.enabled:
        checks.info("fallback passphrase derivation disabled")
        return
    if fallback.passphrase_salt is None or fallback.passphrase_xor is None:
        # already reported by config advisories
        return
    try:
        salt = _as_bytes(fallback.passphrase_salt, "fallback.passphrase_salt")
        xor = _as_bytes(fallback.passphrase_xor, "fallback.passphrase_xor")
    except DerivationFailed as e:
        checks.error(str(e), "regenerate the fallback material")
        return
    if len(xor) != KEY_LENGTH:
        checks.error(
            f"fallback.passphrase_xor is {len(xor)} bytes, expected {KEY_LENGTH}",
            "regenerate the fallback material",
        )
        return
    params = kdf_params_to_dict(salt, fallback.passphrase_iters)
    checks.ok(
        f"fallback material complete ({params['algo']}, {len(salt)}-byte salt, "
        f"{params['iterations']} iterations)"
    )
    if fallback.askpass and not (fallback.askpass_path and Path(fallback.askpass_path).exists()):
        checks.warn(f"askpass helper {fallback.askpass_path} not found", "install systemd or fix fallback.askpass_path")


def _check_datasets(engine: "WorkflowEngine", rec, report: WorkflowReport, checks: _Checks) -> None:
    retrier = engine.retrier(rec)
    provider = engine.provider
    datasets: List[str] = list(engine.config.policy.datasets)

    for ds in datasets:
        try:
            root = retrier.call("encryption_root", lambda ds=ds: provider.encryption_root(ds), ds)
            locked = retrier.call("locked_descendants", lambda root=root: provider.locked_descendants(root), root)
        except LockchainError as e:
            checks.error(f"{e.code}: {e}", "verify the dataset exists and its pool is imported", dataset=ds)
            continue
        if locked:
            checks.info(f"encryption root {root}: {len(locked)} locked dataset(s)", dataset=ds)
        else:
            checks.ok(f"encryption root {root}: all datasets unlocked", dataset=ds)

    try:
        report.snapshot = retrier.call("describe_datasets", lambda: provider.describe_datasets(datasets))
    except LockchainError as e:
        checks.error(f"{e.code}: {e}", "check that the zfs tooling is installed and responsive")
        return
    for d in report.snapshot:
        if d.state is KeyState.UNAVAILABLE:
            report.failed.append(d.dataset)
            checks.warn(f"keystatus unavailable for {d.dataset}", dataset=d.dataset)
