"""
Policy and runtime configuration.

The configuration is read once (TOML or YAML), validated, and then shared
read-only by every component. Environment overrides are applied at load time
so nothing deeper in the call stack needs to look at ``os.environ``.

Example (TOML)::

    [policy]
    datasets = ["tank/secure", "tank/media"]

    [usb]
    key_hex_path = "/run/lockchain/key.hex"
    expected_sha256 = "..."

    [retry]
    max_attempts = 3
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .exceptions import ConfigError, DatasetNotConfigured

KEY_PATH_ENV = "LOCKCHAIN_KEY_PATH"
HEALTH_ADDR_ENV = "LOCKCHAIN_HEALTH_ADDR"

DEFAULT_KEY_PATH = "/run/lockchain/key.hex"
DEFAULT_ASKPASS_PATH = "/usr/bin/systemd-ask-password"


@dataclass(frozen=True)
class PolicyConfig:
    datasets: Tuple[str, ...] = ()
    zfs_path: Optional[str] = None
    zpool_path: Optional[str] = None


@dataclass(frozen=True)
class CryptoConfig:
    # per-call timeout for provider commands
    timeout_secs: float = 10.0


@dataclass(frozen=True)
class UsbConfig:
    key_hex_path: str = DEFAULT_KEY_PATH
    expected_sha256: Optional[str] = None
    device_label: Optional[str] = None
    device_uuid: Optional[str] = None
    mount_timeout_secs: float = 10.0
    poll_interval_secs: float = 5.0


@dataclass(frozen=True)
class FallbackConfig:
    enabled: bool = False
    askpass: bool = False
    askpass_path: Optional[str] = DEFAULT_ASKPASS_PATH
    passphrase_salt: Optional[str] = None
    passphrase_xor: Optional[str] = None
    passphrase_iters: int = 250_000


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 5_000
    jitter_ratio: float = 0.1


@dataclass(frozen=True)
class SchedulerConfig:
    interval_secs: float = 30.0


@dataclass(frozen=True)
class HealthConfig:
    bind: str = "127.0.0.1:8787"
    advertise: bool = False

    def address(self) -> Tuple[str, int]:
        host, _, port = self.bind.rpartition(":")
        if not host or not port.isdigit():
            raise ConfigError(f"health.bind must look like host:port (got {self.bind!r})")
        return host.strip("[]"), int(port)


_SECTIONS = {
    "policy": PolicyConfig,
    "crypto": CryptoConfig,
    "usb": UsbConfig,
    "fallback": FallbackConfig,
    "retry": RetryConfig,
    "scheduler": SchedulerConfig,
    "health": HealthConfig,
}


@dataclass(frozen=True)
class LockchainConfig:
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    usb: UsbConfig = field(default_factory=UsbConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    path: Optional[Path] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path, environ: Optional[Mapping[str, str]] = None) -> "LockchainConfig":
        """Read, parse and validate the config file at *path*.

        ``.toml`` files are parsed with tomllib, anything else as YAML.
        Raises ConfigError on unreadable, malformed or invalid configuration.
        """
        path = Path(path)
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e

        try:
            if path.suffix.lower() == ".toml":
                data = tomllib.loads(raw.decode("utf-8"))
            else:
                data = yaml.safe_load(raw) or {}
        except (tomllib.TOMLDecodeError, yaml.YAMLError, UnicodeDecodeError) as e:
            raise ConfigError(f"failed to parse config {path}: {e}") from e

        cfg = cls.from_dict(data, path=path, environ=environ)
        issues = cfg.validate()
        if issues:
            raise ConfigError(f"invalid config {path}: " + "; ".join(issues))
        return cfg

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "LockchainConfig":
        """Build a config from already-parsed mapping data.

        Unknown keys are ignored. Type problems raise ConfigError.
        """
        if not isinstance(data, Mapping):
            raise ConfigError("config root must be a mapping")
        if "policy" not in data:
            raise ConfigError("config is missing the [policy] section")

        sections: Dict[str, Any] = {}
        for name, section_cls in _SECTIONS.items():
            section = data.get(name) or {}
            if not isinstance(section, Mapping):
                raise ConfigError(f"[{name}] must be a mapping")
            sections[name] = _build_section(name, section_cls, section)

        datasets = data["policy"].get("datasets") if isinstance(data["policy"], Mapping) else None
        if not isinstance(datasets, (list, tuple)) or not all(isinstance(d, str) for d in datasets):
            raise ConfigError("policy.datasets must be a list of strings")
        sections["policy"] = replace(sections["policy"], datasets=tuple(datasets))

        environ = os.environ if environ is None else environ
        key_override = environ.get(KEY_PATH_ENV)
        if key_override:
            sections["usb"] = replace(sections["usb"], key_hex_path=key_override)
        health_override = environ.get(HEALTH_ADDR_ENV)
        if health_override:
            sections["health"] = replace(sections["health"], bind=health_override)

        return cls(path=path, **sections)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> List[str]:
        """Return fatal configuration issues (empty when the config is usable)."""
        issues: List[str] = []

        if not self.policy.datasets:
            issues.append("policy.datasets must contain at least one dataset")

        seen = set()
        for ds in self.policy.datasets:
            if not ds.strip():
                issues.append("policy.datasets contains an empty dataset entry")
            if ds in seen:
                issues.append(f"duplicate dataset entry detected: {ds}")
            seen.add(ds)

        expected = self.usb.expected_sha256
        if expected is not None and not _is_hex(expected, 64):
            issues.append("usb.expected_sha256 must be a 64-character hex string")

        if self.retry.max_attempts < 1:
            issues.append("retry.max_attempts must be at least 1")
        if self.retry.base_delay_ms <= 0:
            issues.append("retry.base_delay_ms must be greater than 0")
        if self.retry.max_delay_ms < self.retry.base_delay_ms:
            issues.append("retry.max_delay_ms must be greater than or equal to retry.base_delay_ms")
        if not 0.0 <= self.retry.jitter_ratio <= 1.0:
            issues.append("retry.jitter_ratio must be between 0.0 and 1.0")

        if self.crypto.timeout_secs <= 0:
            issues.append("crypto.timeout_secs must be greater than 0")
        if self.fallback.passphrase_iters < 1:
            issues.append("fallback.passphrase_iters must be at least 1")
        if self.scheduler.interval_secs <= 0:
            issues.append("scheduler.interval_secs must be greater than 0")

        try:
            self.health.address()
        except ConfigError as e:
            issues.append(str(e))

        return issues

    def advisories(self) -> List[str]:
        """Non-fatal observations worth surfacing in diagnostics."""
        notes: List[str] = []
        if self.fallback.enabled:
            if self.fallback.passphrase_salt is None:
                notes.append("fallback.enabled is true but fallback.passphrase_salt is missing")
            if self.fallback.passphrase_xor is None:
                notes.append("fallback.enabled is true but fallback.passphrase_xor is missing")
        if self.usb.expected_sha256 is None:
            notes.append("usb.expected_sha256 not configured; checksum verification is skipped")
        return notes

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def contains_dataset(self, dataset: str) -> bool:
        return dataset in self.policy.datasets

    def require_datasets(self, datasets) -> List[str]:
        """Return *datasets* as a list, raising for any entry not in policy."""
        requested = list(datasets)
        for ds in requested:
            if not self.contains_dataset(ds):
                raise DatasetNotConfigured(f"dataset `{ds}` is not declared in policy", dataset=ds)
        return requested

    @property
    def key_path(self) -> Path:
        return Path(self.usb.key_hex_path)

    @property
    def provider_timeout(self) -> float:
        return float(self.crypto.timeout_secs)


def _build_section(name: str, section_cls, values: Mapping[str, Any]):
    known = {f.name: f for f in fields(section_cls)}
    kwargs = {}
    for key, value in values.items():
        if key not in known or key == "datasets":
            continue
        default = known[key].default
        if value is not None and not isinstance(default, tuple):
            # optional fields are all strings
            expected = str if default is None else type(default)
            if expected is float and isinstance(value, int) and not isinstance(value, bool):
                value = float(value)
            elif expected is int and isinstance(value, bool) or not isinstance(value, expected):
                raise ConfigError(
                    f"{name}.{key} must be of type {expected.__name__} (got {type(value).__name__})"
                )
        kwargs[key] = value
    return section_cls(**kwargs)


def _is_hex(value: str, length: int) -> bool:
    if len(value) != length:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True
