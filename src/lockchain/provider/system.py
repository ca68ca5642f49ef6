"""
System-backed provider that shells out to the native ``zfs`` and ``zpool``
binaries, checks pool health, and tracks which datasets still need their
encryption keys loaded.
"""

from __future__ import annotations

import logging
import secrets
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from lockchain.core.config import LockchainConfig
from lockchain.core.exceptions import ConfigError, DatasetNotEncrypted, DatasetNotFound, ProviderError
from lockchain.core.models import DatasetKeyDescriptor, KeyState, KeyStatusSnapshot

from .base import StorageProvider
from .command import CommandRunner, Output
from .parse import hierarchy_key, parse_keystatus, parse_tabular_pairs, pool_from_dataset

logger = logging.getLogger(__name__)

DEFAULT_ZFS_PATHS = ("/sbin/zfs", "/usr/sbin/zfs", "/usr/local/sbin/zfs", "/bin/zfs")
DEFAULT_ZPOOL_PATHS = ("/sbin/zpool", "/usr/sbin/zpool", "/usr/local/sbin/zpool", "/bin/zpool")

SCRATCH_IMAGE_SIZE = 256 * 1024 * 1024


def resolve_binary(configured: Optional[str], defaults: Sequence[str], label: str) -> Path:
    """Prefer the configured path, otherwise the first default that exists."""
    if configured:
        path = Path(configured)
        if path.exists():
            return path
        raise ConfigError(f"{label} binary configured at {path} but missing")
    for candidate in defaults:
        path = Path(candidate)
        if path.exists():
            return path
    raise ConfigError(f"unable to locate {label} binary; tried {list(defaults)}")


class SystemZfsProvider(StorageProvider):
    """StorageProvider backed by the ``zfs``/``zpool`` command line tools."""

    def __init__(self, zfs_runner: CommandRunner, zpool_runner: CommandRunner):
        self.zfs_runner = zfs_runner
        self.zpool_runner = zpool_runner
        # scratch dataset -> (pool name, backing directory)
        self._scratch: Dict[str, tuple] = {}

    @classmethod
    def from_config(cls, config: LockchainConfig) -> "SystemZfsProvider":
        timeout = config.provider_timeout
        zfs = resolve_binary(config.policy.zfs_path, DEFAULT_ZFS_PATHS, "zfs")
        zpool = resolve_binary(config.policy.zpool_path, DEFAULT_ZPOOL_PATHS, "zpool")
        logger.info("using binaries zfs=%s zpool=%s (timeout %ss)", zfs, zpool, timeout)
        return cls(CommandRunner(zfs, timeout), CommandRunner(zpool, timeout))

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------

    def _run_checked(self, runner: CommandRunner, args: Sequence[str]) -> Output:
        out = runner.run(args)
        if out.status != 0:
            raise self._classify_cli_error(runner, args, out)
        return out

    def _zfs(self, *args: str) -> Output:
        return self._run_checked(self.zfs_runner, args)

    def _zpool(self, *args: str) -> Output:
        return self._run_checked(self.zpool_runner, args)

    @staticmethod
    def _classify_cli_error(runner: CommandRunner, args: Sequence[str], out: Output) -> ProviderError:
        diagnostic = out.diagnostic
        lower = diagnostic.lower()
        command = f"{runner.binary} {' '.join(args)}"
        dataset = args[-1] if args else None

        if "dataset does not exist" in lower or "cannot open '" in lower:
            return DatasetNotFound(f"{command} reported missing dataset: {diagnostic}", dataset=dataset)
        if "no such pool" in lower or "pool does not exist" in lower:
            return DatasetNotFound(f"{command} reported missing pool: {diagnostic}", dataset=dataset)
        return ProviderError(
            f"{command} exited with code {out.status}: {diagnostic or 'no additional output'}",
            dataset=dataset,
        )

    def _ensure_pool_ready(self, pool: str) -> None:
        out = self._zpool("list", "-H", "-o", "name,health", pool)
        for name, health in parse_tabular_pairs(out.stdout):
            if name == pool:
                if health.lower() != "online":
                    raise ProviderError(f"pool {pool} is not healthy (reported state: {health})")
                return
        raise ProviderError(f"pool {pool} not reported by zpool list output")

    def _ensure_dataset_pool_ready(self, dataset: str) -> None:
        pool = pool_from_dataset(dataset)
        if pool is None:
            raise DatasetNotFound(f"dataset `{dataset}` does not map to a valid pool name", dataset=dataset)
        self._ensure_pool_ready(pool)

    def _get_property(self, dataset: str, prop: str) -> str:
        return self._zfs("get", "-H", "-o", "value", prop, dataset).stdout.strip()

    def _keystatus(self, dataset: str) -> KeyState:
        return parse_keystatus(self._get_property(dataset, "keystatus"))

    def _load_key(self, dataset: str, key) -> None:
        args = ("load-key", "-L", "prompt", dataset)
        out = self.zfs_runner.run(args, input=key)
        if out.status != 0:
            if "Key already loaded" in out.diagnostic:
                return
            raise self._classify_cli_error(self.zfs_runner, args, out)

    # ------------------------------------------------------------------
    # StorageProvider
    # ------------------------------------------------------------------

    def encryption_root(self, dataset: str) -> str:
        root = self._get_property(dataset, "encryptionroot")
        if not root or root == "-":
            raise DatasetNotEncrypted(f"dataset {dataset} is not encrypted", dataset=dataset)
        return root

    def locked_descendants(self, root: str) -> List[str]:
        self._ensure_dataset_pool_ready(root)

        listing = self._zfs("list", "-H", "-r", "-o", "name,encryptionroot", root)
        same_root = {name for name, enc_root in parse_tabular_pairs(listing.stdout) if enc_root == root}

        status = self._zfs("get", "-H", "-r", "-o", "name,value", "keystatus", root)
        locked = [
            name
            for name, value in parse_tabular_pairs(status.stdout)
            if name in same_root and parse_keystatus(value) is not KeyState.UNLOCKED
        ]
        return sorted(locked, key=hierarchy_key)

    def load_key_tree(self, root: str, key) -> List[str]:
        self._ensure_dataset_pool_ready(root)
        self._load_key(root, key)
        unlocked = [root]

        for ds in self.locked_descendants(root):
            if ds == root:
                continue
            try:
                self._load_key(ds, key)
            except ProviderError as e:
                logger.warning("descendant %s refused key: %s", ds, e)
                continue
            unlocked.append(ds)

        if root in self.locked_descendants(root):
            raise ProviderError(f"encryption root {root} remained locked after load-key", dataset=root)
        return unlocked

    def describe_datasets(self, datasets: Sequence[str]) -> KeyStatusSnapshot:
        snapshot: KeyStatusSnapshot = []
        checked_pools = set()
        for ds in datasets:
            pool = pool_from_dataset(ds)
            if pool is None:
                snapshot.append(DatasetKeyDescriptor(ds, "", KeyState.UNAVAILABLE))
                continue
            try:
                if pool not in checked_pools:
                    self._ensure_pool_ready(pool)
                    checked_pools.add(pool)
                root = self._get_property(ds, "encryptionroot")
                state = self._keystatus(ds)
            except DatasetNotFound:
                snapshot.append(DatasetKeyDescriptor(ds, "", KeyState.UNAVAILABLE))
                continue
            snapshot.append(DatasetKeyDescriptor(ds, root, state))
        return snapshot

    # ------------------------------------------------------------------
    # Scratch datasets
    # ------------------------------------------------------------------

    def create_scratch_dataset(self, key) -> str:
        """Create a throwaway pool backed by a sparse file and an encrypted dataset in it."""
        workdir = Path(tempfile.mkdtemp(prefix="lockchain-selftest-"))
        image = workdir / "lockchain-selftest.img"
        with open(image, "wb") as f:
            f.truncate(SCRATCH_IMAGE_SIZE)

        pool = f"lcst_{secrets.token_hex(3)}"
        dataset = f"{pool}/vault"
        try:
            self._zpool("create", "-f", pool, str(image))
        except ProviderError:
            shutil.rmtree(workdir, ignore_errors=True)
            raise
        self._scratch[dataset] = (pool, workdir)

        args = (
            "create",
            "-o", "encryption=on",
            "-o", "keyformat=raw",
            "-o", "keylocation=prompt",
            "-o", "mountpoint=none",
            dataset,
        )
        try:
            out = self.zfs_runner.run(args, input=key)
            if out.status != 0:
                raise self._classify_cli_error(self.zfs_runner, args, out)
        except ProviderError:
            try:
                self.destroy_scratch_dataset(dataset)
            except ProviderError as cleanup:
                logger.error("cleanup of scratch pool %s failed: %s", pool, cleanup)
            raise
        logger.info("created scratch dataset %s backed by %s", dataset, image)
        return dataset

    def unload_key(self, dataset: str) -> None:
        self._zfs("unload-key", dataset)

    def destroy_scratch_dataset(self, dataset: str) -> None:
        pool, workdir = self._scratch.pop(dataset, (pool_from_dataset(dataset), None))
        try:
            self._zpool("destroy", "-f", pool)
        finally:
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)
        logger.info("destroyed scratch pool %s", pool)
