"""Unit tests for the zfs/zpool command line adapter (runners are mocked)."""

import random
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import KEY, make_config
from lockchain.core.exceptions import ConfigError, DatasetNotEncrypted, DatasetNotFound, ProviderError, is_transient
from lockchain.core.models import KeyState
from lockchain.provider.command import CommandRunner, Output
from lockchain.provider.system import SystemZfsProvider, resolve_binary


class FakeZfs:
    """Scripted zfs/zpool state answering the commands the adapter issues."""

    def __init__(self):
        self.roots = {"tank/secure": "tank/secure", "tank/secure/child": "tank/secure"}
        self.status = {"tank/secure": "unavailable", "tank/secure/child": "unavailable"}
        self.pools = {"tank": "ONLINE"}
        self.refuse = set()
        self.inputs = []
        self.zfs = MagicMock(spec=CommandRunner)
        self.zfs.binary = Path("/sbin/zfs")
        self.zfs.run.side_effect = self.run_zfs
        self.zpool = MagicMock(spec=CommandRunner)
        self.zpool.binary = Path("/sbin/zpool")
        self.zpool.run.side_effect = self.run_zpool

    def provider(self):
        return SystemZfsProvider(self.zfs, self.zpool)

    def run_zpool(self, args, input=None):
        args = list(args)
        if args[0] == "list":
            pool = args[-1]
            if pool not in self.pools:
                return Output("", f"cannot open '{pool}': no such pool", 1)
            return Output(f"{pool}\t{self.pools[pool]}\n", "", 0)
        return Output("", "", 0)

    def _missing(self, name):
        return Output("", f"cannot open '{name}': dataset does not exist", 1)

    def run_zfs(self, args, input=None):
        args = list(args)
        if input is not None:
            self.inputs.append(bytes(input))
        name = args[-1]
        if args[:2] == ["get", "-H"] and "-r" not in args:
            prop = args[-2]
            if name not in self.roots:
                return self._missing(name)
            value = self.roots[name] if prop == "encryptionroot" else self.status[name]
            return Output(value + "\n", "", 0)
        if args[0] == "list":
            rows = [f"{n}\t{r}" for n, r in self.roots.items() if n == name or n.startswith(name + "/")]
            return Output("\n".join(rows), "", 0)
        if args[0] == "get" and "-r" in args:
            rows = [f"{n}\t{s}" for n, s in self.status.items() if n == name or n.startswith(name + "/")]
            return Output("\n".join(rows), "", 0)
        if args[0] == "load-key":
            if name in self.refuse:
                return Output("", "Key load error: Incorrect key provided", 255)
            if self.status[name] == "available":
                return Output("", "Key load error: Key already loaded for 'x'.", 255)
            self.status[name] = "available"
            return Output("", "", 0)
        if args[0] == "unload-key":
            self.status[name] = "unavailable"
            return Output("", "", 0)
        return Output("", "", 0)


@pytest.fixture
def fake():
    return FakeZfs()


# ==============================================================================
# Contract operations
# ==============================================================================

def test_encryption_root(fake):
    assert fake.provider().encryption_root("tank/secure/child") == "tank/secure"


def test_encryption_root_missing_dataset(fake):
    with pytest.raises(DatasetNotFound):
        fake.provider().encryption_root("tank/ghost")


def test_unencrypted_dataset(fake):
    fake.roots["tank/plain"] = "-"
    fake.status["tank/plain"] = "-"
    with pytest.raises(DatasetNotEncrypted, match="not encrypted") as exc:
        fake.provider().encryption_root("tank/plain")
    assert not is_transient(exc.value)


def test_locked_descendants(fake):
    assert fake.provider().locked_descendants("tank/secure") == ["tank/secure", "tank/secure/child"]


def test_degraded_pool_blocks_key_operations(fake):
    fake.pools["tank"] = "DEGRADED"
    with pytest.raises(ProviderError, match="not healthy"):
        fake.provider().locked_descendants("tank/secure")


def test_load_key_tree_passes_key_on_stdin(fake):
    unlocked = fake.provider().load_key_tree("tank/secure", memoryview(KEY))
    assert unlocked == ["tank/secure", "tank/secure/child"]
    assert fake.inputs == [KEY, KEY]
    load_args = fake.zfs.run.call_args_list
    assert any(list(c.args[0])[:3] == ["load-key", "-L", "prompt"] for c in load_args)


def test_key_already_loaded_is_success(fake):
    fake.status["tank/secure"] = "available"
    fake.status["tank/secure/child"] = "available"
    assert fake.provider().load_key_tree("tank/secure", KEY) == ["tank/secure"]


def test_refusing_descendant_is_skipped(fake):
    fake.refuse.add("tank/secure/child")
    unlocked = fake.provider().load_key_tree("tank/secure", KEY)
    assert unlocked == ["tank/secure"]


def test_wrong_key_for_root_raises(fake):
    fake.refuse.add("tank/secure")
    with pytest.raises(ProviderError, match="exited with code 255"):
        fake.provider().load_key_tree("tank/secure", KEY)


def test_describe_datasets(fake):
    fake.status["tank/secure"] = "available"
    snap = fake.provider().describe_datasets(["tank/secure/child", "tank/ghost", "other/x", "tank/secure"])
    assert [(d.dataset, d.state) for d in snap] == [
        ("tank/secure/child", KeyState.LOCKED),
        ("tank/ghost", KeyState.UNAVAILABLE),
        ("other/x", KeyState.UNAVAILABLE),
        ("tank/secure", KeyState.UNLOCKED),
    ]
    assert snap[0].encryption_root == "tank/secure"


@pytest.mark.parametrize("seed", range(10))
def test_describe_order_randomized(fake, seed):
    rng = random.Random(seed)
    pool = ["tank/secure", "tank/secure/child", "tank/ghost", "other/x"]
    ids = [rng.choice(pool) for _ in range(rng.randint(1, 10))]
    assert [d.dataset for d in fake.provider().describe_datasets(ids)] == ids


# ==============================================================================
# Scratch datasets
# ==============================================================================

def test_scratch_create_and_destroy(fake, tmp_path):
    provider = fake.provider()
    with patch("lockchain.provider.system.tempfile.mkdtemp", return_value=str(tmp_path / "w")):
        (tmp_path / "w").mkdir()
        name = provider.create_scratch_dataset(KEY)
    assert name.startswith("lcst_") and name.endswith("/vault")
    assert fake.inputs == [KEY]
    create = fake.zfs.run.call_args_list[-1].args[0]
    assert "keyformat=raw" in create and "keylocation=prompt" in create

    provider.destroy_scratch_dataset(name)
    destroy = fake.zpool.run.call_args_list[-1].args[0]
    assert list(destroy) == ["destroy", "-f", name.split("/")[0]]
    assert not (tmp_path / "w").exists()


def test_scratch_pool_destroyed_when_dataset_create_fails(fake, tmp_path):
    fake.zfs.run.side_effect = lambda args, input=None: Output("", "cannot create: out of space", 1)
    provider = fake.provider()
    workdir = tmp_path / "w"
    workdir.mkdir()

    with patch("lockchain.provider.system.tempfile.mkdtemp", return_value=str(workdir)):
        with pytest.raises(ProviderError, match="out of space"):
            provider.create_scratch_dataset(KEY)

    zpool_calls = [list(c.args[0]) for c in fake.zpool.run.call_args_list]
    assert zpool_calls[0][:2] == ["create", "-f"]
    assert zpool_calls[-1] == ["destroy", "-f", zpool_calls[0][2]]
    assert not workdir.exists()
    assert provider._scratch == {}


# ==============================================================================
# Binaries & runner
# ==============================================================================

def test_resolve_binary_prefers_configured(tmp_path):
    binary = tmp_path / "zfs"
    binary.write_text("")
    assert resolve_binary(str(binary), (), "zfs") == binary


def test_resolve_binary_configured_missing(tmp_path):
    with pytest.raises(ConfigError, match="missing"):
        resolve_binary(str(tmp_path / "zfs"), (), "zfs")


def test_resolve_binary_defaults(tmp_path):
    binary = tmp_path / "zpool"
    binary.write_text("")
    assert resolve_binary(None, (str(tmp_path / "nope"), str(binary)), "zpool") == binary
    with pytest.raises(ConfigError, match="unable to locate"):
        resolve_binary(None, (str(tmp_path / "nope"),), "zpool")


def test_from_config_uses_crypto_timeout(tmp_path):
    for name in ("zfs", "zpool"):
        (tmp_path / name).write_text("")
    cfg = make_config(
        tmp_path / "key",
        policy={"zfs_path": str(tmp_path / "zfs"), "zpool_path": str(tmp_path / "zpool")},
        crypto={"timeout_secs": 3},
    )
    provider = SystemZfsProvider.from_config(cfg)
    assert provider.zfs_runner.timeout == 3.0
    assert provider.zpool_runner.binary == tmp_path / "zpool"


def test_runner_timeout_is_provider_error():
    runner = CommandRunner(Path("/sbin/zfs"), 1.0)
    with patch("lockchain.provider.command.subprocess.run", side_effect=subprocess.TimeoutExpired("zfs", 1.0)):
        with pytest.raises(ProviderError, match="timed out"):
            runner.run(["list"])


def test_runner_spawn_failure_is_provider_error():
    runner = CommandRunner(Path("/nonexistent/zfs"), 1.0)
    with pytest.raises(ProviderError, match="failed to execute"):
        runner.run(["list"])


def test_runner_decodes_output():
    runner = CommandRunner(Path("/sbin/zfs"), 1.0)
    proc = MagicMock(stdout=b"ok\n", stderr=b"", returncode=0)
    with patch("lockchain.provider.command.subprocess.run", return_value=proc) as run:
        out = runner.run(["list"], input=memoryview(KEY))
    assert out == Output("ok\n", "", 0)
    assert run.call_args.kwargs["input"] == KEY
    assert run.call_args.kwargs["timeout"] == 1.0
