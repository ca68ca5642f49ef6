"""Shared fixtures for the unit tests."""

import random

import pytest

from lockchain.core.config import LockchainConfig
from lockchain.provider.memory import InMemoryProvider
from lockchain.workflow.engine import WorkflowEngine
from lockchain.workflow.events import EventBus

KEY = bytes(range(32))
OTHER_KEY = bytes(range(100, 132))


def make_config(key_path, datasets=("tank/a", "tank/b"), **sections):
    data = {"policy": {"datasets": list(datasets)}, "usb": {"key_hex_path": str(key_path)}}
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return LockchainConfig.from_dict(data, environ={})


@pytest.fixture
def key_file(tmp_path):
    """A raw 32-byte key file with mode 0400."""
    path = tmp_path / "key.bin"
    path.write_bytes(KEY)
    path.chmod(0o400)
    return path


@pytest.fixture
def config(key_file):
    return make_config(key_file, retry={"base_delay_ms": 10, "max_delay_ms": 100})


@pytest.fixture
def provider():
    p = InMemoryProvider(key=KEY)
    p.add_dataset("tank/a")
    p.add_dataset("tank/b")
    return p


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def bus():
    b = EventBus()
    yield b
    b.close()


@pytest.fixture
def engine(config, provider, sleeps):
    return WorkflowEngine(config, provider, sleep=sleeps.append, rng=random.Random(7))
