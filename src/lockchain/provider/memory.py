"""
In-memory provider for tests, dry runs and demos.

Holds a small dataset tree with per-root key fingerprints and lock state,
and supports scripted failures so retry and partial-unlock paths can be
exercised deterministically::

    provider = InMemoryProvider()
    provider.add_dataset("tank/a", locked=True)
    provider.fail_next("load_key_tree", times=2, target="tank/a")
"""

from __future__ import annotations

import hashlib
import itertools
import threading
from collections import Counter, deque
from typing import Deque, Dict, List, Optional, Sequence, Set, Tuple

from lockchain.core.exceptions import DatasetNotFound, ProviderError
from lockchain.core.models import DatasetKeyDescriptor, KeyState, KeyStatusSnapshot

from .base import StorageProvider
from .parse import hierarchy_key

OPERATIONS = (
    "encryption_root",
    "locked_descendants",
    "load_key_tree",
    "describe_datasets",
    "create_scratch_dataset",
    "unload_key",
    "destroy_scratch_dataset",
)


def _fingerprint(key) -> str:
    return hashlib.sha256(key).hexdigest()


class InMemoryProvider(StorageProvider):
    """Thread-safe fake storage system."""

    def __init__(self, key=None):
        self._lock = threading.RLock()
        self._roots: Dict[str, str] = {}
        self._locked: Set[str] = set()
        self._stubborn: Set[str] = set()
        self._root_keys: Dict[str, str] = {}
        self._default_key = None if key is None else _fingerprint(key)
        self._failures: Dict[str, Deque[Tuple[Optional[str], ProviderError]]] = {op: deque() for op in OPERATIONS}
        self._scratch_ids = itertools.count(1)
        self.calls: Counter = Counter()
        self.seen_keys: List[str] = []

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def add_dataset(self, name: str, root: Optional[str] = None, locked: bool = True, key=None) -> None:
        """Register *name*; it is its own encryption root unless *root* is given."""
        with self._lock:
            root = root or name
            self._roots[name] = root
            if locked:
                self._locked.add(name)
            else:
                self._locked.discard(name)
            if key is not None:
                self._root_keys[root] = _fingerprint(key)

    def make_stubborn(self, name: str) -> None:
        """*name* will refuse every key load until cleared."""
        with self._lock:
            self._stubborn.add(name)

    def clear_stubborn(self, name: str) -> None:
        with self._lock:
            self._stubborn.discard(name)

    def lock(self, name: str) -> None:
        with self._lock:
            self._locked.add(name)

    def fail_next(self, op: str, times: int = 1, error: Optional[ProviderError] = None, target: Optional[str] = None) -> None:
        """Make the next *times* calls of *op* (optionally only for *target*) raise."""
        if op not in self._failures:
            raise ValueError(f"unknown provider operation {op!r}")
        with self._lock:
            for _ in range(times):
                self._failures[op].append((target, error or ProviderError(f"simulated {op} timeout")))

    def is_locked(self, name: str) -> bool:
        with self._lock:
            return name in self._locked

    def datasets(self) -> List[str]:
        with self._lock:
            return sorted(self._roots, key=hierarchy_key)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enter(self, op: str, target: Optional[str] = None) -> None:
        self.calls[op] += 1
        queue = self._failures[op]
        for i, (wanted, error) in enumerate(queue):
            if wanted is None or wanted == target:
                del queue[i]
                raise error

    def _require(self, name: str) -> str:
        root = self._roots.get(name)
        if root is None:
            raise DatasetNotFound(f"cannot open '{name}': dataset does not exist", dataset=name)
        return root

    def _key_matches(self, root: str, fingerprint: str) -> bool:
        expected = self._root_keys.get(root, self._default_key)
        return expected is None or expected == fingerprint

    # ------------------------------------------------------------------
    # StorageProvider
    # ------------------------------------------------------------------

    def encryption_root(self, dataset: str) -> str:
        with self._lock:
            self._enter("encryption_root", dataset)
            return self._require(dataset)

    def locked_descendants(self, root: str) -> List[str]:
        with self._lock:
            self._enter("locked_descendants", root)
            self._require(root)
            return self._locked_under(root)

    def _locked_under(self, root: str) -> List[str]:
        locked = [name for name, r in self._roots.items() if r == root and name in self._locked]
        return sorted(locked, key=hierarchy_key)

    def load_key_tree(self, root: str, key) -> List[str]:
        with self._lock:
            self._enter("load_key_tree", root)
            self._require(root)
            fingerprint = _fingerprint(key)
            self.seen_keys.append(fingerprint)
            if not self._key_matches(root, fingerprint):
                raise ProviderError(f"incorrect key provided for {root}", dataset=root)
            if root in self._stubborn:
                raise ProviderError(f"encryption root {root} remained locked after load-key", dataset=root)

            self._locked.discard(root)
            unlocked = [root]
            for ds in self._locked_under(root):
                if ds in self._stubborn:
                    continue
                self._locked.discard(ds)
                unlocked.append(ds)
            return unlocked

    def describe_datasets(self, datasets: Sequence[str]) -> KeyStatusSnapshot:
        with self._lock:
            self._enter("describe_datasets")
            snapshot: KeyStatusSnapshot = []
            for ds in datasets:
                root = self._roots.get(ds)
                if root is None:
                    snapshot.append(DatasetKeyDescriptor(ds, "", KeyState.UNAVAILABLE))
                    continue
                state = KeyState.LOCKED if ds in self._locked else KeyState.UNLOCKED
                snapshot.append(DatasetKeyDescriptor(ds, root, state))
            return snapshot

    def create_scratch_dataset(self, key) -> str:
        with self._lock:
            self._enter("create_scratch_dataset")
            name = f"lcst_{next(self._scratch_ids)}/vault"
            self.add_dataset(name, locked=False, key=key)
            return name

    def unload_key(self, dataset: str) -> None:
        with self._lock:
            self._enter("unload_key", dataset)
            root = self._require(dataset)
            for name, r in self._roots.items():
                if r == root:
                    self._locked.add(name)

    def destroy_scratch_dataset(self, dataset: str) -> None:
        with self._lock:
            self._enter("destroy_scratch_dataset", dataset)
            self._require(dataset)
            for name in [n for n in self._roots if n == dataset or n.startswith(dataset + "/")]:
                del self._roots[name]
                self._locked.discard(name)
                self._stubborn.discard(name)
            self._root_keys.pop(dataset, None)
