"""Single-checkout slot for decrypted key material.

Only one component may hold decrypted key material at a time. A workflow
checks the key out with ``KeySession.checkout(loader)``; the loader runs
while the slot lock is held, and the material is wiped when the ``with``
block exits, whether it exits normally or by exception.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from lockchain.core.exceptions import KeySourceError

from .material import KeyMaterial

logger = logging.getLogger(__name__)


class KeySession:
    def __init__(self, acquire_timeout: Optional[float] = None):
        self._lock = threading.Lock()
        self._holder: Optional[str] = None
        self._acquire_timeout = acquire_timeout

    @property
    def holder(self) -> Optional[str]:
        """Name of the current holder, or None when the slot is free."""
        return self._holder

    def is_checked_out(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def checkout(self, loader: Callable[[], KeyMaterial], holder: str = "workflow") -> Iterator[KeyMaterial]:
        """Acquire the slot, load the key, and wipe it when the block exits."""
        timeout = -1 if self._acquire_timeout is None else self._acquire_timeout
        if not self._lock.acquire(timeout=timeout):
            raise KeySourceError(
                f"key material is checked out by {self._holder!r}; timed out waiting"
            )
        self._holder = holder
        material: Optional[KeyMaterial] = None
        try:
            material = loader()
            logger.debug("key checked out by %s (sha256 %s)", holder, material.fingerprint())
            yield material
        finally:
            try:
                if material is not None:
                    material.wipe()
            finally:
                self._holder = None
                self._lock.release()
                logger.debug("key slot released by %s", holder)
