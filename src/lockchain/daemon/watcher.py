"""Poll for the key file appearing or disappearing."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class MediaWatcher:
    """Calls ``on_change(present)`` whenever presence of *path* flips."""

    def __init__(self, path, on_change: Callable[[bool], None], interval: float = 5.0):
        self.path = Path(path)
        self.interval = interval
        self._on_change = on_change
        self._present: Optional[bool] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def present(self) -> Optional[bool]:
        return self._present

    def poll(self) -> bool:
        """Check once; return True when presence changed since the last poll."""
        present = self.path.exists()
        if self._present is None:
            # first observation only records the baseline
            self._present = present
            return False
        if present == self._present:
            return False
        self._present = present
        logger.info("key media %s at %s", "detected" if present else "removed", self.path)
        self._on_change(present)
        return True

    def start(self) -> None:
        self.poll()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="media-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.poll()
            except Exception:
                logger.exception("media watcher callback failed")
