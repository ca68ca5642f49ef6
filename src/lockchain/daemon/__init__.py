"""Background unlock daemon: scheduler, media watcher and health endpoint."""

from .health import HealthServer, query_health
from .scheduler import UnlockScheduler
from .watcher import MediaWatcher

__all__ = ["HealthServer", "query_health", "UnlockScheduler", "MediaWatcher"]
