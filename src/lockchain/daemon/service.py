"""
Daemon wiring: config -> provider -> engine -> scheduler, watcher, health.

Usage:
    python -m lockchain.daemon --config /etc/lockchain.toml
    python -m lockchain.daemon --config /etc/lockchain.toml --once
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from lockchain.core.config import LockchainConfig
from lockchain.core.exceptions import LockchainError
from lockchain.logging_config import configure_logging
from lockchain.provider.base import StorageProvider
from lockchain.provider.system import SystemZfsProvider
from lockchain.workflow.engine import WorkflowEngine
from lockchain.workflow.events import EventBus, log_event

from .health import HealthServer
from .scheduler import UnlockScheduler
from .watcher import MediaWatcher

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "/etc/lockchain.toml"


class LockchainDaemon:
    """Owns the long-running components and their start/stop order."""

    def __init__(self, config: LockchainConfig, provider: StorageProvider, bus: Optional[EventBus] = None):
        self.config = config
        self.bus = bus or EventBus()
        self.engine = WorkflowEngine(config, provider, bus=self.bus)
        self.scheduler = UnlockScheduler(self.engine)
        self.watcher = MediaWatcher(config.key_path, self._on_media_change, config.usb.poll_interval_secs)
        host, port = config.health.address()
        self.health_server = HealthServer(
            host, port, lambda: self.scheduler.health()[0], advertise=config.health.advertise
        )
        self._stopped = threading.Event()
        self._log_sub = None

    def _on_media_change(self, present: bool) -> None:
        if present:
            self.scheduler.trigger("key media inserted")

    def start(self) -> None:
        self._log_sub = self.bus.subscribe(log_event, name="log")
        for note in self.config.advisories():
            logger.warning("config: %s", note)
        self.health_server.start()
        self.watcher.start()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.watcher.stop()
        self.health_server.stop()
        self.bus.close()
        self._stopped.set()

    def wait(self) -> None:
        self._stopped.wait()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="lockchain", description="Unlock encrypted ZFS datasets from removable key media")
    parser.add_argument("--config", default=DEFAULT_CONFIG, help="TOML or YAML policy file")
    parser.add_argument("--once", action="store_true", help="run a single unlock pass and exit")
    parser.add_argument("--log-format", choices=["plain", "json"], default=None)
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_format)

    try:
        config = LockchainConfig.load(args.config)
        provider = SystemZfsProvider.from_config(config)
    except LockchainError as e:
        logger.error("%s: %s", e.code, e)
        return 2

    if args.once:
        bus = EventBus()
        sub = bus.subscribe(log_event, name="log")
        report = WorkflowEngine(config, provider, bus=bus).unlock()
        sub.flush()
        bus.close()
        return 0 if report.succeeded and not report.failed else 1

    daemon = LockchainDaemon(config, provider)

    def _shutdown(signum, frame):
        logger.info("received signal %d, shutting down", signum)
        threading.Thread(target=daemon.stop, daemon=True).start()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    try:
        daemon.start()
    except OSError as e:
        logger.error("failed to start health endpoint: %s", e)
        daemon.stop()
        return 1
    daemon.wait()
    return 0


if __name__ == "__main__":
    sys.exit(main())
