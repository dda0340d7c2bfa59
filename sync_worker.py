#!/usr/bin/env python3
"""
Mobile POS Sync Worker

Keeps the local queue flowing to the remote authority:
  - every SYNC_INTERVAL seconds (or right after a local write) push pending ops
  - every SYNC_PULL_INTERVAL seconds also pull the authority snapshot
  - while offline, check the status endpoint first; a rejected credential
    stays parked until the connection is reconfigured

Env vars: see pos_config.py (POS_DB_PATH, POS_API_URL, SYNC_INTERVAL, ...)

Run:
  python sync_worker.py
"""
import logging
import threading
import time
from typing import Callable, Optional

from connection_manager import ConnectionManager
from pos_config import configure_logging, load_settings
from pos_service import build_service
from sync_engine import FlushResult, SyncEngine

log = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        engine: SyncEngine,
        connection: ConnectionManager,
        push_interval: float = 10.0,
        pull_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.connection = connection
        self.push_interval = max(0.1, float(push_interval))
        self.pull_interval = max(self.push_interval, float(pull_interval))
        self._clock = clock
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_pull: Optional[float] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pos-sync", daemon=True)
        self._thread.start()
        log.info("Sync scheduler started (push every %.0fs, pull every %.0fs)", self.push_interval, self.pull_interval)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def wake(self):
        """Ask for a flush as soon as possible, e.g. after a sale was queued."""
        self._wake.set()

    def run_once(self) -> Optional[FlushResult]:
        if not self.connection.is_online():
            if self.connection.needs_reconnect():
                return None
            if not self.connection.check_reachable():
                return None
        now = self._clock()
        if self._last_pull is None or now - self._last_pull >= self.pull_interval:
            result = self.engine.sync()
            if result.pulled:
                self._last_pull = now
            return result
        return self.engine.flush()

    def _loop(self):
        while not self._stop.is_set():
            try:
                result = self.run_once()
                if result and result.status not in ("ok", "coalesced"):
                    log.debug("Sync cycle ended with %s", result.status)
            except Exception:
                log.exception("Sync cycle crashed; will retry")
            self._wake.wait(self.push_interval)
            self._wake.clear()


def main():
    settings = load_settings()
    configure_logging(settings.log_level, prefix="sync")
    service = build_service(settings)
    scheduler = SyncScheduler(service.engine, service.connection, settings.sync_interval, settings.pull_interval)
    log.info("Starting worker, interval=%ss, db=%s, authority=%s",
             settings.sync_interval, settings.db_path, service.connection.config.base_url or "<none>")
    try:
        while True:
            result = scheduler.run_once()
            if result is not None:
                log.info("Cycle %s: acked=%d requeued=%d pending=%d",
                         result.status, result.acknowledged, result.requeued, service.queue.pending_count())
            time.sleep(settings.sync_interval)
    except KeyboardInterrupt:
        log.info("Exiting on Ctrl+C")


if __name__ == "__main__":
    main()
