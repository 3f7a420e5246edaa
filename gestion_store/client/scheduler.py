"""
scheduler.py
Background auto-sync for the offline client.

Usage::

    client = SyncClient(db_path)
    client.bootstrap_if_empty()       # first launch: full pull
    auto = AutoSync(client, interval_seconds=30)
    auto.start()
    ...
    auto.stop()
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from .sync_client import ERROR_IN_FLIGHT, ERROR_NOT_CONFIGURED, ERROR_OFFLINE, SyncClient

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30.0

# expected outcomes of a tick, not failures
SKIP_ERRORS = (ERROR_NOT_CONFIGURED, ERROR_OFFLINE, ERROR_IN_FLIGHT)


class AutoSync:
    """Periodic sync ticks on a daemon thread.

    Each tick is one sync_all call; it returns early when no server is
    configured or reachable. Overlap with a slow previous cycle is prevented
    by the client's in-flight guard.
    """

    def __init__(self, client: SyncClient, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> None:
        self.client = client
        self.interval = float(interval_seconds)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.last_result: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> Dict[str, Any]:
        # sync_all checks configuration and reachability itself
        result = self.client.sync_all()
        self.last_result = result
        if result.get("success"):
            return result
        if result.get("error") in SKIP_ERRORS:
            logger.debug("Auto-sync tick skipped: %s", result.get("error"))
        else:
            logger.info("Auto-sync tick failed: %s", result.get("error"))
        return result

    def start(self) -> None:
        self.stop()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="auto-sync", daemon=True)
        self._thread.start()
        logger.info("Auto-sync started (every %.0fs)", self.interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Auto-sync stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception:
                # keep the timer alive; the next tick retries from scratch
                logger.exception("Auto-sync tick crashed")
