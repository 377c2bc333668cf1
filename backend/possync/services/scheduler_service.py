# Overview: Background interval jobs driving the periodic sync tick and the ledger retry scan.

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from ..extensions import db
from ..time_utils import utcnow, to_utc_z
from . import inventory_config_service as settings

logger = logging.getLogger(__name__)


class IntervalJob:
    """
    Runs func inside an app context every interval seconds on a daemon thread.

    Exceptions are logged and the loop continues. stop() wakes the thread
    immediately; a tick already running finishes first.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Any],
        *,
        app,
        interval: Callable[[], float] | float,
        initial_delay: float = 0,
    ):
        self.name = name
        self.func = func
        self.app = app
        self._interval = interval
        self.initial_delay = initial_delay
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_run = None
        self.run_count = 0
        self.last_error: Optional[str] = None

    @property
    def interval(self) -> float:
        return float(self._interval() if callable(self._interval) else self._interval)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"possync-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Scheduled job '%s' started", self.name)

    def stop(self, timeout: float = 5) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Scheduled job '%s' stopped", self.name)

    def _loop(self) -> None:
        delay = self.initial_delay
        while not self._stop.wait(delay):
            self.run_once()
            delay = self._next_delay() or delay

    def _next_delay(self) -> Optional[float]:
        with self.app.app_context():
            try:
                return self.interval
            except Exception:
                logger.exception("Could not read interval for job '%s'", self.name)
                return None
            finally:
                db.session.remove()

    def run_once(self):
        with self.app.app_context():
            try:
                result = self.func()
                self.last_error = None
                return result
            except Exception as exc:
                self.last_error = str(exc)
                logger.exception("Scheduled job '%s' failed", self.name)
                return None
            finally:
                self.last_run = utcnow()
                self.run_count += 1
                db.session.remove()

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "interval_seconds": self.interval if self.running else None,
            "last_run": to_utc_z(self.last_run),
            "run_count": self.run_count,
            "last_error": self.last_error,
        }


class SyncScheduler:
    """The two independent timers: periodic sync tick and retry scan."""

    def __init__(self, app, orchestrator, retry_scheduler):
        self.app = app
        self.orchestrator = orchestrator
        self.retry_scheduler = retry_scheduler
        self.sync_job = IntervalJob(
            "inventory-sync",
            self.sync_tick,
            app=app,
            interval=self._sync_interval,
            initial_delay=app.config.get("SYNC_INITIAL_DELAY_SECONDS", 10),
        )
        self.retry_job = IntervalJob(
            "sync-retry",
            self.retry_scheduler.process_pending,
            app=app,
            interval=app.config.get("SYNC_RETRY_INTERVAL_SECONDS", 300),
            initial_delay=app.config.get("SYNC_RETRY_INTERVAL_SECONDS", 300),
        )

    @staticmethod
    def _sync_interval() -> float:
        return settings.get_sync_config()["sync_interval_seconds"]

    def sync_tick(self):
        if not settings.get_sync_config()["enabled"]:
            logger.debug("Inventory sync disabled, skipping tick")
            return None
        return self.orchestrator.run_scheduled_tick()

    def start(self) -> None:
        self.sync_job.start()
        self.retry_job.start()

    def stop(self) -> None:
        self.sync_job.stop()
        self.retry_job.stop()

    def get_status(self) -> dict:
        return {
            self.sync_job.name: self.sync_job.get_status(),
            self.retry_job.name: self.retry_job.get_status(),
        }
