# Overview: Flask extension wiring the adapter, warehouse context, orchestrator, retry scheduler and timers.

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Process-wide owner of the sync components.

    Constructed empty in extensions.py and bound in create_app() via init_app(),
    like the other Flask extensions. Components are built once per process and
    shared by routes, CLI commands and the background timers.
    """

    def __init__(self, app=None):
        self.app = None
        self.adapter = None
        self.context = None
        self.orchestrator = None
        self.retry_scheduler = None
        self.scheduler = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app, *, adapter=None) -> None:
        # Services import the extension instances; bind lazily.
        from .inventory_adapter import ExternalInventoryAdapter
        from .retry_service import RetryScheduler
        from .sync_orchestrator import SyncOrchestrator
        from .warehouse_service import WarehouseContext

        self.stop_schedulers()
        if self.adapter is not None and adapter is not self.adapter and hasattr(self.adapter, "dispose"):
            self.adapter.dispose()

        self.app = app
        self.adapter = adapter or ExternalInventoryAdapter(app.config["INVENTORY_DATABASE_URL"])
        self.context = WarehouseContext(adapter=self.adapter)
        self.orchestrator = SyncOrchestrator(
            self.adapter,
            self.context,
            batch_size=app.config.get("SYNC_BATCH_SIZE", 100),
            timeout_seconds=app.config.get("SYNC_TIMEOUT_SECONDS", 60),
        )
        self.context.orchestrator = self.orchestrator
        self.retry_scheduler = RetryScheduler(self.orchestrator)
        app.extensions["sync_engine"] = self
        logger.debug("Sync engine bound to inventory store %s", getattr(self.adapter, "display_url", self.adapter))

    def start_schedulers(self, app=None) -> None:
        from .scheduler_service import SyncScheduler

        app = app or self.app
        if self.scheduler is None:
            self.scheduler = SyncScheduler(app, self.orchestrator, self.retry_scheduler)
        self.scheduler.start()
        logger.info("Sync schedulers started")

    def stop_schedulers(self) -> None:
        if self.scheduler is None:
            return
        self.scheduler.stop()
        self.scheduler = None
        logger.info("Sync schedulers stopped")

    def scheduler_status(self) -> dict:
        if self.scheduler is None:
            return {"running": False}
        return {"running": True, "jobs": self.scheduler.get_status()}
