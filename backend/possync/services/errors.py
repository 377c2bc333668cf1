# Overview: Error taxonomy shared by the inventory adapter, ledger, warehouse context and orchestrator.

from __future__ import annotations


class SyncError(Exception):
    """
    Base class for every failure the sync engine records in the ledger.

    error_code is persisted on SyncRecord.error_code.
    retryable decides whether SyncLedger.fail() schedules a backoff retry
    or moves the record straight to 'failed'.
    """

    error_code = "sync_error"
    retryable = True

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.context = context

    def to_dict(self) -> dict:
        data = {"error": str(self), "error_code": self.error_code}
        if self.context:
            data["context"] = self.context
        return data


class InventoryConnectionError(SyncError):
    """External inventory store unreachable."""
    error_code = "connection_error"


class QueryError(SyncError):
    """External schema did not match any query shape the adapter knows."""
    error_code = "query_error"


class NotFoundError(SyncError):
    error_code = "not_found"


class ProductNotFoundError(NotFoundError):
    error_code = "product_not_found"


class InsufficientStockError(SyncError):
    """External quantity would go negative; needs manual reconciliation."""
    error_code = "insufficient_stock"
    retryable = False


class ValidationError(SyncError, ValueError):
    error_code = "validation_error"
    retryable = False


class PersistenceError(SyncError):
    """Local store write failed. Fatal to the current operation."""
    error_code = "persistence_error"


class SyncTimeoutError(SyncError):
    error_code = "timeout"


class SyncInProgressError(SyncError):
    error_code = "sync_in_progress"


class BatchSyncError(SyncError):
    """Every item of a batch failed."""
    error_code = "batch_failed"

    def __init__(self, message: str = "", *, retryable: bool = True, **context):
        super().__init__(message, **context)
        self.retryable = retryable


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, SyncError):
        return bool(exc.retryable)
    return True


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, SyncError):
        return exc.error_code
    return "unexpected_error"
