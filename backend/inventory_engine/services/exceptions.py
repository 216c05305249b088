"""Errors raised by the inventory engine.

Only ``FetchError`` and ``ProcessingTimeout`` are call-level failures.
Resolution, write and audit problems are collected on the deduction result
and surface as warnings or per-row errors.
"""

from typing import Optional


class InventoryEngineError(Exception):
    """Base class for inventory engine errors."""


class FetchError(InventoryEngineError):
    """A backend read failed. Callers may fall back to a cached snapshot."""

    def __init__(self, operation: str, store_id: int, cause: Optional[BaseException] = None):
        self.operation = operation
        self.store_id = store_id
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to fetch {operation} for store {store_id}{detail}")


class ResolutionWarning(InventoryEngineError):
    """A line item or ingredient could not be matched. The sale proceeds."""

    def __init__(self, subject: str, reason: str):
        self.subject = subject
        self.reason = reason
        super().__init__(f"{subject}: {reason}")


class WriteError(InventoryEngineError):
    """A stock update failed for one inventory row."""

    def __init__(self, inventory_stock_id: int, reason: str):
        self.inventory_stock_id = inventory_stock_id
        self.reason = reason
        super().__init__(f"Failed to update inventory row {inventory_stock_id}: {reason}")


class ProcessingTimeout(InventoryEngineError):
    """The deduction deadline passed. Writes already issued are not rolled back."""

    def __init__(self, transaction_id: str, timeout_seconds: float):
        self.transaction_id = transaction_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Deduction for transaction {transaction_id} exceeded {timeout_seconds:g}s; "
            "partial writes may have been applied"
        )


class AuditLogFailure(InventoryEngineError):
    """Writing movement or sync-result records failed. Logged only."""
