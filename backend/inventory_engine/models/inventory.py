"""Inventory models: InventoryStock, InventoryMovement and InventorySyncResult."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_engine.db.base import Base, VersionMixin


class MovementType(str, Enum):
    """Reasons for stock movements."""

    SALE = "sale"  # Ingredient consumption from a committed sale
    RECEIVING = "receiving"  # Goods received (external flow)
    ADJUSTMENT = "adjustment"  # Manual adjustment (external flow)


class SyncStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class InventoryStock(Base, VersionMixin):
    """Current stock level of one raw or intermediate material at a store."""

    __tablename__ = "inventory_stock"

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    stock_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    movements: Mapped[list["InventoryMovement"]] = relationship(
        "InventoryMovement", back_populates="inventory_stock"
    )


class InventoryMovement(Base):
    """Append-only ledger of stock changes."""

    __tablename__ = "inventory_movements"

    id: Mapped[int] = mapped_column(primary_key=True)
    inventory_stock_id: Mapped[int] = mapped_column(
        ForeignKey("inventory_stock.id", ondelete="CASCADE"), nullable=False, index=True
    )
    movement_type: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity_change: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    previous_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # transaction
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    inventory_stock: Mapped["InventoryStock"] = relationship("InventoryStock", back_populates="movements")


class InventorySyncResult(Base):
    """Outcome of one deduction attempt; a success row makes retries no-ops."""

    __tablename__ = "inventory_sync_results"

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    items_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    error_details: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    affected_items: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
