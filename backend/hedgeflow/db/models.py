"""
Trade Ledger Model
Hedgeflow Options Engine

One row per position: written on entry, refreshed with throttled pnl
updates, finalized with the close snapshot.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Float, Index, Integer, MetaData, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "pk": "pk_%(table_name)s",
    })


class TradeLedgerEntry(Base):
    """Persisted snapshot of a strategy position."""
    __tablename__ = "trade_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    position_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instrument: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    entry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_date: Mapped[Optional[str]] = mapped_column(String(10))
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    spot_at_entry: Mapped[float] = mapped_column(Float, default=0.0)
    total_credit: Mapped[float] = mapped_column(Float, default=0.0)
    pnl: Mapped[float] = mapped_column(Float, default=0.0)
    system_rolls: Mapped[int] = mapped_column(Integer, default=0)
    discretionary_rolls: Mapped[int] = mapped_column(Integer, default=0)
    close_reason: Mapped[Optional[str]] = mapped_column(String(64))

    legs: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    adjustments: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("idx_ledger_instance", "instance_id"),
        Index("idx_ledger_status", "status"),
    )

    def apply_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self.status = snapshot["status"]
        self.closed_at = datetime.fromisoformat(snapshot["closed_at"]) if snapshot.get("closed_at") else None
        self.total_credit = snapshot["total_credit"]
        self.pnl = snapshot["pnl"]
        self.system_rolls = snapshot["system_rolls"]
        self.discretionary_rolls = snapshot["discretionary_rolls"]
        self.close_reason = snapshot.get("close_reason")
        self.legs = snapshot["legs"]
        self.adjustments = snapshot["adjustments"]

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "TradeLedgerEntry":
        entry = cls(
            position_id=snapshot["position_id"],
            instance_id=snapshot["instance_id"],
            instrument=snapshot["instrument"],
            kind=snapshot["kind"],
            entry_date=datetime.fromisoformat(snapshot["entry_date"]),
            expiry_date=snapshot.get("expiry_date"),
            spot_at_entry=snapshot["spot_at_entry"],
        )
        entry.apply_snapshot(snapshot)
        return entry
