"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class PurchaseEvent(Base):
    """Immutable log of a product being bought by a household."""

    __tablename__ = "purchase_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[str] = mapped_column(String(36), nullable=False)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    purchased_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_purchase_quantity_positive"),
        Index("ix_purchase_events_pair_date", "household_id", "product_id", "purchased_at"),
    )


class InventoryRule(Base):
    """Per household/product purchase-cycle estimate."""

    __tablename__ = "inventory_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    ema_days: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_purchased_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # watermark
    status: Mapped[str] = mapped_column(
        String(20), default="manual_only", nullable=False
    )  # auto_add, suggest_only, manual_only
    manual_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("household_id", "product_id", name="uq_rule_household_product"),
        CheckConstraint("ema_days >= 0", name="ck_rule_ema_non_negative"),
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 100",
            name="ck_rule_confidence_range",
        ),
    )


class ListEntry(Base):
    """An item on a household's shopping list."""

    __tablename__ = "list_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[str] = mapped_column(String(36), nullable=False)
    product_id: Mapped[str] = mapped_column(String(36), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="active", nullable=False
    )  # active, purchased, snoozed
    added_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    purchased_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    snooze_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_list_entries_household_status", "household_id", "status"),
    )


class PredictionRun(Base):
    """Tracks each invocation of the prediction engine."""

    __tablename__ = "prediction_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)  # 'scheduled' | 'http'
    status: Mapped[str] = mapped_column(
        String(20), default="running", nullable=False
    )  # running, completed, failed, skipped
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    rules_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auto_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    suggested: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ema_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
