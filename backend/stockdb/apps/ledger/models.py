from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class MovementReason(str, enum.Enum):
    PURCHASE_RECEIPT = "purchase_receipt"
    JOB_USAGE = "job_usage"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"
    REVERSAL = "reversal"


class Movement(Base):
    """
    Immutable ledger entry: `quantity` of `item_id` left `from_location_id`
    and/or arrived at `to_location_id`. A null side is the outside world
    (supplier for receipts, consumption for job usage).
    """

    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        CheckConstraint(
            "from_location_id IS NOT NULL OR to_location_id IS NOT NULL",
            name="ck_stock_movements_has_location",
        ),
        UniqueConstraint("idempotency_key", name="uq_stock_movements_idempotency_key"),
        UniqueConstraint(
            "reference_type", "reference_id", "item_id", name="uq_stock_movements_reference_item"
        ),
        Index("ix_stock_movements_from_item", "from_location_id", "item_id"),
        Index("ix_stock_movements_to_item", "to_location_id", "item_id"),
        Index("ix_stock_movements_reference", "reference_type", "reference_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    item_id = Column(String(64), nullable=False, index=True)
    from_location_id = Column(Integer, ForeignKey("stock_locations.id", ondelete="RESTRICT"), nullable=True)
    to_location_id = Column(Integer, ForeignKey("stock_locations.id", ondelete="RESTRICT"), nullable=True)
    quantity = Column(Integer, nullable=False)
    reason = Column(
        SAEnum(
            MovementReason,
            name="stock_movement_reason_enum",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        index=True,
    )
    reference_type = Column(String(64), nullable=False)
    reference_id = Column(String(128), nullable=False)
    reversal_of_id = Column(String(36), ForeignKey("stock_movements.id", ondelete="RESTRICT"), nullable=True, index=True)
    note = Column(Text, nullable=True)

    performed_by_id = Column(String(64), nullable=True)
    performed_by_email = Column(String(255), nullable=True)
    performed_by_name = Column(String(255), nullable=True)
    performed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    idempotency_key = Column(String(320), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<Movement id={self.id} item={self.item_id} "
            f"{self.from_location_id}->{self.to_location_id} qty={self.quantity}>"
        )


class QuantityBalance(Base):
    """
    Materialized on-hand quantity for one (location, item) pair.

    Always derivable from `stock_movements`; never edited by hand.
    """

    __tablename__ = "stock_balances"
    __table_args__ = (
        UniqueConstraint("location_id", "item_id", name="uq_stock_balances_location_item"),
        CheckConstraint("quantity >= 0", name="ck_stock_balances_quantity_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    location_id = Column(Integer, ForeignKey("stock_locations.id", ondelete="RESTRICT"), nullable=False, index=True)
    item_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    last_movement_id = Column(String(36), ForeignKey("stock_movements.id", ondelete="SET NULL"), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<QuantityBalance location={self.location_id} item={self.item_id} qty={self.quantity}>"
