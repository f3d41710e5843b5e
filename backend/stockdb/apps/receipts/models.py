from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ReceiptStatus(str, enum.Enum):
    OPEN = "open"
    CLEARED = "cleared"


class Receipt(Base):
    """
    Goods-received acknowledgement for a confirmed delivery stop.

    One row per confirmation reference; clearing it is the last step of the
    delivery workflow.
    """

    __tablename__ = "stock_receipts"
    __table_args__ = (
        UniqueConstraint("confirmation_ref", name="uq_stock_receipts_confirmation_ref"),
        Index("ix_stock_receipts_run_status", "delivery_run_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    confirmation_ref = Column(String(128), nullable=True)
    delivery_run_id = Column(String(64), nullable=True, index=True)
    project_id = Column(String(64), nullable=True, index=True)
    location_id = Column(Integer, ForeignKey("stock_locations.id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SAEnum(
            ReceiptStatus,
            name="stock_receipt_status_enum",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ReceiptStatus.OPEN,
        index=True,
    )
    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    cleared_at = Column(DateTime(timezone=True), nullable=True)
    cleared_by_id = Column(String(64), nullable=True)
    cleared_by_email = Column(String(255), nullable=True)
    cleared_by_name = Column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Receipt id={self.id} ref={self.confirmation_ref} status={self.status}>"
