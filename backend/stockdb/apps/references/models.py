"""
Records owned by neighbouring subsystems (catalog, fleet, purchasing,
project planning). The stock engine only reads these, except for
requirement lines which an allocation relink may append.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
)

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class PurchaseOrderLineStatus(str, enum.Enum):
    OPEN = "open"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class CatalogItem(Base):
    __tablename__ = "catalog_items"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"
    __table_args__ = (
        Index("ix_purchase_order_lines_destination_status", "destination_location_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    purchase_order_ref = Column(String(64), nullable=False, index=True)
    item_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    destination_location_id = Column(
        Integer,
        ForeignKey("stock_locations.id", ondelete="SET NULL"),
        nullable=True,
    )
    status = Column(
        SAEnum(
            PurchaseOrderLineStatus,
            name="purchase_order_line_status_enum",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=PurchaseOrderLineStatus.OPEN,
        index=True,
    )


class ProjectRequirementLine(Base):
    __tablename__ = "project_requirement_lines"

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    project_id = Column(String(64), nullable=True, index=True)
    visit_id = Column(String(64), nullable=True, index=True)
    catalog_item_id = Column(String(64), ForeignKey("catalog_items.id", ondelete="SET NULL"), nullable=True)
    catalog_item_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    created_by_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
