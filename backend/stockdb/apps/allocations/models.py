from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from ...database import Base
from ...utils.identifiers import generate_uuid7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


UNKNOWN_ITEM_LABEL = "Unknown item"


class AllocationStatus(str, enum.Enum):
    RESERVED = "reserved"
    CONSUMED = "consumed"
    CANCELLED = "cancelled"


class LabelSource(str, enum.Enum):
    CATALOG_LOOKUP = "catalog_lookup"
    MANUAL_RELINK = "manual_relink"
    LEGACY_IMPORT = "legacy_import"


class Allocation(Base):
    """
    Quantity of an item reserved for a project or visit before it is used.

    Creating one moves no stock; consumption against it does.
    """

    __tablename__ = "stock_allocations"
    __table_args__ = (
        CheckConstraint("qty_allocated > 0", name="ck_stock_allocations_qty_positive"),
        CheckConstraint(
            "project_id IS NOT NULL OR visit_id IS NOT NULL",
            name="ck_stock_allocations_has_owner",
        ),
        Index("ix_stock_allocations_project_status", "project_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    project_id = Column(String(64), nullable=True, index=True)
    visit_id = Column(String(64), nullable=True, index=True)
    item_id = Column(String(64), nullable=True, index=True)
    catalog_item_name = Column(String(255), nullable=False, default=UNKNOWN_ITEM_LABEL)
    qty_allocated = Column(Integer, nullable=False)
    source_location_id = Column(Integer, ForeignKey("stock_locations.id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SAEnum(
            AllocationStatus,
            name="stock_allocation_status_enum",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=AllocationStatus.RESERVED,
        index=True,
    )
    needs_relink = Column(Boolean, nullable=False, default=False, index=True)
    label_source = Column(
        SAEnum(
            LabelSource,
            name="stock_allocation_label_source_enum",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=True,
    )
    requirement_line_id = Column(
        String(36),
        ForeignKey("project_requirement_lines.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_by_id = Column(String(64), nullable=True)
    created_by_email = Column(String(255), nullable=True)
    created_by_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    consumptions = relationship(
        "Consumption",
        back_populates="allocation",
        lazy="selectin",
        order_by="Consumption.consumed_at",
    )

    @property
    def consumed_quantity(self) -> int:
        return sum(c.qty_consumed for c in self.consumptions)

    @property
    def remaining_quantity(self) -> int:
        return max(self.qty_allocated - self.consumed_quantity, 0)

    def __repr__(self) -> str:
        return f"<Allocation id={self.id} item={self.item_id} qty={self.qty_allocated} status={self.status}>"


class Consumption(Base):
    __tablename__ = "stock_consumptions"
    __table_args__ = (
        CheckConstraint("qty_consumed > 0", name="ck_stock_consumptions_qty_positive"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid7)
    allocation_id = Column(
        String(36),
        ForeignKey("stock_allocations.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    project_id = Column(String(64), nullable=True, index=True)
    visit_id = Column(String(64), nullable=True, index=True)
    item_id = Column(String(64), nullable=False, index=True)
    qty_consumed = Column(Integer, nullable=False)
    consumed_from_location_id = Column(
        Integer,
        ForeignKey("stock_locations.id", ondelete="SET NULL"),
        nullable=True,
    )
    movement_id = Column(String(36), ForeignKey("stock_movements.id", ondelete="SET NULL"), nullable=True)

    consumed_by_id = Column(String(64), nullable=True)
    consumed_by_email = Column(String(255), nullable=True)
    consumed_by_name = Column(String(255), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    allocation = relationship("Allocation", back_populates="consumptions")
