from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
    text,
)

from ...database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class LocationKind(str, enum.Enum):
    WAREHOUSE = "warehouse"
    VEHICLE = "vehicle"
    SUPPLIER = "supplier"
    JOB_SITE = "job_site"
    OTHER = "other"


class Location(Base):
    """
    A place stock can sit: the warehouse, a vehicle, a supplier, a job site.

    Locations are retired rather than deleted; hard deletion is only allowed
    when nothing in the ledger or purchasing references them.
    """

    __tablename__ = "stock_locations"
    __table_args__ = (
        # At most one active warehouse, enforced by the database as well.
        Index(
            "uq_stock_locations_active_warehouse",
            "kind",
            unique=True,
            sqlite_where=text("kind = 'warehouse' AND is_active = 1"),
            postgresql_where=text("kind = 'warehouse' AND is_active"),
        ),
        Index("ix_stock_locations_kind_active", "kind", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    kind = Column(
        SAEnum(
            LocationKind,
            name="stock_location_kind_enum",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        index=True,
    )
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    owner_ref = Column(String(64), nullable=True, index=True)
    note = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<Location id={self.id} code={self.code} kind={self.kind} active={self.is_active}>"
