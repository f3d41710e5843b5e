from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from stockdb.apps.ledger.schemas import MovementRead

from .models import AllocationStatus, LabelSource


class AllocationCreate(BaseModel):
    project_id: Optional[str] = Field(default=None, max_length=64)
    visit_id: Optional[str] = Field(default=None, max_length=64)
    item_id: Optional[str] = Field(default=None, max_length=64)
    qty: int = Field(..., gt=0)
    source_location_id: Optional[int] = None


class AllocationRead(BaseModel):
    id: str
    project_id: Optional[str] = None
    visit_id: Optional[str] = None
    item_id: Optional[str] = None
    catalog_item_name: str
    qty_allocated: int
    consumed_quantity: int = 0
    remaining_quantity: int = 0
    source_location_id: Optional[int] = None
    status: AllocationStatus
    needs_relink: bool
    label_source: Optional[LabelSource] = None
    requirement_line_id: Optional[str] = None
    created_by_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AllocationConsume(BaseModel):
    qty: int = Field(..., gt=0)
    item_id: Optional[str] = Field(default=None, max_length=64)
    location_id: Optional[int] = None
    consumption_id: Optional[str] = Field(default=None, max_length=36)


class ConsumptionCreate(BaseModel):
    allocation_id: Optional[str] = None
    project_id: Optional[str] = Field(default=None, max_length=64)
    visit_id: Optional[str] = Field(default=None, max_length=64)
    item_id: Optional[str] = Field(default=None, max_length=64)
    qty: int = Field(..., gt=0)
    location_id: Optional[int] = None
    consumption_id: Optional[str] = Field(default=None, max_length=36)


class ConsumptionRead(BaseModel):
    id: str
    allocation_id: Optional[str] = None
    project_id: Optional[str] = None
    visit_id: Optional[str] = None
    item_id: str
    qty_consumed: int
    consumed_from_location_id: Optional[int] = None
    movement_id: Optional[str] = None
    consumed_by_id: Optional[str] = None
    consumed_at: datetime

    class Config:
        from_attributes = True


class ConsumptionResultRead(BaseModel):
    consumption: ConsumptionRead
    movement: Optional[MovementRead] = None
    allocation: Optional[AllocationRead] = None

    class Config:
        from_attributes = True


class AllocationRelink(BaseModel):
    catalog_item_id: str = Field(..., min_length=1, max_length=64)
    create_requirement: bool = False


class OrphanAllocationRead(BaseModel):
    allocation: AllocationRead
    reasons: List[str]

    class Config:
        from_attributes = True
