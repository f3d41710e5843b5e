from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .models import MovementReason


class MovementCreate(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=64)
    from_location_id: Optional[int] = None
    to_location_id: Optional[int] = None
    quantity: int = Field(..., gt=0)
    reason: MovementReason
    reference_type: str = Field(..., min_length=1, max_length=64)
    reference_id: str = Field(..., min_length=1, max_length=128)
    note: Optional[str] = None


class MovementRead(BaseModel):
    id: str
    item_id: str
    from_location_id: Optional[int] = None
    to_location_id: Optional[int] = None
    quantity: int
    reason: MovementReason
    reference_type: str
    reference_id: str
    reversal_of_id: Optional[str] = None
    note: Optional[str] = None
    performed_by_id: Optional[str] = None
    performed_by_email: Optional[str] = None
    performed_by_name: Optional[str] = None
    performed_at: datetime
    idempotency_key: str

    class Config:
        from_attributes = True


class ReversalRequest(BaseModel):
    reference_id: Optional[str] = Field(default=None, max_length=128)
    note: Optional[str] = None


class ReversalRead(BaseModel):
    movement: MovementRead
    already_reversed: bool
    prior_reversals: int

    class Config:
        from_attributes = True


class AdjustmentRequest(BaseModel):
    item_id: str = Field(..., min_length=1, max_length=64)
    location_id: int
    reason_note: str = Field(..., min_length=1)
    request_id: str = Field(..., min_length=1, max_length=128)
    target_quantity: Optional[int] = Field(default=None, ge=0)
    delta: Optional[int] = None


class AdjustmentRead(BaseModel):
    movement: Optional[MovementRead] = None
    previous_quantity: int
    new_quantity: int

    class Config:
        from_attributes = True


class BalanceRead(BaseModel):
    location_id: int
    item_id: str
    quantity: int
    last_movement_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RecomputeRead(BaseModel):
    location_id: int
    item_id: str
    previous: int
    current: int
    changed: bool
    created_row: bool = False

    class Config:
        from_attributes = True
