from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .models import ReceiptStatus


class ReceiptEnsure(BaseModel):
    confirmation_ref: str = Field(..., min_length=1, max_length=128)
    project_id: Optional[str] = Field(default=None, max_length=64)
    delivery_run_id: Optional[str] = Field(default=None, max_length=64)
    location_id: Optional[int] = None


class ReceiptClear(BaseModel):
    confirmation_ref: Optional[str] = Field(default=None, max_length=128)
    delivery_run_id: Optional[str] = Field(default=None, max_length=64)
    project_id: Optional[str] = Field(default=None, max_length=64)


class ReceiptRead(BaseModel):
    id: str
    confirmation_ref: Optional[str] = None
    delivery_run_id: Optional[str] = None
    project_id: Optional[str] = None
    location_id: Optional[int] = None
    status: ReceiptStatus
    received_at: datetime
    cleared_at: Optional[datetime] = None
    cleared_by_id: Optional[str] = None

    class Config:
        from_attributes = True


class ReceiptEnsureRead(BaseModel):
    receipt: ReceiptRead
    created: bool
