from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import LocationKind


class LocationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    kind: LocationKind
    code: Optional[str] = Field(default=None, max_length=64)
    owner_ref: Optional[str] = Field(default=None, max_length=64)
    note: Optional[str] = None
    is_active: bool = True


class LocationUpdate(BaseModel):
    expected_version: int = Field(..., ge=1)
    name: Optional[str] = Field(default=None, max_length=255)
    note: Optional[str] = None
    owner_ref: Optional[str] = Field(default=None, max_length=64)


class LocationRead(BaseModel):
    id: int
    code: Optional[str] = None
    name: str
    kind: LocationKind
    is_active: bool
    owner_ref: Optional[str] = None
    note: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DeletabilityRead(BaseModel):
    location_id: int
    deletable: bool
    blocking_reasons: Dict[str, int]

    class Config:
        from_attributes = True


class IntegrityRead(BaseModel):
    status: str
    violations: List[Dict[str, Any]]
    summary: Dict[str, int]

    class Config:
        from_attributes = True


class CanonicalLocationsRead(BaseModel):
    created: List[str]
    adopted: List[str]
    existing: List[str]
    locations: Dict[str, LocationRead]

    class Config:
        from_attributes = True
