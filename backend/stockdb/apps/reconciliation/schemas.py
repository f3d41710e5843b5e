from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class DriftEntryRead(BaseModel):
    location_id: int
    item_id: str
    old_quantity: int
    new_quantity: int
    created_row: bool = False

    class Config:
        from_attributes = True


class ReconciliationRead(BaseModel):
    checked: int
    corrected: int
    drift_report: List[DriftEntryRead]
    errors: List[Dict[str, Any]]
    stopped: bool
    dry_run: bool = False

    class Config:
        from_attributes = True


class LegacyLocationRecord(BaseModel):
    name: Optional[str] = None
    kind: Optional[str] = None
    owner_ref: Optional[str] = None
    note: Optional[str] = None


class LegacyVehicleStockRecord(BaseModel):
    vehicle_id: Optional[str] = None
    vehicle_name: Optional[str] = None
    item_id: Optional[str] = None
    quantity: Union[int, float, str, None] = 0


class LocationBackfillRequest(BaseModel):
    records: List[LegacyLocationRecord] = Field(default_factory=list)


class VehicleStockBackfillRequest(BaseModel):
    records: List[LegacyVehicleStockRecord] = Field(default_factory=list)


class BackfillRead(BaseModel):
    processed: int
    created: int
    skipped: int
    movements_created: int
    errors: List[Dict[str, Any]]
    dry_run: bool = False

    class Config:
        from_attributes = True


class LocationRepairEntryRead(BaseModel):
    location_id: int
    references: Dict[str, int]
    reactivated: bool
    code_assigned: Optional[str] = None

    class Config:
        from_attributes = True


class LocationRepairRead(BaseModel):
    scanned: int
    reactivated: int
    details: List[LocationRepairEntryRead]
    errors: List[Dict[str, Any]]
    dry_run: bool

    class Config:
        from_attributes = True
