from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from stockdb.database import get_db
from stockdb.schemas import Actor
from stockdb.security import require_admin

from . import schemas, services

router = APIRouter(
    prefix="/reconciliation",
    tags=["reconciliation"],
)


@router.post("/run", response_model=schemas.ReconciliationRead)
def run_reconciliation(
    location_id: Optional[int] = None,
    batch_size: int = Query(services.DEFAULT_BATCH_SIZE, ge=1, le=5000),
    dry_run: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    summary = services.reconcile_all(
        db,
        location_id=location_id,
        batch_size=batch_size,
        actor=actor,
        dry_run=dry_run,
    )
    return schemas.ReconciliationRead.model_validate(summary)


@router.post("/backfill/locations", response_model=schemas.BackfillRead)
def backfill_locations(
    payload: schemas.LocationBackfillRequest,
    dry_run: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    summary = services.backfill_locations(
        db,
        records=[record.model_dump() for record in payload.records],
        actor=actor,
        dry_run=dry_run,
    )
    db.commit()
    return schemas.BackfillRead.model_validate(summary)


@router.post("/backfill/vehicle-stock", response_model=schemas.BackfillRead)
def backfill_vehicle_stock(
    payload: schemas.VehicleStockBackfillRequest,
    dry_run: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    summary = services.backfill_vehicle_stock(
        db,
        records=[record.model_dump() for record in payload.records],
        actor=actor,
        dry_run=dry_run,
    )
    db.commit()
    return schemas.BackfillRead.model_validate(summary)


@router.post("/repair/inactive-locations", response_model=schemas.LocationRepairRead)
def repair_inactive_locations(
    dry_run: bool = True,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    summary = services.repair_inactive_locations_in_use(db, actor=actor, dry_run=dry_run)
    db.commit()
    return schemas.LocationRepairRead.model_validate(summary)
