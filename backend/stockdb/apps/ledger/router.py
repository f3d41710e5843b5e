from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from stockdb.database import get_db, get_read_db
from stockdb.schemas import Actor, ActorRole
from stockdb.security import get_current_actor, require_admin, require_roles

from . import schemas, services

router = APIRouter(
    prefix="/stock",
    tags=["stock"],
)

LEDGER_WRITE_ROLES = [
    ActorRole.MANAGER,
    ActorRole.STOREKEEPER,
    ActorRole.SERVICE,
]


@router.post(
    "/movements",
    response_model=schemas.MovementRead,
    status_code=status.HTTP_201_CREATED,
)
def record_movement(
    payload: schemas.MovementCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*LEDGER_WRITE_ROLES)),
):
    movement = services.record_movement(
        db,
        item_id=payload.item_id,
        from_location_id=payload.from_location_id,
        to_location_id=payload.to_location_id,
        quantity=payload.quantity,
        reason=payload.reason,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        note=payload.note,
        actor=actor,
    )
    db.commit()
    db.refresh(movement)
    return movement


@router.get("/movements", response_model=List[schemas.MovementRead])
def list_movements(
    location_id: Optional[int] = None,
    item_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(get_current_actor),
):
    return services.list_movements(
        db,
        location_id=location_id,
        item_id=item_id,
        reference_type=reference_type,
        reference_id=reference_id,
        skip=skip,
        limit=limit,
    )


@router.get("/movements/{movement_id}", response_model=schemas.MovementRead)
def get_movement(
    movement_id: str,
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(get_current_actor),
):
    return services.get_movement(db, movement_id)


@router.post(
    "/movements/{movement_id}/reverse",
    response_model=schemas.ReversalRead,
    status_code=status.HTTP_201_CREATED,
)
def reverse_movement(
    movement_id: str,
    payload: schemas.ReversalRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    result = services.reverse_movement(
        db,
        movement_id=movement_id,
        reference_id=payload.reference_id,
        note=payload.note,
        actor=actor,
    )
    db.commit()
    db.refresh(result.movement)
    return schemas.ReversalRead.model_validate(result)


@router.post("/adjustments", response_model=schemas.AdjustmentRead)
def adjust_stock(
    payload: schemas.AdjustmentRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    result = services.adjust_stock(
        db,
        item_id=payload.item_id,
        location_id=payload.location_id,
        reason_note=payload.reason_note,
        request_id=payload.request_id,
        target_quantity=payload.target_quantity,
        delta=payload.delta,
        actor=actor,
    )
    db.commit()
    if result.movement is not None:
        db.refresh(result.movement)
    return schemas.AdjustmentRead.model_validate(result)


@router.get("/balances", response_model=List[schemas.BalanceRead])
def list_balances(
    location_id: Optional[int] = None,
    item_id: Optional[str] = None,
    include_zero: bool = False,
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(get_current_actor),
):
    return services.list_balances(
        db,
        location_id=location_id,
        item_id=item_id,
        include_zero=include_zero,
    )


@router.get("/balances/{location_id}/{item_id}", response_model=schemas.BalanceRead)
def get_balance(
    location_id: int,
    item_id: str,
    db: Session = Depends(get_read_db),
    actor: Actor = Depends(get_current_actor),
):
    return schemas.BalanceRead(
        location_id=location_id,
        item_id=item_id,
        quantity=services.get_balance(db, location_id=location_id, item_id=item_id),
    )


@router.post("/balances/{location_id}/{item_id}/recompute", response_model=schemas.RecomputeRead)
def recompute_balance(
    location_id: int,
    item_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    result = services.recompute_balance(db, location_id=location_id, item_id=item_id)
    db.commit()
    return schemas.RecomputeRead.model_validate(result)
