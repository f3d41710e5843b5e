from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from stockdb.database import get_db
from stockdb.schemas import Actor, ActorRole
from stockdb.security import get_current_actor, require_admin, require_roles

from . import schemas, services
from .models import AllocationStatus

router = APIRouter(
    prefix="",
    tags=["allocations"],
)

ALLOCATION_WRITE_ROLES = [
    ActorRole.MANAGER,
    ActorRole.STOREKEEPER,
    ActorRole.TECHNICIAN,
    ActorRole.SERVICE,
]


def _consumption_response(db: Session, result: services.ConsumptionResult) -> schemas.ConsumptionResultRead:
    db.refresh(result.consumption)
    if result.movement is not None:
        db.refresh(result.movement)
    if result.allocation is not None:
        db.refresh(result.allocation)
    return schemas.ConsumptionResultRead.model_validate(result)


@router.post(
    "/allocations",
    response_model=schemas.AllocationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_allocation(
    payload: schemas.AllocationCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*ALLOCATION_WRITE_ROLES)),
):
    allocation = services.create_allocation(
        db,
        project_id=payload.project_id,
        visit_id=payload.visit_id,
        item_id=payload.item_id,
        qty=payload.qty,
        source_location_id=payload.source_location_id,
        actor=actor,
    )
    db.commit()
    db.refresh(allocation)
    return allocation


@router.get("/allocations", response_model=List[schemas.AllocationRead])
def list_allocations(
    project_id: Optional[str] = None,
    visit_id: Optional[str] = None,
    status: Optional[AllocationStatus] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return services.list_allocations(db, project_id=project_id, visit_id=visit_id, status=status)


@router.get("/allocations/orphans", response_model=List[schemas.OrphanAllocationRead])
def find_orphan_allocations(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return [
        schemas.OrphanAllocationRead.model_validate(orphan)
        for orphan in services.find_orphan_allocations(db)
    ]


@router.get("/allocations/{allocation_id}", response_model=schemas.AllocationRead)
def get_allocation(
    allocation_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return services.get_allocation(db, allocation_id)


@router.post(
    "/allocations/{allocation_id}/consume",
    response_model=schemas.ConsumptionResultRead,
    status_code=status.HTTP_201_CREATED,
)
def consume_allocation(
    allocation_id: str,
    payload: schemas.AllocationConsume,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*ALLOCATION_WRITE_ROLES)),
):
    result = services.record_consumption(
        db,
        allocation_id=allocation_id,
        project_id=None,
        visit_id=None,
        item_id=payload.item_id,
        qty=payload.qty,
        location_id=payload.location_id,
        consumption_id=payload.consumption_id,
        actor=actor,
    )
    db.commit()
    return _consumption_response(db, result)


@router.post("/allocations/{allocation_id}/cancel", response_model=schemas.AllocationRead)
def cancel_allocation(
    allocation_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ActorRole.MANAGER, ActorRole.STOREKEEPER)),
):
    allocation = services.cancel_allocation(db, allocation_id=allocation_id, actor=actor)
    db.commit()
    db.refresh(allocation)
    return allocation


@router.post("/allocations/{allocation_id}/relink", response_model=schemas.AllocationRead)
def relink_allocation(
    allocation_id: str,
    payload: schemas.AllocationRelink,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    allocation = services.relink_allocation(
        db,
        allocation_id=allocation_id,
        catalog_item_id=payload.catalog_item_id,
        create_requirement=payload.create_requirement,
        actor=actor,
    )
    db.commit()
    db.refresh(allocation)
    return allocation


@router.post(
    "/consumptions",
    response_model=schemas.ConsumptionResultRead,
    status_code=status.HTTP_201_CREATED,
)
def record_consumption(
    payload: schemas.ConsumptionCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*ALLOCATION_WRITE_ROLES)),
):
    result = services.record_consumption(
        db,
        allocation_id=payload.allocation_id,
        project_id=payload.project_id,
        visit_id=payload.visit_id,
        item_id=payload.item_id,
        qty=payload.qty,
        location_id=payload.location_id,
        consumption_id=payload.consumption_id,
        actor=actor,
    )
    db.commit()
    return _consumption_response(db, result)
