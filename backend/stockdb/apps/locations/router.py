from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from stockdb.database import get_db
from stockdb.schemas import Actor, ActorRole
from stockdb.security import get_current_actor, require_admin, require_roles

from . import schemas, services
from .models import LocationKind

router = APIRouter(
    prefix="/locations",
    tags=["locations"],
)

LOCATION_WRITE_ROLES = [
    ActorRole.MANAGER,
    ActorRole.STOREKEEPER,
]


@router.get("/", response_model=List[schemas.LocationRead])
def list_locations(
    kind: Optional[LocationKind] = None,
    active_only: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return services.list_locations(db, kind=kind, active_only=active_only)


@router.post(
    "/",
    response_model=schemas.LocationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_location(
    payload: schemas.LocationCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*LOCATION_WRITE_ROLES)),
):
    location = services.create_location(
        db,
        name=payload.name,
        kind=payload.kind,
        code=payload.code,
        owner_ref=payload.owner_ref,
        note=payload.note,
        is_active=payload.is_active,
        actor=actor,
    )
    db.commit()
    db.refresh(location)
    return location


@router.get("/integrity", response_model=schemas.IntegrityRead)
def check_integrity(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return schemas.IntegrityRead.model_validate(services.check_integrity(db))


@router.post("/canonical", response_model=schemas.CanonicalLocationsRead)
def ensure_canonical_locations(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    result = services.ensure_canonical_locations(db, actor=actor)
    db.commit()
    for location in result.locations.values():
        db.refresh(location)
    return schemas.CanonicalLocationsRead.model_validate(result)


@router.get("/{location_id}", response_model=schemas.LocationRead)
def get_location(
    location_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return services.get_location(db, location_id)


@router.patch("/{location_id}", response_model=schemas.LocationRead)
def update_location(
    location_id: int,
    payload: schemas.LocationUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*LOCATION_WRITE_ROLES)),
):
    location = services.update_location(
        db,
        location_id=location_id,
        expected_version=payload.expected_version,
        name=payload.name,
        note=payload.note,
        owner_ref=payload.owner_ref,
        actor=actor,
    )
    db.commit()
    db.refresh(location)
    return location


@router.post("/{location_id}/activate", response_model=schemas.LocationRead)
def activate_location(
    location_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*LOCATION_WRITE_ROLES)),
):
    location = services.activate_location(db, location_id=location_id, actor=actor)
    db.commit()
    db.refresh(location)
    return location


@router.post("/{location_id}/retire", response_model=schemas.LocationRead)
def retire_location(
    location_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    location = services.retire_location(db, location_id=location_id, actor=actor)
    db.commit()
    db.refresh(location)
    return location


@router.get("/{location_id}/deletable", response_model=schemas.DeletabilityRead)
def check_deletable(
    location_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return schemas.DeletabilityRead.model_validate(
        services.check_deletable(db, location_id=location_id)
    )


@router.delete("/{location_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_location(
    location_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    services.delete_location(db, location_id=location_id, actor=actor)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
