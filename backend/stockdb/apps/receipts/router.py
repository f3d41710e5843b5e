from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from stockdb.database import get_db
from stockdb.schemas import Actor, ActorRole
from stockdb.security import get_current_actor, require_roles

from . import schemas, services

router = APIRouter(
    prefix="/receipts",
    tags=["receipts"],
)

RECEIPT_WRITE_ROLES = [
    ActorRole.MANAGER,
    ActorRole.STOREKEEPER,
    ActorRole.TECHNICIAN,
    ActorRole.SERVICE,
]


@router.post("/", response_model=schemas.ReceiptEnsureRead)
def ensure_receipt(
    payload: schemas.ReceiptEnsure,
    response: Response,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*RECEIPT_WRITE_ROLES)),
):
    receipt, created = services.ensure_receipt(
        db,
        confirmation_ref=payload.confirmation_ref,
        project_id=payload.project_id,
        delivery_run_id=payload.delivery_run_id,
        location_id=payload.location_id,
        actor=actor,
    )
    db.commit()
    db.refresh(receipt)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return schemas.ReceiptEnsureRead(
        receipt=schemas.ReceiptRead.model_validate(receipt),
        created=created,
    )


@router.post("/clear", response_model=schemas.ReceiptRead)
def clear_receipt(
    payload: schemas.ReceiptClear,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*RECEIPT_WRITE_ROLES)),
):
    receipt = services.clear_receipt(
        db,
        confirmation_ref=payload.confirmation_ref,
        delivery_run_id=payload.delivery_run_id,
        project_id=payload.project_id,
        actor=actor,
    )
    db.commit()
    db.refresh(receipt)
    return receipt


@router.get("/{receipt_id}", response_model=schemas.ReceiptRead)
def get_receipt(
    receipt_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return services.get_receipt(db, receipt_id)
