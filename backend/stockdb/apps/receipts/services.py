from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockdb.apps.audit import services as audit_services
from stockdb.apps.locations import services as location_services
from stockdb.apps.workflow import apply_transition
from stockdb.errors import NotFound, ValidationError
from stockdb.schemas import Actor
from stockdb.utils.identifiers import generate_uuid7

from . import models

logger = logging.getLogger(__name__)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def get_receipt(db: Session, receipt_id: str) -> models.Receipt:
    receipt = db.get(models.Receipt, receipt_id)
    if not receipt:
        raise NotFound(
            f"Receipt {receipt_id} not found",
            detail={"receipt_id": receipt_id},
        )
    return receipt


def get_receipt_by_ref(db: Session, confirmation_ref: str) -> Optional[models.Receipt]:
    return (
        db.query(models.Receipt)
        .filter(models.Receipt.confirmation_ref == confirmation_ref)
        .one_or_none()
    )


def ensure_receipt(
    db: Session,
    *,
    confirmation_ref: str,
    actor: Actor,
    project_id: Optional[str] = None,
    delivery_run_id: Optional[str] = None,
    location_id: Optional[int] = None,
) -> Tuple[models.Receipt, bool]:
    """
    Return the receipt for `confirmation_ref`, creating it on first call.

    Concurrent callers racing on the same reference both end up with the
    single row the unique constraint lets through.
    """
    confirmation_ref = _clean(confirmation_ref)
    if not confirmation_ref:
        raise ValidationError(
            "confirmation_ref is required",
            detail=[{"field": "confirmation_ref", "reason": "required"}],
        )

    existing = get_receipt_by_ref(db, confirmation_ref)
    if existing is not None:
        return existing, False

    if location_id is not None:
        location_services.get_location(db, location_id)

    receipt = models.Receipt(
        id=generate_uuid7(),
        confirmation_ref=confirmation_ref,
        delivery_run_id=_clean(delivery_run_id),
        project_id=_clean(project_id),
        location_id=location_id,
        status=models.ReceiptStatus.OPEN,
    )
    try:
        with db.begin_nested():
            db.add(receipt)
            db.flush()
    except IntegrityError:
        existing = get_receipt_by_ref(db, confirmation_ref)
        if existing is None:
            raise
        return existing, False

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_receipt",
        entity_id=receipt.id,
        action="create",
        after={
            "confirmation_ref": confirmation_ref,
            "delivery_run_id": receipt.delivery_run_id,
            "project_id": receipt.project_id,
        },
    )
    logger.info(
        "Receipt created",
        extra={"receipt_id": receipt.id, "confirmation_ref": confirmation_ref, **actor.log_context()},
    )
    return receipt, True


def _fallback_receipt(
    db: Session,
    *,
    delivery_run_id: str,
    project_id: Optional[str],
) -> Optional[models.Receipt]:
    candidates = (
        db.query(models.Receipt)
        .filter(models.Receipt.delivery_run_id == delivery_run_id)
        .order_by(models.Receipt.received_at.asc(), models.Receipt.id.asc())
        .all()
    )
    if not candidates:
        return None

    def _rank(receipt: models.Receipt) -> tuple:
        return (
            not (project_id and receipt.project_id == project_id),
            receipt.status != models.ReceiptStatus.OPEN,
        )

    # sorted() is stable, so oldest-first survives within each rank.
    return sorted(candidates, key=_rank)[0]


def clear_receipt(
    db: Session,
    *,
    confirmation_ref: Optional[str],
    actor: Actor,
    delivery_run_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> models.Receipt:
    """
    Mark a receipt cleared; clearing an already-cleared receipt changes nothing.

    Legacy receipts sometimes lost their confirmation link, so when the direct
    lookup misses, receipts on the same delivery run are tried: the caller's
    project first, then open ones, then the oldest.
    """
    confirmation_ref = _clean(confirmation_ref)
    delivery_run_id = _clean(delivery_run_id)
    project_id = _clean(project_id)

    receipt = get_receipt_by_ref(db, confirmation_ref) if confirmation_ref else None
    if receipt is None and delivery_run_id:
        receipt = _fallback_receipt(db, delivery_run_id=delivery_run_id, project_id=project_id)
        if receipt is not None:
            logger.warning(
                "Receipt resolved through delivery run fallback",
                extra={
                    "confirmation_ref": confirmation_ref,
                    "delivery_run_id": delivery_run_id,
                    "receipt_id": receipt.id,
                },
            )
    if receipt is None:
        raise NotFound(
            "No receipt matches this confirmation",
            detail={"confirmation_ref": confirmation_ref, "delivery_run_id": delivery_run_id},
        )

    receipt = (
        db.query(models.Receipt)
        .filter(models.Receipt.id == receipt.id)
        .with_for_update()
        .populate_existing()
        .one()
    )
    if receipt.status == models.ReceiptStatus.CLEARED:
        return receipt

    cleared_at = datetime.now(timezone.utc)
    apply_transition(
        db,
        actor=actor,
        entity_type="stock_receipt",
        entity_id=receipt.id,
        from_state=receipt.status.value,
        to_state=models.ReceiptStatus.CLEARED.value,
        before_obj=None,
        after_obj={"cleared_at": cleared_at.isoformat(), "cleared_by_id": actor.id},
    )
    receipt.status = models.ReceiptStatus.CLEARED
    receipt.cleared_at = cleared_at
    receipt.cleared_by_id = actor.id
    receipt.cleared_by_email = actor.email
    receipt.cleared_by_name = actor.display_name
    db.flush()

    logger.info(
        "Receipt cleared",
        extra={"receipt_id": receipt.id, "confirmation_ref": receipt.confirmation_ref, **actor.log_context()},
    )
    return receipt
