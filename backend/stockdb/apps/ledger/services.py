from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockdb.apps.audit import services as audit_services
from stockdb.apps.locations import models as location_models
from stockdb.errors import InsufficientStock, NotFound, ValidationError
from stockdb.schemas import Actor
from stockdb.utils.identifiers import generate_uuid7, movement_idempotency_key

from . import models

logger = logging.getLogger(__name__)

_COLUMNS = models.Movement.__table__.c


@dataclass
class ReversalResult:
    movement: models.Movement
    already_reversed: bool
    prior_reversals: int


@dataclass
class AdjustmentResult:
    movement: Optional[models.Movement]
    previous_quantity: int
    new_quantity: int


@dataclass
class RecomputeResult:
    location_id: int
    item_id: str
    previous: int
    current: int
    changed: bool
    created_row: bool = False


# ---------------------------------------------------------------------------
# VALIDATION HELPERS
# ---------------------------------------------------------------------------


def _require_text(value: Optional[str], field_name: str, max_length: Optional[int] = None) -> str:
    value = "" if value is None else str(value).strip()
    if not value:
        raise ValidationError(
            f"{field_name} is required",
            detail=[{"field": field_name, "reason": "required"}],
        )
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field_name} is longer than {max_length} characters",
            detail=[{"field": field_name, "reason": f"at most {max_length} characters"}],
        )
    return value


def _require_positive_int(value: Any, field_name: str = "quantity") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(
            f"{field_name} must be a positive whole number",
            detail=[{"field": field_name, "reason": "must be a positive integer"}],
        )
    return value


def _coerce_reason(reason: Any) -> models.MovementReason:
    if isinstance(reason, models.MovementReason):
        return reason
    try:
        return models.MovementReason(str(reason).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown movement reason {reason!r}",
            detail=[{"field": "reason", "reason": "unknown movement reason"}],
        )


def _ensure_location_exists(db: Session, location_id: Optional[int], field_name: str) -> None:
    if location_id is None:
        return
    if db.get(location_models.Location, location_id) is None:
        raise NotFound(
            f"Location {location_id} not found",
            detail={field_name: location_id},
        )


# ---------------------------------------------------------------------------
# BALANCE ROW LOCKING
# ---------------------------------------------------------------------------


def _lock_balance(db: Session, *, location_id: int, item_id: str) -> Optional[models.QuantityBalance]:
    return (
        db.query(models.QuantityBalance)
        .filter(
            models.QuantityBalance.location_id == location_id,
            models.QuantityBalance.item_id == item_id,
        )
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )


def _get_or_create_locked_balance(db: Session, *, location_id: int, item_id: str) -> models.QuantityBalance:
    balance = _lock_balance(db, location_id=location_id, item_id=item_id)
    if balance is not None:
        return balance
    try:
        with db.begin_nested():
            balance = models.QuantityBalance(location_id=location_id, item_id=item_id, quantity=0)
            db.add(balance)
            db.flush()
        return balance
    except IntegrityError:
        # Another transaction created the row first; lock theirs.
        balance = _lock_balance(db, location_id=location_id, item_id=item_id)
        if balance is None:
            raise
        return balance


def _get_movement_by_key(db: Session, idempotency_key: str) -> Optional[models.Movement]:
    return (
        db.query(models.Movement)
        .filter(models.Movement.idempotency_key == idempotency_key)
        .one_or_none()
    )


def find_movement_by_reference(
    db: Session, *, reference_type: str, reference_id: str, item_id: str
) -> Optional[models.Movement]:
    return (
        db.query(models.Movement)
        .filter(
            models.Movement.reference_type == reference_type,
            models.Movement.reference_id == reference_id,
            models.Movement.item_id == item_id,
        )
        .one_or_none()
    )


def _replayed(movement: models.Movement, actor: Actor) -> models.Movement:
    logger.info(
        "Movement replayed",
        extra={
            "movement_id": movement.id,
            "idempotency_key": movement.idempotency_key,
            "replayed": True,
            **actor.log_context(),
        },
    )
    return movement


# ---------------------------------------------------------------------------
# LEDGER STORE
# ---------------------------------------------------------------------------


def record_movement(
    db: Session,
    *,
    item_id: str,
    from_location_id: Optional[int],
    to_location_id: Optional[int],
    quantity: int,
    reason: Any,
    reference_type: str,
    reference_id: str,
    actor: Actor,
    note: Optional[str] = None,
    reversal_of_id: Optional[str] = None,
    performed_at: Optional[datetime] = None,
) -> models.Movement:
    """
    Append one movement and apply it to the balance cache.

    Runs inside the caller's transaction. Replaying the same
    (reference_type, reference_id, item_id) returns the movement already on
    the ledger and leaves balances untouched.
    """
    item_id = _require_text(item_id, "item_id", _COLUMNS.item_id.type.length)
    reference_type = _require_text(reference_type, "reference_type", _COLUMNS.reference_type.type.length)
    reference_id = _require_text(reference_id, "reference_id", _COLUMNS.reference_id.type.length)
    quantity = _require_positive_int(quantity)
    reason = _coerce_reason(reason)

    if from_location_id is None and to_location_id is None:
        raise ValidationError(
            "A movement needs a source or a destination location",
            detail=[{"field": "from_location_id", "reason": "from or to location required"}],
        )
    if from_location_id is not None and from_location_id == to_location_id:
        raise ValidationError(
            "Source and destination locations must differ",
            detail=[{"field": "to_location_id", "reason": "same as from_location_id"}],
        )

    key = movement_idempotency_key(reference_type, reference_id, item_id)
    existing = _get_movement_by_key(db, key)
    if existing is not None:
        return _replayed(existing, actor)

    _ensure_location_exists(db, from_location_id, "from_location_id")
    _ensure_location_exists(db, to_location_id, "to_location_id")

    # Lock existing rows in (location_id, item_id) order so two movements
    # touching the same pair of locations never wait on each other in reverse.
    touched = sorted(loc for loc in (from_location_id, to_location_id) if loc is not None)
    locked = {loc: _lock_balance(db, location_id=loc, item_id=item_id) for loc in touched}

    # A concurrent writer with the same key may have committed while we waited.
    existing = _get_movement_by_key(db, key)
    if existing is not None:
        return _replayed(existing, actor)

    source = None
    if from_location_id is not None:
        source = locked[from_location_id]
        available = source.quantity if source is not None else 0
        if available < quantity:
            raise InsufficientStock(
                f"Only {available} of item {item_id} at location {from_location_id}",
                detail={
                    "location_id": from_location_id,
                    "item_id": item_id,
                    "available": available,
                    "requested": quantity,
                },
            )

    movement = models.Movement(
        id=generate_uuid7(),
        item_id=item_id,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        quantity=quantity,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        reversal_of_id=reversal_of_id,
        note=note,
        performed_by_id=actor.id,
        performed_by_email=actor.email,
        performed_by_name=actor.display_name,
        idempotency_key=key,
    )
    if performed_at is not None:
        movement.performed_at = performed_at
    try:
        with db.begin_nested():
            db.add(movement)
            db.flush()
    except IntegrityError:
        existing = _get_movement_by_key(db, key) or find_movement_by_reference(
            db, reference_type=reference_type, reference_id=reference_id, item_id=item_id
        )
        if existing is None:
            raise
        return _replayed(existing, actor)

    if source is not None:
        source.quantity -= quantity
        source.last_movement_id = movement.id
    if to_location_id is not None:
        destination = locked.get(to_location_id) or _get_or_create_locked_balance(
            db, location_id=to_location_id, item_id=item_id
        )
        destination.quantity += quantity
        destination.last_movement_id = movement.id
    db.flush()

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_movement",
        entity_id=movement.id,
        action="record",
        after={
            "item_id": item_id,
            "from_location_id": from_location_id,
            "to_location_id": to_location_id,
            "quantity": quantity,
            "reason": reason.value,
            "reference": f"{reference_type}:{reference_id}",
        },
    )
    logger.info(
        "Movement recorded",
        extra={
            "movement_id": movement.id,
            "item_id": item_id,
            "from_location_id": from_location_id,
            "to_location_id": to_location_id,
            "quantity": quantity,
            "reason": reason.value,
            **actor.log_context(),
        },
    )
    return movement


def get_movement(db: Session, movement_id: str) -> models.Movement:
    movement = db.get(models.Movement, movement_id)
    if not movement:
        raise NotFound(
            f"Movement {movement_id} not found",
            detail={"movement_id": movement_id},
        )
    return movement


def list_movements(
    db: Session,
    *,
    location_id: Optional[int] = None,
    item_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Movement]:
    query = db.query(models.Movement)
    if location_id is not None:
        query = query.filter(
            or_(
                models.Movement.from_location_id == location_id,
                models.Movement.to_location_id == location_id,
            )
        )
    if item_id:
        query = query.filter(models.Movement.item_id == item_id)
    if reference_type:
        query = query.filter(models.Movement.reference_type == reference_type)
    if reference_id:
        query = query.filter(models.Movement.reference_id == reference_id)
    return (
        query.order_by(models.Movement.performed_at.desc(), models.Movement.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def reverse_movement(
    db: Session,
    *,
    movement_id: str,
    actor: Actor,
    reference_id: Optional[str] = None,
    note: Optional[str] = None,
) -> ReversalResult:
    """
    Undo a movement by appending its mirror image.

    The original stays on the ledger. Reversing the same movement again is
    allowed (each gets its own `<id>#<n>` reference) but flagged loudly.
    """
    original = get_movement(db, movement_id)

    prior = (
        db.query(models.Movement)
        .filter(models.Movement.reversal_of_id == original.id)
        .order_by(models.Movement.performed_at.asc(), models.Movement.id.asc())
        .all()
    )
    if reference_id is None:
        reference_id = original.id if not prior else f"{original.id}#{len(prior) + 1}"

    movement = record_movement(
        db,
        item_id=original.item_id,
        from_location_id=original.to_location_id,
        to_location_id=original.from_location_id,
        quantity=original.quantity,
        reason=models.MovementReason.REVERSAL,
        reference_type="movement",
        reference_id=reference_id,
        reversal_of_id=original.id,
        note=note,
        actor=actor,
    )

    prior_reversals = len([m for m in prior if m.id != movement.id])
    replayed = any(m.id == movement.id for m in prior)
    if prior_reversals and not replayed:
        logger.warning(
            "Movement reversed more than once",
            extra={
                "movement_id": original.id,
                "reversal_id": movement.id,
                "prior_reversals": prior_reversals,
                **actor.log_context(),
            },
        )
    if not replayed:
        audit_services.log_event(
            db,
            actor=actor,
            entity_type="stock_movement",
            entity_id=original.id,
            action="reverse",
            after={"reversal_id": movement.id},
            metadata={"repeat_reversal": bool(prior_reversals), "prior_reversals": prior_reversals},
        )
    return ReversalResult(
        movement=movement,
        already_reversed=prior_reversals > 0,
        prior_reversals=prior_reversals,
    )


def adjust_stock(
    db: Session,
    *,
    item_id: str,
    location_id: int,
    actor: Actor,
    reason_note: str,
    request_id: str,
    target_quantity: Optional[int] = None,
    delta: Optional[int] = None,
) -> AdjustmentResult:
    """
    Manual correction: bring a balance to `target_quantity` or shift it by
    `delta`, always through an adjustment movement on the ledger.
    """
    item_id = _require_text(item_id, "item_id")
    reason_note = _require_text(reason_note, "reason_note")
    request_id = _require_text(request_id, "request_id")

    if (target_quantity is None) == (delta is None):
        raise ValidationError(
            "Provide exactly one of target_quantity or delta",
            detail=[{"field": "target_quantity", "reason": "exactly one of target_quantity / delta"}],
        )
    if target_quantity is not None and (
        isinstance(target_quantity, bool) or not isinstance(target_quantity, int) or target_quantity < 0
    ):
        raise ValidationError(
            "target_quantity must be a non-negative whole number",
            detail=[{"field": "target_quantity", "reason": "must be >= 0"}],
        )
    if delta is not None and (isinstance(delta, bool) or not isinstance(delta, int) or delta == 0):
        raise ValidationError(
            "delta must be a non-zero whole number",
            detail=[{"field": "delta", "reason": "must be a non-zero integer"}],
        )
    _ensure_location_exists(db, location_id, "location_id")

    existing = _get_movement_by_key(db, movement_idempotency_key("adjustment", request_id, item_id))
    if existing is not None:
        current = get_balance(db, location_id=location_id, item_id=item_id)
        signed = existing.quantity if existing.to_location_id == location_id else -existing.quantity
        return AdjustmentResult(movement=existing, previous_quantity=current - signed, new_quantity=current)

    balance = _lock_balance(db, location_id=location_id, item_id=item_id)
    current = balance.quantity if balance is not None else 0
    change = (target_quantity - current) if target_quantity is not None else delta

    if change == 0:
        return AdjustmentResult(movement=None, previous_quantity=current, new_quantity=current)
    if current + change < 0:
        raise InsufficientStock(
            f"Adjustment would take item {item_id} at location {location_id} below zero",
            detail={
                "location_id": location_id,
                "item_id": item_id,
                "available": current,
                "requested": -change,
            },
        )

    movement = record_movement(
        db,
        item_id=item_id,
        from_location_id=None if change > 0 else location_id,
        to_location_id=location_id if change > 0 else None,
        quantity=abs(change),
        reason=models.MovementReason.ADJUSTMENT,
        reference_type="adjustment",
        reference_id=request_id,
        note=reason_note,
        actor=actor,
    )
    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_balance",
        entity_id=f"{location_id}:{item_id}",
        action="adjust",
        before={"quantity": current},
        after={"quantity": current + change},
        metadata={"movement_id": movement.id, "reason_note": reason_note},
    )
    return AdjustmentResult(movement=movement, previous_quantity=current, new_quantity=current + change)


# ---------------------------------------------------------------------------
# BALANCE MATERIALIZER
# ---------------------------------------------------------------------------


def get_balance(db: Session, *, location_id: int, item_id: str) -> int:
    balance = (
        db.query(models.QuantityBalance)
        .filter(
            models.QuantityBalance.location_id == location_id,
            models.QuantityBalance.item_id == item_id,
        )
        .one_or_none()
    )
    return balance.quantity if balance is not None else 0


def list_balances(
    db: Session,
    *,
    location_id: Optional[int] = None,
    item_id: Optional[str] = None,
    include_zero: bool = False,
) -> List[models.QuantityBalance]:
    query = db.query(models.QuantityBalance)
    if location_id is not None:
        query = query.filter(models.QuantityBalance.location_id == location_id)
    if item_id:
        query = query.filter(models.QuantityBalance.item_id == item_id)
    if not include_zero:
        query = query.filter(models.QuantityBalance.quantity != 0)
    return query.order_by(
        models.QuantityBalance.location_id.asc(),
        models.QuantityBalance.item_id.asc(),
    ).all()


def _movements_for_pair(db: Session, *, location_id: int, item_id: str) -> List[models.Movement]:
    return (
        db.query(models.Movement)
        .filter(
            models.Movement.item_id == item_id,
            or_(
                models.Movement.from_location_id == location_id,
                models.Movement.to_location_id == location_id,
            ),
        )
        .order_by(models.Movement.performed_at.asc(), models.Movement.id.asc())
        .all()
    )


def _signed_quantity(movement: models.Movement, *, location_id: int) -> int:
    if movement.to_location_id == location_id:
        return movement.quantity
    if movement.from_location_id == location_id:
        return -movement.quantity
    return 0


def compute_ledger_quantity(db: Session, *, location_id: int, item_id: str) -> int:
    qty = 0
    for movement in _movements_for_pair(db, location_id=location_id, item_id=item_id):
        qty += _signed_quantity(movement, location_id=location_id)
    return qty


def recompute_balance(
    db: Session, *, location_id: int, item_id: str, dry_run: bool = False
) -> RecomputeResult:
    """
    Overwrite the cached balance with the ledger replay for one pair.

    The cache row is locked for the duration so a concurrent movement cannot
    interleave between the replay and the write. With `dry_run` the result
    is computed but nothing is written.
    """
    balance = _lock_balance(db, location_id=location_id, item_id=item_id)
    movements = _movements_for_pair(db, location_id=location_id, item_id=item_id)

    if balance is None and not movements:
        return RecomputeResult(location_id=location_id, item_id=item_id, previous=0, current=0, changed=False)

    current = 0
    for movement in movements:
        current += _signed_quantity(movement, location_id=location_id)
    if current < 0:
        raise ValidationError(
            f"Ledger for item {item_id} at location {location_id} sums to {current}",
            code="negative_ledger_sum",
            detail={"location_id": location_id, "item_id": item_id, "ledger_quantity": current},
        )

    if dry_run:
        previous = balance.quantity if balance is not None else 0
        return RecomputeResult(
            location_id=location_id,
            item_id=item_id,
            previous=previous,
            current=current,
            changed=balance is None or previous != current,
            created_row=balance is None,
        )

    created_row = False
    if balance is None:
        balance = _get_or_create_locked_balance(db, location_id=location_id, item_id=item_id)
        created_row = True

    previous = balance.quantity or 0
    balance.quantity = current
    balance.last_movement_id = movements[-1].id if movements else None
    db.flush()

    return RecomputeResult(
        location_id=location_id,
        item_id=item_id,
        previous=previous,
        current=current,
        changed=created_row or previous != current,
        created_row=created_row,
    )
