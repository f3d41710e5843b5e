from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, union
from sqlalchemy.orm import Session

from stockdb.apps.allocations import models as allocation_models
from stockdb.apps.audit import services as audit_services
from stockdb.apps.ledger import models as ledger_models
from stockdb.apps.ledger import services as ledger_services
from stockdb.apps.locations import models as location_models
from stockdb.apps.locations import services as location_services
from stockdb.apps.receipts import models as receipt_models
from stockdb.errors import StockError, ValidationError
from stockdb.schemas import SYSTEM_ACTOR, Actor

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200
LEGACY_VEHICLE_STOCK_REFERENCE = "legacy_vehicle_stock"


@dataclass
class DriftEntry:
    location_id: int
    item_id: str
    old_quantity: int
    new_quantity: int
    created_row: bool = False


@dataclass
class ReconciliationSummary:
    checked: int = 0
    corrected: int = 0
    drift_report: List[DriftEntry] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    stopped: bool = False
    dry_run: bool = False


@dataclass
class BackfillSummary:
    processed: int = 0
    created: int = 0
    skipped: int = 0
    movements_created: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    dry_run: bool = False


@dataclass
class LocationRepairEntry:
    location_id: int
    references: Dict[str, int]
    reactivated: bool = False
    code_assigned: Optional[str] = None


@dataclass
class LocationRepairSummary:
    scanned: int = 0
    reactivated: int = 0
    details: List[LocationRepairEntry] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    dry_run: bool = True


# ---------------------------------------------------------------------------
# RECONCILIATION
# ---------------------------------------------------------------------------


def _pairs_after(
    db: Session,
    *,
    location_id: Optional[int],
    after: Optional[Tuple[int, str]],
    limit: int,
) -> List[Tuple[int, str]]:
    movement = ledger_models.Movement
    balance = ledger_models.QuantityBalance

    from_side = select(movement.from_location_id.label("location_id"), movement.item_id.label("item_id")).where(
        movement.from_location_id.isnot(None)
    )
    to_side = select(movement.to_location_id.label("location_id"), movement.item_id.label("item_id")).where(
        movement.to_location_id.isnot(None)
    )
    cached = select(balance.location_id.label("location_id"), balance.item_id.label("item_id"))
    if location_id is not None:
        from_side = from_side.where(movement.from_location_id == location_id)
        to_side = to_side.where(movement.to_location_id == location_id)
        cached = cached.where(balance.location_id == location_id)

    pairs = union(from_side, to_side, cached).subquery()
    stmt = select(pairs.c.location_id, pairs.c.item_id)
    if after is not None:
        stmt = stmt.where(
            or_(
                pairs.c.location_id > after[0],
                and_(pairs.c.location_id == after[0], pairs.c.item_id > after[1]),
            )
        )
    stmt = stmt.order_by(pairs.c.location_id.asc(), pairs.c.item_id.asc()).limit(limit)
    return [(row.location_id, row.item_id) for row in db.execute(stmt)]


def reconcile_all(
    db: Session,
    *,
    location_id: Optional[int] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    should_stop: Optional[Callable[[], bool]] = None,
    actor: Optional[Actor] = None,
    dry_run: bool = False,
) -> ReconciliationSummary:
    """
    Replay the ledger for every (location, item) pair and repair the cache.

    Each pair is committed on its own so a long run never holds more than one
    pair's locks, and `should_stop()` is checked between batches so the job
    can be interrupted cleanly. Running it twice in a row reports nothing the
    second time. With `dry_run` the drift is reported and nothing is written.
    """
    actor = actor or SYSTEM_ACTOR
    if batch_size <= 0:
        raise ValidationError(
            "batch_size must be positive",
            detail=[{"field": "batch_size", "reason": "must be > 0"}],
        )

    summary = ReconciliationSummary(dry_run=dry_run)
    cursor: Optional[Tuple[int, str]] = None

    while True:
        if should_stop is not None and should_stop():
            summary.stopped = True
            logger.info("Reconciliation stopped on request", extra={"checked": summary.checked})
            break

        batch = _pairs_after(db, location_id=location_id, after=cursor, limit=batch_size)
        if not batch:
            break

        for pair_location_id, item_id in batch:
            summary.checked += 1
            try:
                result = ledger_services.recompute_balance(
                    db, location_id=pair_location_id, item_id=item_id, dry_run=dry_run
                )
                if result.changed:
                    summary.drift_report.append(
                        DriftEntry(
                            location_id=pair_location_id,
                            item_id=item_id,
                            old_quantity=result.previous,
                            new_quantity=result.current,
                            created_row=result.created_row,
                        )
                    )
                if result.changed and not dry_run:
                    summary.corrected += 1
                    audit_services.log_event(
                        db,
                        actor=actor,
                        entity_type="stock_balance",
                        entity_id=f"{pair_location_id}:{item_id}",
                        action="drift_corrected",
                        before={"quantity": result.previous},
                        after={"quantity": result.current},
                        metadata={"created_row": result.created_row},
                    )
                    logger.warning(
                        "Balance drift corrected",
                        extra={
                            "location_id": pair_location_id,
                            "item_id": item_id,
                            "old_quantity": result.previous,
                            "new_quantity": result.current,
                        },
                    )
                if dry_run:
                    db.rollback()
                else:
                    db.commit()
            except StockError as exc:
                db.rollback()
                summary.errors.append(
                    {"location_id": pair_location_id, "item_id": item_id, **exc.to_dict()}
                )
                logger.error(
                    "Balance could not be reconciled",
                    extra={"location_id": pair_location_id, "item_id": item_id, "code": exc.code},
                )

        cursor = batch[-1]
        if len(batch) < batch_size:
            break

    logger.info(
        "Reconciliation finished",
        extra={
            "checked": summary.checked,
            "corrected": summary.corrected,
            "errors": len(summary.errors),
            "stopped": summary.stopped,
            "dry_run": dry_run,
        },
    )
    return summary


# ---------------------------------------------------------------------------
# LEGACY BACKFILLS
# ---------------------------------------------------------------------------


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _find_backfilled_location(
    db: Session,
    *,
    name: str,
    kind: location_models.LocationKind,
    owner_ref: Optional[str],
) -> Optional[location_models.Location]:
    query = db.query(location_models.Location).filter(location_models.Location.kind == kind)
    if owner_ref:
        query = query.filter(location_models.Location.owner_ref == owner_ref)
    else:
        query = query.filter(location_models.Location.name == name)
    return query.order_by(location_models.Location.id.asc()).first()


def backfill_locations(
    db: Session,
    *,
    records: Iterable[Dict[str, Any]],
    actor: Actor,
    dry_run: bool = False,
) -> BackfillSummary:
    """
    Import legacy location rows, normalising their free-text kind.

    Rows already imported (same owner_ref, or same name when there is no
    owner_ref) are skipped, so the import can be re-run safely. A legacy
    warehouse arriving while another is active is imported retired. With
    `dry_run` the counts are reported and every write is rolled back.
    """
    summary = BackfillSummary(dry_run=dry_run)
    run = db.begin_nested()
    for index, record in enumerate(records):
        summary.processed += 1
        name = _clean(record.get("name"))
        owner_ref = _clean(record.get("owner_ref"))
        kind = location_services.normalize_kind(record.get("kind"))
        try:
            with db.begin_nested():
                if not name:
                    raise ValidationError(
                        "Legacy location has no name",
                        detail=[{"field": "name", "reason": "required"}],
                    )
                if _find_backfilled_location(db, name=name, kind=kind, owner_ref=owner_ref):
                    summary.skipped += 1
                    continue
                if kind == location_models.LocationKind.VEHICLE and owner_ref:
                    location_services.ensure_vehicle_location(
                        db, vehicle_id=owner_ref, vehicle_name=name, actor=actor
                    )
                else:
                    is_active = not (
                        kind == location_models.LocationKind.WAREHOUSE
                        and location_services.get_active_warehouse(db) is not None
                    )
                    location_services.create_location(
                        db,
                        name=name,
                        kind=kind,
                        owner_ref=owner_ref,
                        note=_clean(record.get("note")),
                        is_active=is_active,
                        actor=actor,
                    )
                    if not is_active:
                        logger.warning(
                            "Legacy warehouse imported retired; another warehouse is active",
                            extra={"location_name": name},
                        )
                summary.created += 1
        except StockError as exc:
            summary.errors.append({"index": index, "name": name, **exc.to_dict()})

    if dry_run:
        run.rollback()
    else:
        run.commit()

    logger.info(
        "Location backfill finished",
        extra={"processed": summary.processed, "locations_created": summary.created, "skipped": summary.skipped},
    )
    return summary


def _legacy_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("quantity must be a whole number", detail=[{"field": "quantity", "reason": "bool"}])
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 0:
        raise ValidationError(
            "quantity must be a non-negative whole number",
            detail=[{"field": "quantity", "reason": "must be >= 0"}],
        )
    return value


def backfill_vehicle_stock(
    db: Session,
    *,
    records: Iterable[Dict[str, Any]],
    actor: Actor,
    dry_run: bool = False,
) -> BackfillSummary:
    """
    Seed vehicle balances from the legacy per-vehicle stock table.

    Every non-zero row becomes one adjustment movement from outside into the
    vehicle's location, referenced as `legacy_vehicle_stock:<vehicle_id>`, so
    a re-run replays instead of double-counting. `dry_run` rolls every write
    back after counting.
    """
    summary = BackfillSummary(dry_run=dry_run)
    run = db.begin_nested()
    for index, record in enumerate(records):
        summary.processed += 1
        vehicle_id = _clean(record.get("vehicle_id"))
        item_id = _clean(record.get("item_id"))
        try:
            with db.begin_nested():
                if not vehicle_id:
                    raise ValidationError(
                        "Legacy stock row has no vehicle_id",
                        detail=[{"field": "vehicle_id", "reason": "required"}],
                    )
                quantity = _legacy_quantity(record.get("quantity", 0))
                location, created = location_services.ensure_vehicle_location(
                    db,
                    vehicle_id=vehicle_id,
                    vehicle_name=_clean(record.get("vehicle_name")),
                    actor=actor,
                )
                if created:
                    summary.created += 1
                if quantity == 0:
                    summary.skipped += 1
                    continue
                if not item_id:
                    raise ValidationError(
                        "Legacy stock row has no item_id",
                        detail=[{"field": "item_id", "reason": "required"}],
                    )

                already_seeded = ledger_services.find_movement_by_reference(
                    db,
                    reference_type=LEGACY_VEHICLE_STOCK_REFERENCE,
                    reference_id=vehicle_id,
                    item_id=item_id,
                )
                if already_seeded is not None:
                    summary.skipped += 1
                    continue

                ledger_services.record_movement(
                    db,
                    item_id=item_id,
                    from_location_id=None,
                    to_location_id=location.id,
                    quantity=quantity,
                    reason=ledger_models.MovementReason.ADJUSTMENT,
                    reference_type=LEGACY_VEHICLE_STOCK_REFERENCE,
                    reference_id=vehicle_id,
                    note="Imported from legacy vehicle stock",
                    actor=actor,
                )
                ledger_services.recompute_balance(db, location_id=location.id, item_id=item_id)
                summary.movements_created += 1
        except StockError as exc:
            summary.errors.append(
                {"index": index, "vehicle_id": vehicle_id, "item_id": item_id, **exc.to_dict()}
            )

    if dry_run:
        run.rollback()
    else:
        run.commit()

    logger.info(
        "Vehicle stock backfill finished",
        extra={
            "processed": summary.processed,
            "locations_created": summary.created,
            "movements_created": summary.movements_created,
            "skipped": summary.skipped,
        },
    )
    return summary


# ---------------------------------------------------------------------------
# INACTIVE LOCATION REPAIR
# ---------------------------------------------------------------------------


def _location_references(db: Session, location_id: int) -> Dict[str, int]:
    movement = ledger_models.Movement
    counts = {
        "stock_movements": db.query(func.count(movement.id))
        .filter(or_(movement.from_location_id == location_id, movement.to_location_id == location_id))
        .scalar(),
        "positive_balances": db.query(func.count(ledger_models.QuantityBalance.id))
        .filter(
            ledger_models.QuantityBalance.location_id == location_id,
            ledger_models.QuantityBalance.quantity > 0,
        )
        .scalar(),
        "stock_allocations": db.query(func.count(allocation_models.Allocation.id))
        .filter(allocation_models.Allocation.source_location_id == location_id)
        .scalar(),
        "stock_receipts": db.query(func.count(receipt_models.Receipt.id))
        .filter(receipt_models.Receipt.location_id == location_id)
        .scalar(),
    }
    return {name: int(count or 0) for name, count in counts.items() if count}


def repair_inactive_locations_in_use(
    db: Session,
    *,
    actor: Actor,
    dry_run: bool = True,
) -> LocationRepairSummary:
    """
    Reactivate retired locations that stock records still point at.

    Locations without a code get `LEGACY_<id>`. Reactivation goes through
    `activate_location`, so a second warehouse or a taken code is reported
    per location instead of being forced. Report-only unless `dry_run` is
    turned off.
    """
    summary = LocationRepairSummary(dry_run=dry_run)
    inactive = (
        db.query(location_models.Location)
        .filter(location_models.Location.is_active.is_(False))
        .order_by(location_models.Location.id.asc())
        .all()
    )

    for location in inactive:
        references = _location_references(db, location.id)
        if not references:
            continue
        summary.scanned += 1
        entry = LocationRepairEntry(location_id=location.id, references=references)
        location_id = location.id

        savepoint = db.begin_nested()
        try:
            if not location.code:
                entry.code_assigned = f"LEGACY_{location_id}"
                location.code = entry.code_assigned
            if not location.note:
                location.note = "Reactivated: still referenced by stock records."
            location_services.activate_location(db, location_id=location_id, actor=actor)
        except StockError as exc:
            savepoint.rollback()
            entry.code_assigned = None
            summary.errors.append({"location_id": location_id, **exc.to_dict()})
            summary.details.append(entry)
            continue

        if dry_run:
            savepoint.rollback()
        else:
            savepoint.commit()
            logger.warning(
                "Inactive location in use reactivated",
                extra={"location_id": location_id, "references": references, **actor.log_context()},
            )
        entry.reactivated = True
        summary.reactivated += 1
        summary.details.append(entry)

    logger.info(
        "Inactive location repair finished",
        extra={"scanned": summary.scanned, "reactivated": summary.reactivated, "dry_run": dry_run},
    )
    return summary
