from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from stockdb.apps.audit import services as audit_services
from stockdb.apps.ledger import models as ledger_models
from stockdb.apps.ledger import services as ledger_services
from stockdb.apps.locations import services as location_services
from stockdb.apps.references import models as reference_models
from stockdb.apps.references import services as reference_services
from stockdb.apps.workflow import apply_transition
from stockdb.errors import NotFound, OverConsumption, ValidationError
from stockdb.schemas import Actor
from stockdb.utils.identifiers import generate_uuid7

from . import models

logger = logging.getLogger(__name__)

PLACEHOLDER_LABELS = {
    "",
    "-",
    "part",
    "item",
    "unknown",
    "unknown item",
    "n/a",
    "na",
}
_HEX_ID_LABEL = re.compile(r"^[0-9a-f]{12,}$")


@dataclass
class ConsumptionResult:
    consumption: models.Consumption
    movement: Optional[ledger_models.Movement]
    allocation: Optional[models.Allocation]


@dataclass
class OrphanAllocation:
    allocation: models.Allocation
    reasons: List[str] = field(default_factory=list)


def is_placeholder_label(label: Optional[str]) -> bool:
    """True for labels that carry no real catalog name (blank, "Part", raw ids)."""
    value = (label or "").strip().lower()
    return value in PLACEHOLDER_LABELS or bool(_HEX_ID_LABEL.match(value))


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _require_positive_int(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(
            f"{field_name} must be a positive whole number",
            detail=[{"field": field_name, "reason": "must be a positive integer"}],
        )
    return value


# ---------------------------------------------------------------------------
# LOOKUPS
# ---------------------------------------------------------------------------


def get_allocation(db: Session, allocation_id: str) -> models.Allocation:
    allocation = db.get(models.Allocation, allocation_id)
    if not allocation:
        raise NotFound(
            f"Allocation {allocation_id} not found",
            detail={"allocation_id": allocation_id},
        )
    return allocation


def _lock_allocation(db: Session, allocation_id: str) -> models.Allocation:
    allocation = (
        db.query(models.Allocation)
        .filter(models.Allocation.id == allocation_id)
        .with_for_update()
        .populate_existing()
        .one_or_none()
    )
    if not allocation:
        raise NotFound(
            f"Allocation {allocation_id} not found",
            detail={"allocation_id": allocation_id},
        )
    return allocation


def list_allocations(
    db: Session,
    *,
    project_id: Optional[str] = None,
    visit_id: Optional[str] = None,
    status: Optional[models.AllocationStatus] = None,
) -> List[models.Allocation]:
    query = db.query(models.Allocation)
    if project_id:
        query = query.filter(models.Allocation.project_id == project_id)
    if visit_id:
        query = query.filter(models.Allocation.visit_id == visit_id)
    if status is not None:
        query = query.filter(models.Allocation.status == status)
    return query.order_by(models.Allocation.created_at.asc(), models.Allocation.id.asc()).all()


def consumed_quantity(db: Session, allocation_id: str) -> int:
    total = (
        db.query(func.coalesce(func.sum(models.Consumption.qty_consumed), 0))
        .filter(models.Consumption.allocation_id == allocation_id)
        .scalar()
    )
    return int(total or 0)


# ---------------------------------------------------------------------------
# ALLOCATIONS
# ---------------------------------------------------------------------------


def create_allocation(
    db: Session,
    *,
    project_id: Optional[str],
    visit_id: Optional[str],
    item_id: Optional[str],
    qty: int,
    source_location_id: Optional[int],
    actor: Actor,
) -> models.Allocation:
    """
    Reserve `qty` of an item for a project or visit.

    An item that does not resolve to an active catalog entry still gets an
    allocation, flagged `needs_relink` so an admin can repair the label later.
    """
    project_id = _clean(project_id)
    visit_id = _clean(visit_id)
    item_id = _clean(item_id)
    if not project_id and not visit_id:
        raise ValidationError(
            "An allocation needs a project or a visit",
            detail=[{"field": "project_id", "reason": "project_id or visit_id required"}],
        )
    qty = _require_positive_int(qty, "qty")
    if source_location_id is not None:
        location_services.get_location(db, source_location_id)

    catalog_item = reference_services.get_catalog_item(db, item_id)
    if catalog_item is not None and catalog_item.is_active:
        label = catalog_item.name
        label_source = models.LabelSource.CATALOG_LOOKUP
        needs_relink = False
    else:
        label = models.UNKNOWN_ITEM_LABEL
        label_source = None
        needs_relink = True

    allocation = models.Allocation(
        id=generate_uuid7(),
        project_id=project_id,
        visit_id=visit_id,
        item_id=item_id,
        catalog_item_name=label,
        qty_allocated=qty,
        source_location_id=source_location_id,
        status=models.AllocationStatus.RESERVED,
        needs_relink=needs_relink,
        label_source=label_source,
        created_by_id=actor.id,
        created_by_email=actor.email,
        created_by_name=actor.display_name,
    )
    db.add(allocation)
    db.flush()

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_allocation",
        entity_id=allocation.id,
        action="create",
        after={
            "project_id": project_id,
            "visit_id": visit_id,
            "item_id": item_id,
            "qty_allocated": qty,
            "needs_relink": needs_relink,
        },
    )
    if needs_relink:
        logger.warning(
            "Allocation created without a resolvable catalog item",
            extra={"allocation_id": allocation.id, "item_id": item_id, **actor.log_context()},
        )
    else:
        logger.info(
            "Allocation created",
            extra={"allocation_id": allocation.id, "item_id": item_id, **actor.log_context()},
        )
    return allocation


def cancel_allocation(db: Session, *, allocation_id: str, actor: Actor) -> models.Allocation:
    allocation = _lock_allocation(db, allocation_id)
    if allocation.status == models.AllocationStatus.CANCELLED:
        return allocation

    apply_transition(
        db,
        actor=actor,
        entity_type="stock_allocation",
        entity_id=allocation.id,
        from_state=allocation.status.value,
        to_state=models.AllocationStatus.CANCELLED.value,
        before_obj={"consumed_quantity": consumed_quantity(db, allocation.id)},
        after_obj=None,
    )
    allocation.status = models.AllocationStatus.CANCELLED
    db.flush()

    logger.info("Allocation cancelled", extra={"allocation_id": allocation.id, **actor.log_context()})
    return allocation


def relink_allocation(
    db: Session,
    *,
    allocation_id: str,
    catalog_item_id: str,
    actor: Actor,
    create_requirement: bool = False,
) -> models.Allocation:
    """Admin repair: point an allocation at a real catalog item."""
    allocation = _lock_allocation(db, allocation_id)
    catalog_item = reference_services.get_catalog_item(db, _clean(catalog_item_id))
    if catalog_item is None:
        raise NotFound(
            f"Catalog item {catalog_item_id} not found",
            detail={"catalog_item_id": catalog_item_id},
        )

    conflicting = (
        db.query(models.Consumption)
        .filter(
            models.Consumption.allocation_id == allocation.id,
            models.Consumption.item_id != catalog_item.id,
        )
        .count()
    )
    if conflicting:
        raise ValidationError(
            "Allocation already has consumptions recorded against another item",
            code="allocation_has_consumptions",
            detail=[{"field": "catalog_item_id", "reason": f"{conflicting} consumption(s) use a different item"}],
        )

    before = {
        "item_id": allocation.item_id,
        "catalog_item_name": allocation.catalog_item_name,
        "needs_relink": allocation.needs_relink,
    }
    allocation.item_id = catalog_item.id
    allocation.catalog_item_name = catalog_item.name
    allocation.needs_relink = False
    allocation.label_source = models.LabelSource.MANUAL_RELINK

    if create_requirement:
        line = reference_models.ProjectRequirementLine(
            project_id=allocation.project_id,
            visit_id=allocation.visit_id,
            catalog_item_id=catalog_item.id,
            catalog_item_name=catalog_item.name,
            quantity=allocation.qty_allocated,
            created_by_id=actor.id,
        )
        db.add(line)
        db.flush()
        allocation.requirement_line_id = line.id
    db.flush()

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_allocation",
        entity_id=allocation.id,
        action="relink",
        before=before,
        after={
            "item_id": allocation.item_id,
            "catalog_item_name": allocation.catalog_item_name,
            "needs_relink": False,
            "requirement_line_id": allocation.requirement_line_id,
        },
        critical=True,
    )
    logger.info(
        "Allocation relinked",
        extra={"allocation_id": allocation.id, "item_id": catalog_item.id, **actor.log_context()},
    )
    return allocation


def find_orphan_allocations(db: Session) -> List[OrphanAllocation]:
    """Non-cancelled allocations whose catalog link is missing or meaningless."""
    candidates = (
        db.query(models.Allocation)
        .filter(models.Allocation.status != models.AllocationStatus.CANCELLED)
        .order_by(models.Allocation.created_at.asc(), models.Allocation.id.asc())
        .all()
    )
    orphans: List[OrphanAllocation] = []
    for allocation in candidates:
        reasons = []
        if allocation.needs_relink:
            reasons.append("needs_relink")
        if not allocation.item_id:
            reasons.append("missing_item_id")
        if is_placeholder_label(allocation.catalog_item_name):
            reasons.append("placeholder_label")
        if reasons:
            orphans.append(OrphanAllocation(allocation=allocation, reasons=reasons))
    return orphans


# ---------------------------------------------------------------------------
# CONSUMPTION
# ---------------------------------------------------------------------------


def _resolve_source_location(
    db: Session,
    *,
    location_id: Optional[int],
    allocation: Optional[models.Allocation],
) -> Optional[int]:
    if location_id is not None:
        return location_id
    if allocation is not None and allocation.source_location_id is not None:
        return allocation.source_location_id
    warehouse = location_services.get_active_warehouse(db)
    return warehouse.id if warehouse else None


def record_consumption(
    db: Session,
    *,
    allocation_id: Optional[str],
    project_id: Optional[str],
    visit_id: Optional[str],
    item_id: Optional[str],
    qty: int,
    location_id: Optional[int],
    actor: Actor,
    consumption_id: Optional[str] = None,
) -> ConsumptionResult:
    """
    Record stock actually used on a job and draw it down from the ledger.

    With an allocation the cumulative consumption is capped at the reserved
    quantity and the allocation closes itself once fully used. Ad-hoc usage
    without an allocation is accepted uncapped.
    """
    consumption_id = _clean(consumption_id)
    if consumption_id:
        existing = db.get(models.Consumption, consumption_id)
        if existing is not None:
            logger.info(
                "Consumption replayed",
                extra={"consumption_id": existing.id, "replayed": True, **actor.log_context()},
            )
            movement = db.get(ledger_models.Movement, existing.movement_id) if existing.movement_id else None
            return ConsumptionResult(consumption=existing, movement=movement, allocation=existing.allocation)

    qty = _require_positive_int(qty, "qty")
    project_id = _clean(project_id)
    visit_id = _clean(visit_id)
    item_id = _clean(item_id)

    allocation = None
    already_consumed = 0
    if allocation_id:
        allocation = _lock_allocation(db, allocation_id)
        if allocation.status == models.AllocationStatus.CANCELLED:
            raise ValidationError(
                "Cannot consume against a cancelled allocation",
                code="allocation_cancelled",
                detail=[{"field": "allocation_id", "reason": "allocation is cancelled"}],
            )
        if item_id and allocation.item_id and item_id != allocation.item_id:
            raise ValidationError(
                "item_id does not match the allocation",
                detail=[{"field": "item_id", "reason": f"allocation is for {allocation.item_id}"}],
            )
        item_id = item_id or allocation.item_id
        project_id = project_id or allocation.project_id
        visit_id = visit_id or allocation.visit_id

        already_consumed = consumed_quantity(db, allocation.id)
        remaining = max(allocation.qty_allocated - already_consumed, 0)
        if qty > remaining:
            raise OverConsumption(
                f"Only {remaining} left on allocation {allocation.id}",
                detail={
                    "allocation_id": allocation.id,
                    "qty_allocated": allocation.qty_allocated,
                    "consumed": already_consumed,
                    "remaining": remaining,
                    "requested": qty,
                },
            )

    if not item_id:
        raise ValidationError(
            "item_id is required",
            detail=[{"field": "item_id", "reason": "required"}],
        )
    if not project_id and not visit_id:
        raise ValidationError(
            "A consumption needs a project or a visit",
            detail=[{"field": "project_id", "reason": "project_id or visit_id required"}],
        )

    source_location_id = _resolve_source_location(db, location_id=location_id, allocation=allocation)
    consumption_id = consumption_id or generate_uuid7()

    movement = None
    if source_location_id is not None:
        # The ledger write goes first so an InsufficientStock leaves nothing behind.
        movement = ledger_services.record_movement(
            db,
            item_id=item_id,
            from_location_id=source_location_id,
            to_location_id=None,
            quantity=qty,
            reason=ledger_models.MovementReason.JOB_USAGE,
            reference_type="consumption",
            reference_id=consumption_id,
            actor=actor,
        )
    else:
        logger.warning(
            "Consumption recorded without a source location",
            extra={"consumption_id": consumption_id, "item_id": item_id, **actor.log_context()},
        )

    consumption = models.Consumption(
        id=consumption_id,
        allocation=allocation,
        project_id=project_id,
        visit_id=visit_id,
        item_id=item_id,
        qty_consumed=qty,
        consumed_from_location_id=source_location_id,
        movement_id=movement.id if movement else None,
        consumed_by_id=actor.id,
        consumed_by_email=actor.email,
        consumed_by_name=actor.display_name,
    )
    db.add(consumption)
    db.flush()

    if allocation is not None:
        total = already_consumed + qty
        if total == allocation.qty_allocated:
            apply_transition(
                db,
                actor=actor,
                entity_type="stock_allocation",
                entity_id=allocation.id,
                from_state=allocation.status.value,
                to_state=models.AllocationStatus.CONSUMED.value,
                before_obj={"consumed_quantity": already_consumed},
                after_obj={"qty_allocated": allocation.qty_allocated, "consumed_quantity": total},
            )
            allocation.status = models.AllocationStatus.CONSUMED
            db.flush()

    logger.info(
        "Consumption recorded",
        extra={
            "consumption_id": consumption.id,
            "allocation_id": consumption.allocation_id,
            "item_id": item_id,
            "qty": qty,
            "location_id": source_location_id,
            **actor.log_context(),
        },
    )
    return ConsumptionResult(consumption=consumption, movement=movement, allocation=allocation)
