from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockdb.apps.audit import services as audit_services
from stockdb.apps.ledger import models as ledger_models
from stockdb.apps.references import models as reference_models
from stockdb.apps.references import services as reference_services
from stockdb.errors import NotFound, ReferentialIntegrityError, StaleWrite, ValidationError
from stockdb.schemas import Actor

from . import models

logger = logging.getLogger(__name__)

WAREHOUSE_MAIN_CODE = "WAREHOUSE_MAIN"
LOADING_BAY_CODE = "LOADING_BAY"
ACTIVE_WAREHOUSE_INDEX = "uq_stock_locations_active_warehouse"

# Legacy free-text labels seen in imported data, keyed by their
# lower-cased, whitespace-collapsed form.
_KIND_SYNONYMS: Dict[str, models.LocationKind] = {
    "warehouse": models.LocationKind.WAREHOUSE,
    "main warehouse": models.LocationKind.WAREHOUSE,
    "wh": models.LocationKind.WAREHOUSE,
    "store": models.LocationKind.WAREHOUSE,
    "storeroom": models.LocationKind.WAREHOUSE,
    "depot": models.LocationKind.WAREHOUSE,
    "vehicle": models.LocationKind.VEHICLE,
    "vehicle stock": models.LocationKind.VEHICLE,
    "van": models.LocationKind.VEHICLE,
    "truck": models.LocationKind.VEHICLE,
    "ute": models.LocationKind.VEHICLE,
    "car": models.LocationKind.VEHICLE,
    "supplier": models.LocationKind.SUPPLIER,
    "vendor": models.LocationKind.SUPPLIER,
    "job_site": models.LocationKind.JOB_SITE,
    "job site": models.LocationKind.JOB_SITE,
    "site": models.LocationKind.JOB_SITE,
    "job": models.LocationKind.JOB_SITE,
    "client site": models.LocationKind.JOB_SITE,
    "customer site": models.LocationKind.JOB_SITE,
    "other": models.LocationKind.OTHER,
    "loading bay": models.LocationKind.OTHER,
    "loading_bay": models.LocationKind.OTHER,
    "virtual": models.LocationKind.OTHER,
}


@dataclass
class DeletabilityReport:
    location_id: int
    deletable: bool
    blocking_reasons: Dict[str, int]


@dataclass
class IntegrityReport:
    status: str
    violations: List[Dict[str, Any]] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)


@dataclass
class CanonicalLocationsResult:
    created: List[str] = field(default_factory=list)
    adopted: List[str] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    locations: Dict[str, models.Location] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# NORMALISATION (migration / backfill only)
# ---------------------------------------------------------------------------


def normalize_kind(raw: Optional[str]) -> models.LocationKind:
    """
    Map a legacy free-text location label onto the closed kind set.

    Unknown and empty labels become OTHER rather than failing, so a backfill
    never stops on a single odd row.
    """
    if raw is None:
        return models.LocationKind.OTHER
    if isinstance(raw, models.LocationKind):
        return raw
    key = re.sub(r"[\s\-]+", " ", str(raw).strip().lower())
    if not key:
        return models.LocationKind.OTHER
    return _KIND_SYNONYMS.get(key, models.LocationKind.OTHER)


def _coerce_kind(kind: Any) -> models.LocationKind:
    if isinstance(kind, models.LocationKind):
        return kind
    try:
        return models.LocationKind(str(kind).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown location kind {kind!r}",
            detail=[{"field": "kind", "reason": "unknown location kind"}],
        )


def _location_snapshot(location: models.Location) -> dict:
    return {
        "code": location.code,
        "name": location.name,
        "kind": location.kind.value if location.kind else None,
        "is_active": location.is_active,
        "owner_ref": location.owner_ref,
        "version": location.version,
    }


# ---------------------------------------------------------------------------
# LOOKUPS
# ---------------------------------------------------------------------------


def get_location(db: Session, location_id: int) -> models.Location:
    location = db.get(models.Location, location_id)
    if not location:
        raise NotFound(
            f"Location {location_id} not found",
            detail={"location_id": location_id},
        )
    return location


def list_locations(
    db: Session,
    *,
    kind: Optional[models.LocationKind] = None,
    active_only: bool = False,
) -> List[models.Location]:
    query = db.query(models.Location)
    if kind is not None:
        query = query.filter(models.Location.kind == _coerce_kind(kind))
    if active_only:
        query = query.filter(models.Location.is_active.is_(True))
    return query.order_by(models.Location.id.asc()).all()


def get_active_warehouse(db: Session) -> Optional[models.Location]:
    return (
        db.query(models.Location)
        .filter(
            models.Location.kind == models.LocationKind.WAREHOUSE,
            models.Location.is_active.is_(True),
        )
        .order_by(models.Location.id.asc())
        .first()
    )


def _get_active_by_code(
    db: Session, code: str, *, exclude_id: Optional[int] = None
) -> Optional[models.Location]:
    query = db.query(models.Location).filter(
        models.Location.code == code,
        models.Location.is_active.is_(True),
    )
    if exclude_id is not None:
        query = query.filter(models.Location.id != exclude_id)
    return query.first()


def _assert_no_other_active_warehouse(db: Session, *, exclude_id: Optional[int] = None) -> None:
    query = db.query(models.Location).filter(
        models.Location.kind == models.LocationKind.WAREHOUSE,
        models.Location.is_active.is_(True),
    )
    if exclude_id is not None:
        query = query.filter(models.Location.id != exclude_id)
    existing = query.all()
    if existing:
        raise ValidationError(
            "Another warehouse is already active",
            code="warehouse_already_active",
            detail=[{"location_id": loc.id, "name": loc.name} for loc in existing],
        )


def _assert_code_free(db: Session, code: Optional[str], *, exclude_id: Optional[int] = None) -> None:
    if not code:
        return
    holder = _get_active_by_code(db, code, exclude_id=exclude_id)
    if holder:
        raise ValidationError(
            f"Location code {code} is already in use",
            code="duplicate_code",
            detail=[{"location_id": holder.id, "code": code}],
        )


def _is_active_warehouse_conflict(exc: IntegrityError, location: models.Location) -> bool:
    message = str(exc.orig)
    if ACTIVE_WAREHOUSE_INDEX in message:
        return True
    # SQLite names the indexed column, not the index.
    return (
        location.kind == models.LocationKind.WAREHOUSE
        and bool(location.is_active)
        and "UNIQUE constraint failed: stock_locations.kind" in message
    )


def _flush_location(db: Session, location: models.Location) -> None:
    # The partial unique index catches a concurrent warehouse activation that
    # slipped past the pre-check.
    try:
        with db.begin_nested():
            db.flush()
    except IntegrityError as exc:
        if not _is_active_warehouse_conflict(exc, location):
            raise
        raise ValidationError(
            "Another warehouse is already active",
            code="warehouse_already_active",
            detail=[{"location_id": location.id, "name": location.name}],
        )


# ---------------------------------------------------------------------------
# LIFECYCLE
# ---------------------------------------------------------------------------


def create_location(
    db: Session,
    *,
    name: str,
    kind: Any,
    actor: Actor,
    owner_ref: Optional[str] = None,
    note: Optional[str] = None,
    code: Optional[str] = None,
    is_active: bool = True,
) -> models.Location:
    name = (name or "").strip()
    if not name:
        raise ValidationError(
            "Location name is required",
            detail=[{"field": "name", "reason": "required"}],
        )
    kind = _coerce_kind(kind)
    code = (code or "").strip().upper() or None

    if is_active:
        if kind == models.LocationKind.WAREHOUSE:
            _assert_no_other_active_warehouse(db)
        _assert_code_free(db, code)

    location = models.Location(
        code=code,
        name=name,
        kind=kind,
        is_active=is_active,
        owner_ref=owner_ref,
        note=note,
        version=1,
    )
    db.add(location)
    _flush_location(db, location)

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_location",
        entity_id=str(location.id),
        action="create",
        after=_location_snapshot(location),
    )
    logger.info(
        "Location created",
        extra={"location_id": location.id, "kind": kind.value, **actor.log_context()},
    )
    return location


def _bump_version(location: models.Location, **values: Any) -> None:
    """Unconditional version bump for lifecycle changes made under our own read."""
    for key, value in values.items():
        setattr(location, key, value)
    location.version = (location.version or 0) + 1


def activate_location(db: Session, *, location_id: int, actor: Actor) -> models.Location:
    location = get_location(db, location_id)
    if location.is_active:
        return location

    if location.kind == models.LocationKind.WAREHOUSE:
        _assert_no_other_active_warehouse(db, exclude_id=location.id)
    _assert_code_free(db, location.code, exclude_id=location.id)

    _bump_version(location, is_active=True)
    _flush_location(db, location)

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_location",
        entity_id=str(location.id),
        action="activate",
        before={"is_active": False},
        after={"is_active": True},
    )
    logger.info("Location activated", extra={"location_id": location.id, **actor.log_context()})
    return location


def retire_location(db: Session, *, location_id: int, actor: Actor) -> models.Location:
    location = get_location(db, location_id)
    if not location.is_active:
        return location

    _bump_version(location, is_active=False)
    db.flush()

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_location",
        entity_id=str(location.id),
        action="retire",
        before={"is_active": True},
        after={"is_active": False},
    )
    logger.info("Location retired", extra={"location_id": location.id, **actor.log_context()})
    return location


def update_location(
    db: Session,
    *,
    location_id: int,
    expected_version: int,
    actor: Actor,
    name: Optional[str] = None,
    note: Optional[str] = None,
    owner_ref: Optional[str] = None,
) -> models.Location:
    """
    Edit soft fields under the optimistic version contract.

    The UPDATE only matches when the stored version still equals
    `expected_version`; otherwise the caller read a stale copy.
    """
    location = get_location(db, location_id)
    before = _location_snapshot(location)

    values: Dict[str, Any] = {}
    if name is not None:
        name = name.strip()
        if not name:
            raise ValidationError(
                "Location name is required",
                detail=[{"field": "name", "reason": "required"}],
            )
        values["name"] = name
    if note is not None:
        values["note"] = note
    if owner_ref is not None:
        values["owner_ref"] = owner_ref

    stmt = (
        update(models.Location)
        .where(
            models.Location.id == location_id,
            models.Location.version == expected_version,
        )
        .values(version=models.Location.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount == 0:
        db.refresh(location)
        raise StaleWrite(
            f"Location {location_id} was modified by someone else",
            detail={"expected_version": expected_version, "current_version": location.version},
        )
    db.refresh(location)

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_location",
        entity_id=str(location.id),
        action="update",
        before=before,
        after=_location_snapshot(location),
    )
    logger.info(
        "Location updated",
        extra={"location_id": location.id, "version": location.version, **actor.log_context()},
    )
    return location


# ---------------------------------------------------------------------------
# DELETION
# ---------------------------------------------------------------------------


def check_deletable(db: Session, *, location_id: int) -> DeletabilityReport:
    get_location(db, location_id)

    balance_rows = (
        db.query(func.count(ledger_models.QuantityBalance.id))
        .filter(
            ledger_models.QuantityBalance.location_id == location_id,
            ledger_models.QuantityBalance.quantity > 0,
        )
        .scalar()
    )
    movement_rows = (
        db.query(func.count(ledger_models.Movement.id))
        .filter(
            or_(
                ledger_models.Movement.from_location_id == location_id,
                ledger_models.Movement.to_location_id == location_id,
            )
        )
        .scalar()
    )
    open_po_lines = reference_services.count_open_po_lines(db, location_id)

    blocking = {
        "stock_balances": int(balance_rows or 0),
        "stock_movements": int(movement_rows or 0),
        "open_po_lines": int(open_po_lines or 0),
    }
    return DeletabilityReport(
        location_id=location_id,
        deletable=not any(blocking.values()),
        blocking_reasons=blocking,
    )


def delete_location(db: Session, *, location_id: int, actor: Actor) -> None:
    report = check_deletable(db, location_id=location_id)
    if not report.deletable:
        raise ReferentialIntegrityError(
            f"Location {location_id} is still referenced",
            detail=report.blocking_reasons,
        )

    location = get_location(db, location_id)
    snapshot = _location_snapshot(location)
    # Empty cache rows carry no history; they go with the location.
    db.query(ledger_models.QuantityBalance).filter(
        ledger_models.QuantityBalance.location_id == location_id
    ).delete(synchronize_session=False)
    db.delete(location)
    db.flush()

    audit_services.log_event(
        db,
        actor=actor,
        entity_type="stock_location",
        entity_id=str(location_id),
        action="delete",
        before=snapshot,
    )
    logger.info("Location deleted", extra={"location_id": location_id, **actor.log_context()})


# ---------------------------------------------------------------------------
# CANONICAL + VEHICLE LOCATIONS
# ---------------------------------------------------------------------------


def ensure_canonical_locations(db: Session, *, actor: Actor) -> CanonicalLocationsResult:
    """
    Make sure the main warehouse and the loading bay exist.

    An active warehouse without a code is adopted as WAREHOUSE_MAIN instead of
    creating a second one. Safe to call any number of times.
    """
    result = CanonicalLocationsResult()

    warehouse = _get_active_by_code(db, WAREHOUSE_MAIN_CODE)
    if warehouse:
        result.existing.append(WAREHOUSE_MAIN_CODE)
    else:
        warehouse = get_active_warehouse(db)
        if warehouse and not warehouse.code:
            warehouse.code = WAREHOUSE_MAIN_CODE
            warehouse.version = (warehouse.version or 0) + 1
            db.flush()
            result.adopted.append(WAREHOUSE_MAIN_CODE)
            logger.info(
                "Adopted existing warehouse as canonical",
                extra={"location_id": warehouse.id, **actor.log_context()},
            )
        elif warehouse:
            result.existing.append(warehouse.code)
        else:
            warehouse = create_location(
                db,
                name="Main warehouse",
                kind=models.LocationKind.WAREHOUSE,
                code=WAREHOUSE_MAIN_CODE,
                actor=actor,
            )
            result.created.append(WAREHOUSE_MAIN_CODE)
    result.locations[WAREHOUSE_MAIN_CODE] = warehouse

    loading_bay = _get_active_by_code(db, LOADING_BAY_CODE)
    if loading_bay:
        result.existing.append(LOADING_BAY_CODE)
    else:
        loading_bay = create_location(
            db,
            name="Loading bay",
            kind=models.LocationKind.OTHER,
            code=LOADING_BAY_CODE,
            actor=actor,
        )
        result.created.append(LOADING_BAY_CODE)
    result.locations[LOADING_BAY_CODE] = loading_bay

    return result


def vehicle_location_code(vehicle_id: str) -> str:
    return f"VEHICLE_{vehicle_id}"


def find_vehicle_location(db: Session, vehicle_id: str) -> Optional[models.Location]:
    return (
        db.query(models.Location)
        .filter(
            models.Location.kind == models.LocationKind.VEHICLE,
            or_(
                models.Location.owner_ref == vehicle_id,
                models.Location.code == vehicle_location_code(vehicle_id),
            ),
        )
        .order_by(models.Location.is_active.desc(), models.Location.id.asc())
        .first()
    )


def ensure_vehicle_location(
    db: Session,
    *,
    vehicle_id: str,
    vehicle_name: Optional[str],
    actor: Actor,
) -> Tuple[models.Location, bool]:
    """Return the vehicle's stock location, creating it on first use."""
    vehicle_id = str(vehicle_id or "").strip()
    if not vehicle_id:
        raise ValidationError(
            "vehicle_id is required",
            detail=[{"field": "vehicle_id", "reason": "required"}],
        )

    location = find_vehicle_location(db, vehicle_id)
    if location:
        if not location.is_active:
            activate_location(db, location_id=location.id, actor=actor)
        return location, False

    location = create_location(
        db,
        name=vehicle_name or f"Vehicle {vehicle_id}",
        kind=models.LocationKind.VEHICLE,
        owner_ref=vehicle_id,
        code=vehicle_location_code(vehicle_id),
        actor=actor,
    )
    return location, True


# ---------------------------------------------------------------------------
# INTEGRITY
# ---------------------------------------------------------------------------


def check_integrity(db: Session) -> IntegrityReport:
    """Read-only consistency report over the location registry."""
    violations: List[Dict[str, Any]] = []
    locations = db.query(models.Location).all()
    active = [loc for loc in locations if loc.is_active]

    warehouses = [loc for loc in active if loc.kind == models.LocationKind.WAREHOUSE]
    if not warehouses:
        violations.append({"type": "missing_active_warehouse"})

    if not any(loc.code == LOADING_BAY_CODE for loc in active):
        violations.append({"type": "missing_location", "code": LOADING_BAY_CODE})

    codes: Dict[str, List[int]] = {}
    for loc in active:
        if loc.code:
            codes.setdefault(loc.code, []).append(loc.id)
    for code, ids in sorted(codes.items()):
        if len(ids) > 1:
            violations.append({"type": "duplicate_code", "code": code, "location_ids": ids})

    vehicle_locations = [loc for loc in locations if loc.kind == models.LocationKind.VEHICLE]
    vehicles = {v.id: v for v in db.query(reference_models.Vehicle).all()}

    for vehicle in sorted(vehicles.values(), key=lambda v: v.id):
        if not vehicle.is_active:
            continue
        matches = [
            loc.id for loc in vehicle_locations
            if loc.is_active and loc.owner_ref == vehicle.id
        ]
        if len(matches) != 1:
            violations.append(
                {
                    "type": "vehicle_location_count",
                    "vehicle_id": vehicle.id,
                    "location_ids": matches,
                }
            )

    for loc in vehicle_locations:
        if loc.owner_ref and loc.owner_ref not in vehicles:
            violations.append(
                {"type": "orphaned_vehicle_location", "location_id": loc.id, "owner_ref": loc.owner_ref}
            )

    inactive_ids = [loc.id for loc in locations if not loc.is_active]
    stocked_inactive = []
    if inactive_ids:
        stocked_inactive = (
            db.query(
                ledger_models.QuantityBalance.location_id,
                func.sum(ledger_models.QuantityBalance.quantity),
            )
            .filter(
                ledger_models.QuantityBalance.location_id.in_(inactive_ids),
                ledger_models.QuantityBalance.quantity > 0,
            )
            .group_by(ledger_models.QuantityBalance.location_id)
            .order_by(ledger_models.QuantityBalance.location_id)
            .all()
        )
    for location_id, on_hand in stocked_inactive:
        violations.append(
            {"type": "inactive_location_in_use", "location_id": location_id, "quantity": int(on_hand)}
        )

    summary = {
        "total_locations": len(locations),
        "active_locations": len(active),
        "active_warehouses": len(warehouses),
        "vehicle_locations": len(vehicle_locations),
        "violations": len(violations),
    }
    return IntegrityReport(
        status="PASS" if not violations else "FAIL",
        violations=violations,
        summary=summary,
    )
