from __future__ import annotations

import logging

import pytest

from stockdb.apps.audit import models as audit_models
from stockdb.apps.ledger import models as ledger_models
from stockdb.apps.ledger import services as ledger_services
from stockdb.apps.locations import models as location_models
from stockdb.apps.locations import services as location_services
from stockdb.apps.reconciliation import services as reconciliation_services
from stockdb.errors import ValidationError
from stockdb.schemas import Actor, ActorRole

ADMIN = Actor(id="u-admin", email="admin@example.com", display_name="Admin", role=ActorRole.ADMIN)

Kind = location_models.LocationKind


def _location(db, name: str, kind=Kind.WAREHOUSE):
    location = location_services.create_location(db, name=name, kind=kind, actor=ADMIN)
    db.commit()
    return location


def _receive(db, location_id: int, qty: int, *, item_id: str = "ITEM-1"):
    ledger_services.record_movement(
        db,
        item_id=item_id,
        from_location_id=None,
        to_location_id=location_id,
        quantity=qty,
        reason=ledger_models.MovementReason.PURCHASE_RECEIPT,
        reference_type="po_line",
        reference_id=f"PO-{item_id}",
        actor=ADMIN,
    )
    db.commit()


def _balance_row(db, location_id: int, item_id: str) -> ledger_models.QuantityBalance:
    return (
        db.query(ledger_models.QuantityBalance)
        .filter(
            ledger_models.QuantityBalance.location_id == location_id,
            ledger_models.QuantityBalance.item_id == item_id,
        )
        .one()
    )


def test_reconcile_corrects_drift_and_reaches_fixed_point(db_session):
    warehouse = _location(db_session, "Main")
    _receive(db_session, warehouse.id, 8, item_id="ITEM-1")
    _receive(db_session, warehouse.id, 2, item_id="ITEM-2")
    _balance_row(db_session, warehouse.id, "ITEM-1").quantity = 3
    db_session.commit()

    first = reconciliation_services.reconcile_all(db_session)

    assert first.checked == 2
    assert first.corrected == 1
    assert len(first.drift_report) == 1
    entry = first.drift_report[0]
    assert (entry.location_id, entry.item_id, entry.old_quantity, entry.new_quantity) == (
        warehouse.id,
        "ITEM-1",
        3,
        8,
    )
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 8
    assert (
        db_session.query(audit_models.AuditEvent)
        .filter(audit_models.AuditEvent.action == "drift_corrected")
        .count()
        == 1
    )

    second = reconciliation_services.reconcile_all(db_session)

    assert second.checked == 2
    assert second.corrected == 0
    assert second.drift_report == []


def test_reconcile_zeroes_cache_rows_without_movements(db_session):
    warehouse = _location(db_session, "Main")
    db_session.add(ledger_models.QuantityBalance(location_id=warehouse.id, item_id="GHOST", quantity=5))
    db_session.commit()

    summary = reconciliation_services.reconcile_all(db_session)

    assert summary.corrected == 1
    assert summary.drift_report[0].new_quantity == 0
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="GHOST") == 0


def test_reconcile_recreates_missing_cache_rows(db_session):
    warehouse = _location(db_session, "Main")
    _receive(db_session, warehouse.id, 4)
    db_session.query(ledger_models.QuantityBalance).delete()
    db_session.commit()

    summary = reconciliation_services.reconcile_all(db_session)

    assert summary.drift_report[0].created_row is True
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 4


def test_reconcile_reports_negative_ledger_and_continues(db_session):
    warehouse = _location(db_session, "Main")
    van = _location(db_session, "Van", Kind.VEHICLE)
    db_session.add(
        ledger_models.Movement(
            item_id="BAD",
            from_location_id=warehouse.id,
            to_location_id=None,
            quantity=2,
            reason=ledger_models.MovementReason.JOB_USAGE,
            reference_type="legacy",
            reference_id="L-1",
            idempotency_key="legacy:L-1:BAD",
        )
    )
    db_session.commit()
    _receive(db_session, van.id, 1)

    summary = reconciliation_services.reconcile_all(db_session)

    assert summary.checked == 2
    assert [e["code"] for e in summary.errors] == ["negative_ledger_sum"]
    assert summary.errors[0]["location_id"] == warehouse.id
    assert ledger_services.get_balance(db_session, location_id=van.id, item_id="ITEM-1") == 1


def test_reconcile_pages_through_every_pair(db_session):
    warehouse = _location(db_session, "Main")
    van = _location(db_session, "Van", Kind.VEHICLE)
    _receive(db_session, warehouse.id, 1, item_id="A")
    _receive(db_session, warehouse.id, 1, item_id="B")
    _receive(db_session, van.id, 1, item_id="C")

    summary = reconciliation_services.reconcile_all(db_session, batch_size=1)
    scoped = reconciliation_services.reconcile_all(db_session, location_id=van.id)

    assert summary.checked == 3
    assert scoped.checked == 1


def test_reconcile_honours_stop_request_and_batch_size(db_session):
    warehouse = _location(db_session, "Main")
    _receive(db_session, warehouse.id, 1)

    summary = reconciliation_services.reconcile_all(db_session, should_stop=lambda: True)

    assert summary.stopped is True
    assert summary.checked == 0
    with pytest.raises(ValidationError):
        reconciliation_services.reconcile_all(db_session, batch_size=0)


LEGACY_LOCATIONS = [
    {"name": "Main WH", "kind": "Main Warehouse"},
    {"name": "Second depot", "kind": "depot"},
    {"name": "Van 1", "kind": "van", "owner_ref": "V1"},
    {"name": "", "kind": "site"},
    {"name": "Acme", "kind": "Vendor", "owner_ref": "SUP-1"},
]


def test_backfill_locations_normalises_kinds_and_is_rerunnable(db_session):
    first = reconciliation_services.backfill_locations(db_session, records=LEGACY_LOCATIONS, actor=ADMIN)
    db_session.commit()

    assert (first.processed, first.created, first.skipped) == (5, 4, 0)
    assert [e["index"] for e in first.errors] == [3]
    warehouses = location_services.list_locations(db_session, kind=Kind.WAREHOUSE)
    assert [(w.name, w.is_active) for w in warehouses] == [("Main WH", True), ("Second depot", False)]
    van = location_services.find_vehicle_location(db_session, "V1")
    assert van.code == "VEHICLE_V1"
    assert location_services.list_locations(db_session, kind=Kind.SUPPLIER)[0].owner_ref == "SUP-1"

    second = reconciliation_services.backfill_locations(db_session, records=LEGACY_LOCATIONS, actor=ADMIN)
    db_session.commit()

    assert (second.created, second.skipped) == (0, 4)
    assert db_session.query(location_models.Location).count() == 4


LEGACY_VEHICLE_STOCK = [
    {"vehicle_id": "V1", "vehicle_name": "Van 1", "item_id": "BOLT", "quantity": 5},
    {"vehicle_id": "V1", "item_id": "NUT", "quantity": "3"},
    {"vehicle_id": "V2", "item_id": "BOLT", "quantity": 0},
    {"vehicle_id": "V3", "item_id": "BOLT", "quantity": -1},
]


def test_backfill_vehicle_stock_seeds_balances_once(db_session):
    first = reconciliation_services.backfill_vehicle_stock(
        db_session, records=LEGACY_VEHICLE_STOCK, actor=ADMIN
    )
    db_session.commit()

    assert (first.processed, first.created, first.movements_created, first.skipped) == (4, 2, 2, 1)
    assert [e["vehicle_id"] for e in first.errors] == ["V3"]
    van = location_services.find_vehicle_location(db_session, "V1")
    assert ledger_services.get_balance(db_session, location_id=van.id, item_id="BOLT") == 5
    assert ledger_services.get_balance(db_session, location_id=van.id, item_id="NUT") == 3
    assert location_services.find_vehicle_location(db_session, "V3") is None

    second = reconciliation_services.backfill_vehicle_stock(
        db_session, records=LEGACY_VEHICLE_STOCK, actor=ADMIN
    )
    db_session.commit()

    assert (second.created, second.movements_created, second.skipped) == (0, 0, 3)
    assert ledger_services.get_balance(db_session, location_id=van.id, item_id="BOLT") == 5
    assert db_session.query(ledger_models.Movement).count() == 2

    summary = reconciliation_services.reconcile_all(db_session)
    assert summary.corrected == 0


def _records(caplog, message: str):
    return [record for record in caplog.records if record.getMessage() == message]


def test_backfills_log_their_summaries_at_info(db_session, caplog):
    caplog.set_level(logging.INFO)

    locations = reconciliation_services.backfill_locations(db_session, records=LEGACY_LOCATIONS, actor=ADMIN)
    stock = reconciliation_services.backfill_vehicle_stock(db_session, records=LEGACY_VEHICLE_STOCK, actor=ADMIN)
    db_session.commit()

    assert locations.created == 4
    assert stock.movements_created == 2
    (retired,) = _records(caplog, "Legacy warehouse imported retired; another warehouse is active")
    assert retired.location_name == "Second depot"
    (finished,) = _records(caplog, "Location backfill finished")
    assert (finished.processed, finished.locations_created, finished.skipped) == (5, 4, 0)
    assert _records(caplog, "Vehicle stock backfill finished")[0].movements_created == 2


def test_reconcile_dry_run_reports_without_writing(db_session):
    warehouse = _location(db_session, "Main")
    _receive(db_session, warehouse.id, 8)
    _balance_row(db_session, warehouse.id, "ITEM-1").quantity = 3
    db_session.commit()

    preview = reconciliation_services.reconcile_all(db_session, dry_run=True)

    assert preview.dry_run is True
    assert preview.corrected == 0
    assert [(e.old_quantity, e.new_quantity) for e in preview.drift_report] == [(3, 8)]
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 3
    assert (
        db_session.query(audit_models.AuditEvent)
        .filter(audit_models.AuditEvent.action == "drift_corrected")
        .count()
        == 0
    )

    applied = reconciliation_services.reconcile_all(db_session)

    assert applied.corrected == 1
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 8


def test_backfill_dry_run_counts_but_writes_nothing(db_session):
    locations = reconciliation_services.backfill_locations(
        db_session, records=LEGACY_LOCATIONS, actor=ADMIN, dry_run=True
    )
    stock = reconciliation_services.backfill_vehicle_stock(
        db_session, records=LEGACY_VEHICLE_STOCK, actor=ADMIN, dry_run=True
    )
    db_session.commit()

    assert (locations.processed, locations.created, locations.skipped) == (5, 4, 0)
    assert locations.dry_run is True
    assert (stock.created, stock.movements_created) == (2, 2)
    assert db_session.query(location_models.Location).count() == 0
    assert db_session.query(ledger_models.Movement).count() == 0
    assert db_session.query(ledger_models.QuantityBalance).count() == 0


def test_repair_reactivates_inactive_locations_still_in_use(db_session):
    _location(db_session, "Main")
    van = _location(db_session, "Van", Kind.VEHICLE)
    _receive(db_session, van.id, 3)
    location_services.retire_location(db_session, location_id=van.id, actor=ADMIN)
    old_depot = location_services.create_location(
        db_session, name="Old depot", kind=Kind.WAREHOUSE, is_active=False, actor=ADMIN
    )
    db_session.commit()
    _receive(db_session, old_depot.id, 1, item_id="ITEM-2")
    unused = location_services.create_location(
        db_session, name="Unused", kind=Kind.OTHER, is_active=False, actor=ADMIN
    )
    db_session.commit()

    preview = reconciliation_services.repair_inactive_locations_in_use(db_session, actor=ADMIN)
    db_session.commit()

    assert preview.dry_run is True
    assert (preview.scanned, preview.reactivated) == (2, 1)
    assert [e["code"] for e in preview.errors] == ["warehouse_already_active"]
    assert location_services.get_location(db_session, van.id).is_active is False

    applied = reconciliation_services.repair_inactive_locations_in_use(db_session, actor=ADMIN, dry_run=False)
    db_session.commit()

    assert applied.reactivated == 1
    entry = next(e for e in applied.details if e.location_id == van.id)
    assert entry.reactivated is True
    assert entry.code_assigned == f"LEGACY_{van.id}"
    assert entry.references == {"stock_movements": 1, "positive_balances": 1}
    repaired = location_services.get_location(db_session, van.id)
    assert repaired.is_active is True
    assert repaired.code == f"LEGACY_{van.id}"
    assert location_services.get_location(db_session, old_depot.id).is_active is False
    assert location_services.get_location(db_session, unused.id).is_active is False
    assert all(e.location_id != unused.id for e in applied.details)
