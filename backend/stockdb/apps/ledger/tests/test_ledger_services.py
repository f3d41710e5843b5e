from __future__ import annotations

import pytest

from stockdb.apps.audit import models as audit_models
from stockdb.apps.ledger import models as ledger_models
from stockdb.apps.ledger import services as ledger_services
from stockdb.apps.locations import models as location_models
from stockdb.apps.locations import services as location_services
from stockdb.errors import InsufficientStock, NotFound, ValidationError
from stockdb.schemas import Actor, ActorRole

STOREKEEPER = Actor(id="u-store", email="store@example.com", display_name="Store", role=ActorRole.STOREKEEPER)
ADMIN = Actor(id="u-admin", email="admin@example.com", display_name="Admin", role=ActorRole.ADMIN)


def _create_location(db, name: str, kind=location_models.LocationKind.OTHER, **kwargs):
    location = location_services.create_location(db, name=name, kind=kind, actor=ADMIN, **kwargs)
    db.commit()
    return location


def _receive(db, location_id: int, qty: int, *, item_id: str = "ITEM-1", ref: str = "PO-1"):
    movement = ledger_services.record_movement(
        db,
        item_id=item_id,
        from_location_id=None,
        to_location_id=location_id,
        quantity=qty,
        reason=ledger_models.MovementReason.PURCHASE_RECEIPT,
        reference_type="po_line",
        reference_id=ref,
        actor=STOREKEEPER,
    )
    db.commit()
    return movement


def test_transfer_conserves_total_quantity(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    van = _create_location(db_session, "Van 1", location_models.LocationKind.VEHICLE)
    _receive(db_session, warehouse.id, 10)

    ledger_services.record_movement(
        db_session,
        item_id="ITEM-1",
        from_location_id=warehouse.id,
        to_location_id=van.id,
        quantity=4,
        reason="transfer",
        reference_type="transfer",
        reference_id="T-1",
        actor=STOREKEEPER,
    )
    db_session.commit()

    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 6
    assert ledger_services.get_balance(db_session, location_id=van.id, item_id="ITEM-1") == 4
    for loc in (warehouse, van):
        assert ledger_services.compute_ledger_quantity(
            db_session, location_id=loc.id, item_id="ITEM-1"
        ) == ledger_services.get_balance(db_session, location_id=loc.id, item_id="ITEM-1")


def test_movement_rejected_when_source_has_too_little(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    _receive(db_session, warehouse.id, 3)

    with pytest.raises(InsufficientStock) as excinfo:
        ledger_services.record_movement(
            db_session,
            item_id="ITEM-1",
            from_location_id=warehouse.id,
            to_location_id=None,
            quantity=5,
            reason=ledger_models.MovementReason.JOB_USAGE,
            reference_type="job",
            reference_id="J-1",
            actor=STOREKEEPER,
        )
    db_session.rollback()

    assert excinfo.value.detail["available"] == 3
    assert excinfo.value.detail["requested"] == 5
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 3
    assert db_session.query(ledger_models.Movement).count() == 1


def test_movement_from_empty_location_is_insufficient(db_session):
    van = _create_location(db_session, "Van 1", location_models.LocationKind.VEHICLE)

    with pytest.raises(InsufficientStock):
        ledger_services.record_movement(
            db_session,
            item_id="ITEM-9",
            from_location_id=van.id,
            to_location_id=None,
            quantity=1,
            reason=ledger_models.MovementReason.JOB_USAGE,
            reference_type="job",
            reference_id="J-2",
            actor=STOREKEEPER,
        )


@pytest.mark.parametrize(
    "kwargs",
    [
        {"quantity": 0},
        {"quantity": -2},
        {"quantity": True},
        {"item_id": "  "},
        {"reference_id": ""},
        {"reason": "teleport"},
        {"to_location_id": None},
        {"item_id": "I" * 65},
        {"reference_type": "t" * 65},
        {"reference_id": "R" * 129},
    ],
)
def test_record_movement_validates_input(db_session, kwargs):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    params = {
        "item_id": "ITEM-1",
        "from_location_id": None,
        "to_location_id": warehouse.id,
        "quantity": 1,
        "reason": ledger_models.MovementReason.PURCHASE_RECEIPT,
        "reference_type": "po_line",
        "reference_id": "PO-1",
    }
    params.update(kwargs)

    with pytest.raises(ValidationError):
        ledger_services.record_movement(db_session, actor=STOREKEEPER, **params)


def test_record_movement_rejects_same_source_and_destination(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)

    with pytest.raises(ValidationError):
        ledger_services.record_movement(
            db_session,
            item_id="ITEM-1",
            from_location_id=warehouse.id,
            to_location_id=warehouse.id,
            quantity=1,
            reason="transfer",
            reference_type="transfer",
            reference_id="T-1",
            actor=STOREKEEPER,
        )


def test_record_movement_unknown_location_is_not_found(db_session):
    with pytest.raises(NotFound):
        ledger_services.record_movement(
            db_session,
            item_id="ITEM-1",
            from_location_id=None,
            to_location_id=999,
            quantity=1,
            reason="purchase_receipt",
            reference_type="po_line",
            reference_id="PO-1",
            actor=STOREKEEPER,
        )


def test_replayed_reference_returns_existing_movement(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    first = _receive(db_session, warehouse.id, 5, ref="PO-7")
    second = _receive(db_session, warehouse.id, 5, ref="PO-7")

    assert second.id == first.id
    assert db_session.query(ledger_models.Movement).count() == 1
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 5


def test_references_containing_separators_do_not_collide(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    first = _receive(db_session, warehouse.id, 2, item_id="Y:Z", ref="X")
    second = _receive(db_session, warehouse.id, 3, item_id="Z", ref="X:Y")

    assert second.id != first.id
    assert second.item_id == "Z"
    assert second.idempotency_key != first.idempotency_key
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="Y:Z") == 2
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="Z") == 3
    assert ledger_services.find_movement_by_reference(
        db_session, reference_type="po_line", reference_id="X:Y", item_id="Z"
    ).id == second.id


def test_longest_allowed_references_fit_the_key_column(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    movement = ledger_services.record_movement(
        db_session,
        item_id="I" * 64,
        from_location_id=None,
        to_location_id=warehouse.id,
        quantity=1,
        reason=ledger_models.MovementReason.PURCHASE_RECEIPT,
        reference_type="t" * 64,
        reference_id="R" * 128,
        actor=STOREKEEPER,
    )
    db_session.commit()

    key_column = ledger_models.Movement.__table__.c.idempotency_key
    assert len(movement.idempotency_key) <= key_column.type.length


def test_movement_writes_audit_event(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    movement = _receive(db_session, warehouse.id, 2)

    event = (
        db_session.query(audit_models.AuditEvent)
        .filter(
            audit_models.AuditEvent.entity_type == "stock_movement",
            audit_models.AuditEvent.entity_id == movement.id,
        )
        .one()
    )
    assert event.action == "record"
    assert event.actor_id == STOREKEEPER.id
    assert event.after["quantity"] == 2


def test_list_movements_filters_by_location_and_item(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    van = _create_location(db_session, "Van 1", location_models.LocationKind.VEHICLE)
    _receive(db_session, warehouse.id, 5, item_id="ITEM-1", ref="PO-1")
    _receive(db_session, warehouse.id, 5, item_id="ITEM-2", ref="PO-2")
    _receive(db_session, van.id, 1, item_id="ITEM-1", ref="PO-3")

    at_warehouse = ledger_services.list_movements(db_session, location_id=warehouse.id)
    item_one = ledger_services.list_movements(db_session, item_id="ITEM-1")

    assert len(at_warehouse) == 2
    assert {m.reference_id for m in item_one} == {"PO-1", "PO-3"}


def test_reverse_movement_restores_balances(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    van = _create_location(db_session, "Van 1", location_models.LocationKind.VEHICLE)
    _receive(db_session, warehouse.id, 10)
    transfer = ledger_services.record_movement(
        db_session,
        item_id="ITEM-1",
        from_location_id=warehouse.id,
        to_location_id=van.id,
        quantity=4,
        reason="transfer",
        reference_type="transfer",
        reference_id="T-1",
        actor=STOREKEEPER,
    )
    db_session.commit()

    result = ledger_services.reverse_movement(db_session, movement_id=transfer.id, actor=ADMIN)
    db_session.commit()

    assert result.already_reversed is False
    assert result.movement.reversal_of_id == transfer.id
    assert result.movement.reference_id == transfer.id
    assert result.movement.from_location_id == van.id
    assert result.movement.to_location_id == warehouse.id
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 10
    assert ledger_services.get_balance(db_session, location_id=van.id, item_id="ITEM-1") == 0


def test_reversing_twice_is_numbered_and_flagged(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    receipt = _receive(db_session, warehouse.id, 10)
    ledger_services.reverse_movement(db_session, movement_id=receipt.id, actor=ADMIN)
    db_session.commit()
    _receive(db_session, warehouse.id, 10, ref="PO-2")

    second = ledger_services.reverse_movement(db_session, movement_id=receipt.id, actor=ADMIN)
    db_session.commit()

    assert second.already_reversed is True
    assert second.prior_reversals == 1
    assert second.movement.reference_id == f"{receipt.id}#2"
    events = (
        db_session.query(audit_models.AuditEvent)
        .filter(
            audit_models.AuditEvent.entity_id == receipt.id,
            audit_models.AuditEvent.action == "reverse",
        )
        .all()
    )
    assert sorted(e.metadata_json["repeat_reversal"] for e in events) == [False, True]


def test_reversal_that_would_go_negative_is_rejected(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    receipt = _receive(db_session, warehouse.id, 5)
    ledger_services.record_movement(
        db_session,
        item_id="ITEM-1",
        from_location_id=warehouse.id,
        to_location_id=None,
        quantity=3,
        reason="job_usage",
        reference_type="job",
        reference_id="J-1",
        actor=STOREKEEPER,
    )
    db_session.commit()

    with pytest.raises(InsufficientStock):
        ledger_services.reverse_movement(db_session, movement_id=receipt.id, actor=ADMIN)


def test_reverse_unknown_movement_is_not_found(db_session):
    with pytest.raises(NotFound):
        ledger_services.reverse_movement(db_session, movement_id="missing", actor=ADMIN)


def test_adjust_stock_to_target_and_by_delta(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    _receive(db_session, warehouse.id, 10)

    down = ledger_services.adjust_stock(
        db_session,
        item_id="ITEM-1",
        location_id=warehouse.id,
        target_quantity=7,
        reason_note="stocktake",
        request_id="ADJ-1",
        actor=ADMIN,
    )
    db_session.commit()
    up = ledger_services.adjust_stock(
        db_session,
        item_id="ITEM-1",
        location_id=warehouse.id,
        delta=2,
        reason_note="found in back room",
        request_id="ADJ-2",
        actor=ADMIN,
    )
    db_session.commit()

    assert (down.previous_quantity, down.new_quantity) == (10, 7)
    assert down.movement.from_location_id == warehouse.id
    assert down.movement.to_location_id is None
    assert down.movement.quantity == 3
    assert (up.previous_quantity, up.new_quantity) == (7, 9)
    assert up.movement.to_location_id == warehouse.id
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 9


def test_adjust_stock_without_change_records_nothing(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    _receive(db_session, warehouse.id, 4)

    result = ledger_services.adjust_stock(
        db_session,
        item_id="ITEM-1",
        location_id=warehouse.id,
        target_quantity=4,
        reason_note="stocktake",
        request_id="ADJ-1",
        actor=ADMIN,
    )

    assert result.movement is None
    assert db_session.query(ledger_models.Movement).count() == 1


def test_adjust_stock_replay_returns_same_movement(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    _receive(db_session, warehouse.id, 10)
    kwargs = dict(
        item_id="ITEM-1",
        location_id=warehouse.id,
        delta=-3,
        reason_note="damaged",
        request_id="ADJ-9",
        actor=ADMIN,
    )

    first = ledger_services.adjust_stock(db_session, **kwargs)
    db_session.commit()
    second = ledger_services.adjust_stock(db_session, **kwargs)

    assert second.movement.id == first.movement.id
    assert (second.previous_quantity, second.new_quantity) == (10, 7)
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 7


def test_adjust_stock_requires_exactly_one_mode_and_non_negative_result(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    _receive(db_session, warehouse.id, 2)
    base = dict(item_id="ITEM-1", location_id=warehouse.id, reason_note="x", actor=ADMIN)

    with pytest.raises(ValidationError):
        ledger_services.adjust_stock(db_session, request_id="A", target_quantity=1, delta=1, **base)
    with pytest.raises(ValidationError):
        ledger_services.adjust_stock(db_session, request_id="B", **base)
    with pytest.raises(ValidationError):
        ledger_services.adjust_stock(db_session, request_id="C", target_quantity=-1, **base)
    with pytest.raises(InsufficientStock):
        ledger_services.adjust_stock(db_session, request_id="D", delta=-3, **base)


def test_recompute_balance_repairs_drift(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    _receive(db_session, warehouse.id, 8)
    balance = db_session.query(ledger_models.QuantityBalance).one()
    balance.quantity = 3
    db_session.commit()

    result = ledger_services.recompute_balance(db_session, location_id=warehouse.id, item_id="ITEM-1")
    db_session.commit()

    assert (result.previous, result.current, result.changed) == (3, 8, True)
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 8

    again = ledger_services.recompute_balance(db_session, location_id=warehouse.id, item_id="ITEM-1")
    assert again.changed is False


def test_recompute_balance_creates_missing_row(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    _receive(db_session, warehouse.id, 6)
    db_session.query(ledger_models.QuantityBalance).delete()
    db_session.commit()

    result = ledger_services.recompute_balance(db_session, location_id=warehouse.id, item_id="ITEM-1")
    db_session.commit()

    assert result.created_row is True
    assert result.current == 6
    assert ledger_services.get_balance(db_session, location_id=warehouse.id, item_id="ITEM-1") == 6


def test_recompute_balance_for_unknown_pair_is_a_no_op(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)

    result = ledger_services.recompute_balance(db_session, location_id=warehouse.id, item_id="NOPE")

    assert result.changed is False
    assert db_session.query(ledger_models.QuantityBalance).count() == 0


def test_list_balances_hides_zero_rows_by_default(db_session):
    warehouse = _create_location(db_session, "Main", location_models.LocationKind.WAREHOUSE)
    _receive(db_session, warehouse.id, 2, item_id="ITEM-1", ref="PO-1")
    _receive(db_session, warehouse.id, 2, item_id="ITEM-2", ref="PO-2")
    ledger_services.adjust_stock(
        db_session,
        item_id="ITEM-2",
        location_id=warehouse.id,
        target_quantity=0,
        reason_note="written off",
        request_id="ADJ-1",
        actor=ADMIN,
    )
    db_session.commit()

    visible = ledger_services.list_balances(db_session, location_id=warehouse.id)
    everything = ledger_services.list_balances(db_session, location_id=warehouse.id, include_zero=True)

    assert [b.item_id for b in visible] == ["ITEM-1"]
    assert [b.item_id for b in everything] == ["ITEM-1", "ITEM-2"]
