from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from stockdb.apps.audit import models as audit_models
from stockdb.apps.receipts import models as receipt_models
from stockdb.apps.receipts import services as receipt_services
from stockdb.errors import NotFound, ValidationError
from stockdb.schemas import Actor, ActorRole

DRIVER = Actor(id="u-driver", email="driver@example.com", display_name="Driver", role=ActorRole.STOREKEEPER)

Status = receipt_models.ReceiptStatus


def _legacy_receipt(db, *, run: str, project_id=None, status=Status.OPEN, minutes_ago: int = 0):
    receipt = receipt_models.Receipt(
        confirmation_ref=None,
        delivery_run_id=run,
        project_id=project_id,
        status=status,
        received_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )
    db.add(receipt)
    db.commit()
    return receipt


def test_ensure_receipt_is_idempotent(db_session):
    first, created = receipt_services.ensure_receipt(
        db_session, confirmation_ref="STOP-1", delivery_run_id="RUN-1", project_id="P-1", actor=DRIVER
    )
    db_session.commit()
    second, created_again = receipt_services.ensure_receipt(
        db_session, confirmation_ref=" STOP-1 ", actor=DRIVER
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert first.status == Status.OPEN
    assert db_session.query(receipt_models.Receipt).count() == 1


def test_ensure_receipt_requires_reference_and_known_location(db_session):
    with pytest.raises(ValidationError):
        receipt_services.ensure_receipt(db_session, confirmation_ref="  ", actor=DRIVER)
    with pytest.raises(NotFound):
        receipt_services.ensure_receipt(db_session, confirmation_ref="STOP-9", location_id=77, actor=DRIVER)


def test_clear_receipt_sets_cleared_fields_once(db_session):
    receipt, _ = receipt_services.ensure_receipt(db_session, confirmation_ref="STOP-1", actor=DRIVER)
    db_session.commit()

    cleared = receipt_services.clear_receipt(db_session, confirmation_ref="STOP-1", actor=DRIVER)
    db_session.commit()
    cleared_at = cleared.cleared_at

    assert cleared.id == receipt.id
    assert cleared.status == Status.CLEARED
    assert cleared.cleared_by_id == DRIVER.id
    assert cleared_at is not None

    again = receipt_services.clear_receipt(db_session, confirmation_ref="STOP-1", actor=DRIVER)
    db_session.commit()

    assert again.cleared_at.replace(tzinfo=None) == cleared_at.replace(tzinfo=None)
    transitions = (
        db_session.query(audit_models.AuditEvent)
        .filter(
            audit_models.AuditEvent.entity_id == receipt.id,
            audit_models.AuditEvent.action == "transition",
        )
        .count()
    )
    assert transitions == 1


def test_clear_receipt_falls_back_to_delivery_run(db_session):
    _legacy_receipt(db_session, run="RUN-7", project_id="P-1", status=Status.CLEARED, minutes_ago=30)
    oldest_other_project = _legacy_receipt(db_session, run="RUN-7", project_id="P-2", minutes_ago=20)
    match = _legacy_receipt(db_session, run="RUN-7", project_id="P-1", minutes_ago=10)

    cleared = receipt_services.clear_receipt(
        db_session, confirmation_ref="LOST-REF", delivery_run_id="RUN-7", project_id="P-1", actor=DRIVER
    )
    db_session.commit()

    assert cleared.id == match.id
    assert cleared.status == Status.CLEARED

    retried = receipt_services.clear_receipt(
        db_session, confirmation_ref="LOST-REF", delivery_run_id="RUN-7", project_id="P-1", actor=DRIVER
    )
    db_session.commit()

    assert retried.project_id == "P-1"
    db_session.refresh(oldest_other_project)
    assert oldest_other_project.status == Status.OPEN

    next_one = receipt_services.clear_receipt(
        db_session, confirmation_ref=None, delivery_run_id="RUN-7", actor=DRIVER
    )
    assert next_one.id == oldest_other_project.id


def test_retried_fallback_clear_never_touches_another_project(db_session):
    mine = _legacy_receipt(db_session, run="RUN-1", project_id="P-1", minutes_ago=20)
    other = _legacy_receipt(db_session, run="RUN-1", project_id="P-2", minutes_ago=10)

    first = receipt_services.clear_receipt(
        db_session, confirmation_ref=None, delivery_run_id="RUN-1", project_id="P-1", actor=DRIVER
    )
    db_session.commit()
    retry = receipt_services.clear_receipt(
        db_session, confirmation_ref=None, delivery_run_id="RUN-1", project_id="P-1", actor=DRIVER
    )
    db_session.commit()

    assert first.id == mine.id
    assert retry.id == mine.id
    db_session.refresh(other)
    assert other.status == Status.OPEN
    assert other.cleared_at is None


def test_clear_receipt_without_match_is_not_found(db_session):
    with pytest.raises(NotFound):
        receipt_services.clear_receipt(db_session, confirmation_ref="NOPE", actor=DRIVER)
    with pytest.raises(NotFound):
        receipt_services.clear_receipt(
            db_session, confirmation_ref=None, delivery_run_id="RUN-404", actor=DRIVER
        )


def test_get_receipt_unknown_id_is_not_found(db_session):
    with pytest.raises(NotFound):
        receipt_services.get_receipt(db_session, "missing")
