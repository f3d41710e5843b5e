from __future__ import annotations

from stockdb.apps.audit import services as audit_services
from stockdb.schemas import Actor, ActorRole


def test_log_event_writes_record(db_session):
    actor = Actor(id="u-1", email="store@example.com", display_name="Store", role=ActorRole.STOREKEEPER)

    event = audit_services.log_event(
        db_session,
        actor=actor,
        entity_type="stock_location",
        entity_id="12",
        action="create",
        after={"name": "Main warehouse"},
        metadata={"module": "locations"},
    )

    db_session.commit()
    assert event is not None
    assert event.entity_type == "stock_location"
    assert event.actor_id == "u-1"
    assert event.actor_email == "store@example.com"


def test_list_audit_events_filters_by_entity(db_session):
    audit_services.log_event(
        db_session, actor=None, entity_type="stock_allocation", entity_id="a-1", action="create"
    )
    audit_services.log_event(
        db_session, actor=None, entity_type="stock_allocation", entity_id="a-2", action="create"
    )
    db_session.commit()

    events = audit_services.list_audit_events(
        db_session, entity_type="stock_allocation", entity_id="a-2"
    )

    assert [e.entity_id for e in events] == ["a-2"]
