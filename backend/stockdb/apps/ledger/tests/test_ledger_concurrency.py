from __future__ import annotations

import threading

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stockdb.apps.ledger import models as ledger_models
from stockdb.apps.ledger import services as ledger_services
from stockdb.apps.locations import models as location_models
from stockdb.apps.locations import services as location_services
from stockdb.database import Base, enable_sqlite_savepoints
from stockdb.errors import InsufficientStock
from stockdb.schemas import Actor, ActorRole

STOREKEEPER = Actor(id="u-store", email="store@example.com", display_name="Store", role=ActorRole.STOREKEEPER)


def _file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_sqlite_savepoints(engine, immediate=True)
    Base.metadata.create_all(bind=engine)
    return engine, sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def test_concurrent_withdrawals_from_one_pair_are_serialized(tmp_path):
    engine, SessionFactory = _file_session_factory(tmp_path)
    try:
        db = SessionFactory()
        warehouse = location_services.create_location(
            db, name="Main", kind=location_models.LocationKind.WAREHOUSE, actor=STOREKEEPER
        )
        ledger_services.record_movement(
            db,
            item_id="ITEM-1",
            from_location_id=None,
            to_location_id=warehouse.id,
            quantity=10,
            reason=ledger_models.MovementReason.PURCHASE_RECEIPT,
            reference_type="po_line",
            reference_id="PO-1",
            actor=STOREKEEPER,
        )
        db.commit()
        warehouse_id = warehouse.id
        db.close()

        barrier = threading.Barrier(2)
        outcomes = []
        outcomes_lock = threading.Lock()

        def withdraw(job_ref: str) -> None:
            session = SessionFactory()
            try:
                barrier.wait(timeout=10)
                ledger_services.record_movement(
                    session,
                    item_id="ITEM-1",
                    from_location_id=warehouse_id,
                    to_location_id=None,
                    quantity=7,
                    reason=ledger_models.MovementReason.JOB_USAGE,
                    reference_type="job",
                    reference_id=job_ref,
                    actor=STOREKEEPER,
                )
                session.commit()
                result = ("ok", job_ref)
            except InsufficientStock as exc:
                session.rollback()
                result = ("insufficient", exc.detail["available"])
            except Exception as exc:  # surfaced through the assertion below
                session.rollback()
                result = ("error", repr(exc))
            finally:
                session.close()
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=withdraw, args=(ref,)) for ref in ("JOB-A", "JOB-B")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert sorted(kind for kind, _ in outcomes) == ["insufficient", "ok"], outcomes
        assert [value for kind, value in outcomes if kind == "insufficient"] == [3]

        check = SessionFactory()
        try:
            balance = ledger_services.get_balance(check, location_id=warehouse_id, item_id="ITEM-1")
            assert balance == 3
            assert ledger_services.compute_ledger_quantity(
                check, location_id=warehouse_id, item_id="ITEM-1"
            ) == balance
            assert check.query(ledger_models.Movement).count() == 2
        finally:
            check.close()
    finally:
        engine.dispose()
