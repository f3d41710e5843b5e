"""Legacy location / vehicle stock backfill runner.

Usage:
    python -m stockdb.jobs.location_backfill locations legacy_locations.json
    python -m stockdb.jobs.location_backfill vehicle-stock legacy_vehicle_stock.json
    python -m stockdb.jobs.location_backfill locations legacy_locations.json --dry-run

The JSON file holds a list of legacy records. Re-running with the same file
creates nothing new. --dry-run reports the counts and writes nothing.
"""

from __future__ import annotations

from dataclasses import asdict
import json
from pathlib import Path
import sys

from stockdb.database import WriteSessionLocal
from stockdb.apps.reconciliation import services as reconciliation_services
from stockdb.schemas import SYSTEM_ACTOR

BACKFILLS = {
    "locations": reconciliation_services.backfill_locations,
    "vehicle-stock": reconciliation_services.backfill_vehicle_stock,
}


def load_records(path: str) -> list:
    records = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(records, list):
        raise ValueError(f"{path} must contain a JSON list of records")
    return records


def run(kind: str, path: str, dry_run: bool = False) -> dict:
    if kind not in BACKFILLS:
        raise ValueError(f"Unknown backfill {kind!r}; expected one of {sorted(BACKFILLS)}")
    records = load_records(path)
    db = WriteSessionLocal()
    try:
        summary = BACKFILLS[kind](db, records=records, actor=SYSTEM_ACTOR, dry_run=dry_run)
        db.commit()
        return asdict(summary)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    args = [arg for arg in sys.argv[1:] if arg != "--dry-run"]
    if len(args) != 2:
        print(__doc__)
        sys.exit(2)
    result = run(args[0], args[1], dry_run="--dry-run" in sys.argv[1:])
    print("Backfill completed:", result)
