"""Balance reconciliation runner.

Intended for cron (e.g. nightly). Replays the ledger for every
(location, item) pair and repairs drifted balance rows; safe to re-run.
SIGINT/SIGTERM stop the run cleanly after the current batch.
RECONCILE_DRY_RUN=true reports drift without writing.
"""

from __future__ import annotations

from dataclasses import asdict
import os
import signal

from stockdb.database import WriteSessionLocal
from stockdb.apps.reconciliation import services as reconciliation_services

BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", str(reconciliation_services.DEFAULT_BATCH_SIZE)))
DRY_RUN = os.getenv("RECONCILE_DRY_RUN", "false").strip().lower() in {"1", "true", "yes"}


def run(location_id: int | None = None, dry_run: bool | None = None) -> dict:
    stop_requested = {"value": False}

    def _request_stop(signum, frame) -> None:
        stop_requested["value"] = True

    previous_handlers = {
        sig: signal.signal(sig, _request_stop) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    db = WriteSessionLocal()
    try:
        summary = reconciliation_services.reconcile_all(
            db,
            location_id=location_id,
            batch_size=BATCH_SIZE,
            should_stop=lambda: stop_requested["value"],
            dry_run=DRY_RUN if dry_run is None else dry_run,
        )
        return asdict(summary)
    finally:
        db.close()
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)


if __name__ == "__main__":
    result = run()
    print(
        "Balance reconciliation completed:",
        {key: result[key] for key in ("checked", "corrected", "stopped", "dry_run")},
    )
    for entry in result["drift_report"]:
        print("  drift:", entry)
    for error in result["errors"]:
        print("  error:", error)
