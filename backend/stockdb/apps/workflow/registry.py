from __future__ import annotations

from .guards import guard_allocation_fully_consumed, guard_receipt_cleared

WORKFLOWS = {
    "stock_allocation": {
        "transitions": {
            "reserved": {
                "consumed": [guard_allocation_fully_consumed],
                "cancelled": [],
            },
            "consumed": {},
            "cancelled": {},
        }
    },
    "stock_receipt": {
        "transitions": {
            "open": {"cleared": [guard_receipt_cleared]},
            "cleared": {},
        }
    },
}
