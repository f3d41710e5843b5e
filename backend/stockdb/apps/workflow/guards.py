from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.orm import Session

GuardResult = List[Dict[str, str]]


def _get_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def guard_allocation_fully_consumed(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    qty_allocated = _get_value(after_obj, "qty_allocated")
    consumed = _get_value(after_obj, "consumed_quantity")

    if qty_allocated is None or consumed is None:
        return [{"field": "consumed_quantity", "reason": "consumption totals required"}]
    if consumed < qty_allocated:
        return [{"field": "consumed_quantity", "reason": "allocation not fully consumed"}]
    return []


def guard_receipt_cleared(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    cleared_at = _get_value(after_obj, "cleared_at")
    cleared_by = _get_value(after_obj, "cleared_by_id")

    missing = []
    if not cleared_at:
        missing.append({"field": "cleared_at", "reason": "clearing timestamp required"})
    if not cleared_by:
        missing.append({"field": "cleared_by_id", "reason": "clearing actor required"})
    return missing
