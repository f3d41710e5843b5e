from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from stockdb.apps.audit import services as audit_services
from stockdb.errors import StockError
from stockdb.schemas import Actor

from .registry import WORKFLOWS


class TransitionError(StockError):
    status_code = 409

    def __init__(self, code: str, detail: List[Dict[str, str]]) -> None:
        message = "; ".join(item.get("reason", "") for item in detail) or code
        super().__init__(message, code=code, detail=detail)


def apply_transition(
    db: Session,
    *,
    actor: Optional[Actor],
    entity_type: str,
    entity_id: str,
    from_state: str,
    to_state: str,
    before_obj: Any,
    after_obj: Any,
    correlation_id: Optional[str] = None,
    critical: bool = True,
) -> None:
    """
    Validate a status change against the registry and audit it.

    The caller mutates the row itself; this only decides whether the move is
    legal (transition exists, guards pass) and records it.
    """
    workflow = WORKFLOWS.get(entity_type)
    if not workflow:
        raise TransitionError(
            code="invalid_transition",
            detail=[{"field": "entity_type", "reason": f"No workflow registered for {entity_type}"}],
        )

    transitions = workflow.get("transitions", {})
    allowed = transitions.get(from_state, {})
    guards = allowed.get(to_state)

    if guards is None:
        raise TransitionError(
            code="invalid_transition",
            detail=[{"field": "status", "reason": f"Cannot transition from {from_state} to {to_state}"}],
        )

    failures: List[Dict[str, str]] = []
    for guard in guards:
        failures.extend(
            guard(
                db,
                before_obj=before_obj,
                after_obj=after_obj,
                from_state=from_state,
                to_state=to_state,
            )
        )

    if failures:
        raise TransitionError(code="missing_requirements", detail=failures)

    before_payload: Dict[str, Any] = {"status": from_state}
    after_payload: Dict[str, Any] = {"status": to_state}
    if isinstance(before_obj, dict):
        before_payload.update(before_obj)
    if isinstance(after_obj, dict):
        after_payload.update(after_obj)

    audit_services.log_event(
        db,
        actor=actor,
        entity_type=entity_type,
        entity_id=entity_id,
        action="transition",
        before=before_payload,
        after=after_payload,
        correlation_id=correlation_id,
        metadata={"workflow": entity_type},
        critical=critical,
    )
