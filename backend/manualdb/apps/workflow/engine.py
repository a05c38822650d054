from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from manualdb.apps.audit import services as audit_services

from .guards import ACTOR_FIELD
from .registry import WORKFLOWS


@dataclass
class TransitionError(Exception):
    code: str
    detail: List[Dict[str, str]]


def check_transition(
    db: Session,
    *,
    entity_type: str,
    from_state: str,
    to_state: str,
    before_obj: Any,
    after_obj: Any,
) -> None:
    """Raise TransitionError unless the registry allows from_state -> to_state and every guard passes."""
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

    if any(item["field"] == ACTOR_FIELD for item in failures):
        raise TransitionError(
            code="forbidden",
            detail=[item for item in failures if item["field"] == ACTOR_FIELD],
        )
    if failures:
        raise TransitionError(code="missing_requirements", detail=failures)


def apply_transition(
    db: Session,
    *,
    actor_user_id: Optional[str],
    entity_type: str,
    entity_id: str,
    from_state: str,
    to_state: str,
    before_obj: Any,
    after_obj: Any,
    manual_id: Optional[str] = None,
    actor_email: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> str:
    """
    Validate a transition and record it in the audit log.

    The audit write is part of the caller's transaction; failures propagate.
    Returns the audit entry id.
    """
    check_transition(
        db,
        entity_type=entity_type,
        from_state=from_state,
        to_state=to_state,
        before_obj=before_obj,
        after_obj=after_obj,
    )

    payload: Dict[str, Any] = {"from_status": from_state, "to_status": to_state}
    payload.update(metadata or {})

    return audit_services.record(
        db,
        actor_id=actor_user_id,
        actor_email=actor_email,
        action="status_change",
        entity_type=entity_type,
        entity_id=entity_id,
        manual_id=manual_id,
        metadata=payload,
    )
