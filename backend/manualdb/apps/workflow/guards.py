from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.orm import Session

GuardResult = List[Dict[str, str]]

# Failures on this field mean "who" is wrong, not "what" is missing.
ACTOR_FIELD = "actor"


def _get_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def guard_owner_or_elevated(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    if _get_value(after_obj, "actor_elevated"):
        return []
    actor_id = _get_value(after_obj, "actor_id")
    owner_id = _get_value(before_obj, "created_by")
    if actor_id and owner_id and actor_id == owner_id:
        return []
    return [{"field": ACTOR_FIELD, "reason": "only the manual owner or a sysadmin may do this"}]


def guard_elevated(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    if _get_value(after_obj, "actor_elevated"):
        return []
    return [{"field": ACTOR_FIELD, "reason": "sysadmin privilege required"}]


def guard_effective_date(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    if not _get_value(after_obj, "effective_date"):
        return [{"field": "effective_date", "reason": "effective date required"}]
    return []


def guard_rejection_reason(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    reason = _get_value(after_obj, "rejection_reason")
    if not reason or not str(reason).strip():
        return [{"field": "rejection_reason", "reason": "rejection reason required"}]
    return []
