from __future__ import annotations

from .guards import (
    guard_effective_date,
    guard_elevated,
    guard_owner_or_elevated,
    guard_rejection_reason,
)

WORKFLOWS = {
    "manual": {
        "transitions": {
            "draft": {
                "in_review": [guard_owner_or_elevated],
            },
            "rejected": {
                "in_review": [guard_owner_or_elevated],
            },
            "in_review": {
                "approved": [guard_elevated, guard_effective_date],
                "rejected": [guard_elevated, guard_rejection_reason],
            },
            "approved": {
                "draft": [guard_owner_or_elevated],
            },
        }
    },
}
