from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from fitsync.errors import ValidationFailure

COMPLETED = "completed"


def calculate_progress(current: float, target: float) -> int:
    """Return progress towards ``target`` as a whole percentage capped at 100."""

    if not target:
        return 0
    return min(round(current / target * 100), 100)


def validate_progress(goal: Mapping[str, Any], new_value: float) -> None:
    """Reject negative values and values lower than the recorded progress."""

    if isinstance(new_value, bool) or not isinstance(new_value, (int, float)):
        raise ValidationFailure("Progress value must be a number", field="current_value")
    if new_value < 0:
        raise ValidationFailure(
            "Progress value cannot be negative", field="current_value"
        )
    current = goal.get("current_value") or 0
    if new_value < current:
        raise ValidationFailure(
            f"Progress value {new_value} is lower than current value {current}",
            field="current_value",
        )


def apply_progress(
    goal: Mapping[str, Any], new_value: float, now: datetime
) -> dict[str, Any]:
    """Return the fields a progress update writes onto ``goal``.

    Reaching 100% moves the goal to ``completed``. ``completed_at`` is stamped
    only on that transition and is never overwritten afterwards; below 100%
    the status is left alone.
    """

    percentage = calculate_progress(new_value, goal.get("target_value") or 0)
    status = goal.get("status", "active")
    completed_at = goal.get("completed_at")
    if percentage >= 100 and status != COMPLETED:
        status = COMPLETED
        if completed_at is None:
            completed_at = now
    return {
        "current_value": new_value,
        "progress_percentage": percentage,
        "status": status,
        "completed_at": completed_at,
        "last_updated": now,
        "updated_at": now,
    }


def is_completed(goal: Mapping[str, Any]) -> bool:
    return goal.get("status") == COMPLETED or (goal.get("progress_percentage") or 0) >= 100


def is_overdue(goal: Mapping[str, Any], now: datetime) -> bool:
    target_date = goal.get("target_date")
    if target_date is None:
        return False
    return now > target_date and not is_completed(goal)


__all__ = [
    "apply_progress",
    "calculate_progress",
    "is_completed",
    "is_overdue",
    "validate_progress",
]
