from typing import Optional
import datetime

from django.utils import timezone

# Maximum horizon for urgency scaling (tasks 30 days out have urgency 0)
MAX_LOOKAHEAD_DAYS = 30

# Undated tasks are never "urgent" but should not be invisible either
UNDATED_BASELINE = 0.1


def hours_until(due_date: datetime.datetime, now: datetime.datetime) -> float:
    return (due_date - now).total_seconds() / 3600.0


def compute_urgency(
    due_date: Optional[datetime.datetime],
    now: Optional[datetime.datetime] = None,
    is_completed: bool = False
) -> float:
    """
    Calculates a normalized urgency score between 0.0 and 1.0.

    due_date: aware datetime or None
    is_completed: completed tasks carry no urgency at all
    """
    if is_completed:
        return 0.0

    if due_date is None:
        return UNDATED_BASELINE

    if now is None:
        now = timezone.now()

    hours = hours_until(due_date, now)
    if hours <= 0:
        # Due now or past -> maximum urgency
        return 1.0

    # Scale linearly: due now -> 1.0, MAX_LOOKAHEAD_DAYS or beyond -> 0.0
    horizon_hours = MAX_LOOKAHEAD_DAYS * 24.0
    urgency = max(0.0, min(1.0, 1.0 - (hours / horizon_hours)))
    return round(urgency, 4)
