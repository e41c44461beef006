# priority/engine/stats.py

import datetime
from collections import Counter
from typing import Any, Dict, List, Optional

from django.db.models import Avg, Count, F, Q
from django.utils import timezone

from priority.models import OptimizationHistory, OptimizationRule

INSIGHTS_WINDOW_DAYS = 30
LOW_ACCEPTANCE_RATE = 0.6


def _rule_names(history_rows) -> Counter:
    usage: Counter = Counter()
    for applied_rules in history_rows:
        for rule in applied_rules or []:
            name = rule if isinstance(rule, str) else rule.get("rule_name")
            if name:
                usage[name] += 1
    return usage


def most_effective_rule(user, usage: Counter) -> Optional[str]:
    """Best success rate among rules with feedback, else the most used rule."""
    rated = (
        OptimizationRule.objects.filter(user=user, times_applied__gt=0, success_rate__isnull=False)
        .order_by("-success_rate", "-times_applied", "id")
        .first()
    )
    if rated is not None:
        return rated.rule_name
    if usage:
        return usage.most_common(1)[0][0]
    return None


def compute_stats(user, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    now = now or timezone.now()
    history = OptimizationHistory.objects.filter(user=user)

    totals = history.aggregate(
        total=Count("id"),
        accepted=Count("id", filter=Q(user_accepted=True)),
        average_confidence=Avg("confidence_score"),
        average_improvement=Avg(
            F("priority_score") - F("previous_score"),
            filter=Q(previous_score__isnull=False),
        ),
    )
    total = totals["total"] or 0
    accepted = totals["accepted"] or 0

    start_of_day = timezone.localtime(now).replace(hour=0, minute=0, second=0, microsecond=0)
    last = history.order_by("-created_at", "-id").values_list("created_at", flat=True).first()
    usage = _rule_names(history.values_list("applied_rules", flat=True))

    return {
        "total_optimizations": total,
        "accepted_optimizations": accepted,
        "acceptance_rate": round(accepted / total, 4) if total else 0.0,
        "average_confidence": round(totals["average_confidence"] or 0.0, 4),
        "most_effective_rule": most_effective_rule(user, usage),
        "last_optimization_run": last,
        "tasks_optimized_today": history.filter(created_at__gte=start_of_day)
        .values("task_id").distinct().count(),
        "average_score_improvement": round(totals["average_improvement"] or 0.0, 4),
    }


def _top(counter: Counter, n: int = 3) -> List[Any]:
    return [key for key, _count in counter.most_common(n)]


def compute_insights(user, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    """Patterns over the last INSIGHTS_WINDOW_DAYS of history."""
    now = now or timezone.now()
    rows = list(
        OptimizationHistory.objects.filter(
            user=user, created_at__gte=now - datetime.timedelta(days=INSIGHTS_WINDOW_DAYS)
        ).values("created_at", "old_priority", "new_priority", "user_accepted", "applied_rules")
    )
    if not rows:
        return {
            "peak_optimization_hours": [],
            "most_optimized_priorities": [],
            "rule_effectiveness": {},
            "user_acceptance_patterns": {},
            "improvement_suggestions": ["Start using priority optimization to see insights"],
        }

    hours = Counter(timezone.localtime(row["created_at"]).hour for row in rows)
    peak_hours = [f"{hour:02d}:00" for hour in _top(hours)]
    most_optimized = _top(Counter(row["old_priority"] for row in rows))

    rule_totals: Dict[str, Dict[str, int]] = {}
    acceptance: Dict[str, Dict[str, int]] = {}
    for row in rows:
        accepted = row["user_accepted"] is True
        for name in _rule_names([row["applied_rules"]]):
            stats = rule_totals.setdefault(name, {"total": 0, "accepted": 0})
            stats["total"] += 1
            stats["accepted"] += int(accepted)
        by_priority = acceptance.setdefault(row["new_priority"], {"total": 0, "accepted": 0})
        by_priority["total"] += 1
        by_priority["accepted"] += int(accepted)

    rule_effectiveness = {
        name: round(stats["accepted"] / stats["total"], 4) if stats["total"] else 0.0
        for name, stats in rule_totals.items()
    }

    suggestions = []
    acceptance_rate = sum(1 for row in rows if row["user_accepted"] is True) / len(rows)
    if acceptance_rate < LOW_ACCEPTANCE_RATE:
        suggestions.append("Consider adjusting optimization rules to better match your preferences")
    if peak_hours:
        suggestions.append(
            f"Optimization works best during {', '.join(peak_hours)} - consider scheduling during these hours"
        )
    if most_optimized:
        suggestions.append(f"Your {most_optimized[0]} priority tasks are optimized most often")

    return {
        "peak_optimization_hours": peak_hours,
        "most_optimized_priorities": most_optimized,
        "rule_effectiveness": rule_effectiveness,
        "user_acceptance_patterns": acceptance,
        "improvement_suggestions": suggestions,
    }
