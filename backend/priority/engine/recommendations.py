# priority/engine/recommendations.py

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .scorer import ScoreResult
from .urgency import hours_until


@dataclass(frozen=True)
class PriorityRecommendation:
    task_id: int
    task_title: str
    current_priority: str
    recommended_priority: str
    priority_score: float
    confidence_score: float
    reasoning: str
    score_breakdown: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_change(self) -> bool:
        return self.recommended_priority != self.current_priority

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "current_priority": self.current_priority,
            "recommended_priority": self.recommended_priority,
            "priority_score": self.priority_score,
            "confidence_score": self.confidence_score,
            "reasoning": self.reasoning,
            "score_breakdown": self.score_breakdown,
        }


def _deadline_note(result: ScoreResult, due_date) -> Optional[str]:
    if due_date is None:
        return "no due date"
    hours = hours_until(due_date, result.computed_at)
    if hours <= 0:
        return f"overdue by {abs(hours):.1f}h"
    if hours < 48:
        return f"due in {hours:.1f}h"
    return f"due in {hours / 24.0:.0f} days"


def make_reasoning(result: ScoreResult, task=None) -> str:
    """
    Human-readable explanation naming the dominant rule.

    `task` is the snapshot the result was computed from; without it the
    deadline and dependency notes are left out.
    """
    if not result.applies:
        return "No active rule matched this task; priority left unchanged."

    dominant = result.dominant_rule
    if result.is_change:
        head = f"Recommend {result.calculated_priority} (currently {result.current_priority})"
    else:
        head = f"Keep {result.current_priority}"
    parts: List[str] = [
        f"{head}: score {result.priority_score:.2f}, confidence {result.confidence_level:.2f}.",
        f"Dominant: {dominant.rule_name} ({dominant.rule_type}, weight {dominant.weight:.2f}, value {dominant.value:.2f}).",
    ]

    notes: List[str] = []
    if task is not None:
        deadline = _deadline_note(result, task.due_date)
        if deadline:
            notes.append(deadline)
        blocked = len(task.open_blocked)
        if blocked:
            notes.append(f"blocks {blocked} open task{'s' if blocked != 1 else ''}")
    if len(result.applied_rules) > 1:
        notes.append(f"{len(result.applied_rules)} rules fired")
    if notes:
        parts.append("; ".join(notes).capitalize() + ".")
    return " ".join(parts)


def build_recommendation(result: ScoreResult, task=None) -> PriorityRecommendation:
    return PriorityRecommendation(
        task_id=result.task_id,
        task_title=result.task_title,
        current_priority=result.current_priority,
        recommended_priority=result.calculated_priority,
        priority_score=result.priority_score,
        confidence_score=result.confidence_level,
        reasoning=make_reasoning(result, task),
        score_breakdown=result.breakdown(),
    )
