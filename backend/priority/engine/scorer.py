# priority/engine/scorer.py
"""
Priority Scorer
===============

Pure scoring: (task snapshot, rules, signals) -> ScoreResult.

The scorer does no I/O and holds no mutable state beyond its constructor
arguments, so one instance can be shared by every worker thread of a job.
`now` is fixed at construction time to keep a whole run deterministic.

Sub-scores (all in [0, 1]):
---------------------------
- urgency:    time to due date, 1.0 once overdue, baseline for undated tasks
- importance: task importance (1-5) blended with category/project weights
- context:    mean of the caller-supplied numeric context signals
- pattern:    mean of the aggregated historical signals
- dependency: number and urgency of open tasks this one blocks

Composite:
----------
Every rule that is active, has weight > 0, matches all of its trigger
clauses and none of its exclusion clauses "fires" and yields a value and a
confidence. The composite is the weight-normalized mean of the fired values:

    priority_score = sum(w_i * v_i) / sum(w_i)

confidence_level is the mean fired confidence, reduced by
SPARSE_EVIDENCE_PENALTY for every rule short of MIN_FIRED_RULES.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from django.utils import timezone

from priority.exceptions import RuleEvaluationError
from tasks.models import PRIORITY_HIGH, PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_URGENT

from .rule_types import (
    RULE_CONTEXT,
    RULE_DEADLINE,
    RULE_DEPENDENCY,
    RULE_PATTERN,
    ClauseContext,
    RuleDefinition,
)
from .urgency import compute_urgency

logger = logging.getLogger(__name__)

# Bucketing thresholds, checked top-down
PRIORITY_THRESHOLDS = (
    (0.75, PRIORITY_URGENT),
    (0.5, PRIORITY_HIGH),
    (0.25, PRIORITY_MEDIUM),
)

MIN_FIRED_RULES = 2
SPARSE_EVIDENCE_PENALTY = 0.15

# Blocking this many open tasks saturates the dependency sub-score
DEPENDENCY_SATURATION = 3

# Category/project weight used when the owner has not configured one
DEFAULT_DIMENSION_WEIGHT = 0.5

# Pattern aggregates are fully trusted from this many samples on
PATTERN_FULL_EVIDENCE = 10
SAMPLE_SIZE_KEY = "sample_size"

CALCULATION_WEIGHTED = "weighted_rules"
CALCULATION_NO_RULES = "no_matching_rules"


def bucket_priority(score: float) -> str:
    for threshold, priority in PRIORITY_THRESHOLDS:
        if score >= threshold:
            return priority
    return PRIORITY_LOW


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def numeric_signals(signals: Mapping[str, Any], exclude: Tuple[str, ...] = ()) -> Dict[str, float]:
    return {
        key: _clamp(value)
        for key, value in signals.items()
        if key not in exclude and _is_number(value)
    }


@dataclass(frozen=True)
class TaskSignals:
    """Opaque signal maps for one task."""

    pattern: Mapping[str, Any] = field(default_factory=dict)
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AppliedRule:
    """One rule that fired for a task, with the weight it had at the time."""

    rule_id: Optional[int]
    rule_name: str
    rule_type: str
    weight: float
    value: float
    confidence: float
    contribution: float = 0.0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "rule_type": self.rule_type,
            "weight": self.weight,
            "value": self.value,
            "confidence": self.confidence,
            "contribution": self.contribution,
        }


@dataclass(frozen=True)
class ScoreResult:
    task_id: int
    task_title: str
    current_priority: str
    calculated_priority: str
    priority_score: float
    confidence_level: float
    urgency_score: float
    importance_score: float
    context_score: float
    pattern_score: float
    dependency_score: float
    applied_rules: Tuple[AppliedRule, ...]
    skipped_rules: Tuple[Dict[str, Any], ...]
    calculation_method: str
    computed_at: datetime

    @property
    def applies(self) -> bool:
        """A score with no fired rules is recorded but never applied."""
        return bool(self.applied_rules)

    @property
    def is_change(self) -> bool:
        return self.applies and self.calculated_priority != self.current_priority

    @property
    def impact(self) -> float:
        return self.priority_score * self.confidence_level

    @property
    def dominant_rule(self) -> Optional[AppliedRule]:
        if not self.applied_rules:
            return None
        return max(self.applied_rules, key=lambda r: (r.contribution, r.weight))

    def sub_scores(self) -> Dict[str, float]:
        return {
            "urgency": self.urgency_score,
            "importance": self.importance_score,
            "context": self.context_score,
            "pattern": self.pattern_score,
            "dependency": self.dependency_score,
        }

    def breakdown(self) -> Dict[str, Any]:
        return {
            **self.sub_scores(),
            "rules": [rule.snapshot() for rule in self.applied_rules],
        }

    def factors(self) -> Dict[str, Any]:
        return {
            "sub_scores": self.sub_scores(),
            "rules_fired": len(self.applied_rules),
            "skipped_rules": list(self.skipped_rules),
        }


def compile_rules(rules: Iterable[Any]) -> Tuple[List[RuleDefinition], List[Dict[str, Any]]]:
    """
    Parse rule rows once. Malformed rules are logged and returned separately
    so a job logs each bad rule once rather than once per task.
    """
    definitions: List[RuleDefinition] = []
    skipped: List[Dict[str, Any]] = []
    for rule in rules:
        if isinstance(rule, RuleDefinition):
            definitions.append(rule)
            continue
        try:
            definitions.append(RuleDefinition.from_model(rule))
        except RuleEvaluationError as e:
            logger.warning(f"Skipping malformed rule: {str(e)}")
            skipped.append({"rule_id": e.rule_id, "error": str(e)})
    return definitions, skipped


class PriorityScorer:
    """
    Deterministic weighted-rule scorer.

    Args:
        now: reference time for urgency; fixed for the scorer's lifetime.
        category_weights / project_weights: owner preferences in [0, 1].
    """

    def __init__(
        self,
        now: Optional[datetime] = None,
        category_weights: Optional[Dict[str, float]] = None,
        project_weights: Optional[Dict[str, float]] = None,
    ):
        self.now = now or timezone.now()
        self.category_weights = dict(category_weights or {})
        self.project_weights = dict(project_weights or {})

    # --- SUB-SCORES ---

    def urgency(self, task) -> float:
        return compute_urgency(task.due_date, now=self.now, is_completed=task.is_completed)

    def importance(self, task) -> float:
        explicit = _clamp((float(task.importance) - 1.0) / 4.0)
        category_weight = self.category_weights.get(task.category, DEFAULT_DIMENSION_WEIGHT)
        project_weight = self.project_weights.get(task.project, DEFAULT_DIMENSION_WEIGHT)
        total = explicit * 0.6 + _clamp(category_weight) * 0.2 + _clamp(project_weight) * 0.2
        return round(_clamp(total), 4)

    def dependency(self, task) -> float:
        pressure = 0.0
        for blocked in task.open_blocked:
            pressure += 0.5 + 0.5 * compute_urgency(blocked.due_date, now=self.now)
        return round(min(1.0, pressure / DEPENDENCY_SATURATION), 4)

    def context(self, signals: TaskSignals) -> float:
        return round(_mean(list(numeric_signals(signals.context).values())), 4)

    def pattern(self, signals: TaskSignals) -> float:
        values = numeric_signals(signals.pattern, exclude=(SAMPLE_SIZE_KEY,))
        return round(_mean(list(values.values())), 4)

    def sub_scores(self, task, signals: TaskSignals) -> Dict[str, float]:
        return {
            "urgency": self.urgency(task),
            "importance": self.importance(task),
            "context": self.context(signals),
            "pattern": self.pattern(signals),
            "dependency": self.dependency(task),
        }

    # --- RULE EVALUATION ---

    def _signals_for(self, rule_type: str, signals: TaskSignals) -> Mapping[str, Any]:
        if rule_type == RULE_PATTERN:
            return signals.pattern
        if rule_type == RULE_CONTEXT:
            return signals.context
        return {}

    def _signal_value(self, rule: RuleDefinition, signal_map: Mapping[str, Any], fallback: float) -> Tuple[float, bool]:
        """Returns (value, all configured keys present)."""
        keys = rule.config.signal_keys
        if not keys:
            return fallback, True
        values = [_clamp(signal_map[k]) for k in keys if _is_number(signal_map.get(k))]
        if not values:
            return fallback, False
        return _mean(values), len(values) == len(keys)

    def evaluate_rule(
        self,
        rule: RuleDefinition,
        task,
        signals: TaskSignals,
        sub: Dict[str, float],
    ) -> Optional[AppliedRule]:
        """
        Returns the fired rule, or None when the rule does not fire.

        Raises RuleEvaluationError for rules that cannot be evaluated.
        """
        if not rule.is_active or rule.weight <= 0:
            return None
        if not rule.is_known_type:
            raise RuleEvaluationError(f"Unsupported rule type {rule.rule_type!r}", rule_id=rule.rule_id)

        signal_map = self._signals_for(rule.rule_type, signals)
        ctx = ClauseContext(task=task, now=self.now, signals=signal_map)
        if rule.exclusions.matches_any(ctx):
            return None
        if not rule.triggers.matches_all(ctx):
            return None

        config = rule.config
        base = config.base_confidence

        if rule.rule_type == RULE_DEADLINE:
            blend = config.importance_blend
            # Importance only fills the headroom left above urgency
            value = sub["urgency"] + blend * sub["importance"] * (1.0 - sub["urgency"])
            confidence = base if task.due_date is not None else base * 0.5

        elif rule.rule_type == RULE_DEPENDENCY:
            value = sub["dependency"]
            confidence = base if task.open_blocked else base * 0.5

        elif rule.rule_type == RULE_PATTERN:
            value, _complete = self._signal_value(rule, signal_map, sub["pattern"])
            evidence = numeric_signals(signal_map, exclude=(SAMPLE_SIZE_KEY,))
            sample_size = signal_map.get(SAMPLE_SIZE_KEY)
            if not evidence:
                confidence = base * 0.3
            elif _is_number(sample_size):
                confidence = base * min(1.0, max(0.0, sample_size) / PATTERN_FULL_EVIDENCE)
            else:
                confidence = base * 0.5

        else:
            value, complete = self._signal_value(rule, signal_map, sub["context"])
            has_signals = bool(numeric_signals(signal_map))
            confidence = base if (complete and has_signals) else base * 0.3

        if getattr(config, "invert", False):
            value = 1.0 - value

        return AppliedRule(
            rule_id=rule.rule_id,
            rule_name=rule.rule_name,
            rule_type=rule.rule_type,
            weight=rule.weight,
            value=round(_clamp(value), 4),
            confidence=round(_clamp(confidence), 4),
        )

    # --- COMPOSITE ---

    def score(self, task, rules: Iterable[Any], signals: Optional[TaskSignals] = None) -> ScoreResult:
        """Score one task against the given rules."""
        signals = signals or TaskSignals()
        definitions, skipped = compile_rules(rules)
        sub = self.sub_scores(task, signals)

        fired: List[AppliedRule] = []
        for rule in definitions:
            try:
                applied = self.evaluate_rule(rule, task, signals, sub)
            except (RuleEvaluationError, TypeError, ValueError) as e:
                logger.warning(f"Rule {rule.rule_id} skipped for task {task.id}: {str(e)}")
                skipped.append({"rule_id": rule.rule_id, "error": str(e)})
                continue
            if applied is not None:
                fired.append(applied)

        if not fired:
            return ScoreResult(
                task_id=task.id,
                task_title=task.title,
                current_priority=task.priority,
                calculated_priority=task.priority,
                priority_score=0.0,
                confidence_level=0.0,
                urgency_score=sub["urgency"],
                importance_score=sub["importance"],
                context_score=sub["context"],
                pattern_score=sub["pattern"],
                dependency_score=sub["dependency"],
                applied_rules=(),
                skipped_rules=tuple(skipped),
                calculation_method=CALCULATION_NO_RULES,
                computed_at=self.now,
            )

        total_weight = sum(rule.weight for rule in fired)
        composite = sum(rule.weight * rule.value for rule in fired) / total_weight
        fired = [
            replace(rule, contribution=round(rule.weight * rule.value / total_weight, 4))
            for rule in fired
        ]

        confidence = _mean([rule.confidence for rule in fired])
        if len(fired) < MIN_FIRED_RULES:
            confidence *= 1.0 - SPARSE_EVIDENCE_PENALTY * (MIN_FIRED_RULES - len(fired))

        priority_score = round(_clamp(composite), 4)
        return ScoreResult(
            task_id=task.id,
            task_title=task.title,
            current_priority=task.priority,
            calculated_priority=bucket_priority(priority_score),
            priority_score=priority_score,
            confidence_level=round(_clamp(confidence), 4),
            urgency_score=sub["urgency"],
            importance_score=sub["importance"],
            context_score=sub["context"],
            pattern_score=sub["pattern"],
            dependency_score=sub["dependency"],
            applied_rules=tuple(fired),
            skipped_rules=tuple(skipped),
            calculation_method=CALCULATION_WEIGHTED,
            computed_at=self.now,
        )
