# priority/engine/__init__.py
"""
Priority Engine Package
=======================

This package contains the scoring, scheduling and feedback logic of the
Smart Priority Optimization Engine.

Modules:
--------
- rule_types: Typed condition/config variants per rule_type
- urgency: Deterministic urgency score computation
- scorer: Pure weighted-rule scorer (sub-scores, composite, confidence)
- recommendations: Human-readable recommendations from scores
- registry: Owner-scoped rule CRUD and active-rule selection
- schedules: Schedule state machine and job creation
- leases: Per-schedule mutual exclusion via the Django cache
- processor: Bounded optimization runs with partial-failure tolerance
- feedback: Accept/reject/revert and per-rule success statistics
- aggregator: Pattern/context signals for pattern and context rules
- activity: Fire-and-forget "priority changed" events
- stats: Aggregate statistics and insights over the history
- preferences: Aggressiveness presets and importance weights
- celery_tasks: Asynchronous job execution via Celery

Architecture:
-------------
Celery beat calls dispatch_due_schedules, which asks the ScheduleManager for
due schedules and enqueues run_optimization_job per schedule. The worker
hands the job to the JobProcessor, which scores candidates with the
PriorityScorer and applies at most `max_changes` of them. Every analyzed
task leaves a current TaskPriorityScore row; every applied change also
leaves an OptimizationHistory row that the FeedbackTracker later annotates.

Calculation Methods:
--------------------
- "weighted_rules": at least one rule fired
- "no_matching_rules": nothing fired; recorded, never applied

Usage:
------
    from priority.engine import PriorityScorer
    from tasks.store import TaskStore

    scorer = PriorityScorer()
    for task in TaskStore().get_tasks(user):
        result = scorer.score(task, rules)
"""

from .activity import ActivityLog, priority_changed
from .aggregator import SignalAggregator
from .feedback import FeedbackTracker
from .processor import JobProcessor, JobResult, OptimizationResult, RunParameters
from .recommendations import PriorityRecommendation, build_recommendation
from .registry import RuleRegistry
from .schedules import ScheduleManager, compute_next_run
from .scorer import (
    CALCULATION_NO_RULES,
    CALCULATION_WEIGHTED,
    PriorityScorer,
    ScoreResult,
    TaskSignals,
    bucket_priority,
)
from .urgency import compute_urgency

__all__ = [
    # Core classes
    "PriorityScorer",
    "RuleRegistry",
    "ScheduleManager",
    "JobProcessor",
    "FeedbackTracker",
    "SignalAggregator",
    "ActivityLog",
    # Results
    "ScoreResult",
    "TaskSignals",
    "PriorityRecommendation",
    "OptimizationResult",
    "JobResult",
    "RunParameters",
    # Functions
    "bucket_priority",
    "build_recommendation",
    "compute_next_run",
    "compute_urgency",
    # Signals
    "priority_changed",
    # Constants
    "CALCULATION_NO_RULES",
    "CALCULATION_WEIGHTED",
]
