# priority/services.py

import logging
from typing import Any, Dict, List, Optional, Tuple

from django.utils import timezone

from tasks.store import TaskFilter, TaskStore

from .engine.aggregator import SignalAggregator
from .engine.preferences import importance_weights, run_defaults
from .engine.processor import JobProcessor, JobResult
from .engine.recommendations import PriorityRecommendation, build_recommendation
from .engine.registry import RuleRegistry
from .engine.schedules import JOB_ON_DEMAND, ScheduleManager, build_job_scope
from .engine.scorer import PriorityScorer, TaskSignals, compile_rules
from .engine.stats import compute_insights, compute_stats
from .exceptions import FatalJobError

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_RECOMMENDATION_LIMIT = 10


class PriorityOptimizationService:
    """
    Request-facing entry points of the engine for one owner.

    Responsibility:
    - Read-only recommendations (nothing is persisted).
    - Synchronous on-demand optimization runs.
    - Stats and insights over the owner's history.

    Per-task failures come back in an `errors` list next to the partial
    results; only a failed candidate enumeration raises FatalJobError.
    """

    def __init__(self, user, task_store: Optional[TaskStore] = None, now=None):
        self.user = user
        self.task_store = task_store or TaskStore()
        self.now = now

    def _candidates(self, task_filter: TaskFilter, now):
        try:
            return self.task_store.get_tasks(self.user, task_filter, now)
        except Exception as e:
            raise FatalJobError(f"Candidate enumeration failed: {str(e)}") from e

    def get_recommendations(
        self,
        task_ids: Optional[List[int]] = None,
        limit: int = DEFAULT_RECOMMENDATION_LIMIT,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[PriorityRecommendation], List[Dict[str, Any]]]:
        now = self.now or timezone.now()
        task_filter = TaskFilter(task_ids=tuple(task_ids or ()))
        candidates = self._candidates(task_filter, now)

        definitions, _malformed = compile_rules(RuleRegistry(self.user).active_rules_for(task_filter))
        scorer = PriorityScorer(now=now, **importance_weights(self.user))
        aggregator = SignalAggregator(task_store=self.task_store)

        recommendations: List[Tuple[Any, PriorityRecommendation]] = []
        errors: List[Dict[str, Any]] = []
        for task in candidates:
            try:
                try:
                    signals = aggregator.signals_for(task, context, now=now)
                except Exception as e:
                    logger.warning(f"Signals unavailable for task {task.id}: {str(e)}")
                    signals = TaskSignals(context=dict(context or {}))
                result = scorer.score(task, definitions, signals)
            except Exception as e:
                logger.exception(f"Recommendation failed for task {task.id}: {str(e)}")
                errors.append({"task_id": task.id, "error": str(e)})
                continue
            if result.applies:
                recommendations.append((result, build_recommendation(result, task)))

        # Real changes first, then the most confident, highest-impact ones
        recommendations.sort(key=lambda item: (not item[0].is_change, -item[0].impact, item[0].task_id))
        return [rec for _result, rec in recommendations[: max(0, limit)]], errors

    def optimize(
        self,
        task_ids: Optional[List[int]] = None,
        max_changes: Optional[int] = None,
        min_confidence: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> JobResult:
        """Create an on-demand job and run it in-process."""
        defaults = run_defaults(self.user)
        scope = build_job_scope(
            TaskFilter(task_ids=tuple(task_ids or ())),
            defaults.max_changes if max_changes is None else max_changes,
            defaults.min_confidence if min_confidence is None else min_confidence,
            context=context,
        )
        manager = ScheduleManager(now=self.now)
        job = manager.create_job(self.user, scope, JOB_ON_DEMAND)
        logger.info(f"On-demand optimization job {job.pk} for user {self.user.pk}")

        processor = JobProcessor(task_store=self.task_store, schedule_manager=manager, now=self.now)
        return processor.run(job)

    def stats(self) -> Dict[str, Any]:
        return compute_stats(self.user, self.now)

    def insights(self) -> Dict[str, Any]:
        return compute_insights(self.user, self.now)
