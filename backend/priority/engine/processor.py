# priority/engine/processor.py
"""
Job Processor
=============

Executes one OptimizationJob end to end.

Pipeline:
---------
1. Claim the job (pending -> running, schedule lease for schedule jobs).
2. Enumerate candidates through the Task Store. A failure here is the only
   fatal condition: the job is marked failed and FatalJobError propagates.
3. Score every candidate (pure, parallel over PRIORITY_SCORING_WORKERS
   threads) in a stable order: due_date ascending, undated last, then id.
   Cancellation and the wall-clock limit are checked before each task.
   Every analyzed task gets a new current score row, changed or not.
4. Stage a change when the task has fired rules, confidence reaches the
   threshold, the bucket differs from the current priority and the owner
   has not already reverted that exact change.
5. Apply the top `max_changes` staged changes by priority_score x
   confidence_level. Each apply is one transaction: retire the current
   score, insert the new score and the history row, write the priority.
   A PersistenceError is retried once after a backoff, then recorded as a
   per-task error.
6. Complete the job, or fail it with a "cancelled"/"timeout" detail when
   the cancellation flag or wall-clock limit stops it between tasks.
   Changes already applied are kept.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from priority.exceptions import FatalJobError, JobStopped, PersistenceError
from priority.models import (
    OptimizationHistory,
    OptimizationJob,
    OptimizationRule,
    TaskPriorityScore,
)
from tasks.store import TaskFilter, TaskMutationRejected, TaskSnapshot, TaskStore

from .activity import ActivityLog
from .aggregator import SignalAggregator
from .preferences import importance_weights, run_defaults
from .recommendations import make_reasoning
from .registry import RuleRegistry
from .schedules import ScheduleManager
from .scorer import PriorityScorer, ScoreResult, TaskSignals, compile_rules

logger = logging.getLogger(__name__)

MAX_ERROR_DETAILS = 50

# Share of the progress bar spent scoring; applying fills the rest
SCORING_PROGRESS_SHARE = 90

STOP_CANCELLED = "cancelled"
STOP_TIMEOUT = "timeout"

SKIP_NO_RULES = "no_matching_rules"
SKIP_LOW_CONFIDENCE = "below_confidence_threshold"
SKIP_NO_OP = "no_change"
SKIP_REVERTED = "previously_reverted"
SKIP_CAPPED = "over_change_cap"


@dataclass(frozen=True)
class RunParameters:
    task_filter: TaskFilter
    max_changes: int
    min_confidence: float
    context: Dict[str, Any] = field(default_factory=dict)
    optimization_type: str = "automatic"

    @classmethod
    def from_scope(cls, scope: Optional[Dict[str, Any]], user=None) -> "RunParameters":
        scope = scope or {}
        defaults = run_defaults(user)
        max_changes = scope.get("max_changes")
        min_confidence = scope.get("min_confidence")
        return cls(
            task_filter=TaskFilter.from_dict(scope.get("filter")),
            max_changes=int(defaults.max_changes if max_changes is None else max_changes),
            min_confidence=float(defaults.min_confidence if min_confidence is None else min_confidence),
            context=dict(scope.get("context") or {}),
            optimization_type=scope.get("optimization_type") or "automatic",
        )


@dataclass
class OptimizationResult:
    task_id: int
    task_title: str
    old_priority: str
    new_priority: str
    priority_score: float
    confidence_score: float
    reasoning: str
    history_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "old_priority": self.old_priority,
            "new_priority": self.new_priority,
            "priority_score": self.priority_score,
            "confidence_score": self.confidence_score,
            "reasoning": self.reasoning,
            "history_id": self.history_id,
        }


@dataclass
class JobResult:
    job_id: int
    status: str
    tasks_analyzed: int = 0
    priorities_changed: int = 0
    errors_count: int = 0
    results: List[OptimizationResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped: Dict[str, int] = field(default_factory=dict)
    stopped_reason: Optional[str] = None
    fatal_error: Optional[str] = None

    @classmethod
    def from_job(cls, job: OptimizationJob) -> "JobResult":
        return cls(
            job_id=job.pk,
            status=job.status,
            tasks_analyzed=job.tasks_analyzed,
            priorities_changed=job.priorities_changed,
            errors_count=job.errors_count,
            errors=list(job.error_details or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "tasks_analyzed": self.tasks_analyzed,
            "priorities_changed": self.priorities_changed,
            "errors_count": self.errors_count,
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
            "skipped": dict(self.skipped),
            "stopped_reason": self.stopped_reason,
            "fatal_error": self.fatal_error,
        }


def candidate_order(task: TaskSnapshot) -> Tuple[bool, float, int]:
    """due_date ascending, undated last, ties by id."""
    if task.due_date is None:
        return (True, 0.0, task.id)
    return (False, task.due_date.timestamp(), task.id)


class _RunState:
    """Mutable counters for one run; owned by the processor thread only."""

    def __init__(self, job: OptimizationJob, started: float):
        self.job = job
        self.started = started
        self.tasks_analyzed = 0
        self.priorities_changed = 0
        self.errors_count = 0
        self.error_details: List[Dict[str, Any]] = list(job.error_details or [])
        self.results: List[OptimizationResult] = []
        self.skipped: Dict[str, int] = {}
        self.had_schedule = job.schedule_id is not None

    def add_error(self, task_id: Optional[int], message: str, stage: str) -> None:
        self.errors_count += 1
        if len(self.error_details) < MAX_ERROR_DETAILS:
            self.error_details.append({"task_id": task_id, "stage": stage, "error": message})

    def skip(self, reason: str) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1


class JobProcessor:
    """
    Runs OptimizationJobs.

    Every collaborator is injectable; defaults are the ORM-backed ones.
    `timeout` is the wall-clock limit in seconds, `retry_backoff` the
    pause before the single persistence retry.
    """

    def __init__(
        self,
        task_store: Optional[TaskStore] = None,
        signal_aggregator: Optional[SignalAggregator] = None,
        activity_log: Optional[ActivityLog] = None,
        schedule_manager: Optional[ScheduleManager] = None,
        now=None,
        max_workers: Optional[int] = None,
        timeout: Optional[float] = None,
        retry_backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout_exceptions: Tuple[type, ...] = (),
    ):
        self.task_store = task_store or TaskStore()
        self.signal_aggregator = signal_aggregator or SignalAggregator(task_store=self.task_store)
        self.activity_log = activity_log or ActivityLog()
        self.now = now
        self.schedule_manager = schedule_manager or ScheduleManager(now=now)
        self.max_workers = max_workers or getattr(settings, "PRIORITY_SCORING_WORKERS", 4)
        self.timeout = timeout if timeout is not None else getattr(settings, "PRIORITY_JOB_TIMEOUT_SECONDS", 300)
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None
            else getattr(settings, "PRIORITY_PERSISTENCE_RETRY_BACKOFF", 0.5)
        )
        self.sleep = sleep
        # Worker-level time limits (e.g. Celery soft limits) end the run like the wall-clock limit does
        self.timeout_exceptions = tuple(timeout_exceptions)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, job: OptimizationJob) -> JobResult:
        if not self.schedule_manager.claim(job):
            job.refresh_from_db()
            logger.warning(f"Job {job.pk} not claimed (status={job.status}); nothing to do")
            return JobResult.from_job(job)

        job.refresh_from_db()
        state = _RunState(job, time.monotonic())
        logger.info(f"Job {job.pk} ({job.job_type}) started for user {job.user_id}")

        try:
            result = self._run_claimed(state)
        except FatalJobError as e:
            self._finish(state, "failed", detail={"reason": "fatal", "error": str(e)})
            logger.error(f"Job {job.pk} failed before scanning: {str(e)}")
            raise
        except JobStopped as e:
            self._finish(state, "failed", detail={"reason": e.reason})
            logger.warning(f"Job {job.pk} stopped ({e.reason}) after {state.priorities_changed} change(s)")
            result = self._result(state, "failed")
            result.stopped_reason = e.reason
        except self.timeout_exceptions:
            self._finish(state, "failed", detail={"reason": STOP_TIMEOUT})
            logger.warning(f"Job {job.pk} hit the worker time limit after {state.priorities_changed} change(s)")
            result = self._result(state, "failed")
            result.stopped_reason = STOP_TIMEOUT
        except Exception as e:
            self._finish(state, "failed", detail={"reason": "error", "error": str(e)})
            logger.exception(f"Job {job.pk} crashed: {str(e)}")
            raise
        finally:
            job.refresh_from_db()
            self.schedule_manager.release(job)

        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _run_claimed(self, state: _RunState) -> JobResult:
        job = state.job
        params = RunParameters.from_scope(job.scope, job.user)
        now = self.now or timezone.now()

        try:
            candidates = self.task_store.get_tasks(job.user_id, params.task_filter, now)
        except Exception as e:
            raise FatalJobError(f"Candidate enumeration failed: {str(e)}") from e

        candidates.sort(key=candidate_order)
        self._update_progress(state, 0, f"{len(candidates)} candidates")

        definitions, malformed = compile_rules(RuleRegistry(job.user).active_rules_for(params.task_filter))
        for entry in malformed:
            logger.warning(f"Job {job.pk}: rule {entry['rule_id']} skipped for every task")

        scorer = PriorityScorer(now=now, **importance_weights(job.user))
        reverted = self._reverted_changes(job, candidates)

        staged = self._score_all(state, params, scorer, definitions, candidates, reverted)

        staged.sort(key=lambda item: -item[1].impact)
        selected = staged[: max(0, params.max_changes)]
        for capped_snapshot, capped_result in staged[len(selected):]:
            state.skip(SKIP_CAPPED)
            self._record_unapplied(state, capped_snapshot, capped_result)

        for index, (snapshot, result) in enumerate(selected):
            self._check_stop(state)
            self._update_progress(
                state,
                SCORING_PROGRESS_SHARE + int((100 - SCORING_PROGRESS_SHARE) * index / max(1, len(selected))),
                snapshot.title,
            )
            self._apply_with_retry(state, params, snapshot, result)

        self._finish(state, "completed")
        logger.info(
            f"Job {job.pk} completed: analyzed={state.tasks_analyzed} "
            f"changed={state.priorities_changed} errors={state.errors_count}"
        )
        return self._result(state, "completed")

    def _score_all(
        self,
        state: _RunState,
        params: RunParameters,
        scorer: PriorityScorer,
        definitions,
        candidates: List[TaskSnapshot],
        reverted,
    ) -> List[Tuple[TaskSnapshot, ScoreResult]]:
        staged: List[Tuple[TaskSnapshot, ScoreResult]] = []
        total = len(candidates)
        chunk_size = max(1, self.max_workers * 4)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for offset in range(0, total, chunk_size):
                chunk = candidates[offset:offset + chunk_size]

                futures = []
                for snapshot in chunk:
                    self._check_stop(state)
                    # Signals may hit the database or cache; gather them on this thread.
                    try:
                        signals = self.signal_aggregator.signals_for(snapshot, params.context, now=scorer.now)
                    except Exception as e:
                        logger.warning(f"Signals unavailable for task {snapshot.id}: {str(e)}")
                        signals = TaskSignals(context=params.context)
                    futures.append((snapshot, executor.submit(scorer.score, snapshot, definitions, signals)))

                for snapshot, future in futures:
                    state.tasks_analyzed += 1
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.exception(f"Scoring failed for task {snapshot.id}: {str(e)}")
                        state.add_error(snapshot.id, str(e), "score")
                        continue
                    reason = self._skip_reason(result, params, reverted)
                    if reason:
                        state.skip(reason)
                        self._record_unapplied(state, snapshot, result)
                    else:
                        staged.append((snapshot, result))

                done = min(total, offset + len(chunk))
                self._update_progress(state, int(SCORING_PROGRESS_SHARE * done / max(1, total)), chunk[-1].title)
        return staged

    def _skip_reason(self, result: ScoreResult, params: RunParameters, reverted) -> Optional[str]:
        if not result.applies:
            return SKIP_NO_RULES
        if result.confidence_level < params.min_confidence:
            return SKIP_LOW_CONFIDENCE
        if not result.is_change:
            return SKIP_NO_OP
        if (result.task_id, result.current_priority, result.calculated_priority) in reverted:
            return SKIP_REVERTED
        return None

    def _reverted_changes(self, job: OptimizationJob, candidates: List[TaskSnapshot]):
        task_ids = [c.id for c in candidates]
        if not task_ids:
            return set()
        return set(
            OptimizationHistory.objects.filter(
                user_id=job.user_id,
                task_id__in=task_ids,
                reverted_at__isnull=False,
            ).values_list("task_id", "old_priority", "new_priority")
        )

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def _apply_with_retry(self, state: _RunState, params: RunParameters, snapshot: TaskSnapshot, result: ScoreResult) -> None:
        for attempt in (1, 2):
            try:
                history = self._apply(state.job, params, snapshot, result)
            except PersistenceError as e:
                if attempt == 1:
                    logger.warning(f"Job {state.job.pk}: applying task {snapshot.id} failed, retrying: {str(e)}")
                    self.sleep(self.retry_backoff)
                    continue
                logger.error(f"Job {state.job.pk}: applying task {snapshot.id} failed twice: {str(e)}")
                state.add_error(snapshot.id, str(e), "apply")
                self._record_unapplied(state, snapshot, result)
                return

            state.priorities_changed += 1
            state.results.append(OptimizationResult(
                task_id=snapshot.id,
                task_title=snapshot.title,
                old_priority=result.current_priority,
                new_priority=result.calculated_priority,
                priority_score=result.priority_score,
                confidence_score=result.confidence_level,
                reasoning=history.reasoning,
                history_id=history.pk,
            ))
            return

    def _record_score(self, job: OptimizationJob, snapshot: TaskSnapshot, result: ScoreResult) -> Optional[TaskPriorityScore]:
        """
        Retire the task's current score and insert this one. Must run inside
        a transaction; returns the retired row, if any.
        """
        previous = (
            TaskPriorityScore.objects.select_for_update()
            .filter(task_id=snapshot.id, user_id=job.user_id, is_current=True)
            .order_by("-id")
            .first()
        )
        TaskPriorityScore.objects.filter(
            task_id=snapshot.id, user_id=job.user_id, is_current=True
        ).update(is_current=False)

        TaskPriorityScore.objects.create(
            task_id=snapshot.id,
            user_id=job.user_id,
            job=job,
            calculated_priority=result.calculated_priority,
            priority_score=result.priority_score,
            confidence_level=result.confidence_level,
            urgency_score=result.urgency_score,
            importance_score=result.importance_score,
            context_score=result.context_score,
            pattern_score=result.pattern_score,
            dependency_score=result.dependency_score,
            calculation_method=result.calculation_method,
            factors_considered=result.factors(),
            last_recalculated_at=result.computed_at,
            is_current=True,
        )
        return previous

    def _record_unapplied(self, state: _RunState, snapshot: TaskSnapshot, result: ScoreResult) -> None:
        """Keep the score of a task the run analyzed but did not change."""
        try:
            with transaction.atomic():
                self._record_score(state.job, snapshot, result)
        except DatabaseError as e:
            logger.error(f"Job {state.job.pk}: recording score for task {snapshot.id} failed: {str(e)}")
            state.add_error(snapshot.id, str(e), "record")

    def _apply(self, job: OptimizationJob, params: RunParameters, snapshot: TaskSnapshot, result: ScoreResult) -> OptimizationHistory:
        """One change, one transaction. Raises PersistenceError."""
        try:
            with transaction.atomic():
                previous = self._record_score(job, snapshot, result)

                history = OptimizationHistory.objects.create(
                    user_id=job.user_id,
                    task_id=snapshot.id,
                    job=job,
                    optimization_type=params.optimization_type,
                    old_priority=result.current_priority,
                    new_priority=result.calculated_priority,
                    confidence_score=result.confidence_level,
                    priority_score=result.priority_score,
                    previous_score=previous.priority_score if previous else None,
                    reasoning=make_reasoning(result, snapshot),
                    applied_rules=[rule.snapshot() for rule in result.applied_rules],
                    optimization_factors=result.sub_scores(),
                )
                rule_ids = [rule.rule_id for rule in result.applied_rules if rule.rule_id]
                history.rules.set(OptimizationRule.objects.filter(pk__in=rule_ids, user_id=job.user_id))

                self.task_store.set_priority(snapshot.id, result.calculated_priority)

                event = {
                    "user_id": job.user_id,
                    "task_id": snapshot.id,
                    "history_id": history.pk,
                    "old_priority": result.current_priority,
                    "new_priority": result.calculated_priority,
                    "source": f"job:{job.pk}",
                }
                transaction.on_commit(lambda: self.activity_log.record(sender=JobProcessor, **event))
        except TaskMutationRejected as e:
            raise PersistenceError(str(e)) from e
        except DatabaseError as e:
            raise PersistenceError(f"Database write failed: {str(e)}") from e
        return history

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _check_stop(self, state: _RunState) -> None:
        if time.monotonic() - state.started >= self.timeout:
            raise JobStopped(STOP_TIMEOUT)

        row = (
            OptimizationJob.objects.filter(pk=state.job.pk)
            .values("cancel_requested", "schedule_id", "schedule__is_active")
            .first()
        )
        if row is None or row["cancel_requested"]:
            raise JobStopped(STOP_CANCELLED)
        if state.had_schedule and (row["schedule_id"] is None or not row["schedule__is_active"]):
            raise JobStopped(STOP_CANCELLED)

    def _update_progress(self, state: _RunState, percentage: int, current_task: str) -> None:
        OptimizationJob.objects.filter(pk=state.job.pk).update(
            progress_percentage=max(0, min(100, percentage)),
            current_task=(current_task or "")[:255],
            tasks_analyzed=state.tasks_analyzed,
            priorities_changed=state.priorities_changed,
            errors_count=state.errors_count,
        )

    def _finish(self, state: _RunState, status: str, detail: Optional[Dict[str, Any]] = None) -> None:
        if detail is not None:
            state.error_details.append(detail)
        now = self.now or timezone.now()
        fields = dict(
            status=status,
            completed_at=now,
            tasks_analyzed=state.tasks_analyzed,
            priorities_changed=state.priorities_changed,
            errors_count=state.errors_count,
            error_details=state.error_details,
            current_task="",
        )
        if status == "completed":
            fields["progress_percentage"] = 100
        OptimizationJob.objects.filter(pk=state.job.pk).update(**fields)

    def _result(self, state: _RunState, status: str) -> JobResult:
        return JobResult(
            job_id=state.job.pk,
            status=status,
            tasks_analyzed=state.tasks_analyzed,
            priorities_changed=state.priorities_changed,
            errors_count=state.errors_count,
            results=list(state.results),
            errors=list(state.error_details),
            skipped=dict(state.skipped),
        )
