# priority/engine/schedules.py
"""
Schedule Manager
================

Owns OptimizationSchedule timing and the jobs schedules produce.

State machine:
--------------
    idle --(next_run_at reached | trigger_now | watched task mutation)--> due
    due  --(worker claims the job, lease acquired)--> running
    running --(job completed or failed, lease released)--> idle

Schedule types:
---------------
- daily:     next occurrence of schedule_time, or last_run_at + 24h
- hourly:    last_run_at + schedule_interval minutes (default 60)
- on_change: never self-scheduled; fired by the task post_save signal,
             subject to PRIORITY_ON_CHANGE_COOLDOWN_SECONDS
- manual:    next_run_at stays null; runs only through trigger_now

A schedule has at most one pending or running job. A trigger that arrives
while one is active is skipped and logged, never queued.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from priority.exceptions import ScheduleBusyError
from priority.models import (
    ACTIVE_JOB_STATUSES,
    OptimizationJob,
    OptimizationSchedule,
)
from tasks.store import PRIORITY_VALUES, TaskFilter

from .leases import ScheduleLease
from .preferences import run_defaults

logger = logging.getLogger(__name__)

SCHEDULE_DAILY = "daily"
SCHEDULE_HOURLY = "hourly"
SCHEDULE_ON_CHANGE = "on_change"
SCHEDULE_MANUAL = "manual"
RECURRING_TYPES = (SCHEDULE_DAILY, SCHEDULE_HOURLY)

STATE_IDLE = "idle"
STATE_DUE = "due"
STATE_RUNNING = "running"

JOB_SCHEDULED = "scheduled"
JOB_ON_DEMAND = "on_demand"
JOB_TRIGGERED = "triggered"

DEFAULT_HOURLY_INTERVAL_MINUTES = 60

# Fields whose change requires next_run_at to be recomputed
TIMING_FIELDS = frozenset({"schedule_type", "schedule_time", "schedule_interval", "is_active"})

SCHEDULE_EDITABLE_FIELDS = frozenset({
    "schedule_name", "schedule_type", "schedule_time", "schedule_interval",
    "optimization_scope", "max_changes_per_run", "min_confidence_threshold",
    "category_filter", "project_filter", "priority_filter", "is_active",
})


def compute_next_run(schedule: OptimizationSchedule, reference: datetime.datetime) -> Optional[datetime.datetime]:
    """
    Next time a schedule becomes due after `reference`.

    Returns None for inactive, manual and on_change schedules.
    """
    if not schedule.is_active:
        return None

    if schedule.schedule_type == SCHEDULE_DAILY:
        if schedule.schedule_time is None:
            base = schedule.last_run_at or reference
            return base + datetime.timedelta(hours=24)
        local = timezone.localtime(reference)
        candidate = datetime.datetime.combine(local.date(), schedule.schedule_time, tzinfo=local.tzinfo)
        if candidate <= local:
            candidate += datetime.timedelta(days=1)
        return candidate

    if schedule.schedule_type == SCHEDULE_HOURLY:
        minutes = schedule.schedule_interval or DEFAULT_HOURLY_INTERVAL_MINUTES
        base = schedule.last_run_at or reference
        return base + datetime.timedelta(minutes=minutes)

    return None


def validate_schedule(schedule: OptimizationSchedule) -> None:
    schedule.full_clean()

    errors: Dict[str, List[str]] = {}
    if schedule.schedule_type == SCHEDULE_DAILY and schedule.schedule_time is None:
        errors.setdefault("schedule_time", []).append("Daily schedules need a time of day.")
    if schedule.schedule_interval is not None and schedule.schedule_interval < 1:
        errors.setdefault("schedule_interval", []).append("Interval must be at least one minute.")
    if schedule.max_changes_per_run < 1:
        errors.setdefault("max_changes_per_run", []).append("Must allow at least one change per run.")

    for field_name in ("category_filter", "project_filter", "priority_filter"):
        values = getattr(schedule, field_name)
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            errors.setdefault(field_name, []).append("Must be a list of strings.")
    if isinstance(schedule.priority_filter, list):
        unknown = [p for p in schedule.priority_filter if p not in PRIORITY_VALUES]
        if unknown:
            errors.setdefault("priority_filter", []).append(f"Unknown priorities: {', '.join(map(str, unknown))}")

    if errors:
        raise ValidationError(errors)


def build_job_scope(
    task_filter: TaskFilter,
    max_changes: int,
    min_confidence: float,
    context: Optional[Dict[str, Any]] = None,
    optimization_type: str = "automatic",
) -> Dict[str, Any]:
    return {
        "filter": task_filter.to_dict(),
        "max_changes": int(max_changes),
        "min_confidence": float(min_confidence),
        "context": context or {},
        "optimization_type": optimization_type,
    }


class ScheduleManager:
    """Schedule CRUD, due-time bookkeeping and job creation."""

    def __init__(self, now: Optional[datetime.datetime] = None):
        self._now = now

    def now(self) -> datetime.datetime:
        return self._now or timezone.now()

    # ------------------------------------------------------------------
    # Schedule CRUD
    # ------------------------------------------------------------------

    def create_schedule(self, user, **fields) -> OptimizationSchedule:
        forbidden = sorted(set(fields) - SCHEDULE_EDITABLE_FIELDS)
        if forbidden:
            raise ValidationError({name: "This field cannot be set directly." for name in forbidden})

        defaults = run_defaults(user)
        fields.setdefault("max_changes_per_run", defaults.max_changes)
        fields.setdefault("min_confidence_threshold", defaults.min_confidence)
        if fields.get("schedule_type") == SCHEDULE_HOURLY and fields.get("schedule_interval") is None:
            fields["schedule_interval"] = DEFAULT_HOURLY_INTERVAL_MINUTES

        schedule = OptimizationSchedule(user=user, **fields)
        validate_schedule(schedule)
        schedule.next_run_at = compute_next_run(schedule, self.now())
        schedule.save()
        logger.info(f"Schedule {schedule.pk} '{schedule.schedule_name}' ({schedule.schedule_type}) created, next run {schedule.next_run_at}")
        return schedule

    def update_schedule(self, schedule: OptimizationSchedule, **fields) -> OptimizationSchedule:
        forbidden = sorted(set(fields) - SCHEDULE_EDITABLE_FIELDS)
        if forbidden:
            raise ValidationError({name: "This field cannot be set directly." for name in forbidden})

        for name, value in fields.items():
            setattr(schedule, name, value)
        if schedule.schedule_type == SCHEDULE_HOURLY and schedule.schedule_interval is None:
            schedule.schedule_interval = DEFAULT_HOURLY_INTERVAL_MINUTES
        validate_schedule(schedule)

        if TIMING_FIELDS & set(fields):
            schedule.next_run_at = compute_next_run(schedule, self.now())
        schedule.save()

        if not schedule.is_active:
            # Owner disabled the schedule: running jobs stop at the next task.
            for job in schedule.jobs.filter(status__in=ACTIVE_JOB_STATUSES):
                self.cancel_job(job)
        return schedule

    def delete_schedule(self, schedule: OptimizationSchedule) -> None:
        for job in schedule.jobs.filter(status__in=ACTIVE_JOB_STATUSES):
            self.cancel_job(job)
        schedule_id = schedule.pk
        schedule.delete()
        logger.info(f"Schedule {schedule_id} deleted")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def has_active_job(self, schedule: OptimizationSchedule) -> bool:
        return schedule.jobs.filter(status__in=ACTIVE_JOB_STATUSES).exists()

    def schedule_scope(self, schedule: OptimizationSchedule, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return build_job_scope(
            schedule.to_task_filter(),
            schedule.max_changes_per_run,
            schedule.min_confidence_threshold,
            context=context,
        )

    def create_job(
        self,
        user,
        scope: Dict[str, Any],
        job_type: str = JOB_ON_DEMAND,
        schedule: Optional[OptimizationSchedule] = None,
        retry_of: Optional[OptimizationJob] = None,
    ) -> OptimizationJob:
        return OptimizationJob.objects.create(
            user=user,
            schedule=schedule,
            retry_of=retry_of,
            job_type=job_type,
            scope=scope,
        )

    def enqueue(self, job: OptimizationJob) -> None:
        """Hand the job to a Celery worker once the surrounding transaction commits."""
        from .celery_tasks import run_optimization_job

        job_id = job.pk
        transaction.on_commit(lambda: run_optimization_job.delay(job_id))

    def _start_schedule_job(
        self,
        schedule: OptimizationSchedule,
        job_type: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> OptimizationJob:
        """Caller holds the schedule row lock and has checked for an active job."""
        job = self.create_job(schedule.user, self.schedule_scope(schedule, context), job_type, schedule=schedule)
        schedule.state = STATE_DUE
        schedule.save(update_fields=["state", "updated_at"])
        self.enqueue(job)
        return job

    def trigger_now(self, schedule: OptimizationSchedule, context: Optional[Dict[str, Any]] = None) -> OptimizationJob:
        """Explicit on-demand run of a schedule, any type."""
        with transaction.atomic():
            schedule = OptimizationSchedule.objects.select_for_update().get(pk=schedule.pk)
            if self.has_active_job(schedule):
                raise ScheduleBusyError(f"Schedule {schedule.pk} already has an active job")
            job = self._start_schedule_job(schedule, JOB_ON_DEMAND, context)
        logger.info(f"Schedule {schedule.pk} triggered on demand as job {job.pk}")
        return job

    def dispatch_due(self, now: Optional[datetime.datetime] = None) -> List[OptimizationJob]:
        """
        Called periodically by Celery beat. Enqueues one job per recurring
        schedule whose next_run_at has passed.
        """
        now = now or self.now()
        due_ids = list(
            OptimizationSchedule.objects.filter(
                is_active=True,
                schedule_type__in=RECURRING_TYPES,
                next_run_at__lte=now,
            ).values_list("id", flat=True)
        )

        jobs = []
        for schedule_id in due_ids:
            with transaction.atomic():
                schedule = OptimizationSchedule.objects.select_for_update().get(pk=schedule_id)
                if not schedule.is_active:
                    continue
                if schedule.state != STATE_IDLE or self.has_active_job(schedule):
                    logger.warning(f"Schedule {schedule.pk} is due but its previous job is still active; skipping")
                    schedule.next_run_at = compute_next_run(schedule, now)
                    schedule.save(update_fields=["next_run_at", "updated_at"])
                    continue
                jobs.append(self._start_schedule_job(schedule, JOB_SCHEDULED))
        if jobs:
            logger.info(f"Dispatched {len(jobs)} due schedule job(s)")
        return jobs

    def notify_task_changed(self, task) -> List[OptimizationJob]:
        """Fire the owner's on_change schedules whose scope covers `task`."""
        now = self.now()
        cooldown = datetime.timedelta(
            seconds=getattr(settings, "PRIORITY_ON_CHANGE_COOLDOWN_SECONDS", 300)
        )
        candidate_ids = list(
            OptimizationSchedule.objects.filter(
                user_id=task.user_id,
                is_active=True,
                schedule_type=SCHEDULE_ON_CHANGE,
            ).values_list("id", flat=True)
        )

        jobs = []
        for schedule_id in candidate_ids:
            with transaction.atomic():
                schedule = OptimizationSchedule.objects.select_for_update().get(pk=schedule_id)
                if not schedule.to_task_filter().matches(task, now):
                    continue
                if schedule.last_run_at and now - schedule.last_run_at < cooldown:
                    logger.debug(f"Schedule {schedule.pk} in cooldown; ignoring change to task {task.id}")
                    continue
                if self.has_active_job(schedule):
                    logger.info(f"Schedule {schedule.pk} already has an active job; change to task {task.id} skipped")
                    continue
                jobs.append(self._start_schedule_job(schedule, JOB_TRIGGERED))
        return jobs

    def claim(self, job: OptimizationJob) -> bool:
        """
        pending -> running. For schedule jobs this takes the schedule lease;
        returns False when another job holds it.
        """
        now = self.now()
        with transaction.atomic():
            job = OptimizationJob.objects.select_for_update().get(pk=job.pk)
            if job.status != "pending":
                return False
            if job.schedule_id is not None:
                if not ScheduleLease(job.schedule_id).acquire(job.pk):
                    logger.warning(f"Job {job.pk}: schedule {job.schedule_id} lease is held elsewhere")
                    return False
                OptimizationSchedule.objects.filter(pk=job.schedule_id).update(state=STATE_RUNNING, updated_at=now)
            OptimizationJob.objects.filter(pk=job.pk).update(status="running", started_at=now)
        return True

    def release(self, job: OptimizationJob) -> None:
        """After completed/failed: free the lease and recompute the next run."""
        if job.schedule_id is None:
            return
        now = self.now()
        with transaction.atomic():
            schedule = OptimizationSchedule.objects.select_for_update().filter(pk=job.schedule_id).first()
            if schedule is not None:
                schedule.last_run_at = job.started_at or now
                schedule.state = STATE_IDLE
                schedule.next_run_at = compute_next_run(schedule, now)
                schedule.save(update_fields=["last_run_at", "state", "next_run_at", "updated_at"])
        ScheduleLease(job.schedule_id).release(job.pk)

    def cancel_job(self, job: OptimizationJob) -> OptimizationJob:
        """
        Request cancellation. A running job stops before its next task; a
        pending job is failed immediately since no worker has claimed it.
        """
        now = self.now()
        with transaction.atomic():
            job = OptimizationJob.objects.select_for_update().get(pk=job.pk)
            if job.status == "pending":
                job.status = "failed"
                job.cancel_requested = True
                job.completed_at = now
                job.error_details = list(job.error_details or []) + [{"reason": "cancelled"}]
                job.save(update_fields=["status", "cancel_requested", "completed_at", "error_details"])
                if job.schedule_id is not None:
                    OptimizationSchedule.objects.filter(pk=job.schedule_id, state=STATE_DUE).update(
                        state=STATE_IDLE, updated_at=now
                    )
            elif job.status == "running":
                job.cancel_requested = True
                job.save(update_fields=["cancel_requested"])
        logger.info(f"Cancellation requested for job {job.pk} ({job.status})")
        return job

    def retry_job(self, job: OptimizationJob) -> OptimizationJob:
        """Failed jobs are never resumed; a retry is a new job with the same scope."""
        if job.status != "failed":
            raise ValidationError({"status": "Only failed jobs can be retried."})
        with transaction.atomic():
            schedule = None
            if job.schedule_id is not None:
                schedule = OptimizationSchedule.objects.select_for_update().filter(pk=job.schedule_id).first()
                if schedule is not None and self.has_active_job(schedule):
                    raise ScheduleBusyError(f"Schedule {schedule.pk} already has an active job")
            retry = self.create_job(job.user, dict(job.scope or {}), job.job_type, schedule=schedule, retry_of=job)
            if schedule is not None:
                schedule.state = STATE_DUE
                schedule.save(update_fields=["state", "updated_at"])
            self.enqueue(retry)
        logger.info(f"Job {job.pk} retried as job {retry.pk}")
        return retry
