# priority/tests/test_schedules.py
"""
Schedule Manager Tests
======================

Test Categories:
----------------
1. Timing - next_run_at per schedule type
2. Validation - write-time schedule checks and preference defaults
3. Dispatch - due schedules, busy schedules, on_change triggers
4. Leases & claims - one running job per schedule
5. Job control - cancel, retry, trigger_now

Enqueueing happens on transaction commit, which TestCase never reaches, so
jobs created here stay pending unless a test runs them explicitly.
"""

import datetime
from datetime import timedelta

from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.test import TestCase

from priority.engine.leases import ScheduleLease
from priority.engine.schedules import ScheduleManager, build_job_scope, compute_next_run
from priority.exceptions import ScheduleBusyError
from priority.models import OptimizationJob, OptimizationPreference, OptimizationSchedule
from tasks.store import TaskFilter

from .helpers import FIXED_NOW, create_test_task, create_test_user


def create_test_schedule(manager: ScheduleManager, user, **fields) -> OptimizationSchedule:
    fields.setdefault("schedule_name", "Every hour")
    fields.setdefault("schedule_type", "hourly")
    return manager.create_schedule(user, **fields)


# ===========================================================================
# TIMING
# ===========================================================================


class ComputeNextRunTest(TestCase):

    def setUp(self) -> None:
        self.user = create_test_user()

    def build(self, **fields) -> OptimizationSchedule:
        return OptimizationSchedule(user=self.user, schedule_name="s", **fields)

    def test_daily_later_today(self) -> None:
        schedule = self.build(schedule_type="daily", schedule_time=datetime.time(15, 0))
        self.assertEqual(compute_next_run(schedule, FIXED_NOW), FIXED_NOW.replace(hour=15))

    def test_daily_time_already_passed_rolls_to_tomorrow(self) -> None:
        schedule = self.build(schedule_type="daily", schedule_time=datetime.time(9, 0))
        expected = FIXED_NOW.replace(hour=9) + timedelta(days=1)
        self.assertEqual(compute_next_run(schedule, FIXED_NOW), expected)

    def test_hourly_uses_interval_from_last_run(self) -> None:
        schedule = self.build(schedule_type="hourly", schedule_interval=30, last_run_at=FIXED_NOW)
        self.assertEqual(compute_next_run(schedule, FIXED_NOW), FIXED_NOW + timedelta(minutes=30))

    def test_hourly_defaults_to_sixty_minutes(self) -> None:
        schedule = self.build(schedule_type="hourly")
        self.assertEqual(compute_next_run(schedule, FIXED_NOW), FIXED_NOW + timedelta(minutes=60))

    def test_manual_and_on_change_are_never_self_scheduled(self) -> None:
        for schedule_type in ("manual", "on_change"):
            self.assertIsNone(compute_next_run(self.build(schedule_type=schedule_type), FIXED_NOW))

    def test_inactive_schedule_has_no_next_run(self) -> None:
        schedule = self.build(schedule_type="hourly", is_active=False)
        self.assertIsNone(compute_next_run(schedule, FIXED_NOW))


# ===========================================================================
# VALIDATION
# ===========================================================================


class ScheduleValidationTest(TestCase):

    def setUp(self) -> None:
        self.user = create_test_user()
        self.manager = ScheduleManager(now=FIXED_NOW)

    def test_daily_requires_time_of_day(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            create_test_schedule(self.manager, self.user, schedule_type="daily")
        self.assertIn("schedule_time", ctx.exception.message_dict)

    def test_unknown_priority_filter_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            create_test_schedule(self.manager, self.user, priority_filter=["critical"])

    def test_filters_must_be_lists_of_strings(self) -> None:
        with self.assertRaises(ValidationError):
            create_test_schedule(self.manager, self.user, category_filter="work")

    def test_state_cannot_be_set_directly(self) -> None:
        with self.assertRaises(ValidationError):
            create_test_schedule(self.manager, self.user, state="running")

    def test_defaults_follow_aggressiveness(self) -> None:
        OptimizationPreference.objects.create(user=self.user, aggressiveness="aggressive")
        schedule = create_test_schedule(self.manager, self.user)
        self.assertEqual(schedule.max_changes_per_run, 20)
        self.assertEqual(schedule.min_confidence_threshold, 0.55)

    def test_explicit_values_beat_defaults(self) -> None:
        schedule = create_test_schedule(self.manager, self.user, max_changes_per_run=2)
        self.assertEqual(schedule.max_changes_per_run, 2)
        self.assertEqual(schedule.min_confidence_threshold, 0.7)

    def test_create_sets_next_run(self) -> None:
        schedule = create_test_schedule(self.manager, self.user)
        self.assertEqual(schedule.schedule_interval, 60)
        self.assertEqual(schedule.next_run_at, FIXED_NOW + timedelta(minutes=60))
        self.assertEqual(schedule.state, "idle")

    def test_switching_to_manual_clears_next_run(self) -> None:
        schedule = create_test_schedule(self.manager, self.user)
        self.manager.update_schedule(schedule, schedule_type="manual")
        schedule.refresh_from_db()
        self.assertIsNone(schedule.next_run_at)


# ===========================================================================
# DISPATCH
# ===========================================================================


class DispatchTest(TestCase):

    def setUp(self) -> None:
        cache.clear()
        self.user = create_test_user()
        self.manager = ScheduleManager(now=FIXED_NOW)

    def test_due_schedule_gets_one_job(self) -> None:
        schedule = create_test_schedule(self.manager, self.user)
        later = FIXED_NOW + timedelta(hours=2)

        jobs = self.manager.dispatch_due(now=later)

        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0].job_type, "scheduled")
        self.assertEqual(jobs[0].status, "pending")
        self.assertEqual(jobs[0].scope["max_changes"], schedule.max_changes_per_run)
        schedule.refresh_from_db()
        self.assertEqual(schedule.state, "due")

        # already due: a second tick does not double-dispatch
        self.assertEqual(self.manager.dispatch_due(now=later), [])

    def test_not_yet_due_schedule_is_left_alone(self) -> None:
        create_test_schedule(self.manager, self.user)
        self.assertEqual(self.manager.dispatch_due(now=FIXED_NOW), [])

    def test_busy_schedule_is_skipped_and_advanced(self) -> None:
        """A trigger arriving while a job is active is skipped, never queued."""
        schedule = create_test_schedule(self.manager, self.user)
        self.manager.create_job(self.user, self.manager.schedule_scope(schedule), schedule=schedule)
        later = FIXED_NOW + timedelta(hours=2)

        with self.assertLogs("priority.engine.schedules", level="WARNING"):
            jobs = self.manager.dispatch_due(now=later)

        self.assertEqual(jobs, [])
        self.assertEqual(schedule.jobs.count(), 1)
        schedule.refresh_from_db()
        self.assertEqual(schedule.next_run_at, later + timedelta(minutes=60))

    def test_running_schedule_coming_due_is_logged_and_advanced(self) -> None:
        """A schedule whose job is mid-run when it comes due again logs the skipped trigger."""
        schedule = create_test_schedule(self.manager, self.user)
        job = self.manager.trigger_now(schedule)
        self.assertTrue(self.manager.claim(job))
        later = FIXED_NOW + timedelta(hours=2)

        with self.assertLogs("priority.engine.schedules", level="WARNING") as logs:
            jobs = self.manager.dispatch_due(now=later)

        self.assertEqual(jobs, [])
        self.assertIn(f"Schedule {schedule.pk} is due", logs.output[0])
        schedule.refresh_from_db()
        self.assertEqual(schedule.state, "running")
        self.assertEqual(schedule.next_run_at, later + timedelta(minutes=60))

    def test_manual_schedules_are_not_dispatched(self) -> None:
        create_test_schedule(self.manager, self.user, schedule_type="manual")
        self.assertEqual(self.manager.dispatch_due(now=FIXED_NOW + timedelta(days=3)), [])


class OnChangeTriggerTest(TestCase):

    def setUp(self) -> None:
        cache.clear()
        self.user = create_test_user()
        self.manager = ScheduleManager(now=FIXED_NOW)
        self.schedule = create_test_schedule(
            self.manager, self.user,
            schedule_name="On edit", schedule_type="on_change", category_filter=["work"],
        )

    def test_mutation_in_scope_triggers_job(self) -> None:
        task = create_test_task(self.user, category="work", due_in_hours=5)
        jobs = self.manager.notify_task_changed(task)
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0].job_type, "triggered")
        self.assertEqual(jobs[0].schedule, self.schedule)

    def test_mutation_out_of_scope_is_ignored(self) -> None:
        task = create_test_task(self.user, category="home")
        self.assertEqual(self.manager.notify_task_changed(task), [])

    def test_other_owners_tasks_are_ignored(self) -> None:
        other = create_test_user("other")
        task = create_test_task(other, category="work")
        self.assertEqual(self.manager.notify_task_changed(task), [])

    def test_cooldown_suppresses_rapid_triggers(self) -> None:
        OptimizationSchedule.objects.filter(pk=self.schedule.pk).update(
            last_run_at=FIXED_NOW - timedelta(seconds=30)
        )
        task = create_test_task(self.user, category="work")
        self.assertEqual(self.manager.notify_task_changed(task), [])

    def test_active_job_suppresses_trigger(self) -> None:
        task = create_test_task(self.user, category="work")
        self.assertEqual(len(self.manager.notify_task_changed(task)), 1)
        self.assertEqual(self.manager.notify_task_changed(task), [])
        self.assertEqual(self.schedule.jobs.count(), 1)


# ===========================================================================
# LEASES & CLAIMS
# ===========================================================================


class ScheduleLeaseTest(TestCase):

    def setUp(self) -> None:
        cache.clear()

    def test_only_one_holder(self) -> None:
        lease = ScheduleLease(42)
        self.assertTrue(lease.acquire(1))
        self.assertFalse(lease.acquire(2))
        self.assertTrue(lease.acquire(1))
        self.assertEqual(lease.holder(), 1)

    def test_only_holder_can_release(self) -> None:
        lease = ScheduleLease(42)
        lease.acquire(1)
        self.assertFalse(lease.release(2))
        self.assertTrue(lease.release(1))
        self.assertIsNone(lease.holder())
        self.assertTrue(lease.acquire(2))


class ClaimTest(TestCase):

    def setUp(self) -> None:
        cache.clear()
        self.user = create_test_user()
        self.manager = ScheduleManager(now=FIXED_NOW)
        self.schedule = create_test_schedule(self.manager, self.user, schedule_type="manual")

    def test_claim_moves_job_and_schedule_to_running(self) -> None:
        job = self.manager.trigger_now(self.schedule)
        self.assertTrue(self.manager.claim(job))

        job.refresh_from_db()
        self.schedule.refresh_from_db()
        self.assertEqual(job.status, "running")
        self.assertEqual(job.started_at, FIXED_NOW)
        self.assertEqual(self.schedule.state, "running")
        self.assertEqual(ScheduleLease(self.schedule.pk).holder(), job.pk)

    def test_second_job_cannot_claim_held_lease(self) -> None:
        first = self.manager.trigger_now(self.schedule)
        self.manager.claim(first)
        # a stray job row created behind the manager's back
        stray = self.manager.create_job(self.user, {}, schedule=self.schedule)

        self.assertFalse(self.manager.claim(stray))
        stray.refresh_from_db()
        self.assertEqual(stray.status, "pending")

    def test_claim_is_pending_only(self) -> None:
        job = self.manager.create_job(self.user, {})
        OptimizationJob.objects.filter(pk=job.pk).update(status="completed")
        self.assertFalse(self.manager.claim(job))

    def test_release_frees_lease_and_reschedules(self) -> None:
        job = self.manager.trigger_now(self.schedule)
        self.manager.claim(job)
        job.refresh_from_db()
        self.manager.release(job)

        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.state, "idle")
        self.assertEqual(self.schedule.last_run_at, FIXED_NOW)
        self.assertIsNone(ScheduleLease(self.schedule.pk).holder())


# ===========================================================================
# JOB CONTROL
# ===========================================================================


class JobControlTest(TestCase):

    def setUp(self) -> None:
        cache.clear()
        self.user = create_test_user()
        self.manager = ScheduleManager(now=FIXED_NOW)
        self.schedule = create_test_schedule(self.manager, self.user, schedule_type="manual")

    def test_trigger_now_on_busy_schedule_raises(self) -> None:
        self.manager.trigger_now(self.schedule)
        with self.assertRaises(ScheduleBusyError):
            self.manager.trigger_now(self.schedule)

    def test_cancel_pending_job_fails_it_immediately(self) -> None:
        job = self.manager.trigger_now(self.schedule)
        job = self.manager.cancel_job(job)

        self.assertEqual(job.status, "failed")
        self.assertTrue(job.cancel_requested)
        self.assertEqual(job.error_details[-1], {"reason": "cancelled"})
        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.state, "idle")

    def test_cancel_running_job_only_sets_flag(self) -> None:
        job = self.manager.trigger_now(self.schedule)
        self.manager.claim(job)
        job = self.manager.cancel_job(job)
        self.assertEqual(job.status, "running")
        self.assertTrue(job.cancel_requested)

    def test_deactivating_schedule_cancels_its_jobs(self) -> None:
        job = self.manager.trigger_now(self.schedule)
        self.manager.update_schedule(self.schedule, is_active=False)
        job.refresh_from_db()
        self.assertEqual(job.status, "failed")

    def test_retry_creates_new_job_with_same_scope(self) -> None:
        job = self.manager.trigger_now(self.schedule, context={"focus": 0.5})
        self.manager.cancel_job(job)
        job.refresh_from_db()

        retry = self.manager.retry_job(job)

        self.assertNotEqual(retry.pk, job.pk)
        self.assertEqual(retry.retry_of, job)
        self.assertEqual(retry.scope, job.scope)
        self.assertEqual(retry.status, "pending")

    def test_only_failed_jobs_can_be_retried(self) -> None:
        job = self.manager.trigger_now(self.schedule)
        with self.assertRaises(ValidationError):
            self.manager.retry_job(job)

    def test_retry_on_busy_schedule_raises(self) -> None:
        failed = self.manager.trigger_now(self.schedule)
        self.manager.cancel_job(failed)
        failed.refresh_from_db()
        self.manager.trigger_now(self.schedule)

        with self.assertRaises(ScheduleBusyError):
            self.manager.retry_job(failed)

    def test_build_job_scope_round_trips_filter(self) -> None:
        scope = build_job_scope(TaskFilter(scope="overdue", categories=("work",)), 4, 0.6)
        self.assertEqual(TaskFilter.from_dict(scope["filter"]), TaskFilter(scope="overdue", categories=("work",)))
        self.assertEqual(scope["max_changes"], 4)
