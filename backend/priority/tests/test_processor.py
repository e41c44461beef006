# priority/tests/test_processor.py
"""
Job Processor Tests
===================

End-to-end runs of OptimizationJob against the ORM-backed Task Store.

Test Categories:
----------------
1. Selection - change cap, ordering by impact, confidence threshold
2. Idempotence - re-runs, one current score per task
3. Fault isolation - malformed rules, persistence retry, per-task errors
4. Stopping - cancellation, timeout, fatal enumeration failure
5. Audit - history snapshots, reverted-change suppression, schedule release
"""

from datetime import timedelta

from django.core.cache import cache
from django.test import SimpleTestCase, TestCase

from priority.engine.aggregator import SignalAggregator
from priority.engine.leases import ScheduleLease
from priority.engine.processor import (
    SKIP_CAPPED,
    SKIP_LOW_CONFIDENCE,
    SKIP_NO_OP,
    SKIP_NO_RULES,
    SKIP_REVERTED,
    JobProcessor,
    candidate_order,
)
from priority.engine.registry import RuleRegistry
from priority.engine.schedules import ScheduleManager, build_job_scope
from priority.exceptions import FatalJobError
from priority.models import (
    OptimizationHistory,
    OptimizationJob,
    OptimizationRule,
    OptimizationSchedule,
    TaskPriorityScore,
)
from tasks.models import Task
from tasks.store import TaskFilter, TaskMutationRejected, TaskStore

from .helpers import FIXED_NOW, create_test_rule, create_test_task, create_test_user, make_snapshot


class FlakyTaskStore(TaskStore):
    """Rejects the first `failures` priority writes."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def set_priority(self, task_id, priority):
        self.calls += 1
        if self.calls <= self.failures:
            raise TaskMutationRejected(f"simulated write failure #{self.calls}")
        super().set_priority(task_id, priority)


class CancellingTaskStore(TaskStore):
    """Requests cancellation of `job_id` right after the first successful write."""

    def __init__(self):
        super().__init__()
        self.job_id = None

    def set_priority(self, task_id, priority):
        super().set_priority(task_id, priority)
        OptimizationJob.objects.filter(pk=self.job_id).update(cancel_requested=True)


class CancellingSignalAggregator(SignalAggregator):
    """Requests cancellation of `job_id` while gathering the first task's signals."""

    def __init__(self):
        super().__init__()
        self.job_id = None
        self.calls = 0

    def signals_for(self, task, context=None, now=None):
        self.calls += 1
        OptimizationJob.objects.filter(pk=self.job_id).update(cancel_requested=True)
        return super().signals_for(task, context, now=now)


class BrokenTaskStore(TaskStore):

    def get_tasks(self, owner, task_filter=None, now=None):
        raise ConnectionError("task database unavailable")


class ProcessorTestCase(TestCase):
    """Shared setup: one owner, one deadline rule, a processor on a fixed clock."""

    def setUp(self) -> None:
        cache.clear()
        self.user = create_test_user()
        self.rule = create_test_rule(
            self.user, weight=1.0, rule_name="Deadline", rule_config={"importance_blend": 0.0}
        )
        self.manager = ScheduleManager(now=FIXED_NOW)
        self.sleeps = []

    def processor(self, **kwargs) -> JobProcessor:
        kwargs.setdefault("now", FIXED_NOW)
        kwargs.setdefault("sleep", self.sleeps.append)
        kwargs.setdefault("retry_backoff", 0)
        return JobProcessor(**kwargs)

    def create_job(self, max_changes: int = 10, min_confidence: float = 0.5, **filter_fields) -> OptimizationJob:
        scope = build_job_scope(TaskFilter(**filter_fields), max_changes, min_confidence)
        return self.manager.create_job(self.user, scope)


# ===========================================================================
# SELECTION
# ===========================================================================


class ChangeCapTest(ProcessorTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.soon = [
            create_test_task(self.user, title=f"soon {h}", priority="low", due_in_hours=h)
            for h in range(1, 6)
        ]
        self.later = [
            create_test_task(self.user, title=f"later {h}", priority="low", due_in_hours=h)
            for h in range(600, 650, 10)
        ]

    def test_top_changes_by_impact_are_applied(self) -> None:
        """Cap 3 out of 5 eligible changes: the three nearest deadlines win."""
        job = self.create_job(max_changes=3, min_confidence=0.5)

        result = self.processor().run(job)

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.tasks_analyzed, 10)
        self.assertEqual(result.priorities_changed, 3)
        self.assertEqual(
            sorted(r.task_id for r in result.results),
            [t.pk for t in self.soon[:3]],
        )
        self.assertEqual(result.skipped[SKIP_CAPPED], 2)
        self.assertEqual(result.skipped[SKIP_NO_OP], 5)

        for task in self.soon[:3]:
            task.refresh_from_db()
            self.assertEqual(task.priority, "urgent")
        for task in self.soon[3:] + self.later:
            task.refresh_from_db()
            self.assertEqual(task.priority, "low")

        job.refresh_from_db()
        self.assertEqual(job.status, "completed")
        self.assertEqual(job.progress_percentage, 100)
        self.assertEqual(job.priorities_changed, 3)
        self.assertIsNotNone(job.completed_at)

    def test_history_written_per_change(self) -> None:
        job = self.create_job(max_changes=3)
        self.processor().run(job)

        self.assertEqual(OptimizationHistory.objects.filter(job=job).count(), 3)
        history = OptimizationHistory.objects.filter(job=job).first()
        self.assertEqual(history.old_priority, "low")
        self.assertEqual(history.new_priority, "urgent")
        self.assertEqual(history.applied_rules[0]["rule_id"], self.rule.pk)
        self.assertEqual(list(history.rules.all()), [self.rule])
        self.assertTrue(history.reasoning)

    def test_confidence_threshold_skips_changes(self) -> None:
        """A single rule reaches 0.765 confidence, so 0.9 applies nothing."""
        job = self.create_job(min_confidence=0.9)
        result = self.processor().run(job)
        self.assertEqual(result.priorities_changed, 0)
        self.assertEqual(result.skipped[SKIP_LOW_CONFIDENCE], 10)

    def test_filter_limits_candidates(self) -> None:
        job = self.create_job(task_ids=(self.soon[0].pk, self.later[0].pk))
        result = self.processor().run(job)
        self.assertEqual(result.tasks_analyzed, 2)
        self.assertEqual(result.priorities_changed, 1)


class ScoreRecordTest(ProcessorTestCase):
    """Every analyzed task ends the run with exactly one current score."""

    def setUp(self) -> None:
        super().setUp()
        self.soon = [
            create_test_task(self.user, title=f"soon {h}", priority="low", due_in_hours=h)
            for h in range(1, 6)
        ]
        self.later = [
            create_test_task(self.user, title=f"later {h}", priority="low", due_in_hours=h)
            for h in range(600, 650, 10)
        ]

    def test_unchanged_tasks_still_get_a_current_score(self) -> None:
        job = self.create_job(max_changes=3)
        self.processor().run(job)

        for task in self.soon + self.later:
            current = TaskPriorityScore.objects.filter(task=task, user=self.user, is_current=True)
            self.assertEqual(current.count(), 1, task.title)
            self.assertEqual(current.get().job_id, job.pk)
        self.assertEqual(OptimizationHistory.objects.count(), 3)

    def test_rerun_retires_previous_scores(self) -> None:
        self.processor().run(self.create_job(max_changes=3))
        self.processor().run(self.create_job(max_changes=3))

        task = self.later[0]
        self.assertEqual(TaskPriorityScore.objects.filter(task=task).count(), 2)
        self.assertEqual(TaskPriorityScore.objects.filter(task=task, is_current=True).count(), 1)

    def test_task_without_matching_rules_is_recorded_not_applied(self) -> None:
        OptimizationRule.objects.update(is_active=False)

        result = self.processor().run(self.create_job(task_ids=(self.soon[0].pk,)))

        self.assertEqual(result.tasks_analyzed, 1)
        self.assertEqual(result.skipped[SKIP_NO_RULES], 1)
        score = TaskPriorityScore.objects.get(task=self.soon[0], is_current=True)
        self.assertEqual(score.calculation_method, "no_matching_rules")
        self.assertEqual(score.calculated_priority, "low")
        self.assertFalse(OptimizationHistory.objects.exists())
        self.soon[0].refresh_from_db()
        self.assertEqual(self.soon[0].priority, "low")


class CandidateOrderTest(SimpleTestCase):

    def test_due_date_ascending_undated_last(self) -> None:
        snapshots = [
            make_snapshot(task_id=3),
            make_snapshot(task_id=2, due_in_hours=10),
            make_snapshot(task_id=1, due_in_hours=10),
            make_snapshot(task_id=4, due_in_hours=-5),
        ]
        ordered = sorted(snapshots, key=candidate_order)
        self.assertEqual([s.id for s in ordered], [4, 1, 2, 3])


# ===========================================================================
# IDEMPOTENCE
# ===========================================================================


class IdempotenceTest(ProcessorTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.task = create_test_task(self.user, priority="low", due_in_hours=2)

    def test_rerun_changes_nothing(self) -> None:
        first = self.processor().run(self.create_job())
        second = self.processor().run(self.create_job())

        self.assertEqual(first.priorities_changed, 1)
        self.assertEqual(second.priorities_changed, 0)
        self.assertEqual(second.skipped[SKIP_NO_OP], 1)
        self.assertEqual(OptimizationHistory.objects.count(), 1)

    def test_one_current_score_per_task(self) -> None:
        self.processor().run(self.create_job())
        Task.objects.filter(pk=self.task.pk).update(priority="low")
        self.processor().run(self.create_job())

        scores = TaskPriorityScore.objects.filter(task=self.task, user=self.user)
        self.assertEqual(scores.count(), 2)
        self.assertEqual(scores.filter(is_current=True).count(), 1)

        second = OptimizationHistory.objects.order_by("-id").first()
        self.assertEqual(second.previous_score, scores.filter(is_current=False).get().priority_score)

    def test_weight_edits_are_not_retroactive(self) -> None:
        self.processor().run(self.create_job())
        RuleRegistry(self.user).update(self.rule.pk, weight=0.2)

        history = OptimizationHistory.objects.get()
        self.assertEqual(history.applied_rules[0]["weight"], 1.0)


# ===========================================================================
# FAULT ISOLATION
# ===========================================================================


class FaultIsolationTest(ProcessorTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.task = create_test_task(self.user, priority="low", due_in_hours=2)

    def test_malformed_rule_does_not_fail_the_job(self) -> None:
        broken = create_test_rule(self.user, rule_name="broken", trigger_conditions={"within_hours": "soon"})

        result = self.processor().run(self.create_job())

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.priorities_changed, 1)
        history = OptimizationHistory.objects.get()
        self.assertEqual(history.rule_ids, [self.rule.pk])
        broken.refresh_from_db()
        self.assertEqual(broken.times_applied, 0)

    def test_persistence_failure_is_retried_once(self) -> None:
        store = FlakyTaskStore(failures=1)

        result = self.processor(task_store=store).run(self.create_job())

        self.assertEqual(store.calls, 2)
        self.assertEqual(self.sleeps, [0])
        self.assertEqual(result.priorities_changed, 1)
        self.assertEqual(result.errors_count, 0)
        self.assertEqual(OptimizationHistory.objects.count(), 1)

    def test_persistent_failure_becomes_task_error(self) -> None:
        """The failed apply rolls back entirely; the job still completes."""
        store = FlakyTaskStore(failures=10)

        result = self.processor(task_store=store).run(self.create_job())

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.priorities_changed, 0)
        self.assertEqual(result.errors_count, 1)
        self.assertEqual(result.errors[0]["task_id"], self.task.pk)
        self.assertEqual(result.errors[0]["stage"], "apply")
        self.assertFalse(OptimizationHistory.objects.exists())
        # the score itself is still kept, without a change behind it
        score = TaskPriorityScore.objects.get()
        self.assertTrue(score.is_current)
        self.task.refresh_from_db()
        self.assertEqual(self.task.priority, "low")

    def test_no_active_rules_changes_nothing(self) -> None:
        OptimizationRule.objects.update(is_active=False)
        result = self.processor().run(self.create_job())
        self.assertEqual(result.status, "completed")
        self.assertEqual(result.priorities_changed, 0)


# ===========================================================================
# STOPPING
# ===========================================================================


class StoppingTest(ProcessorTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.tasks = [
            create_test_task(self.user, title=f"t{h}", priority="low", due_in_hours=h)
            for h in (1, 2, 3)
        ]

    def test_cancellation_keeps_applied_changes(self) -> None:
        store = CancellingTaskStore()
        job = self.create_job()
        store.job_id = job.pk

        result = self.processor(task_store=store).run(job)

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.stopped_reason, "cancelled")
        self.assertEqual(result.priorities_changed, 1)
        job.refresh_from_db()
        self.assertEqual(job.status, "failed")
        self.assertEqual(job.error_details[-1], {"reason": "cancelled"})
        self.assertEqual(OptimizationHistory.objects.count(), 1)

    def test_cancellation_is_checked_before_each_task(self) -> None:
        """A flag raised while the first task is prepared stops the scan right there."""
        aggregator = CancellingSignalAggregator()
        job = self.create_job()
        aggregator.job_id = job.pk

        result = self.processor(signal_aggregator=aggregator, max_workers=4).run(job)

        self.assertEqual(result.stopped_reason, "cancelled")
        self.assertEqual(aggregator.calls, 1)
        self.assertEqual(result.priorities_changed, 0)
        self.assertFalse(OptimizationHistory.objects.exists())

    def test_timeout_fails_the_job(self) -> None:
        job = self.create_job()
        result = self.processor(timeout=0).run(job)

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.stopped_reason, "timeout")
        job.refresh_from_db()
        self.assertEqual(job.error_details[-1], {"reason": "timeout"})

    def test_enumeration_failure_is_fatal(self) -> None:
        job = self.create_job()
        with self.assertRaises(FatalJobError):
            self.processor(task_store=BrokenTaskStore()).run(job)

        job.refresh_from_db()
        self.assertEqual(job.status, "failed")
        self.assertEqual(job.error_details[-1]["reason"], "fatal")
        self.assertEqual(job.priorities_changed, 0)

    def test_completed_job_is_not_run_again(self) -> None:
        job = self.create_job()
        self.processor().run(job)
        again = self.processor().run(job)
        self.assertEqual(again.status, "completed")
        self.assertEqual(OptimizationHistory.objects.count(), 3)


# ===========================================================================
# AUDIT
# ===========================================================================


class RevertedChangeTest(ProcessorTestCase):

    def test_reverted_change_is_not_reapplied(self) -> None:
        task = create_test_task(self.user, priority="low", due_in_hours=2)
        OptimizationHistory.objects.create(
            user=self.user, task=task, old_priority="low", new_priority="urgent",
            reverted_at=FIXED_NOW - timedelta(hours=1),
        )

        result = self.processor().run(self.create_job())

        self.assertEqual(result.priorities_changed, 0)
        self.assertEqual(result.skipped[SKIP_REVERTED], 1)
        task.refresh_from_db()
        self.assertEqual(task.priority, "low")


class ScheduleJobTest(ProcessorTestCase):

    def test_schedule_job_releases_lease_and_reschedules(self) -> None:
        create_test_task(self.user, priority="low", due_in_hours=2)
        schedule = self.manager.create_schedule(
            self.user, schedule_name="Hourly", schedule_type="hourly", schedule_interval=30,
            min_confidence_threshold=0.5,
        )
        job = self.manager.trigger_now(schedule)

        result = self.processor(schedule_manager=self.manager).run(job)

        self.assertEqual(result.status, "completed")
        self.assertEqual(result.priorities_changed, 1)
        schedule.refresh_from_db()
        self.assertEqual(schedule.state, "idle")
        self.assertEqual(schedule.last_run_at, FIXED_NOW)
        self.assertEqual(schedule.next_run_at, FIXED_NOW + timedelta(minutes=30))
        self.assertIsNone(ScheduleLease(schedule.pk).holder())

    def test_deactivated_schedule_stops_its_job(self) -> None:
        create_test_task(self.user, priority="low", due_in_hours=2)
        schedule = self.manager.create_schedule(
            self.user, schedule_name="Manual", schedule_type="manual", min_confidence_threshold=0.5,
        )
        job = self.manager.trigger_now(schedule)
        # disabled behind the manager's back, so the job row stays pending
        OptimizationSchedule.objects.filter(pk=schedule.pk).update(is_active=False)

        result = self.processor(schedule_manager=self.manager).run(job)

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.stopped_reason, "cancelled")
        self.assertFalse(OptimizationHistory.objects.exists())
        self.assertIsNone(ScheduleLease(schedule.pk).holder())
