# priority/tests/test_aggregator.py
"""
Signal Aggregator Tests
=======================

Pattern signals per (owner, category):
1. Counts are taken at the run's reference time, not the wall clock
2. Aggregates are cached and dropped when the owner's tasks change
3. Context overrides per task
"""

from datetime import timedelta

from django.core.cache import cache
from django.test import TestCase

from priority.engine.aggregator import SignalAggregator
from tasks.models import Task

from .helpers import FIXED_NOW, create_test_task, create_test_user, make_snapshot


class PatternSignalTest(TestCase):

    def setUp(self) -> None:
        cache.clear()
        self.user = create_test_user()
        self.aggregator = SignalAggregator()

    def test_overdue_ratio_follows_the_given_clock(self) -> None:
        create_test_task(self.user, category="work", due_in_hours=3)

        before = self.aggregator.compute_pattern(self.user.pk, "work", now=FIXED_NOW)
        after = self.aggregator.compute_pattern(self.user.pk, "work", now=FIXED_NOW + timedelta(hours=5))

        self.assertEqual(before["overdue_ratio"], 0.0)
        self.assertEqual(after["overdue_ratio"], 1.0)
        self.assertEqual(after["sample_size"], 1)

    def test_empty_category_has_no_signals(self) -> None:
        self.assertEqual(self.aggregator.compute_pattern(self.user.pk, "work", now=FIXED_NOW), {})
        self.assertEqual(self.aggregator.pattern_signals(self.user.pk, "", now=FIXED_NOW), {})

    def test_aggregate_is_cached(self) -> None:
        create_test_task(self.user, category="work", due_in_hours=-1)
        first = self.aggregator.pattern_signals(self.user.pk, "work", now=FIXED_NOW)

        # a queryset update bypasses model signals, so the cached value stays
        Task.objects.filter(user=self.user).update(due_date=FIXED_NOW + timedelta(days=2))

        self.assertEqual(self.aggregator.pattern_signals(self.user.pk, "work", now=FIXED_NOW), first)

    def test_task_save_drops_the_cached_aggregate(self) -> None:
        create_test_task(self.user, category="work", due_in_hours=-1)
        first = self.aggregator.pattern_signals(self.user.pk, "work", now=FIXED_NOW)
        self.assertEqual(first["overdue_ratio"], 1.0)

        with self.captureOnCommitCallbacks(execute=True):
            create_test_task(self.user, category="work", due_in_hours=5)

        second = self.aggregator.pattern_signals(self.user.pk, "work", now=FIXED_NOW)
        self.assertEqual(second["sample_size"], 2)
        self.assertEqual(second["overdue_ratio"], 0.5)

    def test_task_delete_drops_the_cached_aggregate(self) -> None:
        keep = create_test_task(self.user, category="work", due_in_hours=5)
        gone = create_test_task(self.user, category="work", due_in_hours=-1)
        self.assertEqual(self.aggregator.pattern_signals(self.user.pk, "work", now=FIXED_NOW)["sample_size"], 2)

        with self.captureOnCommitCallbacks(execute=True):
            gone.delete()

        signals = self.aggregator.pattern_signals(self.user.pk, "work", now=FIXED_NOW)
        self.assertEqual(signals["sample_size"], 1)
        self.assertEqual(signals["overdue_ratio"], 0.0)
        self.assertTrue(Task.objects.filter(pk=keep.pk).exists())

    def test_other_categories_are_untouched(self) -> None:
        create_test_task(self.user, category="home", due_in_hours=-1)
        home = self.aggregator.pattern_signals(self.user.pk, "home", now=FIXED_NOW)

        with self.captureOnCommitCallbacks(execute=True):
            create_test_task(self.user, category="work", due_in_hours=5)

        cached = cache.get(self.aggregator._generate_key(self.user.pk, "home"))
        self.assertEqual(cached, home)


class ContextSignalTest(TestCase):

    def test_per_task_overrides_win(self) -> None:
        aggregator = SignalAggregator()
        task = make_snapshot(task_id=7)
        context = {"relevance": 0.2, "tasks": {"7": {"relevance": 0.9}}}

        signals = aggregator.signals_for(task, context, now=FIXED_NOW)

        self.assertEqual(signals.context, {"relevance": 0.9})
        self.assertEqual(signals.pattern, {})
