# priority/engine/aggregator.py

import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from tasks.store import TaskStore

from .scorer import TaskSignals

logger = logging.getLogger(__name__)


class SignalAggregator:
    """
    Default signal collaborator.

    Pattern signals are per-category aggregates over the owner's own task
    history:

        late_completion_rate  share of dated, completed tasks finished late
        overdue_ratio         share of open tasks already past due
        sample_size           number of finished or open tasks behind the rates

    They are cached in the Django cache (Redis in production) for
    PRIORITY_SIGNAL_CACHE_TTL seconds. Context signals are opaque and come
    from the caller: a shared map plus optional per-task overrides.

    Features:
    - Deterministic key derivation, one entry per (owner, category).
    - Cache failures degrade to a live computation, never to an error.
    """

    def __init__(
        self,
        task_store: Optional[TaskStore] = None,
        ttl: int = 900,
        version: str = "v1",
    ):
        self.task_store = task_store or TaskStore()
        self.ttl = getattr(settings, "PRIORITY_SIGNAL_CACHE_TTL", ttl)
        self.version = version

    def _generate_key(self, owner_id: int, category: str) -> str:
        payload = {"owner": owner_id, "category": category.strip().lower(), "version": self.version}
        digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
        return f"priority_signals_{self.version}_{digest}"

    def compute_pattern(self, owner_id: int, category: str, now=None) -> Dict[str, Any]:
        counts = self.task_store.category_history(owner_id, category, now=now or timezone.now())
        finished = counts["completed_with_due"]
        open_count = counts["open"]
        sample_size = counts["completed"] + open_count
        if sample_size == 0:
            return {}

        signals: Dict[str, Any] = {"sample_size": sample_size}
        if finished:
            signals["late_completion_rate"] = round(counts["completed_late"] / finished, 4)
        if open_count:
            signals["overdue_ratio"] = round(counts["open_overdue"] / open_count, 4)
        return signals

    def pattern_signals(self, owner_id: int, category: str, now=None) -> Dict[str, Any]:
        if not category:
            return {}

        cache_key = self._generate_key(owner_id, category)
        try:
            cached = cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Signal cache hit: {cache_key}")
                return cached
        except Exception as e:
            # Redis connectivity issues must not fail a scoring run
            logger.error(f"Signal cache retrieval failure: {str(e)}")

        signals = self.compute_pattern(owner_id, category, now=now)

        try:
            cache.set(cache_key, signals, timeout=self.ttl)
        except Exception as e:
            logger.error(f"Signal cache persistence failure: {str(e)}")
        return signals

    def invalidate(self, owner_id: int, category: str) -> None:
        """Drop the cached aggregate after the owner's tasks in `category` change."""
        if not category:
            return
        try:
            cache.delete(self._generate_key(owner_id, category))
        except Exception as e:
            logger.error(f"Signal cache invalidation failure: {str(e)}")

    def signals_for(self, task, context: Optional[Mapping[str, Any]] = None, now=None) -> TaskSignals:
        """
        `context` may hold shared keys plus a "tasks" map of per-task
        overrides keyed by task id (string or int). `now` is the run's
        reference time for overdue and lateness counts.
        """
        context = dict(context or {})
        per_task = context.pop("tasks", None)
        if not isinstance(per_task, dict):
            per_task = {}
        merged = dict(context)
        overrides = per_task.get(str(task.id)) or per_task.get(task.id) or {}
        if isinstance(overrides, dict):
            merged.update(overrides)
        return TaskSignals(
            pattern=self.pattern_signals(task.owner_id, task.category, now=now),
            context=merged,
        )
