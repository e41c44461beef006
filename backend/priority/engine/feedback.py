# priority/engine/feedback.py
"""
Feedback Tracker
================

Closes the loop on applied changes.

- record_feedback: accept (success) or reject (failure) a history entry.
  The first verdict counts one application for every rule in the entry's
  applied_rules snapshot; a changed verdict only moves the success count.
  success_rate = times_succeeded / times_applied.
- revert: restore old_priority through the Task Store, stamp reverted_at
  and count a rejection when the owner never gave a verdict. Reverting
  twice raises AlreadyRevertedError.

Rule weights are never touched here; success_rate is informational.
"""

import logging
from typing import Iterable, List, Optional

from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from priority.exceptions import AlreadyRevertedError, PersistenceError
from priority.models import OptimizationHistory, OptimizationRule
from tasks.store import TaskMutationRejected, TaskStore

from .activity import ActivityLog

logger = logging.getLogger(__name__)


def _refresh_success_rate(rule_ids: Iterable[int]) -> None:
    for rule in OptimizationRule.objects.filter(pk__in=list(rule_ids)):
        rate = (rule.times_succeeded / rule.times_applied) if rule.times_applied else None
        OptimizationRule.objects.filter(pk=rule.pk).update(success_rate=rate)


class FeedbackTracker:

    def __init__(self, task_store: Optional[TaskStore] = None, activity_log: Optional[ActivityLog] = None):
        self.task_store = task_store or TaskStore()
        self.activity_log = activity_log or ActivityLog()

    def _history_for_update(self, user, history_id: int) -> OptimizationHistory:
        return OptimizationHistory.objects.select_for_update().get(pk=history_id, user=user)

    def _rule_ids(self, history: OptimizationHistory) -> List[int]:
        # The snapshot is authoritative; rules deleted since are simply gone.
        ids = set(history.rule_ids)
        return sorted(OptimizationRule.objects.filter(pk__in=ids).values_list("pk", flat=True))

    def _apply_verdict(self, history: OptimizationHistory, accepted: bool) -> None:
        """Adjust rule statistics for a new or changed verdict."""
        previous = history.user_accepted
        if previous is accepted:
            return

        rule_ids = self._rule_ids(history)
        if not rule_ids:
            return
        rules = OptimizationRule.objects.filter(pk__in=rule_ids)
        if previous is None:
            rules.update(times_applied=F("times_applied") + 1)
            if accepted:
                rules.update(times_succeeded=F("times_succeeded") + 1)
        elif accepted:
            rules.update(times_succeeded=F("times_succeeded") + 1)
        else:
            rules.filter(times_succeeded__gt=0).update(times_succeeded=F("times_succeeded") - 1)
        _refresh_success_rate(rule_ids)

    def record_feedback(self, user, history_id: int, accepted: bool, feedback: Optional[str] = None) -> OptimizationHistory:
        with transaction.atomic():
            history = self._history_for_update(user, history_id)
            self._apply_verdict(history, bool(accepted))

            history.user_accepted = bool(accepted)
            update_fields = ["user_accepted", "feedback_at"]
            if feedback is not None:
                history.user_feedback = feedback
                update_fields.append("user_feedback")
            history.feedback_at = timezone.now()
            history.save(update_fields=update_fields)

        logger.info(f"Feedback on history {history_id}: accepted={accepted}")
        return history

    def revert(self, user, history_id: int) -> OptimizationHistory:
        try:
            with transaction.atomic():
                history = self._history_for_update(user, history_id)
                if history.reverted_at is not None:
                    raise AlreadyRevertedError(f"History {history_id} was already reverted at {history.reverted_at}")

                self.task_store.set_priority(history.task_id, history.old_priority)

                now = timezone.now()
                update_fields = ["reverted_at"]
                history.reverted_at = now
                if history.user_accepted is None:
                    self._apply_verdict(history, False)
                    history.user_accepted = False
                    history.feedback_at = now
                    update_fields += ["user_accepted", "feedback_at"]
                history.save(update_fields=update_fields)

                event = {
                    "user_id": history.user_id,
                    "task_id": history.task_id,
                    "history_id": history.pk,
                    "old_priority": history.new_priority,
                    "new_priority": history.old_priority,
                    "source": "revert",
                }
                transaction.on_commit(lambda: self.activity_log.record(sender=FeedbackTracker, **event))
        except TaskMutationRejected as e:
            raise PersistenceError(str(e)) from e
        except DatabaseError as e:
            raise PersistenceError(f"Revert of history {history_id} failed: {str(e)}") from e

        logger.info(f"History {history_id} reverted: task {history.task_id} back to {history.old_priority}")
        return history
