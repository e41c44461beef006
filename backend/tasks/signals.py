import logging
from django.db import transaction
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from tasks.models import Task

logger = logging.getLogger(__name__)

# Saves touching only these fields never count as a watched mutation.
IGNORED_FIELDS = frozenset({'priority', 'updated_at'})


def _invalidate_pattern_signals(owner_id, category):
    from priority.engine.aggregator import SignalAggregator

    SignalAggregator().invalidate(owner_id, category)


@receiver(post_save, sender=Task, dispatch_uid='tasks.notify_on_change_schedules')
def notify_on_change_schedules(sender, instance: Task, created: bool, update_fields=None, **kwargs):
    """
    Hand a task mutation to the owner's on_change optimization schedules.

    Runs after commit so the triggered job sees the saved row. Priority-only
    writes are ignored; the engine itself writes through a queryset update
    and never reaches this receiver, but a manual priority save must not
    trigger a re-optimization either. The cached pattern aggregate of the
    task's category is dropped first so the job counts the new state.
    """
    if kwargs.get('raw'):
        return
    if update_fields and set(update_fields) <= IGNORED_FIELDS:
        return

    task_id = instance.pk
    owner_id = instance.user_id
    category = instance.category

    def trigger():
        from priority.engine.schedules import ScheduleManager

        _invalidate_pattern_signals(owner_id, category)
        try:
            jobs = ScheduleManager().notify_task_changed(instance)
        except Exception as e:
            # The task write already committed; a scheduling hiccup must not
            # surface as a failed save to the caller.
            logger.exception(f"on_change dispatch failed for Task {task_id}: {str(e)}")
            return
        if jobs:
            logger.info(f"Task {task_id} mutation triggered {len(jobs)} optimization job(s)")

    transaction.on_commit(trigger)


@receiver(post_delete, sender=Task, dispatch_uid='tasks.invalidate_pattern_signals_on_delete')
def invalidate_pattern_signals_on_delete(sender, instance: Task, **kwargs):
    owner_id = instance.user_id
    category = instance.category
    transaction.on_commit(lambda: _invalidate_pattern_signals(owner_id, category))
