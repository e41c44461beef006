# priority/engine/activity.py

import logging
from typing import Any, Dict

from django.dispatch import Signal, receiver

logger = logging.getLogger(__name__)

# Sent once per applied or reverted change, after the write commits.
# kwargs: user_id, task_id, history_id, old_priority, new_priority, source
priority_changed = Signal()


class ActivityLog:
    """
    Fire-and-forget sink for "priority changed" events.

    Receivers run through send_robust: a failing receiver is logged and
    never affects the job or request that produced the event.
    """

    def record(self, sender: Any = None, **event: Any) -> None:
        responses = priority_changed.send_robust(sender=sender or self.__class__, **event)
        for receiver_func, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    f"Activity receiver {getattr(receiver_func, '__qualname__', receiver_func)} failed "
                    f"for task {event.get('task_id')}: {response!r}"
                )


def describe_event(**event: Any) -> Dict[str, Any]:
    return {
        "task_id": event.get("task_id"),
        "history_id": event.get("history_id"),
        "change": f"{event.get('old_priority')} -> {event.get('new_priority')}",
        "source": event.get("source"),
    }


@receiver(priority_changed, dispatch_uid="priority.activity.log_priority_change")
def log_priority_change(sender, **event):
    logger.info(f"Priority changed: {describe_event(**event)}")
