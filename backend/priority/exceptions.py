# priority/exceptions.py
"""
Priority Engine Error Taxonomy
==============================

- ValidationError (django.core.exceptions): malformed rule or schedule
  config, rejected at write time. Not redefined here.
- RuleEvaluationError: one rule's conditions or config cannot be evaluated.
  Isolated to that rule; scoring continues with the others.
- PersistenceError: a score/history/task write failed. Retried once by the
  job processor, then counted as a per-task error.
- FatalJobError: candidate enumeration failed. Aborts the whole job.
- AlreadyRevertedError: a history row was reverted a second time.
- ScheduleBusyError: a schedule already has a pending or running job.
"""


class PriorityEngineError(Exception):
    """Base class for all priority engine errors."""

    pass


class RuleEvaluationError(PriorityEngineError):
    """Raised when a rule's conditions or config are malformed."""

    def __init__(self, message: str, rule_id=None):
        super().__init__(message)
        self.rule_id = rule_id


class PersistenceError(PriorityEngineError):
    """Raised when applying a change (score, history or task write) fails."""

    pass


class FatalJobError(PriorityEngineError):
    """Raised when a job cannot even enumerate its candidate tasks."""

    pass


class AlreadyRevertedError(PriorityEngineError):
    """Raised when reverting a history entry that was already reverted."""

    pass


class ScheduleBusyError(PriorityEngineError):
    """Raised when a schedule already has an active job."""

    pass


class JobStopped(PriorityEngineError):
    """
    Internal signal used by the job processor to stop between tasks.

    `reason` is either "cancelled" or "timeout".
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
