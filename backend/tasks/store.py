# tasks/store.py
"""
Task Store
==========

The read/write boundary between the priority engine and task persistence.

The engine only ever sees immutable TaskSnapshot objects and may only
change a task's `priority`. Everything ORM-specific stays in this module so
the scorer can run on plain data, off the request thread, with no database
access.

Operations:
-----------
- get_tasks(owner, task_filter): candidate enumeration, paged
- set_priority(task_id, priority): the single mutation the engine issues
- category_history(owner, category): raw counts for pattern signals
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from django.conf import settings
from django.core.paginator import Paginator
from django.db.models import Count, F, Q
from django.utils import timezone

from .models import PRIORITY_CHOICES, STATUS_ACTIVE, STATUS_COMPLETED, STATUS_PENDING, Task

logger = logging.getLogger(__name__)

SCOPE_ALL = "all"
SCOPE_PENDING = "pending"
SCOPE_ACTIVE = "active"
SCOPE_OVERDUE = "overdue"
SCOPES = (SCOPE_ALL, SCOPE_PENDING, SCOPE_ACTIVE, SCOPE_OVERDUE)

PRIORITY_VALUES = tuple(value for value, _label in PRIORITY_CHOICES)

DEFAULT_PAGE_SIZE = 200


class TaskMutationRejected(Exception):
    """Raised when the store refuses a priority write."""

    pass


@dataclass(frozen=True)
class BlockedTask:
    """A task waiting on the snapshot's task."""

    id: int
    due_date: Optional[datetime]
    is_completed: bool


@dataclass(frozen=True)
class TaskSnapshot:
    """Read-only view of the task fields needed for scoring."""

    id: int
    owner_id: int
    title: str
    priority: str
    importance: int = 3
    category: str = ""
    project: str = ""
    status: str = STATUS_PENDING
    due_date: Optional[datetime] = None
    blocks: Tuple[BlockedTask, ...] = ()

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    @property
    def open_blocked(self) -> Tuple[BlockedTask, ...]:
        return tuple(b for b in self.blocks if not b.is_completed)

    @classmethod
    def from_model(cls, task: Task) -> "TaskSnapshot":
        return cls(
            id=task.id,
            owner_id=task.user_id,
            title=task.title,
            priority=task.priority,
            importance=task.importance,
            category=task.category or "",
            project=task.project or "",
            status=task.status,
            due_date=task.due_date,
            blocks=tuple(
                BlockedTask(
                    id=blocked.id,
                    due_date=blocked.due_date,
                    is_completed=blocked.status == STATUS_COMPLETED,
                )
                for blocked in task.blocks.all()
            ),
        )


def _as_tuple(values, cast=str) -> tuple:
    if not values:
        return ()
    return tuple(cast(v) for v in values)


@dataclass(frozen=True)
class TaskFilter:
    """
    The scope of a run: one of SCOPES plus optional category, project,
    current-priority and explicit task-id filters. Empty filters match
    everything.
    """

    scope: str = SCOPE_ALL
    categories: Tuple[str, ...] = ()
    projects: Tuple[str, ...] = ()
    priorities: Tuple[str, ...] = ()
    task_ids: Tuple[int, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TaskFilter":
        data = data or {}
        return cls(
            scope=data.get("scope") or SCOPE_ALL,
            categories=_as_tuple(data.get("categories")),
            projects=_as_tuple(data.get("projects")),
            priorities=_as_tuple(data.get("priorities")),
            task_ids=_as_tuple(data.get("task_ids"), int),
        )

    def matches(self, task, now: Optional[datetime] = None) -> bool:
        """In-memory counterpart of the store query, for a single task."""
        now = now or timezone.now()
        completed = task.status == STATUS_COMPLETED
        if self.scope == SCOPE_ALL and completed:
            return False
        if self.scope == SCOPE_PENDING and task.status != STATUS_PENDING:
            return False
        if self.scope == SCOPE_ACTIVE and task.status != STATUS_ACTIVE:
            return False
        if self.scope == SCOPE_OVERDUE and (completed or task.due_date is None or task.due_date >= now):
            return False
        if self.categories and task.category not in self.categories:
            return False
        if self.projects and task.project not in self.projects:
            return False
        if self.priorities and task.priority not in self.priorities:
            return False
        if self.task_ids and task.id not in self.task_ids:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "categories": list(self.categories),
            "projects": list(self.projects),
            "priorities": list(self.priorities),
            "task_ids": list(self.task_ids),
        }


class TaskStore:
    """ORM-backed Task Store collaborator."""

    def __init__(self, page_size: Optional[int] = None):
        self.page_size = page_size or getattr(
            settings, "PRIORITY_CANDIDATE_PAGE_SIZE", DEFAULT_PAGE_SIZE
        )

    def _queryset(self, owner, task_filter: TaskFilter, now: datetime):
        qs = Task.objects.filter(user_id=getattr(owner, "pk", owner))

        scope = task_filter.scope
        if scope == SCOPE_ALL:
            qs = qs.exclude(status=STATUS_COMPLETED)
        elif scope == SCOPE_PENDING:
            qs = qs.filter(status=STATUS_PENDING)
        elif scope == SCOPE_ACTIVE:
            qs = qs.filter(status=STATUS_ACTIVE)
        elif scope == SCOPE_OVERDUE:
            qs = qs.exclude(status=STATUS_COMPLETED).filter(due_date__lt=now)
        else:
            raise ValueError(f"Unknown task scope: {scope!r}")

        if task_filter.categories:
            qs = qs.filter(category__in=task_filter.categories)
        if task_filter.projects:
            qs = qs.filter(project__in=task_filter.projects)
        if task_filter.priorities:
            qs = qs.filter(priority__in=task_filter.priorities)
        if task_filter.task_ids:
            qs = qs.filter(id__in=task_filter.task_ids)

        return qs.prefetch_related("blocks").order_by("id")

    def iter_pages(
        self,
        owner,
        task_filter: Optional[TaskFilter] = None,
        now: Optional[datetime] = None,
    ) -> Iterator[List[TaskSnapshot]]:
        """Yield candidate snapshots one page at a time."""
        task_filter = task_filter or TaskFilter()
        now = now or timezone.now()
        paginator = Paginator(self._queryset(owner, task_filter, now), self.page_size)
        for number in paginator.page_range:
            page = paginator.page(number)
            yield [TaskSnapshot.from_model(task) for task in page.object_list]

    def get_tasks(
        self,
        owner,
        task_filter: Optional[TaskFilter] = None,
        now: Optional[datetime] = None,
    ) -> List[TaskSnapshot]:
        snapshots: List[TaskSnapshot] = []
        for page in self.iter_pages(owner, task_filter, now):
            snapshots.extend(page)
        logger.debug(f"TaskStore: {len(snapshots)} candidates for owner {getattr(owner, 'pk', owner)}")
        return snapshots

    def set_priority(self, task_id: int, priority: str) -> None:
        """
        Write a new priority. Completed or missing tasks are rejected.

        Uses a queryset update so the write does not fire post_save and
        therefore never re-triggers on_change schedules.
        """
        if priority not in PRIORITY_VALUES:
            raise TaskMutationRejected(f"Invalid priority {priority!r} for task {task_id}")

        updated = (
            Task.objects.filter(id=task_id)
            .exclude(status=STATUS_COMPLETED)
            .update(priority=priority, updated_at=timezone.now())
        )
        if not updated:
            raise TaskMutationRejected(f"Task {task_id} does not exist or is completed")

    def category_history(self, owner, category: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Completion and overdue counts for one of the owner's categories."""
        now = now or timezone.now()
        completed = Q(status=STATUS_COMPLETED)
        with_deadline = Q(due_date__isnull=False, completed_at__isnull=False)
        counts = Task.objects.filter(
            user_id=getattr(owner, "pk", owner), category=category
        ).aggregate(
            completed=Count("id", filter=completed),
            completed_with_due=Count("id", filter=completed & with_deadline),
            completed_late=Count(
                "id", filter=completed & with_deadline & Q(completed_at__gt=F("due_date"))
            ),
            open=Count("id", filter=~completed),
            open_overdue=Count("id", filter=~completed & Q(due_date__lt=now)),
        )
        return {key: int(value or 0) for key, value in counts.items()}
