# priority/tests/helpers.py
"""Shared fixtures for the priority test modules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, Optional

from django.contrib.auth import get_user_model

from priority.engine.rule_types import RuleDefinition
from priority.models import OptimizationRule
from tasks.models import Task
from tasks.store import BlockedTask, TaskSnapshot

User = get_user_model()

# All engine tests run against a fixed clock
FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def create_test_user(username: str = "testuser") -> User:
    """Create a test user with unique username."""
    return User.objects.create_user(
        username=username,
        email=f"{username}@example.com",
        password="testpass123",
    )


def create_test_task(
    user: User,
    title: str = "Test Task",
    priority: str = "medium",
    due_in_hours: Optional[float] = None,
    now: datetime = FIXED_NOW,
    **fields: Any,
) -> Task:
    """Create a task due `due_in_hours` after `now` (undated when None)."""
    due_date = now + timedelta(hours=due_in_hours) if due_in_hours is not None else None
    return Task.objects.create(
        user=user,
        title=title,
        priority=priority,
        due_date=due_date,
        **fields,
    )


def create_test_rule(
    user: User,
    rule_type: str = "deadline_based",
    weight: float = 0.8,
    rule_name: Optional[str] = None,
    **fields: Any,
) -> OptimizationRule:
    """
    Create a rule straight through the ORM, bypassing registry validation,
    so tests can also plant malformed rules.
    """
    return OptimizationRule.objects.create(
        user=user,
        rule_name=rule_name or f"{rule_type} rule",
        rule_type=rule_type,
        weight=weight,
        **fields,
    )


def make_snapshot(
    task_id: int = 1,
    priority: str = "medium",
    due_in_hours: Optional[float] = None,
    now: datetime = FIXED_NOW,
    blocked_due_hours=(),
    **fields: Any,
) -> TaskSnapshot:
    """An in-memory task snapshot; needs no database."""
    due_date = now + timedelta(hours=due_in_hours) if due_in_hours is not None else None
    blocks = tuple(
        BlockedTask(
            id=1000 + index,
            due_date=(now + timedelta(hours=hours)) if hours is not None else None,
            is_completed=False,
        )
        for index, hours in enumerate(blocked_due_hours)
    )
    return TaskSnapshot(
        id=task_id,
        owner_id=fields.pop("owner_id", 1),
        title=fields.pop("title", f"Task {task_id}"),
        priority=priority,
        due_date=due_date,
        blocks=blocks,
        **fields,
    )


def make_rule(
    rule_type: str = "deadline_based",
    weight: float = 0.8,
    rule_id: int = 1,
    is_active: bool = True,
    trigger_conditions: Optional[Dict[str, Any]] = None,
    exclusion_conditions: Optional[Dict[str, Any]] = None,
    rule_config: Optional[Dict[str, Any]] = None,
    rule_name: Optional[str] = None,
) -> SimpleNamespace:
    """A stand-in for an OptimizationRule row."""
    return SimpleNamespace(
        pk=rule_id,
        rule_name=rule_name or f"{rule_type} #{rule_id}",
        rule_type=rule_type,
        weight=weight,
        is_active=is_active,
        trigger_conditions=trigger_conditions or {},
        exclusion_conditions=exclusion_conditions or {},
        rule_config=rule_config or {},
    )


def compile_rule(**kwargs: Any) -> RuleDefinition:
    return RuleDefinition.from_model(make_rule(**kwargs))
