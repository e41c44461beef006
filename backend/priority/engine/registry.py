# priority/engine/registry.py

import logging
from typing import Any, Dict, List, Optional

from django.core.exceptions import ValidationError
from django.db import transaction

from priority.exceptions import RuleEvaluationError
from priority.models import OptimizationRule
from tasks.store import TaskFilter

from .rule_types import (
    RULE_CONTEXT,
    RULE_DEADLINE,
    RULE_DEPENDENCY,
    RULE_PATTERN,
    RULE_TYPES,
    RawConditions,
    parse_conditions,
    parse_config,
)

logger = logging.getLogger(__name__)

# Fields an owner may set; statistics belong to the feedback tracker.
EDITABLE_FIELDS = frozenset({
    'rule_name', 'rule_type', 'description', 'rule_config', 'weight',
    'trigger_conditions', 'exclusion_conditions', 'is_active',
})

DEFAULT_RULES = [
    {
        'rule_name': 'Deadline proximity',
        'rule_type': RULE_DEADLINE,
        'description': 'Raise priority as the due date approaches.',
        'weight': 0.8,
        'rule_config': {'importance_blend': 0.25},
    },
    {
        'rule_name': 'Blocking dependencies',
        'rule_type': RULE_DEPENDENCY,
        'description': 'Raise priority of tasks other open tasks are waiting on.',
        'weight': 0.6,
        'trigger_conditions': {'min_blocked': 1},
    },
    {
        'rule_name': 'Category completion history',
        'rule_type': RULE_PATTERN,
        'description': 'Favor categories that are often finished late.',
        'weight': 0.4,
        'rule_config': {'signal_keys': ['late_completion_rate', 'overdue_ratio']},
        'trigger_conditions': {'signal_min': {'sample_size': 3}},
    },
    {
        'rule_name': 'Working context',
        'rule_type': RULE_CONTEXT,
        'description': 'Use the relevance signal supplied with the request.',
        'weight': 0.3,
        'rule_config': {'signal_keys': ['relevance']},
        'trigger_conditions': {'signal_present': ['relevance']},
    },
]


def validate_rule(rule: OptimizationRule) -> None:
    """
    Full write-time validation. Raises django ValidationError; a rule that
    fails here never enters the registry.
    """
    rule.full_clean()

    if rule.rule_type not in RULE_TYPES:
        raise ValidationError({'rule_type': f"Unknown rule type {rule.rule_type!r}."})

    errors: Dict[str, List[str]] = {}
    for field_name in ('trigger_conditions', 'exclusion_conditions'):
        try:
            parse_conditions(rule.rule_type, getattr(rule, field_name))
        except RuleEvaluationError as e:
            errors.setdefault(field_name, []).append(str(e))
    try:
        parse_config(rule.rule_type, rule.rule_config)
    except RuleEvaluationError as e:
        errors.setdefault('rule_config', []).append(str(e))

    if errors:
        raise ValidationError(errors)


def _intersects(clause_values, filter_values) -> bool:
    if not clause_values or not filter_values:
        return True
    return bool(set(clause_values) & set(filter_values))


class RuleRegistry:
    """
    Owner-scoped CRUD for OptimizationRule.

    Weight edits are not retroactive: history rows carry their own snapshot
    of every fired rule's weight.
    """

    def __init__(self, user):
        self.user = user

    def queryset(self):
        return OptimizationRule.objects.filter(user=self.user)

    def list(self, is_active: Optional[bool] = None):
        qs = self.queryset()
        if is_active is not None:
            qs = qs.filter(is_active=is_active)
        return qs

    def get(self, rule_id: int) -> OptimizationRule:
        return self.queryset().get(pk=rule_id)

    def _check_fields(self, fields: Dict[str, Any]) -> None:
        forbidden = sorted(set(fields) - EDITABLE_FIELDS)
        if forbidden:
            raise ValidationError({name: "This field cannot be set directly." for name in forbidden})

    def create(self, **fields) -> OptimizationRule:
        self._check_fields(fields)
        rule = OptimizationRule(user=self.user, **fields)
        validate_rule(rule)
        rule.save()
        logger.info(f"Rule {rule.pk} '{rule.rule_name}' created for user {self.user.pk}")
        return rule

    def update(self, rule_id: int, **fields) -> OptimizationRule:
        self._check_fields(fields)
        rule = self.get(rule_id)
        for name, value in fields.items():
            setattr(rule, name, value)
        validate_rule(rule)
        rule.save()
        logger.info(f"Rule {rule.pk} updated: {', '.join(sorted(fields))}")
        return rule

    def set_active(self, rule_id: int, is_active: bool) -> OptimizationRule:
        rule = self.get(rule_id)
        if rule.is_active != is_active:
            rule.is_active = is_active
            rule.save(update_fields=['is_active', 'updated_at'])
        return rule

    def delete(self, rule_id: int) -> bool:
        """
        Hard-deletes an unreferenced rule. A rule referenced by history is
        soft-disabled instead. Returns True when the row was removed.
        """
        with transaction.atomic():
            rule = self.queryset().select_for_update().get(pk=rule_id)
            if rule.history_entries.exists():
                if rule.is_active:
                    rule.is_active = False
                    rule.save(update_fields=['is_active', 'updated_at'])
                logger.info(f"Rule {rule_id} is referenced by history; disabled instead of deleted")
                return False
            rule.delete()
        logger.info(f"Rule {rule_id} deleted")
        return True

    def active_rules_for(self, task_filter: Optional[TaskFilter] = None) -> List[OptimizationRule]:
        """
        Active rules whose category/project/priority triggers can match
        something in the run's scope. Malformed rules are passed through;
        the scorer skips and logs them.
        """
        task_filter = task_filter or TaskFilter()
        rules = []
        for rule in self.queryset().filter(is_active=True):
            try:
                triggers = parse_conditions(rule.rule_type, rule.trigger_conditions)
            except RuleEvaluationError:
                rules.append(rule)
                continue
            if isinstance(triggers, RawConditions):
                rules.append(rule)
                continue
            if (
                _intersects(triggers.categories, task_filter.categories)
                and _intersects(triggers.projects, task_filter.projects)
                and _intersects(triggers.priorities, task_filter.priorities)
            ):
                rules.append(rule)
        return rules

    def create_default_rules(self) -> List[OptimizationRule]:
        """Seed the starter rule set; rules whose name already exists are left alone."""
        existing = set(self.queryset().values_list('rule_name', flat=True))
        created = []
        with transaction.atomic():
            for definition in DEFAULT_RULES:
                if definition['rule_name'] in existing:
                    continue
                created.append(self.create(**definition))
        return created
