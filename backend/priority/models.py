from django.db import models
from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.utils.translation import gettext_lazy as _

from tasks.models import PRIORITY_CHOICES
from tasks.store import SCOPES, TaskFilter


RULE_TYPE_CHOICES = [
    ('deadline_based', _('Deadline based')),
    ('dependency_based', _('Dependency based')),
    ('pattern_based', _('Pattern based')),
    ('context_based', _('Context based')),
]

OPTIMIZATION_TYPE_CHOICES = [
    ('automatic', _('Automatic')),
    ('suggested', _('Suggested')),
    ('manual_override', _('Manual override')),
]

SCHEDULE_TYPE_CHOICES = [
    ('daily', _('Daily')),
    ('hourly', _('Hourly')),
    ('on_change', _('On change')),
    ('manual', _('Manual')),
]

SCHEDULE_STATE_CHOICES = [
    ('idle', _('Idle')),
    ('due', _('Due')),
    ('running', _('Running')),
]

SCOPE_CHOICES = [(scope, scope.capitalize()) for scope in SCOPES]

JOB_TYPE_CHOICES = [
    ('scheduled', _('Scheduled')),
    ('on_demand', _('On demand')),
    ('triggered', _('Triggered')),
]

JOB_STATUS_CHOICES = [
    ('pending', _('Pending')),
    ('running', _('Running')),
    ('completed', _('Completed')),
    ('failed', _('Failed')),
]

ACTIVE_JOB_STATUSES = ('pending', 'running')

AGGRESSIVENESS_CHOICES = [
    ('conservative', _('Conservative')),
    ('balanced', _('Balanced')),
    ('aggressive', _('Aggressive')),
]


class OptimizationRule(models.Model):
    """
    A weighted heuristic contributing to a task's computed priority.

    Statistics (times_applied, times_succeeded, success_rate) are written
    only by the feedback tracker.
    """
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='priority_rules',
        verbose_name=_("user")
    )

    rule_name = models.CharField(max_length=120, verbose_name=_("rule name"))
    rule_type = models.CharField(max_length=32, choices=RULE_TYPE_CHOICES, verbose_name=_("rule type"))
    description = models.TextField(blank=True, verbose_name=_("description"))

    rule_config = models.JSONField(default=dict, blank=True, verbose_name=_("rule config"))
    weight = models.FloatField(
        default=1.0,
        validators=[MinValueValidator(0.0), MaxValueValidator(1.0)],
        verbose_name=_("weight")
    )
    trigger_conditions = models.JSONField(default=dict, blank=True, verbose_name=_("trigger conditions"))
    exclusion_conditions = models.JSONField(default=dict, blank=True, verbose_name=_("exclusion conditions"))

    is_active = models.BooleanField(default=True, verbose_name=_("is active"))
    times_applied = models.PositiveIntegerField(default=0, verbose_name=_("times applied"))
    times_succeeded = models.PositiveIntegerField(default=0, verbose_name=_("times succeeded"))
    success_rate = models.FloatField(null=True, blank=True, verbose_name=_("success rate"))

    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("created at"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("updated at"))

    class Meta:
        verbose_name = _("Optimization rule")
        verbose_name_plural = _("Optimization rules")
        ordering = ['-weight', 'id']

    def __str__(self):
        return f"{self.rule_name} ({self.rule_type}, w={self.weight})"


class TaskPriorityScore(models.Model):
    """One scoring event for a (task, owner) pair."""
    task = models.ForeignKey(
        'tasks.Task',
        on_delete=models.CASCADE,
        related_name='priority_scores',
        verbose_name=_("task")
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='task_priority_scores',
        verbose_name=_("user")
    )
    job = models.ForeignKey(
        'OptimizationJob',
        on_delete=models.SET_NULL,
        null=True, blank=True,
        related_name='scores',
        verbose_name=_("job")
    )

    calculated_priority = models.CharField(max_length=16, choices=PRIORITY_CHOICES)
    priority_score = models.FloatField(default=0.0)
    confidence_level = models.FloatField(
        default=0.0,
        validators=[MinValueValidator(0.0), MaxValueValidator(1.0)]
    )

    urgency_score = models.FloatField(default=0.0)
    importance_score = models.FloatField(default=0.0)
    context_score = models.FloatField(default=0.0)
    pattern_score = models.FloatField(default=0.0)
    dependency_score = models.FloatField(default=0.0)

    calculation_method = models.CharField(max_length=32, default='weighted_rules')
    factors_considered = models.JSONField(default=dict, blank=True)
    last_recalculated_at = models.DateTimeField()

    is_current = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = _("Task priority score")
        verbose_name_plural = _("Task priority scores")
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['task', 'user'],
                condition=models.Q(is_current=True),
                name='unique_current_priority_score',
            ),
        ]

    def __str__(self):
        return f"Score {self.priority_score:.2f} -> {self.calculated_priority} for task {self.task_id}"


class OptimizationHistory(models.Model):
    """
    Append-only audit record of an applied or suggested priority change.

    Once inserted, only the feedback fields may be written.
    """
    FEEDBACK_FIELDS = frozenset({'user_accepted', 'user_feedback', 'feedback_at', 'reverted_at'})

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='priority_history',
        verbose_name=_("user")
    )
    task = models.ForeignKey(
        'tasks.Task',
        on_delete=models.CASCADE,
        related_name='priority_history',
        verbose_name=_("task")
    )
    job = models.ForeignKey(
        'OptimizationJob',
        on_delete=models.SET_NULL,
        null=True, blank=True,
        related_name='history',
        verbose_name=_("job")
    )

    optimization_type = models.CharField(max_length=32, choices=OPTIMIZATION_TYPE_CHOICES, default='automatic')
    old_priority = models.CharField(max_length=16, choices=PRIORITY_CHOICES)
    new_priority = models.CharField(max_length=16, choices=PRIORITY_CHOICES)
    confidence_score = models.FloatField(default=0.0)
    priority_score = models.FloatField(default=0.0)
    previous_score = models.FloatField(null=True, blank=True)
    reasoning = models.TextField(blank=True)

    # Snapshot of every fired rule (id, name, type, weight at apply time).
    applied_rules = models.JSONField(default=list, blank=True)
    optimization_factors = models.JSONField(default=dict, blank=True)
    rules = models.ManyToManyField(OptimizationRule, related_name='history_entries', blank=True)

    user_accepted = models.BooleanField(null=True, blank=True)
    user_feedback = models.TextField(blank=True)
    feedback_at = models.DateTimeField(null=True, blank=True)
    reverted_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = _("Optimization history")
        verbose_name_plural = _("Optimization history")
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"Task {self.task_id}: {self.old_priority} -> {self.new_priority}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get('update_fields')
            if not update_fields or not set(update_fields) <= self.FEEDBACK_FIELDS:
                raise ValueError(
                    "OptimizationHistory is append-only; only feedback fields may be updated."
                )
        super().save(*args, **kwargs)

    @property
    def is_reverted(self):
        return self.reverted_at is not None

    @property
    def rule_ids(self):
        return [entry.get('rule_id') for entry in self.applied_rules or [] if entry.get('rule_id')]


class OptimizationSchedule(models.Model):
    """Owner-scoped recurring or manual trigger definition."""
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='priority_schedules',
        verbose_name=_("user")
    )

    schedule_name = models.CharField(max_length=120)
    schedule_type = models.CharField(max_length=16, choices=SCHEDULE_TYPE_CHOICES)

    schedule_time = models.TimeField(null=True, blank=True, help_text=_("Time of day for daily schedules."))
    schedule_interval = models.PositiveIntegerField(null=True, blank=True, help_text=_("Interval in minutes."))

    optimization_scope = models.CharField(max_length=16, choices=SCOPE_CHOICES, default='all')
    max_changes_per_run = models.PositiveIntegerField(default=10)
    min_confidence_threshold = models.FloatField(
        default=0.7,
        validators=[MinValueValidator(0.0), MaxValueValidator(1.0)]
    )

    category_filter = models.JSONField(default=list, blank=True)
    project_filter = models.JSONField(default=list, blank=True)
    priority_filter = models.JSONField(default=list, blank=True)

    is_active = models.BooleanField(default=True)
    state = models.CharField(max_length=16, choices=SCHEDULE_STATE_CHOICES, default='idle')
    last_run_at = models.DateTimeField(null=True, blank=True)
    next_run_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("Optimization schedule")
        verbose_name_plural = _("Optimization schedules")
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"{self.schedule_name} ({self.schedule_type})"

    def to_task_filter(self):
        return TaskFilter.from_dict({
            'scope': self.optimization_scope,
            'categories': self.category_filter,
            'projects': self.project_filter,
            'priorities': self.priority_filter,
        })


class OptimizationJob(models.Model):
    """One execution of an optimization run."""
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='priority_jobs',
        verbose_name=_("user")
    )
    schedule = models.ForeignKey(
        OptimizationSchedule,
        on_delete=models.SET_NULL,
        null=True, blank=True,
        related_name='jobs'
    )
    retry_of = models.ForeignKey(
        'self',
        on_delete=models.SET_NULL,
        null=True, blank=True,
        related_name='retries'
    )

    job_type = models.CharField(max_length=16, choices=JOB_TYPE_CHOICES, default='on_demand')
    # Run parameters: task filter, max_changes, min_confidence, context.
    scope = models.JSONField(default=dict, blank=True)

    status = models.CharField(max_length=16, choices=JOB_STATUS_CHOICES, default='pending')
    cancel_requested = models.BooleanField(default=False)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    tasks_analyzed = models.PositiveIntegerField(default=0)
    priorities_changed = models.PositiveIntegerField(default=0)
    errors_count = models.PositiveIntegerField(default=0)
    error_details = models.JSONField(default=list, blank=True)

    progress_percentage = models.PositiveSmallIntegerField(default=0)
    current_task = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = _("Optimization job")
        verbose_name_plural = _("Optimization jobs")
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f"Job {self.pk} ({self.job_type}, {self.status})"

    @property
    def is_active(self):
        return self.status in ACTIVE_JOB_STATUSES


class OptimizationPreference(models.Model):
    """
    Per-user optimizer preferences: how aggressive unattended runs are and
    how much each category or project counts toward importance.
    """
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='priority_preferences'
    )

    aggressiveness = models.CharField(max_length=16, choices=AGGRESSIVENESS_CHOICES, default='balanced')
    category_weights = models.JSONField(
        default=dict, blank=True,
        help_text=_("Category -> weight in [0, 1] used by the importance score.")
    )
    project_weights = models.JSONField(
        default=dict, blank=True,
        help_text=_("Project -> weight in [0, 1] used by the importance score.")
    )

    class Meta:
        verbose_name = _("Optimization preference")
        verbose_name_plural = _("Optimization preferences")

    def __str__(self):
        return f"Optimization preferences for {self.user}"

    def clean(self):
        """Every configured weight must be a number between 0.0 and 1.0."""
        for field_name in ('category_weights', 'project_weights'):
            weights = getattr(self, field_name)
            if not isinstance(weights, dict):
                raise ValidationError({field_name: "Must be an object mapping names to weights."})
            for key, value in weights.items():
                if isinstance(value, bool) or not isinstance(value, (int, float)) or not (0.0 <= value <= 1.0):
                    raise ValidationError(
                        {field_name: f"Weight for '{key}' must be between 0.0 and 1.0. Got: {value!r}"}
                    )

    def save(self, *args, **kwargs):
        """Run full_clean before saving so invalid weights never persist."""
        self.full_clean()
        super().save(*args, **kwargs)
