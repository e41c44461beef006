from django.db import models
from django.conf import settings
from django.core.validators import MinValueValidator, MaxValueValidator
from django.utils.translation import gettext_lazy as _


PRIORITY_LOW = 'low'
PRIORITY_MEDIUM = 'medium'
PRIORITY_HIGH = 'high'
PRIORITY_URGENT = 'urgent'

PRIORITY_CHOICES = [
    (PRIORITY_LOW, _('Low')),
    (PRIORITY_MEDIUM, _('Medium')),
    (PRIORITY_HIGH, _('High')),
    (PRIORITY_URGENT, _('Urgent')),
]

STATUS_PENDING = 'pending'
STATUS_ACTIVE = 'active'
STATUS_COMPLETED = 'completed'

STATUS_CHOICES = [
    (STATUS_PENDING, _('Pending')),
    (STATUS_ACTIVE, _('Active')),
    (STATUS_COMPLETED, _('Completed')),
]


class Task(models.Model):
    """
    A user's task as seen by the priority engine.

    The engine never creates or deletes tasks; it reads them through
    tasks.store.TaskStore and only ever writes the `priority` field.
    """
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='tasks',
        verbose_name=_("user")
    )

    title = models.CharField(max_length=255, verbose_name=_("title"))
    description = models.TextField(blank=True, verbose_name=_("description"))

    priority = models.CharField(
        max_length=16,
        choices=PRIORITY_CHOICES,
        default=PRIORITY_MEDIUM,
        verbose_name=_("priority")
    )

    # Explicit, user-set importance (1=low to 5=high). Distinct from
    # `priority`, which the optimizer may rewrite.
    importance = models.PositiveSmallIntegerField(
        default=3,
        validators=[MinValueValidator(1), MaxValueValidator(5)],
        verbose_name=_("importance"),
        help_text=_("User-assigned importance (1=low to 5=high).")
    )

    category = models.CharField(max_length=64, blank=True, verbose_name=_("category"))
    project = models.CharField(max_length=128, blank=True, verbose_name=_("project"))

    status = models.CharField(
        max_length=16,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
        verbose_name=_("status")
    )

    due_date = models.DateTimeField(
        null=True, blank=True,
        verbose_name=_("due date"),
        help_text=_("The deadline for the task.")
    )

    # Tasks that must finish before this one can start.
    blocked_by = models.ManyToManyField(
        'self',
        symmetrical=False,
        related_name='blocks',
        blank=True,
        verbose_name=_("blocked by")
    )

    completed_at = models.DateTimeField(null=True, blank=True, verbose_name=_("completed at"))
    created_at = models.DateTimeField(auto_now_add=True, verbose_name=_("created at"))
    updated_at = models.DateTimeField(auto_now=True, verbose_name=_("updated at"))

    class Meta:
        verbose_name = _("Task")
        verbose_name_plural = _("Tasks")
        ordering = ['due_date', 'id']

    def __str__(self):
        return f"Task for {self.user}: {self.title}"

    @property
    def is_completed(self):
        return self.status == STATUS_COMPLETED
