from django.apps import AppConfig


class PriorityConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'priority'
    verbose_name = 'Priority optimization'

    def ready(self):
        from .engine import activity  # noqa: F401
