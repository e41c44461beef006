import os
from dotenv import load_dotenv
load_dotenv()  # same .env as settings.py
from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'spohome.settings')

app = Celery('spohome')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object('django.conf:settings', namespace='CELERY')

# The optimization tasks live in priority/engine/celery_tasks.py rather than
# the conventional <app>/tasks.py, so point discovery at them explicitly.
app.autodiscover_tasks(['priority.engine'], related_name='celery_tasks')

# Single scheduling coordinator: beat scans for due schedules and enqueues
# one job per schedule onto the worker pool.
app.conf.beat_schedule = {
    'dispatch-due-priority-schedules': {
        'task': 'priority.engine.celery_tasks.dispatch_due_schedules',
        'schedule': float(os.environ.get('PRIORITY_DISPATCH_INTERVAL_SECONDS', 60)),
    },
}
