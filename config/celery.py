import os
from celery import Celery

# set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('membership')

# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django app configs.
app.autodiscover_tasks()

from membership.celery_schedules import MEMBERSHIP_CELERY_BEAT_SCHEDULE  # noqa: E402

app.conf.beat_schedule.update(MEMBERSHIP_CELERY_BEAT_SCHEDULE)

# Ensure DB connections are properly managed around every Celery task
from celery import signals  # noqa: E402
from django.db import close_old_connections  # noqa: E402


@signals.task_prerun.connect
def _celery_prerun_close_stale_conns(task=None, *args, **kwargs):
    # Eager tasks share the caller's connection and transaction
    if task is not None and task.request.is_eager:
        return
    close_old_connections()


@signals.task_postrun.connect
def _celery_postrun_close_stale_conns(task=None, *args, **kwargs):
    if task is not None and task.request.is_eager:
        return
    close_old_connections()
