"""
Celery beat schedules for membership tasks
"""

MEMBERSHIP_CELERY_BEAT_SCHEDULE = {
    # Registry backfill over the recent block window
    'backfill-membership-registry': {
        'task': 'membership.backfill_registry',
        'schedule': 60.0,  # Every minute
    },
}
