import os
from celery import Celery
from celery.schedules import crontab as _celery_crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.settings')

app = Celery('backend')

app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Task routing configuration – subscription passes run on their own queue
app.conf.task_routes = {
    "subscriptions.tasks.run_subscription_sweep": {"queue": "subscriptions"},
    "subscriptions.tasks.drain_failed_operations": {"queue": "subscriptions"},
    "subscriptions.tasks.expire_client_subscriptions": {"queue": "subscriptions"},

    # Default queue
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # A pass killed mid-run resumes on the next tick
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Monitoring settings
    worker_send_task_events=True,
    task_send_sent_event=True,

    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'subscriptions': {
            'exchange': 'subscriptions',
            'routing_key': 'subscriptions',
        },
    },

    task_default_priority=5,

    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
)

app.conf.task_annotations = {
    'subscriptions.tasks.run_subscription_sweep': {
        'time_limit': 600,  # 10 min hard timeout
        'soft_time_limit': 540,
    },
    'subscriptions.tasks.drain_failed_operations': {
        'rate_limit': '30/m',
        'time_limit': 300,
        'soft_time_limit': 240,
    },
    'subscriptions.tasks.expire_client_subscriptions': {
        'rate_limit': '1/m',
        'time_limit': 120,
    },
}


class VerboseCrontab(_celery_crontab):
    """Extend Celery's crontab schedule with a repr that includes the minute expression."""

    def __repr__(self) -> str:  # pragma: no cover - formatting helper only
        base = super().__repr__()
        minute_expr = getattr(self, "_orig_minute", None)
        if minute_expr and f"minute='{minute_expr}'" not in base:
            base = f"{base} minute='{minute_expr}'"
        return base


def crontab(*args, **kwargs):
    """Factory returning a VerboseCrontab to keep schedule repr stable for tests."""
    return VerboseCrontab(*args, **kwargs)


app.conf.beat_schedule = {
    "subscription_sweep_15min": {
        "task": "subscriptions.tasks.run_subscription_sweep",
        "schedule": crontab(minute="*/15"),
        "options": {"queue": "subscriptions", "priority": 6},
    },
    "drain_failed_operations_5min": {
        "task": "subscriptions.tasks.drain_failed_operations",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "subscriptions", "priority": 8},
    },
    "expire_client_subscriptions_hourly": {
        "task": "subscriptions.tasks.expire_client_subscriptions",
        "schedule": crontab(minute=5),
        "options": {"queue": "subscriptions"},
    },
}


# System health check task
@app.task(bind=True)
def health_check(self):
    """System health check task"""
    from django.db import connection

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")

        return {
            'status': 'healthy',
            'timestamp': app.now(),
            'worker_id': self.request.id,
        }
    except Exception as e:
        return {
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': app.now(),
        }
