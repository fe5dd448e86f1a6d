"""
Celery configuration for the dispatch worker.

Uses Redis as the message broker. Beat drives the periodic dispatch,
provider hand-off, reconciliation and claim recovery passes.
"""

from celery import Celery
from kombu import Queue, Exchange
from datetime import timedelta

from ..core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "mailflow",
    broker=settings.redis_url,
    backend=settings.celery_result_backend,
    include=["mailflow.email.tasks"]
)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=timedelta(days=1),
    result_extended=True,

    # Task time limits (seconds)
    task_soft_time_limit=300,
    task_time_limit=600,

    # Beat scheduler settings
    beat_scheduler="celery.beat:PersistentScheduler",
    beat_schedule_filename="celerybeat-schedule",

    beat_schedule={
        "dispatch-due-emails": {
            "task": "mailflow.email.tasks.dispatch_due_emails",
            "schedule": timedelta(seconds=settings.dispatch_interval_seconds),
            "options": {"queue": "email_dispatch"}
        },
        "handoff-upcoming-emails": {
            "task": "mailflow.email.tasks.handoff_upcoming_emails",
            "schedule": timedelta(minutes=1),
            "options": {"queue": "email_dispatch"}
        },
        "reconcile-provider-cancellations": {
            "task": "mailflow.email.tasks.reconcile_provider_cancellations",
            "schedule": timedelta(minutes=5),
            "options": {"queue": "maintenance"}
        },
        "recover-stale-claims": {
            "task": "mailflow.email.tasks.recover_stale_claims",
            "schedule": timedelta(minutes=10),
            "options": {"queue": "maintenance"}
        },
    },

    task_routes={
        "mailflow.email.tasks.dispatch_due_emails": {"queue": "email_dispatch"},
        "mailflow.email.tasks.handoff_upcoming_emails": {"queue": "email_dispatch"},
        "mailflow.email.tasks.reconcile_provider_cancellations": {"queue": "maintenance"},
        "mailflow.email.tasks.recover_stale_claims": {"queue": "maintenance"},
    },
)

celery_app.conf.task_queues = (
    Queue("email_dispatch", Exchange("email_dispatch"), routing_key="email.dispatch"),
    Queue("email_default", Exchange("email_default"), routing_key="email.default"),
    Queue("maintenance", Exchange("maintenance"), routing_key="maintenance"),
)

# Default queue
celery_app.conf.task_default_queue = "email_default"
celery_app.conf.task_default_exchange = "email_default"
celery_app.conf.task_default_routing_key = "email.default"


def get_celery_app() -> Celery:
    """Get the configured Celery app instance."""
    return celery_app
