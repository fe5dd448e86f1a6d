#!/usr/bin/env python
"""
Celery worker entry point for Mailflow.

To start the worker:
    celery -A celery_worker worker -Q email_dispatch,email_default,maintenance --loglevel=info

To start the beat scheduler (drives the dispatch loop):
    celery -A celery_worker beat --loglevel=info

To start both in one process (development only):
    celery -A celery_worker worker --beat --loglevel=info
"""

from mailflow.email.celery_config import celery_app

# Import tasks to ensure they're registered
from mailflow.email import tasks  # noqa: F401

if __name__ == "__main__":
    celery_app.start()
