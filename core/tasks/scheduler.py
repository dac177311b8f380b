# core/tasks/scheduler.py
from celery import Celery
from celery.schedules import crontab
from loguru import logger

from core.log_setup import setup_logging
from settings import settings
import sys

setup_logging(settings)

# Load maintenance interval from settings
MAINTENANCE_INTERVAL_MINUTES = settings.MAINTENANCE_INTERVAL_MINUTES

# Ensure interval is valid
if MAINTENANCE_INTERVAL_MINUTES <= 0 or MAINTENANCE_INTERVAL_MINUTES > 60:
    logger.error("Invalid MAINTENANCE_INTERVAL_MINUTES. Must be between 1 and 60.")
    sys.exit(1)

# Celery application instance
scheduler_app = Celery(
    'core',
    broker=settings.REDIS_URL
)

# Import tasks to register them with Celery
from core.tasks.maintenance import run_resolved_outcome_backfill  # noqa: E402,F401

# Define the beat schedule
scheduler_app.conf.beat_schedule = {
    # Catch resolutions the live indexer missed while it was down
    'backfill-resolved-outcomes': {
        'task': 'maintenance.backfill_resolved_outcomes',
        'schedule': crontab(minute=f'*/{MAINTENANCE_INTERVAL_MINUTES}'),
    },
}

# Celery configuration
scheduler_app.conf.timezone = 'UTC'
scheduler_app.conf.broker_connection_retry_on_startup = True
scheduler_app.conf.task_soft_time_limit = 600  # 10 minutes soft limit
scheduler_app.conf.task_time_limit = 900  # 15 minutes hard limit
scheduler_app.conf.worker_prefetch_multiplier = 1  # Process one task at a time
scheduler_app.conf.task_acks_late = True

scheduler_app.conf.task_routes = {
    'maintenance.backfill_resolved_outcomes': {'queue': 'maintenance'},
}

# Allow manual execution outside Docker
if __name__ == '__main__':
    logger.info("Starting Celery scheduler for resolved-outcome maintenance")
    logger.info(f"Maintenance interval: every {MAINTENANCE_INTERVAL_MINUTES} minutes")
    logger.info(f"Redis broker: {settings.REDIS_URL}")

    scheduler_app.start(argv=[
        'worker',
        '-B',  # Enable beat scheduler
        '--loglevel=info',
        '--concurrency=1',
        '--queues=maintenance'
    ])
