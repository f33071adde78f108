"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
Beat schedule is defined here for the hourly ClickUp sync.
"""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env BEFORE importing config/settings so workers and the API
# server agree on DATABASE_URL
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_shutdown
from kombu import Exchange, Queue

logger = logging.getLogger(__name__)

# Get Redis URL from environment
REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379")

# Create Celery app
celery_app = Celery(
    "taskboard",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "workers.tasks.sync",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_time_limit=60 * 60,  # large workspaces page through thousands of tasks
    task_soft_time_limit=55 * 60,

    # Result settings
    result_expires=60 * 60 * 24,  # Results expire after 24 hours

    # Each worker process creates its own connection pool, and each sync
    # holds its own ClickUp quota; keep both small
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    # Queue configuration
    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("sync", Exchange("sync"), routing_key="sync.#"),
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    # Route tasks to specific queues
    task_routes={
        "workers.tasks.sync.*": {"queue": "sync"},
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Hourly sync for all workspaces - runs at the top of every hour
    "hourly-sync-all-workspaces": {
        "task": "workers.tasks.sync.sync_all_workspaces",
        "schedule": crontab(minute=0),
        "options": {"queue": "sync"},
    },
}


@worker_process_shutdown.connect
def cleanup_db_connections(**kwargs) -> None:
    """Release pooled database connections when a worker process exits."""
    try:
        from models.database import dispose_engine
        dispose_engine()
        logger.info("Database connections cleaned up on worker shutdown")
    except Exception as e:
        logger.error("Error cleaning up database connections: %s", e)
