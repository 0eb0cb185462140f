"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
Beat schedule is defined here for periodic tasks.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env BEFORE importing config/settings so workers use the same
# DATABASE_URL and secrets as the API server
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from celery import Celery
from celery.signals import worker_process_shutdown
from kombu import Exchange, Queue

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379")

celery_app = Celery(
    "integration_sync",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["workers.tasks.sync"],
)

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
    task_time_limit=60 * 60,  # matches SYNC_LOCK_TTL_SECONDS default
    task_soft_time_limit=55 * 60,

    # Result settings
    result_expires=60 * 60 * 24,

    # Each worker process creates its own connection pool
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("sync", Exchange("sync"), routing_key="sync.#"),
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_routes={
        "workers.tasks.sync.*": {"queue": "sync"},
    },
)

celery_app.conf.beat_schedule = {
    # Dispatch every scheduled data source whose next_scheduled_sync_at has passed
    "sync-due-data-sources": {
        "task": "workers.tasks.sync.sync_due_data_sources",
        "schedule": timedelta(minutes=5),
        "options": {"queue": "sync"},
    },
    "refresh-expiring-tokens": {
        "task": "workers.tasks.sync.refresh_expiring_tokens",
        "schedule": timedelta(minutes=15),
        "options": {"queue": "sync"},
    },
    "purge-expired-oauth-states": {
        "task": "workers.tasks.sync.purge_expired_oauth_states",
        "schedule": timedelta(hours=1),
        "options": {"queue": "default"},
    },
}


@worker_process_shutdown.connect
def cleanup_db_connections(**kwargs) -> None:
    """Release pooled database connections when a worker process exits."""
    from models.database import dispose_engine

    dispose_engine()
    logger.info("[Celery] Database connections cleaned up on worker shutdown")
