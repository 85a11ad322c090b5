"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
Beat schedule is defined here for periodic tasks.
"""
from __future__ import annotations

import os
import sys
from datetime import timedelta
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env BEFORE importing config/settings so workers and the API server
# agree on DATABASE_URL
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)
    print(f"[Celery] Loaded environment from: {env_file}")

from celery import Celery
from celery.signals import worker_process_shutdown
from kombu import Exchange, Queue

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379")
ONGOING_SYNC_INTERVAL_MINUTES: int = int(os.environ.get("ONGOING_SYNC_INTERVAL_MINUTES", "60"))

celery_app = Celery(
    "directory_sync",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "workers.tasks.sync",
        "workers.tasks.webhooks",
    ],
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
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    # Redeliver a webhook task if the worker dies mid-way
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=60 * 60 * 24,

    # Each worker process creates its own connection pool
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("sync", Exchange("sync"), routing_key="sync.#"),
        Queue("webhooks", Exchange("webhooks"), routing_key="webhook.#"),
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_routes={
        "workers.tasks.sync.*": {"queue": "sync"},
        "workers.tasks.webhooks.*": {"queue": "webhooks"},
    },
)

celery_app.conf.beat_schedule = {
    "ongoing-sync-all-integrations": {
        "task": "workers.tasks.sync.sync_all_integrations",
        "schedule": timedelta(minutes=ONGOING_SYNC_INTERVAL_MINUTES),
        "options": {"queue": "sync"},
    },
}


@worker_process_shutdown.connect
def cleanup_db_connections(**kwargs) -> None:
    """Release pooled database connections when a worker process exits."""
    try:
        from models.database import dispose_engine
        dispose_engine()
        print("[Celery] Database connections cleaned up on worker shutdown")
    except Exception as e:
        print(f"[Celery] Error cleaning up database connections: {e}")
