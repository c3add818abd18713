"""
Celery Application Configuration for Alpaka

Celery hosts the job workers as periodic tasks:
- poll_jobs_task(worker_name): one poll of one configured worker,
  scheduled every POLL_INTERVAL seconds on that worker's own queue
- reconcile_orphans_task: fails orphaned jobs/instances every RECOVERY_INTERVAL

Architecture:
- Message Broker: Redis
- One queue per configured worker ("worker.<name>"), consumed with
  concurrency 1, so each worker handles one job at a time

Start a worker for one queue:
    celery -A alpaka_engine.workers.celery_app worker -Q worker.diagnostic -c 1
    celery -A alpaka_engine.workers.celery_app beat
"""

import os
import logging
from celery import Celery
from kombu import Queue, Exchange

from ..config import get_settings
from ..core.logging_config import setup_logging

# Initialize structured logging for Celery workers
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "true").lower() == "true",  # Default to JSON in workers
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

settings = get_settings()

REDIS_URL = settings.redis_url
if not REDIS_URL:
    REDIS_URL = "redis://localhost:6379/0"
    logger.warning("REDIS_URL not set, using local Redis at redis://localhost:6379/0")

DEFAULT_QUEUE = "alpaka"
exchange = Exchange("alpaka")


def worker_queue(name: str) -> str:
    return f"worker.{name}"


celery_app = Celery("alpaka")

celery_app.conf.update(
    # ============================================================================
    # BROKER & BACKEND
    # ============================================================================
    broker_url=REDIS_URL,
    result_backend=REDIS_URL,
    broker_connection_retry_on_startup=True,

    # ============================================================================
    # SERIALIZATION
    # ============================================================================
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone="UTC",
    enable_utc=True,

    # ============================================================================
    # TASK EXECUTION
    # ============================================================================
    # Acknowledge tasks AFTER execution
    task_acks_late=True,

    # One task per worker process at a time
    worker_prefetch_multiplier=1,
    worker_concurrency=1,

    # A poll may run a whole job; bounded by the max job runtime
    task_time_limit=int(settings.max_job_runtime) + 60,
    task_soft_time_limit=int(settings.max_job_runtime),

    result_expires=3600,

    # ============================================================================
    # TASK ROUTING
    # ============================================================================
    task_default_queue=DEFAULT_QUEUE,
    task_default_exchange="alpaka",
    task_default_routing_key=DEFAULT_QUEUE,
    task_queues=(
        Queue(DEFAULT_QUEUE, exchange, routing_key=DEFAULT_QUEUE),
        *[
            Queue(worker_queue(spec.name), exchange, routing_key=worker_queue(spec.name))
            for spec in settings.workers
        ],
    ),

    worker_send_task_events=True,
    worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
)

# ============================================================================
# BEAT SCHEDULE (Periodic Tasks)
# ============================================================================

beat_schedule = {
    "reconcile-orphans": {
        "task": "alpaka_engine.workers.tasks.reconcile_orphans_task",
        "schedule": settings.recovery_interval,
        "options": {"queue": DEFAULT_QUEUE},
    },
}
for spec in settings.workers:
    beat_schedule[f"poll-{spec.name}"] = {
        "task": "alpaka_engine.workers.tasks.poll_jobs_task",
        "schedule": settings.poll_interval,
        "args": (spec.name,),
        # Skip stale polls instead of piling them up behind a long job
        "options": {"queue": worker_queue(spec.name), "expires": settings.poll_interval},
    }

celery_app.conf.beat_schedule = beat_schedule

logger.info(f"Celery app configured: {len(settings.workers)} worker queue(s)")

# ============================================================================
# IMPORT TASKS (so they get registered when worker starts)
# ============================================================================
# This import MUST come AFTER celery_app is configured
from . import tasks  # noqa: F401, E402
