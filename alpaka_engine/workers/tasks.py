"""
Celery Tasks for Alpaka

- poll_jobs_task: one poll of a configured worker (claim + run one job)
- reconcile_orphans_task: periodic orphan reconciliation

Workers are registered (and their leftover jobs released) when the Celery
worker process is ready.
"""

import logging
from typing import Any, Dict

from celery.signals import worker_ready

from .celery_app import celery_app
from .poller import JobWorker
from ..config import get_settings, WorkerSpec
from ..core.job_queue import JobQueue
from ..database import get_db

logger = logging.getLogger(__name__)

_WORKERS: Dict[str, JobWorker] = {}


def _spec(worker_name: str) -> WorkerSpec:
    for spec in get_settings().workers:
        if spec.name == worker_name:
            return spec
    raise ValueError(f"Worker '{worker_name}' is not configured in ALPAKA_WORKERS")


def get_worker(worker_name: str) -> JobWorker:
    """One JobWorker per configured name and process (keeps its completed-job cache)."""
    if worker_name not in _WORKERS:
        spec = _spec(worker_name)
        _WORKERS[worker_name] = JobWorker(spec.name, spec.project_id, mode=spec.mode)
    return _WORKERS[worker_name]


@worker_ready.connect
def register_workers(sender=None, **kwargs) -> None:
    """Register workers served by this Celery process's queues."""
    consumed = set()
    if sender is not None and getattr(sender, "app", None) is not None:
        consumed = {queue.name for queue in sender.app.amqp.queues.consume_from.values()}

    for spec in get_settings().workers:
        if consumed and f"worker.{spec.name}" not in consumed:
            continue
        get_worker(spec.name).start()


@celery_app.task(
    bind=True,
    name="alpaka_engine.workers.tasks.poll_jobs_task",
    max_retries=3,
    default_retry_delay=10,
)
def poll_jobs_task(self, worker_name: str) -> Dict[str, Any]:
    """
    Claim and process at most one job for a worker.

    Returns:
        {"worker": name, "job_id": processed job id or None}
    """
    worker = get_worker(worker_name)
    job_id = worker.poll_once()
    if job_id:
        logger.info(f"Task {self.request.id}: worker {worker_name} processed job {job_id}")
    return {"worker": worker_name, "job_id": job_id}


@celery_app.task(name="alpaka_engine.workers.tasks.reconcile_orphans_task")
def reconcile_orphans_task() -> Dict[str, int]:
    with get_db() as db:
        return JobQueue(db).reconcile_orphans(get_settings().max_job_runtime)
