"""
Job Worker (polling loop)

One JobWorker serves one project graph, optionally for a single job mode.
Each poll:
1. Lists queued jobs (FIFO, mode filter)
2. Claims one with the compare-and-swap claim
3. Runs the project graph with the job's variables
4. Writes the job terminal: completed (reports) or failed (error)

The same worker runs standalone (`python -m alpaka_engine.workers.poller`)
or from the Celery beat schedule (see tasks.py).

Job variables visible to the graph as globals:
    job_id, job_session_id, job_mode, job_responses (JSON string)
    plus every entry of payload["variables"]
"""

import argparse
import asyncio
import json
import logging
import re
import signal
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager, suppress
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..core.engine import GraphRunner, InstanceStatus
from ..core.exceptions import EngineFatalError
from ..core.executors import NodeExecutor
from ..core.job_queue import JobQueue, JobStatus
from ..core.logging_config import clear_job_id, set_job_id, setup_logging
from ..core.projects import ProjectService
from ..core.supervisor import WorkerRegistry
from ..database import SessionLocal, with_retry
from ..models.job import ProcessingJob
from ..providers.registry import ProviderPool

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
COMPLETED_CACHE_SIZE = 1000

_SECRET_PATTERNS = [
    (re.compile(r"sk-[A-Za-z0-9_\-]{8,}"), "sk-***"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer ***"),
    (re.compile(r"(?i)\b(api[_-]?key|token|secret|password)(\s*[:=]\s*['\"]?)[^\s'\",}]+"), r"\1\2***"),
    (re.compile(r"postgres(?:ql)?://\S+"), "postgresql://***"),
    (re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}"), "[email]"),
]


def sanitize_error_message(message: str) -> str:
    """Redact credentials and e-mail addresses before an error leaves the worker."""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    if len(message) > MAX_ERROR_LENGTH:
        message = message[:MAX_ERROR_LENGTH - 3] + "..."
    return message


def build_job_variables(job: ProcessingJob) -> Dict[str, Any]:
    payload = job.payload or {}
    variables = {
        "job_id": job.id,
        "job_session_id": job.session_id,
        "job_mode": job.mode or "",
        "job_responses": json.dumps(payload.get("responses", {}), ensure_ascii=False),
    }
    variables.update(payload.get("variables") or {})
    return variables


class JobWorker:
    """
    Polling worker for one project.

    Args:
        name: Worker name, also used as worker_id on claimed jobs
        project_id: Project whose graph this worker runs
        mode: Only claim jobs with this mode (None = any mode)
        session_factory: Callable returning a new Session
        settings: Engine settings (intervals, timeouts)
        executor: NodeExecutor shared by every run (by default each job
            gets its own, so provider clients never outlive the job's
            event loop)
    """

    def __init__(
        self,
        name: str,
        project_id: str,
        mode: Optional[str] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        settings: Optional[Settings] = None,
        executor: Optional[NodeExecutor] = None,
    ):
        self.name = name
        self.project_id = project_id
        self.mode = mode
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.executor = executor

        self._completed: "OrderedDict[str, None]" = OrderedDict()
        self._stop_event = threading.Event()
        self._last_recovery: Optional[float] = None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Register, then repair whatever a previous life of this worker left behind."""
        with self._session() as db:
            project = ProjectService(db).get(self.project_id)
            WorkerRegistry(db).register(
                self.name,
                project_id=self.project_id,
                project_name=project.name if project else None,
                mode=self.mode,
            )
            queue = JobQueue(db)
            queue.release_worker_jobs(self.name)
            queue.reconcile_orphans(self.settings.max_job_runtime)
        self._last_recovery = time.monotonic()
        logger.info(f"Worker {self.name} started for project {self.project_id} (mode={self.mode or 'any'})")

    def stop(self) -> None:
        """Ask the loop to exit after the current job."""
        logger.info(f"Worker {self.name} stopping")
        self._stop_event.set()

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop_event.is_set():
                try:
                    processed = self.poll_once()
                except (SQLAlchemyError, EngineFatalError) as e:
                    logger.error(f"Poll failed: {e}")
                    processed = None
                if processed is None:
                    self._stop_event.wait(self.settings.poll_interval)
        finally:
            with self._session() as db:
                WorkerRegistry(db).mark_stopped(self.name)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_once(self) -> Optional[str]:
        """
        Claim and process at most one job.

        Returns:
            The processed job id, or None if nothing was claimed
        """
        self._maybe_recover()

        job_id = with_retry(self._claim_next, f"Worker {self.name}: poll for jobs")
        if job_id is None:
            return None

        self.process_job(job_id)
        return job_id

    def _claim_next(self) -> Optional[str]:
        with self._session() as db:
            WorkerRegistry(db).heartbeat(self.name)
            queue = JobQueue(db)
            for job in queue.list_by_status(JobStatus.QUEUED, mode=self.mode, limit=10):
                if job.id in self._completed:
                    continue
                job_id = job.id
                if queue.claim(job_id, self.name):
                    return job_id
        return None

    def _maybe_recover(self) -> None:
        now = time.monotonic()
        if self._last_recovery is not None and now - self._last_recovery < self.settings.recovery_interval:
            return
        with self._session() as db:
            JobQueue(db).reconcile_orphans(self.settings.max_job_runtime)
        self._last_recovery = now

    def _remember(self, job_id: str) -> None:
        self._completed[job_id] = None
        while len(self._completed) > COMPLETED_CACHE_SIZE:
            self._completed.popitem(last=False)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_job(self, job_id: str) -> None:
        """Run the project graph for a claimed job and write the job terminal."""
        set_job_id(job_id)
        try:
            with self._session() as db:
                asyncio.run(self._process(db, job_id))
        finally:
            clear_job_id()
            self._remember(job_id)

    def executor_for_job(self) -> NodeExecutor:
        """Executor for one job; a new one with its own ProviderPool unless injected."""
        if self.executor is not None:
            return self.executor
        return NodeExecutor(provider_factory=ProviderPool(), default_timeout=self.settings.node_timeout)

    async def _process(self, db: Session, job_id: str) -> None:
        queue = JobQueue(db)
        job = queue.get(job_id)
        project = ProjectService(db).get(self.project_id)
        if project is None:
            queue.fail(job_id, f"Project {self.project_id} not found")
            return

        logger.info(f"Processing job {job_id} (session {job.session_id})")
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job_id))
        try:
            runner = GraphRunner(db, executor=self.executor_for_job(), worker_id=self.name)
            outcome = await runner.run(project, job=job, extra_variables=build_job_variables(job))
        except Exception as e:
            logger.exception(f"Job {job_id} aborted by engine error")
            db.rollback()
            queue.fail(job_id, sanitize_error_message(f"Engine error: {e}"))
            return
        finally:
            heartbeat_task.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat_task

        if outcome.status == InstanceStatus.FAILED:
            queue.fail(job_id, sanitize_error_message(outcome.error or "Run failed"))
        else:
            reports = dict(outcome.reports)
            if outcome.issues:
                reports["_issues"] = [
                    {**issue, "error": sanitize_error_message(issue.get("error") or "")}
                    for issue in outcome.issues
                ]
            queue.complete(job_id, reports)

        WorkerRegistry(db).record_execution(self.name)
        logger.info(f"Job {job_id} done: run {outcome.instance_id} {outcome.status}")

    async def _heartbeat_loop(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            try:
                with self._session() as db:
                    JobQueue(db).heartbeat(job_id, self.name)
                    WorkerRegistry(db).heartbeat(self.name)
            except SQLAlchemyError as e:
                logger.warning(f"Heartbeat for job {job_id} failed: {e}")


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(description="Alpaka job worker")
    parser.add_argument("--name", required=True, help="Worker name (also its worker id)")
    parser.add_argument("--project-id", required=True, help="Project whose graph this worker runs")
    parser.add_argument("--mode", default=None, help="Only claim jobs with this mode")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between polls")
    args = parser.parse_args(argv)

    setup_logging(level="INFO", json_logs=True)

    settings = get_settings()
    if args.poll_interval:
        settings = settings.model_copy(update={"poll_interval": args.poll_interval})

    worker = JobWorker(args.name, args.project_id, mode=args.mode, settings=settings)
    signal.signal(signal.SIGTERM, lambda signum, frame: worker.stop())
    signal.signal(signal.SIGINT, lambda signum, frame: worker.stop())
    worker.run_forever()


if __name__ == "__main__":
    main()
