"""
Job Queue Bridge

Hand-off protocol between the session service (producer) and workers:

    queued -> processing -> completed | failed
    queued -> failed                     (orphan reconciliation only)

- enqueue() is idempotent per session_id
- claim() is a compare-and-swap: exactly one concurrent caller wins
- complete()/fail() only move a job out of `processing`; on a job that is
  already terminal they are logged no-ops (JobProtocolError is absorbed)
- update_status() is the strict variant used by the HTTP surface: it
  raises JobProtocolError for backward moves
- reconcile_orphans() fails jobs whose worker stopped heart-beating, and
  the execution instances they left running
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .exceptions import JobProtocolError
from ..models.execution import ExecutionInstance
from ..models.job import ProcessingJob

logger = logging.getLogger(__name__)


class JobStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)
    ALL = (QUEUED, PROCESSING, COMPLETED, FAILED)


# Forward-only transitions
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobQueue:
    """Job table operations on one session. Every mutating call commits."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, session_id: str, payload: Optional[Dict[str, Any]] = None, mode: Optional[str] = None) -> ProcessingJob:
        """
        Create a queued job for a session, or return the session's existing job.
        """
        existing = self.get_by_session(session_id)
        if existing is not None:
            logger.info(f"Job for session {session_id} already exists ({existing.id}, {existing.status})")
            return existing

        job = ProcessingJob(
            session_id=session_id,
            mode=mode,
            status=JobStatus.QUEUED,
            payload=payload or {},
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            # Another producer created it between our read and insert
            self.db.rollback()
            return self.get_by_session(session_id)

        self.db.refresh(job)
        logger.info(f"Enqueued job {job.id} for session {session_id}", extra={"mode": mode})
        return job

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        return self.db.query(ProcessingJob).filter(ProcessingJob.id == job_id).first()

    def get_by_session(self, session_id: str) -> Optional[ProcessingJob]:
        return self.db.query(ProcessingJob).filter(ProcessingJob.session_id == session_id).first()

    def list_by_status(self, status: str, mode: Optional[str] = None, limit: int = 50) -> List[ProcessingJob]:
        """Jobs in a status, oldest first."""
        query = self.db.query(ProcessingJob).filter(ProcessingJob.status == status)
        if mode:
            query = query.filter(ProcessingJob.mode == mode)
        return query.order_by(ProcessingJob.created_at, ProcessingJob.id).limit(limit).all()

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def claim(self, job_id: str, worker_id: str) -> bool:
        """
        Atomically move a queued job to processing for this worker.

        Returns:
            True if this call claimed the job, False if someone else did
            (or the job is not queued)
        """
        now = datetime.utcnow()
        updated = (
            self.db.query(ProcessingJob)
            .filter(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.QUEUED)
            .update(
                {
                    ProcessingJob.status: JobStatus.PROCESSING,
                    ProcessingJob.worker_id: worker_id,
                    ProcessingJob.claimed_at: now,
                    ProcessingJob.heartbeat_at: now,
                    ProcessingJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

        if updated == 1:
            logger.info(f"Worker {worker_id} claimed job {job_id}")
            return True
        logger.debug(f"Worker {worker_id} lost claim on job {job_id}")
        return False

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """Refresh the heartbeat of a job this worker is processing."""
        now = datetime.utcnow()
        updated = (
            self.db.query(ProcessingJob)
            .filter(
                ProcessingJob.id == job_id,
                ProcessingJob.worker_id == worker_id,
                ProcessingJob.status == JobStatus.PROCESSING,
            )
            .update({ProcessingJob.heartbeat_at: now}, synchronize_session=False)
        )
        self.db.commit()
        return updated == 1

    def complete(self, job_id: str, reports: Optional[Dict[str, Any]] = None) -> bool:
        """
        processing -> completed with reports.

        Returns:
            True if the job was completed by this call; False (logged) if
            the job was not processing
        """
        return self._finish(job_id, JobStatus.COMPLETED, {ProcessingJob.reports: reports or {}})

    def fail(self, job_id: str, error: str) -> bool:
        """
        processing -> failed with an error message.

        Returns:
            True if the job was failed by this call; False (logged) if the
            job was not processing
        """
        return self._finish(job_id, JobStatus.FAILED, {ProcessingJob.error: error})

    def _finish(self, job_id: str, target: str, values: Dict[Any, Any]) -> bool:
        now = datetime.utcnow()
        values = dict(values)
        values.update({
            ProcessingJob.status: target,
            ProcessingJob.completed_at: now,
            ProcessingJob.updated_at: now,
        })

        updated = (
            self.db.query(ProcessingJob)
            .filter(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.PROCESSING)
            .update(values, synchronize_session=False)
        )
        self.db.commit()

        if updated == 1:
            logger.info(f"Job {job_id} -> {target}")
            return True

        job = self.get(job_id)
        error = JobProtocolError(job_id, job.status if job else None, target)
        logger.warning(f"Ignored transition: {error.message}")
        return False

    # ------------------------------------------------------------------
    # Strict transitions (HTTP surface)
    # ------------------------------------------------------------------

    def update_status(
        self,
        job_id: str,
        status: str,
        reports: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[ProcessingJob]:
        """
        Apply a requested transition.

        Repeating the current terminal status is a no-op.

        Returns:
            The job, or None if it does not exist

        Raises:
            JobProtocolError: For backward or unknown transitions, or when
                a concurrent update won the race
        """
        job = self.get(job_id)
        if job is None:
            return None

        if status == job.status and status in JobStatus.TERMINAL:
            return job

        if status not in ALLOWED_TRANSITIONS.get(job.status, set()):
            raise JobProtocolError(job_id, job.status, status)

        if status == JobStatus.PROCESSING:
            applied = self.claim(job_id, worker_id or "external")
        elif status == JobStatus.COMPLETED:
            applied = self.complete(job_id, reports)
        elif job.status == JobStatus.QUEUED:
            applied = self._fail_queued(job_id, error or "Failed")
        else:
            applied = self.fail(job_id, error or "Failed")

        if not applied:
            current = self.get(job_id)
            raise JobProtocolError(job_id, current.status if current else None, status)

        return self.get(job_id)

    def _fail_queued(self, job_id: str, error: str) -> bool:
        now = datetime.utcnow()
        updated = (
            self.db.query(ProcessingJob)
            .filter(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.QUEUED)
            .update(
                {
                    ProcessingJob.status: JobStatus.FAILED,
                    ProcessingJob.error: error,
                    ProcessingJob.completed_at: now,
                    ProcessingJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_orphans(self, max_age_seconds: float, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Fail processing jobs whose heartbeat (or claim) is older than
        max_age_seconds, the running instances of those jobs, and running
        instances started before the cutoff that no live job still owns.

        Returns:
            {"jobs": n, "instances": m}
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=max_age_seconds)

        processing = self.list_by_status(JobStatus.PROCESSING, limit=1000)
        stale_jobs = [
            job for job in processing
            if (job.heartbeat_at or job.claimed_at or job.updated_at) < cutoff
        ]
        stale_job_ids = {job.id for job in stale_jobs}
        live_job_ids = {job.id for job in processing} - stale_job_ids

        failed_jobs = 0
        for job in stale_jobs:
            if self.fail(job.id, f"Worker {job.worker_id} stopped responding (no heartbeat for {int(max_age_seconds)}s)"):
                failed_jobs += 1

        running = self.db.query(ExecutionInstance).filter(ExecutionInstance.status == "running").all()
        failed_instances = 0
        for instance in running:
            if instance.job_id in live_job_ids:
                # Long runs keep their instance while the job heartbeats
                continue
            if instance.job_id in stale_job_ids or instance.started_at < cutoff:
                instance.status = "failed"
                instance.error = "Run orphaned: worker stopped before finishing"
                instance.current_node_id = None
                instance.completed_at = now
                failed_instances += 1
        self.db.commit()

        if failed_jobs or failed_instances:
            logger.warning(
                f"Reconciled orphans: {failed_jobs} job(s), {failed_instances} instance(s)",
                extra={"cutoff": cutoff.isoformat()}
            )
        return {"jobs": failed_jobs, "instances": failed_instances}

    def release_worker_jobs(self, worker_id: str) -> int:
        """
        Fail jobs left in processing by a previous life of this worker
        (called at worker startup, before claiming anything).
        """
        leftovers = (
            self.db.query(ProcessingJob)
            .filter(ProcessingJob.worker_id == worker_id, ProcessingJob.status == JobStatus.PROCESSING)
            .all()
        )
        released = 0
        for job in leftovers:
            if self.fail(job.id, f"Worker {worker_id} restarted while processing this job"):
                released += 1

        if released:
            running = (
                self.db.query(ExecutionInstance)
                .filter(
                    ExecutionInstance.status == "running",
                    ExecutionInstance.job_id.in_([job.id for job in leftovers]),
                )
                .all()
            )
            for instance in running:
                instance.status = "failed"
                instance.error = "Run orphaned: worker restarted"
                instance.current_node_id = None
                instance.completed_at = datetime.utcnow()
            self.db.commit()
            logger.warning(f"Released {released} orphaned job(s) of worker {worker_id}")
        return released
