"""
Worker Supervisor boundary

Two sides share the worker_records table:
- WorkerRegistry: written by worker processes (register, heartbeat,
  record_execution, mark_stopped, mark_errored)
- WorkerSupervisor: start/stop/restart/status for the admin surface,
  delegating process management to a ProcessController

The process manager itself is pluggable; SubprocessController runs each
worker as a child process of the API (one process per worker spec).
"""

import logging
import os
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import WorkerSpec
from ..models.project import Project
from ..models.worker_state import WorkerRecord

logger = logging.getLogger(__name__)


class WorkerState:
    RUNNING = "running"
    STOPPED = "stopped"
    ERRORED = "errored"


@dataclass
class WorkerStatus:
    """Supervisor view of one worker, serialized by the admin API."""
    name: str
    status: str
    uptime: Optional[float] = None  # seconds
    instances: int = 0
    memory: Optional[int] = None  # bytes
    cpu: Optional[float] = None  # percent
    restarts: int = 0
    pid: Optional[int] = None
    project_name: Optional[str] = None
    mode: Optional[str] = None
    last_execution_at: Optional[str] = None
    last_heartbeat_at: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# WORKER-SIDE REPORTING
# ============================================================================

class WorkerRegistry:
    """Liveness reporting for worker processes. Every call commits."""

    def __init__(self, db: Session):
        self.db = db

    def get_or_create(self, name: str) -> WorkerRecord:
        record = self.db.query(WorkerRecord).filter(WorkerRecord.name == name).first()
        if record is None:
            record = WorkerRecord(name=name, status=WorkerState.STOPPED, restart_count=0)
            self.db.add(record)
        return record

    def register(
        self,
        name: str,
        pid: Optional[int] = None,
        project_id: Optional[str] = None,
        project_name: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> WorkerRecord:
        record = self.get_or_create(name)
        now = datetime.utcnow()
        record.status = WorkerState.RUNNING
        record.pid = pid if pid is not None else os.getpid()
        record.project_id = project_id or record.project_id
        record.project_name = project_name or record.project_name
        record.mode = mode or record.mode
        record.started_at = now
        record.last_heartbeat_at = now
        record.last_error = None
        self.db.commit()
        logger.info(f"Worker {name} registered (pid {record.pid})")
        return record

    def heartbeat(self, name: str) -> None:
        record = self.get_or_create(name)
        record.last_heartbeat_at = datetime.utcnow()
        if record.status != WorkerState.RUNNING:
            record.status = WorkerState.RUNNING
        self.db.commit()

    def record_execution(self, name: str) -> None:
        record = self.get_or_create(name)
        now = datetime.utcnow()
        record.last_execution_at = now
        record.last_heartbeat_at = now
        self.db.commit()

    def mark_stopped(self, name: str) -> None:
        record = self.get_or_create(name)
        record.status = WorkerState.STOPPED
        record.pid = None
        self.db.commit()
        logger.info(f"Worker {name} stopped")

    def mark_errored(self, name: str, error: str) -> None:
        record = self.get_or_create(name)
        record.status = WorkerState.ERRORED
        record.last_error = error
        self.db.commit()
        logger.error(f"Worker {name} errored: {error}")


# ============================================================================
# PROCESS CONTROL
# ============================================================================

class ProcessController(ABC):
    """Starts and stops worker processes. Implementations own the pids."""

    @abstractmethod
    def start(self, spec: WorkerSpec) -> int:
        """Start a worker process, return its pid."""
        pass

    @abstractmethod
    def stop(self, pid: int, timeout: float = 30.0) -> None:
        """Stop a worker process gracefully, killing it after timeout."""
        pass

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        pass

    def stats(self, pid: int) -> Dict[str, Any]:
        """Resource usage: {"memory": bytes, "cpu": percent}; empty if unknown."""
        return {}


class SubprocessController(ProcessController):
    """Runs workers as child processes: python -m alpaka_engine.workers.poller."""

    def __init__(self):
        self._processes: Dict[int, subprocess.Popen] = {}

    def start(self, spec: WorkerSpec) -> int:
        command = spec.command or [
            sys.executable, "-m", "alpaka_engine.workers.poller",
            "--name", spec.name,
            "--project-id", spec.project_id,
        ] + (["--mode", spec.mode] if spec.mode else [])

        process = subprocess.Popen(command, env=os.environ.copy())
        self._processes[process.pid] = process
        logger.info(f"Started worker {spec.name} (pid {process.pid})")
        return process.pid

    def stop(self, pid: int, timeout: float = 30.0) -> None:
        process = self._processes.pop(pid, None)
        if process is None:
            # Started by another supervisor process; signal it and move on
            if self.is_alive(pid):
                os.kill(pid, signal.SIGTERM)
            return
        # SIGTERM lets the worker finish its current job
        process.terminate()
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Worker pid {pid} did not stop in {timeout}s, killing")
            process.kill()
            process.wait()

    def is_alive(self, pid: int) -> bool:
        process = self._processes.get(pid)
        if process is not None:
            return process.poll() is None
        try:
            os.kill(pid, 0)
        except OSError:
            return False
        return True

    def stats(self, pid: int) -> Dict[str, Any]:
        # Linux only; other platforms report no stats
        status_path = f"/proc/{pid}/status"
        if not os.path.exists(status_path):
            return {}
        with open(status_path, "r") as f:
            for line in f:
                if line.startswith("VmRSS:"):
                    return {"memory": int(line.split()[1]) * 1024}
        return {}


# ============================================================================
# SUPERVISOR
# ============================================================================

class WorkerSupervisor:
    """
    Admin-side control of configured workers.

    Args:
        db: Session for worker_records
        specs: Configured workers (name, project_id, mode)
        controller: Process manager
        stale_after: Seconds without heartbeat before a running worker
            is reported as errored
    """

    def __init__(
        self,
        db: Session,
        specs: List[WorkerSpec],
        controller: Optional[ProcessController] = None,
        stale_after: float = 90.0,
    ):
        self.db = db
        self.specs = {spec.name: spec for spec in specs}
        self.controller = controller or SubprocessController()
        self.stale_after = stale_after
        self.registry = WorkerRegistry(db)

    def _spec(self, name: str) -> WorkerSpec:
        if name not in self.specs:
            raise KeyError(f"Unknown worker '{name}'")
        return self.specs[name]

    def start(self, name: str) -> WorkerStatus:
        """Start a worker; a running worker is left alone."""
        spec = self._spec(name)
        record = self.registry.get_or_create(name)
        if record.status == WorkerState.RUNNING and record.pid and self.controller.is_alive(record.pid):
            logger.info(f"Worker {name} already running (pid {record.pid})")
            return self.status(name)

        pid = self.controller.start(spec)
        project = self.db.query(Project).filter(Project.id == spec.project_id).first()
        self.registry.register(
            name,
            pid=pid,
            project_id=spec.project_id,
            project_name=project.name if project else None,
            mode=spec.mode,
        )
        return self.status(name)

    def stop(self, name: str) -> WorkerStatus:
        self._spec(name)
        record = self.registry.get_or_create(name)
        if record.pid:
            self.controller.stop(record.pid)
        self.registry.mark_stopped(name)
        return self.status(name)

    def restart(self, name: str) -> WorkerStatus:
        self.stop(name)
        record = self.registry.get_or_create(name)
        record.restart_count = (record.restart_count or 0) + 1
        self.db.commit()
        return self.start(name)

    def status(self, name: str) -> WorkerStatus:
        spec = self._spec(name)
        record = self.db.query(WorkerRecord).filter(WorkerRecord.name == name).first()
        if record is None:
            return WorkerStatus(name=name, status=WorkerState.STOPPED, mode=spec.mode)

        now = datetime.utcnow()
        state = record.status
        if state == WorkerState.RUNNING:
            heartbeat = record.last_heartbeat_at or record.started_at
            if heartbeat is None or now - heartbeat > timedelta(seconds=self.stale_after):
                state = WorkerState.ERRORED

        running = state == WorkerState.RUNNING
        stats = self.controller.stats(record.pid) if running and record.pid else {}
        return WorkerStatus(
            name=name,
            status=state,
            uptime=(now - record.started_at).total_seconds() if running and record.started_at else None,
            instances=1 if running else 0,
            memory=stats.get("memory"),
            cpu=stats.get("cpu"),
            restarts=record.restart_count or 0,
            pid=record.pid if running else None,
            project_name=record.project_name,
            mode=record.mode or spec.mode,
            last_execution_at=record.last_execution_at.isoformat() if record.last_execution_at else None,
            last_heartbeat_at=record.last_heartbeat_at.isoformat() if record.last_heartbeat_at else None,
            last_error=record.last_error,
        )

    def list_statuses(self) -> List[WorkerStatus]:
        return [self.status(name) for name in sorted(self.specs)]
