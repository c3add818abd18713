"""
Unit Tests for WorkerSupervisor and WorkerRegistry

Process management is replaced by an in-memory controller.
"""

import pytest
from datetime import datetime, timedelta

from alpaka_engine.config import WorkerSpec
from alpaka_engine.core.supervisor import (
    ProcessController,
    WorkerRegistry,
    WorkerState,
    WorkerSupervisor,
)
from alpaka_engine.models.worker_state import WorkerRecord


class RecordingController(ProcessController):
    """Hands out fake pids and remembers which are alive."""

    def __init__(self):
        self.next_pid = 1000
        self.alive = set()
        self.started = []
        self.stopped = []

    def start(self, spec):
        self.next_pid += 1
        self.alive.add(self.next_pid)
        self.started.append(spec.name)
        return self.next_pid

    def stop(self, pid, timeout=30.0):
        self.alive.discard(pid)
        self.stopped.append(pid)

    def is_alive(self, pid):
        return pid in self.alive

    def stats(self, pid):
        return {"memory": 1024}


@pytest.fixture
def controller():
    return RecordingController()


@pytest.fixture
def supervisor(db_session, controller, make_project):
    project = make_project({"nodes": [], "edges": []}, name="Diagnostic")
    specs = [
        WorkerSpec(name="diagnostic", project_id=project.id, mode="diagnostic"),
        WorkerSpec(name="backup", project_id=project.id),
    ]
    return WorkerSupervisor(db_session, specs, controller=controller, stale_after=90)


@pytest.mark.unit
def test_unknown_worker_raises_key_error(supervisor):
    with pytest.raises(KeyError):
        supervisor.status("ghost")
    with pytest.raises(KeyError):
        supervisor.start("ghost")


@pytest.mark.unit
def test_never_started_worker_is_stopped(supervisor):
    status = supervisor.status("backup")

    assert status.status == WorkerState.STOPPED
    assert status.instances == 0
    assert status.pid is None


@pytest.mark.unit
def test_start_registers_running_worker(supervisor, controller):
    status = supervisor.start("diagnostic")

    assert status.status == WorkerState.RUNNING
    assert status.pid == 1001
    assert status.instances == 1
    assert status.memory == 1024
    assert status.project_name == "Diagnostic"
    assert status.mode == "diagnostic"
    assert controller.started == ["diagnostic"]


@pytest.mark.unit
def test_start_is_noop_when_running(supervisor, controller):
    supervisor.start("diagnostic")
    supervisor.start("diagnostic")

    assert controller.started == ["diagnostic"]


@pytest.mark.unit
def test_stop_marks_stopped(supervisor, controller):
    supervisor.start("diagnostic")

    status = supervisor.stop("diagnostic")

    assert status.status == WorkerState.STOPPED
    assert status.pid is None
    assert controller.stopped == [1001]


@pytest.mark.unit
def test_restart_counts_restarts(supervisor, controller):
    supervisor.start("diagnostic")

    status = supervisor.restart("diagnostic")

    assert status.status == WorkerState.RUNNING
    assert status.restarts == 1
    assert status.pid == 1002
    assert controller.started == ["diagnostic", "diagnostic"]


@pytest.mark.unit
def test_stale_heartbeat_reported_as_errored(supervisor, db_session):
    supervisor.start("diagnostic")
    record = db_session.query(WorkerRecord).filter(WorkerRecord.name == "diagnostic").first()
    record.last_heartbeat_at = datetime.utcnow() - timedelta(minutes=10)
    db_session.commit()

    status = supervisor.status("diagnostic")

    assert status.status == WorkerState.ERRORED
    assert status.instances == 0


@pytest.mark.unit
def test_list_statuses_sorted(supervisor):
    names = [status.name for status in supervisor.list_statuses()]

    assert names == ["backup", "diagnostic"]


@pytest.mark.unit
def test_registry_lifecycle(db_session):
    registry = WorkerRegistry(db_session)

    registry.register("w1", pid=42, mode="diagnostic")
    registry.record_execution("w1")
    registry.mark_errored("w1", "boom")

    record = db_session.query(WorkerRecord).filter(WorkerRecord.name == "w1").first()
    assert record.status == WorkerState.ERRORED
    assert record.last_error == "boom"
    assert record.last_execution_at is not None

    registry.heartbeat("w1")
    registry.mark_stopped("w1")

    record = db_session.query(WorkerRecord).filter(WorkerRecord.name == "w1").first()
    assert record.status == WorkerState.STOPPED
    assert record.pid is None


@pytest.mark.unit
def test_status_to_dict(supervisor):
    data = supervisor.start("diagnostic").to_dict()

    assert data["name"] == "diagnostic"
    assert data["status"] == "running"
    assert data["restarts"] == 0
