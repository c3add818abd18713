"""
Integration Tests for the worker flow

Job enqueued -> JobWorker.poll_once claims it -> graph runs -> job terminal.
Database is the in-memory test database, providers are fakes.
"""

import asyncio

import pytest

from alpaka_engine.config import Settings
from alpaka_engine.core.job_queue import JobQueue, JobStatus
from alpaka_engine.core.progress import ProgressFeed
from alpaka_engine.core.supervisor import WorkerState
from alpaka_engine.models.execution import ExecutionInstance
from alpaka_engine.models.worker_state import WorkerRecord
from alpaka_engine.providers.registry import ProviderPool, ProviderRegistry
from alpaka_engine.workers.poller import JobWorker


@pytest.fixture
def worker_settings():
    return Settings(poll_interval=0.01, heartbeat_interval=30, node_timeout=5)


@pytest.fixture
def make_worker(session_factory, worker_settings, executor):
    def _make(project_id, mode=None, name="worker-1"):
        worker = JobWorker(
            name,
            project_id,
            mode=mode,
            session_factory=session_factory,
            settings=worker_settings,
            executor=executor,
        )
        worker.start()
        return worker
    return _make


@pytest.mark.integration
def test_poll_completes_job_with_reports(db_session, make_project, chain_canvas, make_worker):
    project = make_project(chain_canvas)
    job = JobQueue(db_session).enqueue("s-1", payload={"responses": {}, "variables": {"question": "Why?"}})
    worker = make_worker(project.id)

    processed = worker.poll_once()

    db_session.expire_all()
    job = JobQueue(db_session).get(job.id)
    assert processed == job.id
    assert job.status == JobStatus.COMPLETED
    assert job.worker_id == "worker-1"
    assert job.reports == {"final": {"answer": "fake response"}}

    instance = db_session.query(ExecutionInstance).filter(ExecutionInstance.job_id == job.id).one()
    assert instance.status == "completed"
    assert instance.worker_id == "worker-1"
    assert instance.global_variables_snapshot["job_session_id"] == "s-1"

    page = ProgressFeed(db_session).read(job.id)
    assert page.events[0]["event"] == "run_started"
    assert page.events[-1]["event"] == "run_finished"


@pytest.mark.integration
def test_poll_without_jobs_returns_none(make_project, chain_canvas, make_worker):
    worker = make_worker(make_project(chain_canvas).id)

    assert worker.poll_once() is None


@pytest.mark.integration
def test_partial_run_completes_job_with_issues(db_session, make_project, missing_branch_canvas, make_worker):
    project = make_project(missing_branch_canvas)
    job = JobQueue(db_session).enqueue("s-1")

    make_worker(project.id).poll_once()

    db_session.expire_all()
    job = JobQueue(db_session).get(job.id)
    assert job.status == JobStatus.COMPLETED
    issues = job.reports["_issues"]
    assert [issue["nodeId"] for issue in issues] == ["C"]


@pytest.mark.integration
def test_failed_run_fails_job(db_session, make_project, build_node, make_worker):
    project = make_project({"nodes": [build_node("t", "transform", template="{{nothing}}")], "edges": []})
    job = JobQueue(db_session).enqueue("s-1")

    make_worker(project.id).poll_once()

    db_session.expire_all()
    job = JobQueue(db_session).get(job.id)
    assert job.status == JobStatus.FAILED
    assert job.error


@pytest.mark.integration
def test_unknown_project_fails_job(db_session, make_worker):
    job = JobQueue(db_session).enqueue("s-1")

    make_worker("no-such-project").poll_once()

    db_session.expire_all()
    job = JobQueue(db_session).get(job.id)
    assert job.status == JobStatus.FAILED
    assert "not found" in job.error


@pytest.mark.integration
def test_worker_only_claims_its_mode(db_session, make_project, chain_canvas, make_worker):
    project = make_project(chain_canvas)
    other = JobQueue(db_session).enqueue("s-other", mode="other")
    mine = JobQueue(db_session).enqueue("s-mine", mode="diagnostic", payload={"variables": {"question": "?"}})

    processed = make_worker(project.id, mode="diagnostic").poll_once()

    db_session.expire_all()
    assert processed == mine.id
    assert JobQueue(db_session).get(other.id).status == JobStatus.QUEUED


@pytest.mark.integration
def test_start_releases_leftover_jobs(db_session, make_project, chain_canvas, make_worker):
    project = make_project(chain_canvas)
    queue = JobQueue(db_session)
    job = queue.enqueue("s-1")
    queue.claim(job.id, "worker-1")

    make_worker(project.id)

    db_session.expire_all()
    assert queue.get(job.id).status == JobStatus.FAILED
    record = db_session.query(WorkerRecord).filter(WorkerRecord.name == "worker-1").one()
    assert record.status == WorkerState.RUNNING


@pytest.mark.integration
def test_each_job_gets_fresh_provider_clients(db_session, session_factory, worker_settings, make_project,
                                              chain_canvas, make_provider, monkeypatch):
    class LoopBoundProvider(make_provider):
        """Fails like an SDK client reused after its event loop closed."""

        def __init__(self):
            super().__init__()
            self.loop = None

        async def generate(self, messages, **params):
            loop = asyncio.get_running_loop()
            if self.loop is not None and self.loop is not loop:
                raise RuntimeError("Event loop is closed")
            self.loop = loop
            return await super().generate(messages, **params)

    created = []

    def create_provider(provider, model, api_key=None, base_url=None):
        created.append(LoopBoundProvider())
        return created[-1]

    monkeypatch.setattr(ProviderRegistry, "create_provider", create_provider)
    project = make_project(chain_canvas)
    queue = JobQueue(db_session)
    first = queue.enqueue("s-1", payload={"variables": {"question": "One?"}})
    second = queue.enqueue("s-2", payload={"variables": {"question": "Two?"}})
    worker = JobWorker("worker-1", project.id, session_factory=session_factory, settings=worker_settings)
    worker.start()

    assert {worker.poll_once(), worker.poll_once()} == {first.id, second.id}

    db_session.expire_all()
    assert queue.get(first.id).status == JobStatus.COMPLETED
    assert queue.get(second.id).status == JobStatus.COMPLETED
    assert len(created) == 2


@pytest.mark.integration
def test_executor_for_job(session_factory, worker_settings, executor):
    worker = JobWorker("worker-1", "p-1", session_factory=session_factory, settings=worker_settings)

    first, second = worker.executor_for_job(), worker.executor_for_job()

    assert first is not second
    assert isinstance(first.provider_factory, ProviderPool)
    assert first.provider_factory is not second.provider_factory
    assert first.default_timeout == worker_settings.node_timeout

    injected = JobWorker("worker-2", "p-1", session_factory=session_factory, settings=worker_settings, executor=executor)
    assert injected.executor_for_job() is executor
