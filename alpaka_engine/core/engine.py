"""
Graph Runner for the Alpaka Workflow Engine

The GraphRunner executes one project graph end to end:
1. Snapshots the project's global variables (plus job variables)
2. Creates the ExecutionInstance (status: running)
3. Validates the graph and computes its topological order
4. For each node: resolves placeholders, executes, appends an ExecutionLog,
   updates counters and commits (progress is visible while running)
5. Writes the final status: completed, partial or failed

Per-node problems never abort the run:
- Missing / Pending placeholders skip the node
- Executor failures (Timeout, ProviderError, ConfigError) fail the node
Only a failing `required` node, an invalid graph or a storage error end
the run early, and the instance is still left in a terminal state.

Example:
    runner = GraphRunner(db_session)
    outcome = await runner.run(project, job=job, extra_variables={"job_id": job.id})
    outcome.status  # "completed" | "partial" | "failed"
"""

import base64
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import (
    EngineFatalError,
    GraphValidationError,
    ResolutionError,
    StorageUnavailableError,
)
from .executors import ExecutionContext, NodeExecutor
from .graph import WorkflowGraph
from .nodes import NodeType, OutputNode, RouterNode
from .progress import ProgressFeed
from .projects import ProjectService
from .resolver import ResolutionKind, VariableResolver
from ..models.execution import ExecutionInstance, ExecutionLog
from ..models.job import ProcessingJob
from ..models.project import Project

logger = logging.getLogger(__name__)


class NodeStatus:
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class InstanceStatus:
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


# Skip reasons that are not resolution errors
BRANCH_NOT_TAKEN = "branch_not_taken"
ABORTED = "aborted"


def make_json_serializable(obj):
    """
    Recursively convert non-JSON-serializable objects to serializable format.

    Handles:
    - datetime -> ISO 8601 string
    - bytes -> base64 string
    - sets / tuples -> lists
    - custom objects -> str(obj)
    """
    if isinstance(obj, dict):
        return {str(k): make_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple, set)):
        return [make_json_serializable(item) for item in obj]
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, bytes):
        return base64.b64encode(obj).decode('ascii')
    elif obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    else:
        return str(obj)


@dataclass
class RunOutcome:
    """Summary of a finished run, as seen by the worker and the API."""
    instance_id: str
    status: str
    total: int
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    reports: Dict[str, Any] = field(default_factory=dict)
    node_statuses: Dict[str, str] = field(default_factory=dict)
    # Failed nodes and skipped nodes other than branch_not_taken
    issues: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None


ProgressCallback = Callable[[Dict[str, Any]], None]


class GraphRunner:
    """
    Core execution engine for project graphs.

    Args:
        db_session: Session used for every write of the run
        executor: NodeExecutor (defaults to one using the provider registry)
        worker_id: Recorded on the instance
        on_progress: Called after each committed progress update with
            {"event", "instanceId", "nodeId", "status", "executed", "failed",
             "skipped", "total"}
        on_stream: Forwarded to streaming llm_chain nodes (node_id, chunk)
    """

    def __init__(
        self,
        db_session: Session,
        executor: Optional[NodeExecutor] = None,
        worker_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_stream: Optional[Callable] = None,
    ):
        self.db = db_session
        self.executor = executor or NodeExecutor()
        self.worker_id = worker_id
        self.on_progress = on_progress
        self.on_stream = on_stream
        self.progress = ProgressFeed(db_session)
        # Node event whose commit waits for the terminal status
        self._deferred_event: Optional[tuple] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        project: Project,
        job: Optional[ProcessingJob] = None,
        extra_variables: Optional[Dict[str, Any]] = None,
        resume_results: Optional[Dict[str, Dict[str, Any]]] = None,
        globals_snapshot: Optional[Dict[str, Any]] = None,
    ) -> RunOutcome:
        """
        Execute a project's graph.

        Args:
            project: Project whose canvas is executed
            job: Job this run serves (optional)
            extra_variables: Merged over the project's globals (job variables)
            resume_results: Outputs of nodes completed by an earlier run;
                those nodes count as executed and are not re-run
            globals_snapshot: Use this snapshot instead of reading the
                project's variables (resume keeps the original snapshot)

        Returns:
            RunOutcome

        Raises:
            StorageUnavailableError: Only if the terminal state itself
                cannot be written
        """
        start_time = time.time()

        if globals_snapshot is None:
            globals_snapshot = ProjectService(self.db).snapshot_variables(project.id)
        snapshot = dict(globals_snapshot)
        snapshot.update(extra_variables or {})

        canvas = project.canvas_data if isinstance(project.canvas_data, dict) else {}
        raw_nodes = canvas.get("nodes") if isinstance(canvas.get("nodes"), list) else []
        instance = ExecutionInstance(
            id=str(uuid.uuid4()),
            project_id=project.id,
            project_name=project.name,
            job_id=job.id if job else None,
            session_id=job.session_id if job else None,
            worker_id=self.worker_id,
            status=InstanceStatus.RUNNING,
            total_nodes=len(raw_nodes),
            executed_nodes=0,
            failed_nodes=0,
            skipped_nodes=0,
            started_at=datetime.utcnow(),
            global_variables_snapshot=make_json_serializable(snapshot),
            execution_results={},
        )
        stream_id = job.id if job else instance.id

        try:
            self.db.add(instance)
            self.progress.append(
                stream_id, "run_started",
                f"Run {instance.id} started for project '{project.name}' ({len(raw_nodes)} nodes)",
                {"instanceId": instance.id}
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailableError(f"Could not create execution instance: {e}") from e

        logger.info(
            f"Run {instance.id} started",
            extra={"project_id": project.id, "total_nodes": len(raw_nodes), "job_id": instance.job_id}
        )

        try:
            graph = WorkflowGraph.from_canvas(project.canvas_data)
            order = graph.topological_order()
        except GraphValidationError as e:
            return self._finish_invalid(instance, e, start_time, stream_id)
        except Exception as e:
            return self._finish_fatal(instance, e, start_time, stream_id)

        try:
            return await self._execute(
                graph, order, instance, project, snapshot, resume_results or {}, start_time, stream_id, job
            )
        except Exception as e:
            # Storage errors, EngineFatalError and engine bugs alike: the instance must not stay running
            return self._finish_fatal(instance, e, start_time, stream_id)

    async def resume(
        self,
        instance_id: str,
        job: Optional[ProcessingJob] = None,
    ) -> RunOutcome:
        """
        Re-run a previous instance's project, restoring every node that
        completed in that instance. Uses the original global snapshot.

        Raises:
            EngineFatalError: If the instance does not exist
        """
        previous = self.db.query(ExecutionInstance).filter(ExecutionInstance.id == instance_id).first()
        if previous is None:
            raise EngineFatalError(f"Execution instance {instance_id} not found")

        previous_results = previous.execution_results or {}
        completed = {log.node_id for log in previous.logs if log.status == NodeStatus.COMPLETED}
        restored = {node_id: previous_results[node_id] for node_id in completed if node_id in previous_results}

        logger.info(f"Resuming instance {instance_id}: restoring {len(restored)} completed node(s)")
        return await self.run(
            previous.project,
            job=job,
            resume_results=restored,
            globals_snapshot=previous.global_variables_snapshot or {},
        )

    # ------------------------------------------------------------------
    # Execution loop
    # ------------------------------------------------------------------

    async def _execute(
        self,
        graph: WorkflowGraph,
        order: List[str],
        instance: ExecutionInstance,
        project: Project,
        snapshot: Dict[str, Any],
        resume_results: Dict[str, Dict[str, Any]],
        start_time: float,
        stream_id: str,
        job: Optional[ProcessingJob],
    ) -> RunOutcome:
        results: Dict[str, Dict[str, Any]] = {}
        settled: Dict[str, str] = {}
        resolver = VariableResolver(graph, snapshot, results, settled)
        context = ExecutionContext(
            graph=graph,
            globals=resolver.globals,
            results=results,
            instance_id=instance.id,
            job_id=job.id if job else None,
            on_stream=self.on_stream,
        )

        outcome = RunOutcome(instance_id=instance.id, status=InstanceStatus.RUNNING, total=len(order))
        chosen_routes: Dict[str, str] = {}
        inactive: Set[str] = set()
        aborted_by: Optional[str] = None
        branch_skips = 0
        self._deferred_event = None

        for node_id in order:
            node = graph.node(node_id)

            if node_id in resume_results:
                results[node_id] = resume_results[node_id]
                if isinstance(node, RouterNode) and "route" in results[node_id]:
                    chosen_routes[node_id] = results[node_id]["route"]
                self._settle(
                    instance, node, NodeStatus.COMPLETED, stream_id, settled, results, outcome,
                    inputs={"restored": True}, output=results[node_id]
                )
                continue

            if aborted_by is not None:
                self._settle(
                    instance, node, NodeStatus.SKIPPED, stream_id, settled, results, outcome,
                    error=f"Run aborted: required node '{aborted_by}' did not complete",
                    error_kind=ABORTED
                )
                continue

            if self._branch_inactive(graph, node_id, chosen_routes, inactive):
                inactive.add(node_id)
                branch_skips += 1
                self._settle(
                    instance, node, NodeStatus.SKIPPED, stream_id, settled, results, outcome,
                    error="Branch not taken", error_kind=BRANCH_NOT_TAKEN
                )
                continue

            instance.current_node_id = node_id
            self.progress.append(stream_id, "node_started", f"Node {node_id} ({node.type}) started", {"nodeId": node_id})
            self.db.commit()

            resolutions = resolver.resolve_node(node)
            pending = [r for r in resolutions.values() if r.kind == ResolutionKind.PENDING]
            missing = [r for r in resolutions.values() if r.kind == ResolutionKind.MISSING]

            if pending or missing:
                kind = ResolutionError.PENDING if pending else ResolutionError.MISSING
                problems = pending or missing
                error = ResolutionError(
                    kind,
                    problems[0].name,
                    node_id,
                    message=f"{kind} variable(s) for node '{node_id}': " + "; ".join(
                        f"{{{{{r.name}}}}} ({r.reason})" for r in problems
                    )
                )
                if pending:
                    logger.warning(error.message)
                else:
                    logger.info(error.message)
                self._settle(
                    instance, node, NodeStatus.SKIPPED, stream_id, settled, results, outcome,
                    error=error.message, error_kind=kind,
                    inputs={r.name: r.kind for r in problems}
                )
            else:
                values = {name: r.value for name, r in resolutions.items()}
                result = await self.executor.execute(node, values, context)

                if result.completed:
                    results[node_id] = make_json_serializable(result.output)
                    if isinstance(node, RouterNode):
                        chosen_routes[node_id] = result.output["route"]
                    if isinstance(node, OutputNode):
                        outcome.reports[node.key] = results[node_id].get("report")
                    self._settle(
                        instance, node, NodeStatus.COMPLETED, stream_id, settled, results, outcome,
                        inputs=values, output=results[node_id], duration_ms=result.duration_ms
                    )
                else:
                    self._settle(
                        instance, node, NodeStatus.FAILED, stream_id, settled, results, outcome,
                        inputs=values, error=result.error, error_kind=result.error_kind,
                        duration_ms=result.duration_ms
                    )

            if node.required and settled[node_id] != NodeStatus.COMPLETED:
                aborted_by = node_id
                logger.error(f"Required node {node_id} did not complete, aborting run {instance.id}")

        # Final status
        if aborted_by is not None:
            status = InstanceStatus.FAILED
            outcome.error = f"Required node '{aborted_by}' did not complete"
        elif instance.failed_nodes == 0 and instance.skipped_nodes == branch_skips:
            status = InstanceStatus.COMPLETED
        elif instance.executed_nodes == 0:
            status = InstanceStatus.FAILED
            outcome.error = "No node completed"
        else:
            status = InstanceStatus.PARTIAL
            outcome.error = (
                f"{instance.failed_nodes} node(s) failed, "
                f"{instance.skipped_nodes - branch_skips} node(s) skipped"
            )

        instance.status = status
        instance.current_node_id = None
        instance.completed_at = datetime.utcnow()
        instance.duration = int((time.time() - start_time) * 1000)
        instance.error = outcome.error
        instance.execution_results = dict(results)
        ProjectService(self.db).record_results(project, dict(results))
        self.progress.append(
            stream_id, "run_finished",
            f"Run {instance.id} {status}: {instance.executed_nodes} executed, "
            f"{instance.failed_nodes} failed, {instance.skipped_nodes} skipped",
            {"instanceId": instance.id, "status": status}
        )
        self.db.commit()
        if self._deferred_event is not None:
            event, node_id, node_status = self._deferred_event
            self._deferred_event = None
            self._notify(event, instance, node_id, node_status)
        self._notify("run_finished", instance, None, status)

        logger.info(
            f"Run {instance.id} finished with status {status}",
            extra={
                "executed": instance.executed_nodes,
                "failed": instance.failed_nodes,
                "skipped": instance.skipped_nodes,
                "duration_ms": instance.duration,
            }
        )

        outcome.status = status
        outcome.results = dict(results)
        return outcome

    def _settle(
        self,
        instance: ExecutionInstance,
        node: NodeType,
        status: str,
        stream_id: str,
        settled: Dict[str, str],
        results: Dict[str, Dict[str, Any]],
        outcome: RunOutcome,
        inputs: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        duration_ms: int = 0,
    ) -> None:
        """Record a node's terminal status: log row, counters, progress event, commit."""
        settled[node.id] = status

        self.db.add(ExecutionLog(
            execution_instance_id=instance.id,
            project_id=instance.project_id,
            node_id=node.id,
            node_type=node.type,
            input=make_json_serializable(inputs) if inputs is not None else None,
            output=output,
            status=status,
            error=error,
            error_kind=error_kind,
            duration=duration_ms,
        ))

        if status == NodeStatus.COMPLETED:
            instance.executed_nodes += 1
        elif status == NodeStatus.FAILED:
            instance.failed_nodes += 1
        else:
            instance.skipped_nodes += 1
        instance.execution_results = dict(results)

        outcome.node_statuses[node.id] = status
        outcome.executed = instance.executed_nodes
        outcome.failed = instance.failed_nodes
        outcome.skipped = instance.skipped_nodes
        if status != NodeStatus.COMPLETED and error_kind != BRANCH_NOT_TAKEN:
            outcome.issues.append({"nodeId": node.id, "status": status, "kind": error_kind, "error": error})

        line = f"Node {node.id} {status}"
        if error:
            line += f": {error}"
        elif duration_ms:
            line += f" ({duration_ms}ms)"
        self.progress.append(
            stream_id, f"node_{status}", line,
            {"nodeId": node.id, "status": status, "kind": error_kind}
        )

        settled_count = instance.executed_nodes + instance.failed_nodes + instance.skipped_nodes
        if settled_count >= instance.total_nodes:
            # Counters reach total_nodes only in the same commit as the terminal status
            self.db.flush()
            self._deferred_event = (f"node_{status}", node.id, status)
            return

        self.db.commit()
        self._notify(f"node_{status}", instance, node.id, status)

    @staticmethod
    def _branch_inactive(
        graph: WorkflowGraph,
        node_id: str,
        chosen_routes: Dict[str, str],
        inactive: Set[str],
    ) -> bool:
        """True if every incoming edge comes from an inactive node or a router handle that was not chosen."""
        incoming = graph.incoming_edges(node_id)
        if not incoming:
            return False

        def dead(edge) -> bool:
            if edge.source in inactive:
                return True
            chosen = chosen_routes.get(edge.source)
            return chosen is not None and edge.source_handle is not None and edge.source_handle != chosen

        return all(dead(edge) for edge in incoming)

    # ------------------------------------------------------------------
    # Terminal states outside the loop
    # ------------------------------------------------------------------

    def _finish_invalid(
        self,
        instance: ExecutionInstance,
        error: GraphValidationError,
        start_time: float,
        stream_id: str,
    ) -> RunOutcome:
        """Graph rejected before any node ran: failed, no logs."""
        kind = type(error).__name__
        logger.error(f"Run {instance.id}: {kind}: {error.message}")

        instance.status = InstanceStatus.FAILED
        instance.error = f"{kind}: {error.message}"
        instance.current_node_id = None
        instance.completed_at = datetime.utcnow()
        instance.duration = int((time.time() - start_time) * 1000)
        self.progress.append(stream_id, "run_finished", f"Run {instance.id} failed: {instance.error}",
                             {"instanceId": instance.id, "status": InstanceStatus.FAILED})
        self.db.commit()
        self._notify("run_finished", instance, None, InstanceStatus.FAILED)

        return RunOutcome(
            instance_id=instance.id,
            status=InstanceStatus.FAILED,
            total=instance.total_nodes,
            error=instance.error,
            error_kind=kind,
        )

    def _finish_fatal(
        self,
        instance: ExecutionInstance,
        error: Exception,
        start_time: float,
        stream_id: str,
    ) -> RunOutcome:
        """Storage or engine failure mid-run: leave the instance failed if we still can."""
        logger.exception(f"Run {instance.id} aborted by engine error")
        self.db.rollback()

        if isinstance(error, EngineFatalError):
            message = error.message
        elif isinstance(error, SQLAlchemyError):
            message = f"Storage error: {error}"
        else:
            message = f"Engine error: {type(error).__name__}: {error}"
        try:
            instance.status = InstanceStatus.FAILED
            instance.error = message
            instance.current_node_id = None
            instance.completed_at = datetime.utcnow()
            instance.duration = int((time.time() - start_time) * 1000)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageUnavailableError(f"Could not record failure of run {instance.id}: {e}") from e

        self._notify("run_finished", instance, None, InstanceStatus.FAILED)
        return RunOutcome(
            instance_id=instance.id,
            status=InstanceStatus.FAILED,
            total=instance.total_nodes,
            executed=instance.executed_nodes,
            failed=instance.failed_nodes,
            skipped=instance.skipped_nodes,
            error=message,
            error_kind="EngineFatalError",
        )

    def _notify(self, event: str, instance: ExecutionInstance, node_id: Optional[str], status: str) -> None:
        if not self.on_progress:
            return
        self.on_progress({
            "event": event,
            "instanceId": instance.id,
            "nodeId": node_id,
            "status": status,
            "executed": instance.executed_nodes,
            "failed": instance.failed_nodes,
            "skipped": instance.skipped_nodes,
            "total": instance.total_nodes,
        })
