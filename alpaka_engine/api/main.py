"""
FastAPI main application
REST API endpoints for Alpaka
"""

from fastapi import FastAPI, HTTPException, Depends, Request, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional, List
import hmac
import os
import logging
import uuid

from ..config import Settings, get_settings
from ..database import SessionLocal
from ..models.execution import ExecutionInstance
from ..core.exceptions import (
    EngineException, EngineFatalError, JobProtocolError, NodeConfigError,
    ProviderError, StorageUnavailableError, TemplateNotFoundError
)
from ..core.job_queue import JobQueue, JobStatus
from ..core.logging_config import setup_logging, set_request_id, clear_request_id
from ..core.progress import ProgressFeed
from ..core.projects import ProjectService
from ..core.supervisor import WorkerSupervisor, SubprocessController, ProcessController
from ..providers.registry import ProviderRegistry
from .schemas import (
    JobCreate, JobUpdate, JobResponse, JobListResponse,
    ExecutionDetail, ExecutionSummary, ExecutionListResponse, ExecutionLogResponse,
    ProgressResponse, WorkerStatusResponse, VariablesUpdate, VariableResponse,
    ProjectResponse, ModelListResponse
)

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

# JSON logs in production (JSON_LOGS=true), standard logs in development
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true",
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP CONFIGURATION
# ============================================================================

app = FastAPI(
    title="Alpaka Engine API",
    description="""
# Alpaka workflow engine

Runs project graphs (model providers, LLM chains, transforms, routers,
outputs) for jobs handed over by the session service.

## Flow

1. **POST /api/external/jobs** - the session service enqueues a job
2. A worker claims it, runs the project graph and writes the result
3. **GET /api/external/jobs/{id}** - poll for status and reports
4. **GET /api/admin/jobs/{job_id}/progress?offset=N** - follow progress incrementally

## Authentication

- Job API: `X-Backend-Secret` header
- Internal and admin API: `X-Alpaka-Internal-Secret` header
    """,
    version="0.1.0",
    openapi_tags=[
        {"name": "health", "description": "Health checks"},
        {"name": "jobs", "description": "Job hand-off between the session service and workers"},
        {"name": "executions", "description": "Execution history and node logs"},
        {"name": "workers", "description": "Worker supervision and job progress"},
        {"name": "projects", "description": "Project templates and global variables"},
        {"name": "models", "description": "Model listing per provider"},
    ]
)

# ============================================================================
# MIDDLEWARE - CORS Configuration
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependency: Get database session
def get_db():
    """Dependency for database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Process handles must outlive single requests
_controller: ProcessController = SubprocessController()


def get_supervisor(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WorkerSupervisor:
    return WorkerSupervisor(db, settings.workers, controller=_controller)


# ============================================================================
# AUTHENTICATION
# ============================================================================

def _check_secret(provided: Optional[str], expected: Optional[str], header: str) -> None:
    if not expected:
        logger.error(f"Secret for {header} is not configured")
        raise HTTPException(status_code=503, detail="Authentication is not configured")
    # Constant-time comparison
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Rejected request with invalid {header}")
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_backend_secret(
    x_backend_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    _check_secret(x_backend_secret, settings.external_secret, "X-Backend-Secret")


def require_internal_secret(
    x_alpaka_internal_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    _check_secret(x_alpaka_internal_secret, settings.internal_secret, "X-Alpaka-Internal-Secret")


# ============================================================================
# MIDDLEWARE - Request ID Tracking
# ============================================================================

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Middleware to add request ID to all requests.

    - Uses the caller's X-Request-ID or generates one
    - Sets request ID in logging context
    - Adds X-Request-ID header to response
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    set_request_id(request_id)

    logger.info(
        f"{request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(f"Response {response.status_code}", extra={"status_code": response.status_code})
        return response

    except Exception as e:
        logger.exception("Unhandled exception in request", extra={"error": str(e)})
        raise

    finally:
        clear_request_id()


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _error_response(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": detail, "status_code": status_code}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Custom HTTP exception handler for better error responses"""
    return _error_response(exc.status_code, exc.detail)


@app.exception_handler(JobProtocolError)
async def job_protocol_exception_handler(request, exc):
    return _error_response(409, exc.message)


@app.exception_handler(StorageUnavailableError)
async def storage_exception_handler(request, exc):
    logger.error(f"Storage unavailable: {exc.message}")
    return _error_response(503, "Storage unavailable")


@app.exception_handler(EngineException)
async def engine_exception_handler(request, exc):
    logger.error(f"{type(exc).__name__}: {exc.message}")
    return _error_response(500, exc.message)


# ============================================================================
# HEALTH
# ============================================================================

@app.get(
    "/health",
    tags=["health"],
    summary="Health check (lightweight)",
    description="Confirms the API process is up. Does not touch the database."
)
def health_check():
    """Lightweight health check - just confirms API is alive"""
    return {
        "status": "healthy",
        "service": "Alpaka Engine API",
        "version": "0.1.0"
    }


# ============================================================================
# JOB API (session service)
# ============================================================================

@app.post(
    "/api/external/jobs",
    response_model=JobResponse,
    status_code=201,
    tags=["jobs"],
    dependencies=[Depends(require_backend_secret)],
    summary="Enqueue a job",
    description="""
    Create a queued job for a completed session.

    Idempotent per sessionId: enqueueing the same session again returns the
    existing job unchanged.
    """
)
def create_job(job_in: JobCreate, db: Session = Depends(get_db)):
    queue = JobQueue(db)
    job = queue.enqueue(
        job_in.session_id,
        payload={"responses": job_in.responses, "variables": job_in.variables},
        mode=job_in.mode,
    )
    return job


@app.get(
    "/api/external/jobs/{job_id}",
    response_model=JobResponse,
    tags=["jobs"],
    dependencies=[Depends(require_backend_secret)],
    summary="Get job status and result"
)
def get_job(job_id: str, db: Session = Depends(get_db)):
    job = JobQueue(db).get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


@app.get(
    "/api/external/jobs",
    response_model=JobListResponse,
    tags=["jobs"],
    dependencies=[Depends(require_backend_secret)],
    summary="List jobs by status",
    description="Jobs in one status, oldest first. Workers poll `status=queued`."
)
def list_jobs(
    status: str = Query(JobStatus.QUEUED),
    mode: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    if status not in JobStatus.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    jobs = JobQueue(db).list_by_status(status, mode=mode, limit=limit)
    return {"total": len(jobs), "jobs": jobs}


@app.patch(
    "/api/external/jobs/{job_id}",
    response_model=JobResponse,
    tags=["jobs"],
    dependencies=[Depends(require_backend_secret)],
    summary="Update job status",
    description="""
    Move a job forward: queued -> processing -> completed | failed.

    - Repeating the current terminal status is a no-op (200)
    - Backward or skipped transitions return 409
    """
)
def update_job(job_id: str, update: JobUpdate, db: Session = Depends(get_db)):
    job = JobQueue(db).update_status(
        job_id,
        update.status,
        reports=update.reports,
        error=update.error,
        worker_id=update.worker_id,
    )
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


# ============================================================================
# EXECUTION HISTORY (internal)
# ============================================================================

@app.get(
    "/api/internal/execution-history/{instance_id}",
    response_model=ExecutionDetail,
    tags=["executions"],
    dependencies=[Depends(require_internal_secret)],
    summary="Get one execution instance",
    description="""
    Execution instance with counters and snapshot.

    - includeLogs (default true): per-node ExecutionLog rows, in execution order
    - includeResults (default false): final per-node results
    """
)
def get_execution(
    instance_id: str,
    include_logs: bool = Query(True, alias="includeLogs"),
    include_results: bool = Query(False, alias="includeResults"),
    db: Session = Depends(get_db),
):
    instance = db.query(ExecutionInstance).filter(ExecutionInstance.id == instance_id).first()
    if not instance:
        raise HTTPException(status_code=404, detail=f"Execution {instance_id} not found")

    detail = ExecutionDetail.model_validate(instance, from_attributes=True)
    detail.logs = (
        [ExecutionLogResponse.model_validate(log) for log in instance.logs]
        if include_logs else None
    )
    if not include_results:
        detail.execution_results = None
    return detail


@app.get(
    "/api/internal/execution-history",
    response_model=ExecutionListResponse,
    tags=["executions"],
    dependencies=[Depends(require_internal_secret)],
    summary="List execution instances",
    description="Most recent first, optionally filtered by project and status."
)
def list_executions(
    project_id: Optional[str] = Query(None, alias="projectId"),
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    query = db.query(ExecutionInstance)
    if project_id:
        query = query.filter(ExecutionInstance.project_id == project_id)
    if status:
        query = query.filter(ExecutionInstance.status == status)

    executions = query.order_by(ExecutionInstance.started_at.desc()).limit(limit).all()
    return {
        "total": len(executions),
        "executions": [ExecutionSummary.model_validate(e) for e in executions]
    }


# ============================================================================
# WORKERS & PROGRESS (admin)
# ============================================================================

@app.get(
    "/api/admin/workers/status",
    response_model=List[WorkerStatusResponse],
    tags=["workers"],
    dependencies=[Depends(require_internal_secret)],
    summary="Status of every configured worker"
)
def workers_status(supervisor: WorkerSupervisor = Depends(get_supervisor)):
    return [status.to_dict() for status in supervisor.list_statuses()]


@app.post(
    "/api/admin/workers/{name}/{action}",
    response_model=WorkerStatusResponse,
    tags=["workers"],
    dependencies=[Depends(require_internal_secret)],
    summary="Start, stop or restart a worker"
)
def control_worker(name: str, action: str, supervisor: WorkerSupervisor = Depends(get_supervisor)):
    actions = {
        "start": supervisor.start,
        "stop": supervisor.stop,
        "restart": supervisor.restart,
    }
    if action not in actions:
        raise HTTPException(status_code=400, detail=f"Unknown action '{action}'")
    try:
        status = actions[action](name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Worker {name} not found")
    except OSError as e:
        logger.error(f"Failed to {action} worker {name}: {e}")
        supervisor.registry.mark_errored(name, str(e))
        raise HTTPException(status_code=500, detail=f"Failed to {action} worker {name}")

    logger.info(f"Worker {name}: {action} -> {status.status}")
    return status.to_dict()


@app.get(
    "/api/admin/jobs/{job_id}/progress",
    response_model=ProgressResponse,
    tags=["workers"],
    dependencies=[Depends(require_internal_secret)],
    summary="Incremental job progress",
    description="""
    Progress lines from `offset` on. Pass `nextOffset` back as `offset` to
    receive only new lines; `hasMore` is true while more lines are
    already available.
    """
)
def job_progress(
    job_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(500, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    page = ProgressFeed(db).read(job_id, offset=offset, limit=limit)
    return page.to_dict()


# ============================================================================
# PROJECTS
# ============================================================================

@app.post(
    "/api/projects/{project_id}/reset",
    response_model=ProjectResponse,
    tags=["projects"],
    dependencies=[Depends(require_internal_secret)],
    summary="Reset a system project to its template",
    description="Replaces canvas and global variables with the template contents in one transaction."
)
def reset_project(
    project_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    service = ProjectService(db)
    if service.get(project_id) is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
    try:
        return service.reset_to_template(project_id, settings.templates_dir)
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except EngineFatalError as e:
        raise HTTPException(status_code=400, detail=e.message)


@app.put(
    "/api/projects/{project_id}/variables",
    response_model=List[VariableResponse],
    tags=["projects"],
    dependencies=[Depends(require_internal_secret)],
    summary="Create or update global variables"
)
def update_variables(project_id: str, update: VariablesUpdate, db: Session = Depends(get_db)):
    service = ProjectService(db)
    if service.get(project_id) is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
    try:
        return service.set_variables(
            project_id,
            [variable.model_dump(exclude_unset=True) for variable in update.variables]
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save variables for project {project_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save variables")


# ============================================================================
# MODELS
# ============================================================================

@app.get(
    "/api/models",
    response_model=ModelListResponse,
    tags=["models"],
    dependencies=[Depends(require_internal_secret)],
    summary="List models of a provider",
    description="""
    Asks the provider backend for its available models.

    Credentials go in headers, never in the query string:
    `X-Provider-Api-Key`, `X-Provider-Base-Url`.
    """
)
async def list_models(
    provider: str = Query(...),
    x_provider_api_key: Optional[str] = Header(None),
    x_provider_base_url: Optional[str] = Header(None),
):
    try:
        backend = ProviderRegistry.create_provider(
            provider,
            "model-listing",
            api_key=x_provider_api_key,
            base_url=x_provider_base_url,
        )
        models = await backend.list_models()
    except NodeConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=e.message)

    return {"provider": provider, "models": models}
