"""
Pydantic schemas for API request/response validation

Field names follow the JSON the session service and the dashboard
exchange with the engine (camelCase on the wire).
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime


class CamelModel(BaseModel):
    class Config:
        populate_by_name = True
        from_attributes = True


# ============================================================================
# JOB SCHEMAS
# ============================================================================

class JobCreate(CamelModel):
    """Schema for enqueueing a job"""
    session_id: str = Field(..., min_length=1, alias="sessionId")
    mode: Optional[str] = Field(None, description="Job mode; workers may filter on it")
    responses: Dict[str, Any] = Field(default_factory=dict, description="Session responses")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Extra globals for the run")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "sessionId": "session-123",
                "mode": "diagnostic",
                "responses": {"q1": "Yes", "q2": "Two weeks"},
                "variables": {"company": "Acme"}
            }
        }


class JobUpdate(CamelModel):
    """Schema for a job status transition"""
    status: Literal["queued", "processing", "completed", "failed"]
    reports: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    worker_id: Optional[str] = Field(None, alias="workerId")


class JobResponse(CamelModel):
    id: str
    session_id: str = Field(..., serialization_alias="sessionId")
    mode: Optional[str]
    status: str
    worker_id: Optional[str] = Field(None, serialization_alias="workerId")
    reports: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(..., serialization_alias="createdAt")
    updated_at: datetime = Field(..., serialization_alias="updatedAt")
    completed_at: Optional[datetime] = Field(None, serialization_alias="completedAt")


class JobListResponse(BaseModel):
    total: int
    jobs: List[JobResponse]


# ============================================================================
# EXECUTION SCHEMAS
# ============================================================================

class ExecutionLogResponse(CamelModel):
    id: int
    node_id: str = Field(..., serialization_alias="nodeId")
    node_type: Optional[str] = Field(None, serialization_alias="nodeType")
    input: Optional[Any] = None
    output: Optional[Any] = None
    status: str
    error: Optional[str] = None
    error_kind: Optional[str] = Field(None, serialization_alias="errorKind")
    duration: Optional[int] = None
    created_at: datetime = Field(..., serialization_alias="createdAt")


class ExecutionSummary(CamelModel):
    id: str
    project_id: str = Field(..., serialization_alias="projectId")
    project_name: Optional[str] = Field(None, serialization_alias="projectName")
    job_id: Optional[str] = Field(None, serialization_alias="jobId")
    session_id: Optional[str] = Field(None, serialization_alias="sessionId")
    status: str
    total_nodes: int = Field(..., serialization_alias="totalNodes")
    executed_nodes: int = Field(..., serialization_alias="executedNodes")
    failed_nodes: int = Field(..., serialization_alias="failedNodes")
    skipped_nodes: int = Field(..., serialization_alias="skippedNodes")
    current_node_id: Optional[str] = Field(None, serialization_alias="currentNodeId")
    started_at: datetime = Field(..., serialization_alias="startedAt")
    completed_at: Optional[datetime] = Field(None, serialization_alias="completedAt")
    duration: Optional[int] = None
    error: Optional[str] = None


class ExecutionDetail(ExecutionSummary):
    global_variables_snapshot: Optional[Dict[str, Any]] = Field(None, serialization_alias="globalVariablesSnapshot")
    logs: Optional[List[ExecutionLogResponse]] = None
    execution_results: Optional[Dict[str, Any]] = Field(None, serialization_alias="executionResults")


class ExecutionListResponse(BaseModel):
    total: int
    executions: List[ExecutionSummary]


# ============================================================================
# PROGRESS / WORKERS / PROJECTS
# ============================================================================

class ProgressResponse(CamelModel):
    lines: List[str]
    offset: int
    next_offset: int = Field(..., alias="nextOffset")
    total: int
    has_more: bool = Field(..., alias="hasMore")
    events: List[Dict[str, Any]] = Field(default_factory=list)


class WorkerStatusResponse(CamelModel):
    name: str
    status: str
    uptime: Optional[float] = None
    instances: int = 0
    memory: Optional[int] = None
    cpu: Optional[float] = None
    restarts: int = 0
    pid: Optional[int] = None
    project_name: Optional[str] = Field(None, serialization_alias="projectName")
    mode: Optional[str] = None
    last_execution_at: Optional[str] = Field(None, serialization_alias="lastExecutionAt")
    last_heartbeat_at: Optional[str] = Field(None, serialization_alias="lastHeartbeatAt")
    last_error: Optional[str] = Field(None, serialization_alias="lastError")


class VariableInput(BaseModel):
    name: str = Field(..., min_length=1)
    value: Any = ""
    type: Optional[str] = None
    description: Optional[str] = None
    folder: Optional[str] = None


class VariablesUpdate(BaseModel):
    variables: List[VariableInput]


class VariableResponse(CamelModel):
    name: str
    value: str
    type: Optional[str] = None
    description: Optional[str] = None
    folder: Optional[str] = None


class ProjectResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    is_system: bool = Field(..., serialization_alias="isSystem")
    template_id: Optional[str] = Field(None, serialization_alias="templateId")
    canvas_data: Dict[str, Any] = Field(..., serialization_alias="canvasData")
    variables: List[VariableResponse] = Field(default_factory=list)


class ModelListResponse(BaseModel):
    provider: str
    models: List[str]


class MessageResponse(BaseModel):
    """Generic message response"""
    message: str
    details: Optional[Dict[str, Any]] = None
