"""
Custom Exceptions for Alpaka

This module defines the error taxonomy of the workflow engine.

Exception Hierarchy:
- EngineException (base)
  - GraphValidationError (don't retry)
    - GraphCycleError (don't retry)
  - ResolutionError (kind: Missing | Pending)
  - NodeExecutionError (kind: Timeout | ProviderError | ConfigError)
    - NodeTimeoutError (retry)
    - ProviderError (retry with circuit breaker)
    - NodeConfigError (don't retry)
  - JobProtocolError (absorbed by the job queue)
  - EngineFatalError (aborts the run)
    - StorageUnavailableError (retry)
    - TemplateNotFoundError (don't retry)

Per-node errors (ResolutionError, NodeExecutionError) never abort a run:
the runner records them on the node and moves on.
"""

from typing import List, Optional


class EngineException(Exception):
    """Base exception for all Alpaka engine errors"""

    def __init__(self, message: str, retry_allowed: bool = True):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


# ============================================================================
# GRAPH ERRORS
# ============================================================================

class GraphValidationError(EngineException):
    """
    Graph structure is invalid (unknown node type, dangling edge, duplicate id).
    Should NOT be retried - fix the project canvas.
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=False)


class GraphCycleError(GraphValidationError):
    """
    The graph contains a cycle, so no topological order exists.

    `cycle` lists the node ids of one concrete cycle, first node repeated
    at the end (e.g. ["X", "Y", "X"]).
    """

    def __init__(self, message: str, cycle: Optional[List[str]] = None):
        super().__init__(message)
        self.cycle = cycle or []


# ============================================================================
# RESOLUTION ERRORS
# ============================================================================

class ResolutionError(EngineException):
    """
    A placeholder could not be resolved for a node.

    kind is "Missing" (no source exists) or "Pending" (a reachable upstream
    node declares the field but has not produced it yet).
    """

    MISSING = "Missing"
    PENDING = "Pending"

    def __init__(self, kind: str, placeholder: str, node_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"{kind} variable '{placeholder}' for node '{node_id}'",
            retry_allowed=False
        )
        self.kind = kind
        self.placeholder = placeholder
        self.node_id = node_id


# ============================================================================
# NODE EXECUTION ERRORS
# ============================================================================

class NodeExecutionError(EngineException):
    """Base class for failures while running a single node"""

    TIMEOUT = "Timeout"
    PROVIDER_ERROR = "ProviderError"
    CONFIG_ERROR = "ConfigError"

    kind = PROVIDER_ERROR

    def __init__(self, message: str, node_id: Optional[str] = None, retry_allowed: bool = True):
        super().__init__(message, retry_allowed=retry_allowed)
        self.node_id = node_id


class NodeTimeoutError(NodeExecutionError):
    """
    Node exceeded its timeout.
    Should be retried.
    """

    kind = NodeExecutionError.TIMEOUT

    def __init__(self, message: str, node_id: Optional[str] = None, timeout_seconds: Optional[float] = None):
        super().__init__(message, node_id=node_id)
        self.timeout_seconds = timeout_seconds


class ProviderError(NodeExecutionError):
    """
    The model provider failed (network, rate limit, bad response).
    Should be retried with circuit breaker.
    """

    kind = NodeExecutionError.PROVIDER_ERROR

    def __init__(self, message: str, node_id: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message, node_id=node_id)
        self.provider = provider


class NodeConfigError(NodeExecutionError):
    """
    Node configuration is unusable (no provider for its model group,
    unknown provider, malformed routes).
    Should NOT be retried - fix the node.
    """

    kind = NodeExecutionError.CONFIG_ERROR

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message, node_id=node_id, retry_allowed=False)


# ============================================================================
# JOB PROTOCOL ERRORS
# ============================================================================

class JobProtocolError(EngineException):
    """
    A job transition was not allowed (backward move or repeated terminal).
    The queue logs and absorbs these on worker paths.
    """

    def __init__(self, job_id: str, current: Optional[str], attempted: str):
        super().__init__(
            f"Job {job_id}: transition {current} -> {attempted} not allowed",
            retry_allowed=False
        )
        self.job_id = job_id
        self.current = current
        self.attempted = attempted


# ============================================================================
# FATAL ERRORS
# ============================================================================

class EngineFatalError(EngineException):
    """
    Unrecoverable engine error (storage down, corrupt project).
    Aborts the current run; instance and job are still left terminal.
    """

    def __init__(self, message: str, retry_allowed: bool = False):
        super().__init__(message, retry_allowed=retry_allowed)


class StorageUnavailableError(EngineFatalError):
    """
    Database connection or query error.
    Should be retried (transient failures).
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=True)


class TemplateNotFoundError(EngineFatalError):
    """
    Project template file does not exist.
    Should NOT be retried.
    """

    def __init__(self, message: str, template_id: Optional[str] = None):
        super().__init__(message)
        self.template_id = template_id
