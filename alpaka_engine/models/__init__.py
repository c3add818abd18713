"""
Models module - SQLAlchemy database models
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models after Base is defined to avoid circular imports
from .project import Project, GlobalVariable  # noqa: E402
from .execution import ExecutionInstance, ExecutionLog  # noqa: E402
from .job import ProcessingJob  # noqa: E402
from .progress import ProgressEvent  # noqa: E402
from .worker_state import WorkerRecord  # noqa: E402

__all__ = [
    "Base",
    "Project",
    "GlobalVariable",
    "ExecutionInstance",
    "ExecutionLog",
    "ProcessingJob",
    "ProgressEvent",
    "WorkerRecord",
]
