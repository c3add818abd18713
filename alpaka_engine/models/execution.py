"""
Execution Models
ExecutionInstance records one run of a project graph,
ExecutionLog records each node executed (append-only).
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from . import Base


class ExecutionInstance(Base):
    """
    ExecutionInstance Model

    Status: running -> completed | failed | partial

    Counters satisfy executed_nodes + failed_nodes + skipped_nodes <= total_nodes
    after every progress update. current_node_id is only set while running.
    """
    __tablename__ = "execution_instances"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    project_name = Column(String(255), nullable=True)

    job_id = Column(String(36), nullable=True, index=True)
    session_id = Column(String(255), nullable=True, index=True)
    worker_id = Column(String(255), nullable=True)

    status = Column(String(50), nullable=False, default="running", index=True)

    total_nodes = Column(Integer, nullable=False, default=0)
    executed_nodes = Column(Integer, nullable=False, default=0)
    failed_nodes = Column(Integer, nullable=False, default=0)
    skipped_nodes = Column(Integer, nullable=False, default=0)
    current_node_id = Column(String(255), nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=True)  # milliseconds

    error = Column(Text, nullable=True)

    # Globals as seen by this run, and per-node outputs
    global_variables_snapshot = Column(JSON, nullable=True)
    execution_results = Column(JSON, nullable=True)

    project = relationship("Project", back_populates="executions")
    logs = relationship(
        "ExecutionLog",
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="ExecutionLog.id"
    )

    def __repr__(self):
        return f"<ExecutionInstance(id={self.id}, project_id={self.project_id}, status='{self.status}')>"


class ExecutionLog(Base):
    """
    ExecutionLog Model

    One row per node settled during a run (completed, failed or skipped).
    Rows are never updated after insert.
    """
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_instance_id = Column(
        String(36),
        ForeignKey("execution_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    project_id = Column(String(36), nullable=False, index=True)

    node_id = Column(String(255), nullable=False)
    node_type = Column(String(50), nullable=True)

    # Resolved inputs and produced outputs
    input = Column(JSON, nullable=True)
    output = Column(JSON, nullable=True)

    # completed, failed, skipped
    status = Column(String(50), nullable=False, index=True)
    error = Column(Text, nullable=True)
    # Timeout, ProviderError, ConfigError, Missing, Pending, branch_not_taken, aborted
    error_kind = Column(String(50), nullable=True)

    duration = Column(Integer, nullable=True)  # milliseconds
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    instance = relationship("ExecutionInstance", back_populates="logs")

    def __repr__(self):
        return f"<ExecutionLog(node_id='{self.node_id}', status='{self.status}')>"
