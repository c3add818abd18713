"""
WorkerRecord Model
Liveness record shared by worker processes and the supervisor.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, DateTime

from . import Base


class WorkerRecord(Base):
    """
    WorkerRecord Model

    Status: running, stopped, errored.
    A running worker whose heartbeat is older than the stale threshold
    is reported as errored.
    """
    __tablename__ = "worker_records"

    name = Column(String(255), primary_key=True)
    project_id = Column(String(36), nullable=True)
    project_name = Column(String(255), nullable=True)
    mode = Column(String(100), nullable=True)

    status = Column(String(50), nullable=False, default="stopped")
    pid = Column(Integer, nullable=True)

    started_at = Column(DateTime, nullable=True)
    last_heartbeat_at = Column(DateTime, nullable=True)
    last_execution_at = Column(DateTime, nullable=True)
    restart_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    def __repr__(self):
        return f"<WorkerRecord(name='{self.name}', status='{self.status}')>"
