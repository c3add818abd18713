"""
ProcessingJob Model
The unit of work handed from the session service to a worker.
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, JSON, DateTime, Index

from . import Base


class ProcessingJob(Base):
    """
    ProcessingJob Model

    Status: queued -> processing -> completed | failed
    (queued -> failed only through orphan reconciliation)

    One job per session_id.
    """
    __tablename__ = "processing_jobs"
    __table_args__ = (
        Index("ix_processing_jobs_status_mode", "status", "mode"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(255), nullable=False, unique=True)
    mode = Column(String(100), nullable=True, index=True)

    status = Column(String(50), nullable=False, default="queued", index=True)
    worker_id = Column(String(255), nullable=True)

    # {"responses": {...}, "variables": {...}}
    payload = Column(JSON, nullable=True)
    reports = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    claimed_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ProcessingJob(id={self.id}, session_id='{self.session_id}', status='{self.status}')>"
