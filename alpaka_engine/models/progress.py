"""
ProgressEvent Model
Append-only progress log per job, read by offset.
"""

from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, UniqueConstraint

from . import Base


class ProgressEvent(Base):
    """
    ProgressEvent Model

    offset is 0-based and strictly increasing per stream_id (a job id,
    or an execution instance id for runs started without a job).
    """
    __tablename__ = "progress_events"
    __table_args__ = (UniqueConstraint("stream_id", "offset", name="uq_progress_events_stream_offset"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    stream_id = Column(String(36), nullable=False, index=True)
    offset = Column(Integer, nullable=False)

    # node_started, node_completed, node_failed, node_skipped, run_started, run_finished
    event = Column(String(50), nullable=False)
    line = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ProgressEvent(stream_id={self.stream_id}, offset={self.offset}, event='{self.event}')>"
