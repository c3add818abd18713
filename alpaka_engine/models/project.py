"""
Project Model
A project owns one workflow canvas and its global variables.
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, JSON, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from . import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Project(Base):
    """
    Project Model

    canvas_data holds the editable graph:
    {
        "nodes": [{"id": "n1", "type": "input", "position": {...}, "data": {...}}],
        "edges": [{"id": "e1", "source": "n1", "target": "n2"}],
        "executionResults": {"n1": {...}},
        "viewport": {...}
    }
    """
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)

    # System projects can be reset from templates/<template_id>.json
    is_system = Column(Boolean, nullable=False, default=False)
    template_id = Column(String(255), nullable=True)

    canvas_data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    variables = relationship("GlobalVariable", back_populates="project", cascade="all, delete-orphan")
    executions = relationship("ExecutionInstance", back_populates="project", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Project(id={self.id}, name='{self.name}')>"


class GlobalVariable(Base):
    """
    Project-scoped variable, visible to every node of the project's graph.

    Values are stored as strings; structured values are JSON-encoded.
    """
    __tablename__ = "global_variables"
    __table_args__ = (UniqueConstraint("project_id", "name", name="uq_global_variables_project_name"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    value = Column(Text, nullable=False, default="")
    type = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    folder = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    project = relationship("Project", back_populates="variables")

    def __repr__(self):
        return f"<GlobalVariable(project_id={self.project_id}, name='{self.name}')>"
