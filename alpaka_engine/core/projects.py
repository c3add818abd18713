"""
Project Service

Project-level operations around the graph runner:
- global variable snapshot, upsert and seeding
- factory reset of system projects from templates/<template_id>.json
- writing the latest execution results back into the canvas

Template file format:
    {
        "name": "Diagnostic report",
        "canvasData": {"nodes": [...], "edges": [...]},
        "globalVariables": [
            {"name": "company", "value": "Acme", "type": "string", "folder": "General"}
        ]
    }
"""

import json
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from .exceptions import EngineFatalError, TemplateNotFoundError
from ..models.project import GlobalVariable, Project

logger = logging.getLogger(__name__)

# Types whose stored string is JSON
_JSON_TYPES = {"json", "object", "array", "number", "boolean"}

VariableInput = Union[Dict[str, Any], Iterable[Dict[str, Any]]]


def encode_variable(value: Any) -> Tuple[str, str]:
    """Stored string and inferred type for a variable value."""
    if isinstance(value, str):
        return value, "string"
    if isinstance(value, bool):
        return json.dumps(value), "boolean"
    if isinstance(value, (int, float)):
        return json.dumps(value), "number"
    return json.dumps(value, ensure_ascii=False), "json"


def decode_variable(variable: GlobalVariable) -> Any:
    """Value as nodes see it: JSON types are decoded, everything else stays a string."""
    if variable.type in _JSON_TYPES:
        try:
            return json.loads(variable.value)
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Variable '{variable.name}' is typed {variable.type} but not valid JSON")
    return variable.value


def _normalize(variables: VariableInput) -> List[Dict[str, Any]]:
    """Accept {name: value} or [{"name", "value", ...}]."""
    if isinstance(variables, dict):
        return [{"name": name, "value": value} for name, value in variables.items()]
    return [dict(item) for item in variables]


class ProjectService:
    """Project and global variable operations on one session."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, project_id: str) -> Optional[Project]:
        return self.db.query(Project).filter(Project.id == project_id).first()

    def snapshot_variables(self, project_id: str) -> Dict[str, Any]:
        """Current global variables of a project, decoded."""
        variables = (
            self.db.query(GlobalVariable)
            .filter(GlobalVariable.project_id == project_id)
            .order_by(GlobalVariable.name)
            .all()
        )
        return {variable.name: decode_variable(variable) for variable in variables}

    def set_variables(self, project_id: str, variables: VariableInput) -> List[GlobalVariable]:
        """
        Create or update variables by name. Commits.

        Non-string values are stored JSON-encoded with their type.
        """
        existing = {
            variable.name: variable
            for variable in self.db.query(GlobalVariable).filter(GlobalVariable.project_id == project_id)
        }

        saved = []
        for item in _normalize(variables):
            name = item.get("name")
            if not name:
                raise ValueError("Variable name cannot be empty")
            value, inferred_type = encode_variable(item.get("value", ""))

            variable = existing.get(name)
            if variable is None:
                variable = GlobalVariable(project_id=project_id, name=name)
                self.db.add(variable)
                existing[name] = variable

            variable.value = value
            variable.type = item.get("type") or inferred_type
            if "description" in item:
                variable.description = item["description"]
            if "folder" in item:
                variable.folder = item["folder"]
            saved.append(variable)

        self.db.commit()
        logger.info(f"Saved {len(saved)} variable(s) for project {project_id}")
        return saved

    def seed_variables(self, project_id: str, defaults: VariableInput) -> List[str]:
        """
        Create variables that do not exist yet; existing values are kept.

        Returns:
            Names of the variables created
        """
        existing = {
            name for (name,) in
            self.db.query(GlobalVariable.name).filter(GlobalVariable.project_id == project_id)
        }
        missing = [item for item in _normalize(defaults) if item.get("name") not in existing]
        if missing:
            self.set_variables(project_id, missing)
        return [item["name"] for item in missing]

    def reset_to_template(self, project_id: str, templates_dir: str) -> Project:
        """
        Restore a system project's canvas and variables from its template.
        All changes are applied in one transaction.

        Raises:
            EngineFatalError: If the project does not exist, is not a
                system project with a template, or the template is not
                valid JSON
            TemplateNotFoundError: If the template file is missing
        """
        project = self.get(project_id)
        if project is None:
            raise EngineFatalError(f"Project {project_id} not found")
        if not project.is_system or not project.template_id:
            raise EngineFatalError(f"Project {project_id} is not a system project with a template")

        template_path = os.path.join(templates_dir, f"{project.template_id}.json")
        if not os.path.isfile(template_path):
            raise TemplateNotFoundError(
                f"Template '{project.template_id}' not found at {template_path}",
                template_id=project.template_id
            )

        try:
            with open(template_path, "r", encoding="utf-8") as f:
                template = json.load(f)
        except (OSError, ValueError) as e:
            raise EngineFatalError(f"Template '{project.template_id}' could not be read: {e}")
        if not isinstance(template, dict):
            raise EngineFatalError(f"Template '{project.template_id}' must be a JSON object")

        try:
            # delete-orphan removes the rows; they must be gone before re-inserting the same names
            project.variables.clear()
            self.db.flush()

            project.canvas_data = template.get("canvasData") or {"nodes": [], "edges": []}
            if template.get("name"):
                project.name = template["name"]

            for item in template.get("globalVariables") or []:
                value, inferred_type = encode_variable(item.get("value", ""))
                project.variables.append(GlobalVariable(
                    name=item["name"],
                    value=value,
                    type=item.get("type") or inferred_type,
                    description=item.get("description"),
                    folder=item.get("folder"),
                ))

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(project)
        logger.info(f"Project {project_id} reset from template '{project.template_id}'")
        return project

    def record_results(self, project: Project, results: Dict[str, Any]) -> None:
        """Write the latest per-node results into canvas_data.executionResults (no commit)."""
        canvas = dict(project.canvas_data or {})
        canvas["executionResults"] = results
        project.canvas_data = canvas
