"""
Variable Resolver for the Alpaka Workflow Engine

Resolves {{name}} placeholders in node configuration. A resolver is built
once per run over:
- the global variables snapshot taken when the run started
- the per-node results map (written only by the runner)
- the settled status of nodes already visited (completed/failed/skipped)

Priority for a placeholder evaluated at node N:
1. Global       name is a global variable
2. Direct       produced by a direct predecessor of N
3. Transitive   produced by an executed node with an edge path to N
                (nearest ancestor wins)
4. Pending      a node with a path to N declares it but has not run yet
5. Missing      anything else

Reference forms:
    {{company}}             global, or a bare output key / node label upstream
    {{summary.text}}        field `text` of node (id or label) `summary`
    {{extract.data.items}}  nested field access

Nodes without an edge path to N are never consulted, even when they export
a field with the same name.
"""

import json
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .graph import WorkflowGraph
from .nodes import NodeType

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


class ResolutionKind:
    """Resolution outcomes, in priority order"""
    GLOBAL = "global"
    DIRECT = "direct"
    TRANSITIVE = "transitive"
    PENDING = "pending"
    MISSING = "missing"

    RESOLVED = (GLOBAL, DIRECT, TRANSITIVE)


@dataclass(frozen=True)
class Resolution:
    name: str
    kind: str
    value: Any = None
    source_node_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.kind in ResolutionKind.RESOLVED


class VariableResolver:
    """
    Placeholder resolution over one run's snapshot.

    `results` and `settled` are held by reference: the runner keeps
    updating them as nodes settle and the resolver sees the new entries.
    `globals` is copied and frozen at construction.
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        globals: Mapping[str, Any],
        results: Optional[Dict[str, Dict[str, Any]]] = None,
        settled: Optional[Dict[str, str]] = None,
    ):
        self.graph = graph
        self.globals = MappingProxyType(dict(globals))
        self.results = results if results is not None else {}
        self.settled = settled if settled is not None else {}

    def resolve(self, name: str, node_id: str) -> Resolution:
        """Resolve one placeholder name as seen from node_id."""
        name = name.strip()

        if name in self.globals:
            return Resolution(name, ResolutionKind.GLOBAL, value=self.globals[name])

        ancestors = self.graph.ancestors(node_id)
        direct = set(self.graph.predecessors(node_id))

        head, _, path = name.partition(".")
        if path:
            source = self._lookup_node(head, ancestors)
            if source is not None:
                return self._resolve_reference(name, source.id, path.split("."), node_id, ancestors, direct)

        return self._resolve_bare(name, node_id, ancestors, direct)

    def resolve_node(self, node: NodeType) -> Dict[str, Resolution]:
        """Resolve every placeholder of a node's configuration, in first-seen order."""
        return {
            name: self.resolve(name, node.id)
            for name in extract_placeholders(node.template_values())
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup_node(self, head: str, ancestors: List[str]) -> Optional[NodeType]:
        if head in self.graph:
            return self.graph.node(head)
        for ancestor_id in ancestors:
            if self.graph.node(ancestor_id).label == head:
                return self.graph.node(ancestor_id)
        return self.graph.find_by_label(head)

    def _resolve_reference(
        self,
        name: str,
        source_id: str,
        path: List[str],
        node_id: str,
        ancestors: List[str],
        direct: set,
    ) -> Resolution:
        if source_id not in ancestors:
            return Resolution(
                name, ResolutionKind.MISSING,
                reason=f"node '{source_id}' has no path to '{node_id}'"
            )

        output = self.results.get(source_id)
        if output is not None:
            found, value = _lookup(output, path)
            if found:
                kind = ResolutionKind.DIRECT if source_id in direct else ResolutionKind.TRANSITIVE
                return Resolution(name, kind, value=value, source_node_id=source_id)
            return Resolution(
                name, ResolutionKind.MISSING, source_node_id=source_id,
                reason=f"node '{source_id}' did not produce '{'.'.join(path)}'"
            )

        status = self.settled.get(source_id)
        if status:
            return Resolution(
                name, ResolutionKind.MISSING, source_node_id=source_id,
                reason=f"upstream node '{source_id}' {status}"
            )

        return Resolution(
            name, ResolutionKind.PENDING, source_node_id=source_id,
            reason=f"node '{source_id}' has not run yet"
        )

    def _resolve_bare(self, name: str, node_id: str, ancestors: List[str], direct: set) -> Resolution:
        # Executed ancestors, nearest first (direct predecessors come first)
        for candidate in ancestors:
            output = self.results.get(candidate)
            if output is None:
                continue
            found, value = _lookup(output, [name])
            if not found and name == self.graph.node(candidate).label:
                found, value = True, _primary_value(output)
            if found:
                kind = ResolutionKind.DIRECT if candidate in direct else ResolutionKind.TRANSITIVE
                return Resolution(name, kind, value=value, source_node_id=candidate)

        # Not yet executed, but declared upstream
        for candidate in ancestors:
            if candidate in self.results or candidate in self.settled:
                continue
            node = self.graph.node(candidate)
            if name in node.declared_outputs() or name == node.label:
                return Resolution(
                    name, ResolutionKind.PENDING, source_node_id=candidate,
                    reason=f"node '{candidate}' has not run yet"
                )

        for candidate in ancestors:
            status = self.settled.get(candidate)
            node = self.graph.node(candidate)
            if status and status != "completed" and (name in node.declared_outputs() or name == node.label):
                return Resolution(
                    name, ResolutionKind.MISSING, source_node_id=candidate,
                    reason=f"upstream node '{candidate}' {status}"
                )

        return Resolution(
            name, ResolutionKind.MISSING,
            reason=f"no global or upstream node of '{node_id}' provides it"
        )


# ============================================================================
# TEMPLATE HELPERS
# ============================================================================

def extract_placeholders(value: Any) -> List[str]:
    """Placeholder names found in strings, lists and dicts, first-seen order."""
    names: List[str] = []
    _collect(value, names)
    return names


def _collect(value: Any, names: List[str]) -> None:
    if isinstance(value, str):
        for match in PLACEHOLDER_PATTERN.finditer(value):
            name = match.group(1).strip()
            if name not in names:
                names.append(name)
    elif isinstance(value, dict):
        for item in value.values():
            _collect(item, names)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect(item, names)


def interpolate(template: str, values: Mapping[str, Any]) -> str:
    """
    Substitute placeholders found in `values`; unknown placeholders stay as-is.
    Non-string values are JSON-encoded.
    """
    def replace(match: "re.Match") -> str:
        name = match.group(1).strip()
        if name not in values:
            return match.group(0)
        return stringify(values[name])

    return PLACEHOLDER_PATTERN.sub(replace, template)


def render_value(value: Any, values: Mapping[str, Any]) -> Any:
    """
    Interpolate recursively. A string that is exactly one placeholder
    is replaced by the raw value, keeping its type.
    """
    if isinstance(value, str):
        match = PLACEHOLDER_PATTERN.fullmatch(value.strip())
        if match and match.group(1).strip() in values:
            return values[match.group(1).strip()]
        return interpolate(value, values)
    if isinstance(value, dict):
        return {key: render_value(item, values) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, values) for item in value]
    return value


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, ensure_ascii=False, default=str)


def _lookup(output: Any, path: List[str]) -> Tuple[bool, Any]:
    current = output
    for part in path:
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return False, None
    return True, current


def _primary_value(output: Dict[str, Any]) -> Any:
    """Value a node stands for when referenced by label alone."""
    for key in ("response", "text", "report"):
        if key in output:
            return output[key]
    return output
