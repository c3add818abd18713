"""
Graph Model for the Alpaka Workflow Engine

WorkflowGraph wraps the nodes and edges of a project canvas and answers
the structural questions the runner and resolver ask:
- predecessors / successors / ancestors of a node
- whether an edge path exists between two nodes
- a deterministic topological order (Kahn's algorithm, ties broken by
  the order nodes appear in the canvas)

Construction validates the graph; cycles raise GraphCycleError naming one
concrete cycle.
"""

import heapq
import logging
from collections import deque
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from .exceptions import GraphCycleError, GraphValidationError
from .nodes import create_node_from_dict, ModelProviderNode, NodeType

logger = logging.getLogger(__name__)


def _describe(item: Any, position: int) -> str:
    """Id of a canvas item if it has one, else its position."""
    if isinstance(item, dict) and item.get("id"):
        return f"'{item['id']}'"
    return f"#{position}"


class Edge(BaseModel):
    """Directed edge source -> target. Handles are only used by router nodes."""

    id: Optional[str] = None
    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    source_handle: Optional[str] = Field(None, alias="sourceHandle")
    target_handle: Optional[str] = Field(None, alias="targetHandle")

    class Config:
        frozen = True
        extra = "ignore"
        populate_by_name = True


class WorkflowGraph:
    """
    Validated, read-only view of a project graph.

    Node order (the canvas order) is the creation index used to break ties
    in topological_order().
    """

    def __init__(self, nodes: List[NodeType], edges: List[Edge]):
        self._nodes: Dict[str, NodeType] = {}
        self._index: Dict[str, int] = {}

        for position, node in enumerate(nodes):
            if node.id in self._nodes:
                raise GraphValidationError(f"Duplicate node id '{node.id}'")
            self._nodes[node.id] = node
            self._index[node.id] = position

        self._edges: List[Edge] = list(edges)
        self._incoming: Dict[str, List[Edge]] = {node_id: [] for node_id in self._nodes}
        self._outgoing: Dict[str, List[Edge]] = {node_id: [] for node_id in self._nodes}

        for edge in self._edges:
            if edge.source not in self._nodes:
                raise GraphValidationError(f"Edge {edge.id or ''} references unknown source node '{edge.source}'")
            if edge.target not in self._nodes:
                raise GraphValidationError(f"Edge {edge.id or ''} references unknown target node '{edge.target}'")
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)

        # Fails fast on cycles
        self._order = self._compute_order()
        self._ancestor_cache: Dict[str, List[str]] = {}

    @classmethod
    def from_canvas(cls, canvas_data: Optional[Dict[str, Any]]) -> "WorkflowGraph":
        """
        Parse canvas data ({"nodes": [...], "edges": [...]}) into a graph.

        Raises:
            GraphValidationError: If a node or edge cannot be parsed
            GraphCycleError: If the edges form a cycle
        """
        canvas_data = canvas_data or {}
        if not isinstance(canvas_data, dict):
            raise GraphValidationError(f"Canvas must be an object, got {type(canvas_data).__name__}")

        raw_nodes = canvas_data.get("nodes") or []
        raw_edges = canvas_data.get("edges") or []
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise GraphValidationError("Canvas nodes and edges must be lists")

        nodes = []
        for position, node_data in enumerate(raw_nodes):
            try:
                nodes.append(create_node_from_dict(node_data))
            except Exception as e:
                raise GraphValidationError(f"Failed to parse node {_describe(node_data, position)}: {e}")

        edges = []
        for position, edge_data in enumerate(raw_edges):
            if not isinstance(edge_data, dict):
                raise GraphValidationError(
                    f"Failed to parse edge #{position}: expected an object, got {type(edge_data).__name__}"
                )
            try:
                edges.append(Edge(**edge_data))
            except Exception as e:
                raise GraphValidationError(f"Failed to parse edge {_describe(edge_data, position)}: {e}")

        graph = cls(nodes, edges)
        logger.info(f"Parsed graph: {len(nodes)} nodes, {len(edges)} edges")
        return graph

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> List[NodeType]:
        """Nodes in canvas order."""
        return list(self._nodes.values())

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def node(self, node_id: str) -> NodeType:
        return self._nodes[node_id]

    def find_by_label(self, label: str) -> Optional[NodeType]:
        """First node (canvas order) carrying this label."""
        for node in self._nodes.values():
            if node.label == label:
                return node
        return None

    def find_model_provider(self, model_group: str) -> Optional[ModelProviderNode]:
        for node in self._nodes.values():
            if isinstance(node, ModelProviderNode) and node.model_group == model_group:
                return node
        return None

    def incoming_edges(self, node_id: str) -> List[Edge]:
        return list(self._incoming[node_id])

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        return list(self._outgoing[node_id])

    def predecessors(self, node_id: str) -> List[str]:
        """Direct upstream nodes, in edge order, without duplicates."""
        return _unique(edge.source for edge in self._incoming[node_id])

    def successors(self, node_id: str) -> List[str]:
        """Direct downstream nodes, in edge order, without duplicates."""
        return _unique(edge.target for edge in self._outgoing[node_id])

    def ancestors(self, node_id: str) -> List[str]:
        """
        Every node with an edge path to node_id, nearest first
        (breadth-first over predecessors).
        """
        if node_id not in self._ancestor_cache:
            seen: Set[str] = set()
            result: List[str] = []
            queue = deque(self.predecessors(node_id))
            while queue:
                current = queue.popleft()
                if current in seen:
                    continue
                seen.add(current)
                result.append(current)
                queue.extend(self.predecessors(current))
            self._ancestor_cache[node_id] = result
        return list(self._ancestor_cache[node_id])

    def descendants(self, node_id: str) -> List[str]:
        seen: Set[str] = set()
        result: List[str] = []
        queue = deque(self.successors(node_id))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            result.append(current)
            queue.extend(self.successors(current))
        return result

    def has_path(self, source: str, target: str) -> bool:
        """True if an edge path leads from source to target."""
        return source in self.ancestors(target)

    def topological_order(self) -> List[str]:
        """
        Node ids such that every edge goes from an earlier to a later node.
        Among nodes ready at the same time, canvas order wins.
        """
        return list(self._order)

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _compute_order(self) -> List[str]:
        in_degree = {node_id: len(edges) for node_id, edges in self._incoming.items()}
        ready = [(self._index[node_id], node_id) for node_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)

        order: List[str] = []
        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for edge in self._outgoing[node_id]:
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    heapq.heappush(ready, (self._index[edge.target], edge.target))

        if len(order) != len(self._nodes):
            ordered = set(order)
            remaining = [node_id for node_id in self._nodes if node_id not in ordered]
            cycle = self._find_cycle(remaining)
            raise GraphCycleError(
                f"Graph contains a cycle: {' -> '.join(cycle)}",
                cycle=cycle
            )

        return order

    def _find_cycle(self, candidates: List[str]) -> List[str]:
        """Depth-first search for one cycle among nodes Kahn could not order."""
        candidate_set = set(candidates)
        visited: Set[str] = set()

        for start in candidates:
            if start in visited:
                continue
            path: List[str] = []
            on_path: Dict[str, int] = {}
            stack = [(start, iter(self.successors(start)))]
            path.append(start)
            on_path[start] = 0
            visited.add(start)

            while stack:
                node_id, children = stack[-1]
                advanced = False
                for child in children:
                    if child not in candidate_set:
                        continue
                    if child in on_path:
                        return path[on_path[child]:] + [child]
                    if child not in visited:
                        visited.add(child)
                        on_path[child] = len(path)
                        path.append(child)
                        stack.append((child, iter(self.successors(child))))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    path.pop()
                    del on_path[node_id]

        return candidates


def _unique(values) -> List[str]:
    seen: Set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
