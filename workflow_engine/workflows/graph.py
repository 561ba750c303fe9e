"""
Workflow Graph

Node/edge container with trigger selection, reachability and cycle checks.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import ConfigurationError, CycleDetectedError, NoTriggerFound
from .nodes import WorkflowEdge, WorkflowNode


class WorkflowGraph(BaseModel):
    """
    Directed graph of workflow nodes.

    Edges keep their declaration order; the walker schedules children in
    that order and the splitter invokes branches in that order.
    """
    id: str
    name: str = ""
    description: str = ""

    nodes: Dict[str, WorkflowNode] = Field(default_factory=dict)
    edges: List[WorkflowEdge] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def add_node(self, node: WorkflowNode) -> None:
        """Add a node to the graph."""
        if node.id in self.nodes:
            raise ConfigurationError(f"Duplicate node id: {node.id}", node_id=node.id)
        self.nodes[node.id] = node

    def add_edge(self, source: str, target: str, label: Optional[str] = None) -> WorkflowEdge:
        """Connect two existing nodes."""
        if source not in self.nodes:
            raise ConfigurationError(f"Edge source node not found: {source}", node_id=source)
        if target not in self.nodes:
            raise ConfigurationError(f"Edge target node not found: {target}", node_id=target)
        edge = WorkflowEdge(source=source, target=target, label=label)
        self.edges.append(edge)
        return edge

    def get_node(self, node_id: str) -> WorkflowNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise ConfigurationError(f"Node not found: {node_id}", node_id=node_id)
        return node

    def outgoing(self, node_id: str) -> List[WorkflowEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[WorkflowEdge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def get_next_nodes(self, node_id: str) -> List[str]:
        """Distinct targets of a node's outgoing edges, in edge order."""
        seen: List[str] = []
        for edge in self.outgoing(node_id):
            if edge.target not in seen:
                seen.append(edge.target)
        return seen

    def get_previous_nodes(self, node_id: str) -> List[str]:
        """Distinct sources of a node's incoming edges, in edge order."""
        seen: List[str] = []
        for edge in self.incoming(node_id):
            if edge.source not in seen:
                seen.append(edge.source)
        return seen

    def get_root_nodes(self) -> List[str]:
        """Nodes with no incoming edges."""
        targets = {edge.target for edge in self.edges}
        return [node_id for node_id in self.nodes if node_id not in targets]

    def find_trigger(self) -> WorkflowNode:
        """
        The unique node with no incoming edge.

        Raises:
            NoTriggerFound: If there are zero or several candidates
        """
        roots = self.get_root_nodes()
        if not roots:
            raise NoTriggerFound()
        if len(roots) > 1:
            raise NoTriggerFound(
                f"Ambiguous trigger: {len(roots)} nodes have no incoming edges",
                candidates=roots,
            )
        return self.nodes[roots[0]]

    def descendants(self, node_ids: Iterable[str]) -> Set[str]:
        """Every node reachable from ``node_ids`` (the start nodes included)."""
        adjacency = self._adjacency()
        reachable: Set[str] = set()
        to_visit = list(node_ids)
        while to_visit:
            node_id = to_visit.pop()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            to_visit.extend(adjacency.get(node_id, []))
        return reachable

    def find_cycle(self, start: Optional[str] = None) -> Optional[List[str]]:
        """Return a cycle path (first node repeated at the end), or None."""
        adjacency = self._adjacency()
        WHITE, GREY, BLACK = 0, 1, 2
        color = {node_id: WHITE for node_id in self.nodes}
        stack: List[str] = []

        def visit(node_id: str) -> Optional[List[str]]:
            color[node_id] = GREY
            stack.append(node_id)
            for target in adjacency.get(node_id, []):
                if color.get(target) == GREY:
                    return stack[stack.index(target):] + [target]
                if color.get(target) == WHITE:
                    found = visit(target)
                    if found:
                        return found
            stack.pop()
            color[node_id] = BLACK
            return None

        starts = [start] if start else list(self.nodes)
        for node_id in starts:
            if color.get(node_id) == WHITE:
                found = visit(node_id)
                if found:
                    return found
        return None

    def check_acyclic(self, start: Optional[str] = None) -> None:
        """Raise CycleDetectedError when a cycle is reachable from ``start``."""
        cycle = self.find_cycle(start)
        if cycle:
            raise CycleDetectedError(
                f"Workflow graph contains a cycle: {' -> '.join(cycle)}",
                cycle_path=cycle,
            )

    def topological_sort(self) -> List[str]:
        """
        Return nodes in topological order.

        Raises CycleDetectedError if the graph has cycles.
        """
        in_degree = {node_id: 0 for node_id in self.nodes}
        adjacency = self._adjacency()
        for targets in adjacency.values():
            for target in targets:
                in_degree[target] += 1

        queue = [node_id for node_id in self.nodes if in_degree[node_id] == 0]
        result = []
        while queue:
            node_id = queue.pop(0)
            result.append(node_id)
            for target in adjacency.get(node_id, []):
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)

        if len(result) != len(self.nodes):
            self.check_acyclic()
            raise CycleDetectedError()
        return result

    def validate(self) -> List[str]:
        """
        Validate the graph structure.

        Returns list of validation errors.
        """
        errors = []

        for edge in self.edges:
            if edge.source not in self.nodes:
                errors.append(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in self.nodes:
                errors.append(f"Edge references non-existent target node: {edge.target}")

        roots = self.get_root_nodes()
        if not roots:
            errors.append("No trigger node: every node has an incoming edge")
        elif len(roots) > 1:
            errors.append(f"Ambiguous trigger nodes: {roots}")

        cycle = self.find_cycle()
        if cycle:
            errors.append(f"Graph contains a cycle: {' -> '.join(cycle)}")

        return errors

    def _adjacency(self) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = defaultdict(list)
        for edge in self.edges:
            if edge.target not in adjacency[edge.source]:
                adjacency[edge.source].append(edge.target)
        return adjacency

    def to_dict(self) -> Dict[str, Any]:
        """Serialize graph to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "nodes": [node.model_dump(mode="json", exclude_none=True) for node in self.nodes.values()],
            "edges": [edge.model_dump(exclude_none=True) for edge in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowGraph":
        """
        Create graph from dictionary.

        ``nodes`` may be a list of node dicts or a mapping of id to node dict.
        """
        return cls.from_lists(
            data.get("nodes") or [],
            data.get("edges") or [],
            graph_id=str(data.get("id") or "workflow"),
            name=data.get("name", ""),
            description=data.get("description", ""),
        )

    @classmethod
    def from_lists(
        cls,
        nodes: Iterable[Any],
        edges: Iterable[Any],
        graph_id: str = "workflow",
        name: str = "",
        description: str = "",
    ) -> "WorkflowGraph":
        """Build a graph from node and edge lists (models or plain dicts)."""
        graph = cls(id=graph_id, name=name, description=description)

        if isinstance(nodes, dict):
            nodes = [{"id": node_id, **node_data} for node_id, node_data in nodes.items()]
        for node in nodes:
            graph.add_node(node if isinstance(node, WorkflowNode) else WorkflowNode.model_validate(node))

        for edge in edges:
            edge = edge if isinstance(edge, WorkflowEdge) else WorkflowEdge.model_validate(edge)
            graph.add_edge(edge.source, edge.target, edge.label)

        return graph
