"""
Workflow Definition Loader

Loads, parses, and validates workflow definitions stored as YAML or JSON
files and converts them to WorkflowGraph instances.

A definition looks like:

    id: lead-intake
    name: Lead intake
    nodes:
      - id: trigger
        kind: trigger
      - id: route
        kind: router
        config: {routerType: value}
    edges:
      - {source: trigger, target: route}
"""

import hashlib
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ...exceptions import ConfigurationError, NotFoundError
from ...logging_config import get_logger
from ..graph import WorkflowGraph
from ..nodes import ACTION_KIND_SHORTCUTS, KIND_ALIASES, NodeKind

logger = get_logger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


class DefinitionValidationError(ConfigurationError):
    """A workflow definition failed validation."""

    def __init__(self, errors: List[str], source: Optional[str] = None):
        self.errors = errors
        details: Dict[str, Any] = {"errors": errors}
        if source:
            details["source"] = source
        super().__init__(f"Workflow definition validation failed: {'; '.join(errors)}", details=details)


class DefinitionMetadata(BaseModel):
    """Identifying information of a workflow definition."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    tags: List[str] = Field(default_factory=list)
    node_count: int = 0
    source_path: Optional[str] = None
    updated_at: Optional[datetime] = None


class _CachedDefinition:
    def __init__(self, content: Dict[str, Any], content_hash: str, source_path: Path):
        self.content = content
        self.content_hash = content_hash
        self.source_path = source_path
        self.loaded_at = datetime.utcnow()


def _valid_kinds() -> Set[str]:
    return {kind.value for kind in NodeKind} | set(KIND_ALIASES) | set(ACTION_KIND_SHORTCUTS)


def parse_definition(raw: str, fmt: str = "yaml") -> Dict[str, Any]:
    """
    Parse definition text.

    Raises:
        DefinitionValidationError: Text is not a YAML/JSON mapping
    """
    try:
        content = json.loads(raw) if fmt == "json" else yaml.safe_load(raw)
    except (yaml.YAMLError, ValueError) as e:
        raise DefinitionValidationError([f"Failed to parse {fmt.upper()}: {e}"])

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise DefinitionValidationError([f"Definition must be a mapping, got {type(content).__name__}"])
    return content


def validate_definition(content: Dict[str, Any]) -> List[str]:
    """Return every problem found in a parsed definition (empty when valid)."""
    errors: List[str] = []

    if not content.get("id"):
        errors.append("Workflow id is required")
    if not content.get("name"):
        errors.append("Workflow name is required")

    nodes = content.get("nodes")
    if isinstance(nodes, dict):
        nodes = [{"id": node_id, **(data or {})} for node_id, data in nodes.items()]
    if not nodes:
        errors.append("At least one node is required")
        return errors
    if not isinstance(nodes, list):
        return errors + ["Nodes must be a list or a mapping"]

    valid_kinds = _valid_kinds()
    node_ids: Set[str] = set()
    for i, node in enumerate(nodes):
        if not isinstance(node, dict):
            errors.append(f"Node {i} must be a mapping")
            continue
        node_id = node.get("id")
        if not node_id:
            errors.append(f"Node {i} missing required field: id")
        elif node_id in node_ids:
            errors.append(f"Duplicate node ID: {node_id}")
        else:
            node_ids.add(node_id)

        kind = node.get("kind") or node.get("type")
        if not kind:
            errors.append(f"Node {node_id or i} missing required field: kind")
        elif kind not in valid_kinds:
            errors.append(f"Node {node_id or i} has invalid kind: {kind}")

    edges = content.get("edges") or []
    if not isinstance(edges, list):
        return errors + ["Edges must be a list"]

    for i, edge in enumerate(edges):
        if not isinstance(edge, dict):
            errors.append(f"Edge {i} must be a mapping")
            continue
        source = edge.get("source") or edge.get("from")
        target = edge.get("target") or edge.get("to")
        if not source:
            errors.append(f"Edge {i} missing source node")
        elif source not in node_ids:
            errors.append(f"Edge {i} references non-existent source node: {source}")
        if not target:
            errors.append(f"Edge {i} missing target node")
        elif target not in node_ids:
            errors.append(f"Edge {i} references non-existent target node: {target}")

    return errors


def build_graph(content: Dict[str, Any]) -> WorkflowGraph:
    """Validate a parsed definition and build its graph."""
    errors = validate_definition(content)
    if errors:
        raise DefinitionValidationError(errors, source=content.get("id"))

    edges = [
        {
            "source": edge.get("source") or edge.get("from"),
            "target": edge.get("target") or edge.get("to"),
            "label": edge.get("label", edge.get("sourceHandle")),
        }
        for edge in content.get("edges") or []
    ]
    return WorkflowGraph.from_lists(
        content["nodes"],
        edges,
        graph_id=str(content["id"]),
        name=content.get("name", ""),
        description=content.get("description", ""),
    )


class WorkflowDefinitionLoader:
    """
    Discovers and loads workflow definitions from a directory.

    Usage:
        loader = WorkflowDefinitionLoader("/path/to/definitions")
        for meta in loader.list_definitions():
            print(meta.id, meta.name)
        graph = loader.load("lead-intake")
    """

    def __init__(self, definitions_dir: Optional[Union[str, Path]] = None, cache_enabled: bool = True):
        if definitions_dir is None:
            self.definitions_dir = Path(__file__).parent / "definitions"
        else:
            self.definitions_dir = Path(definitions_dir)
        self.cache_enabled = cache_enabled
        self._cache: Dict[str, _CachedDefinition] = {}

    @staticmethod
    def _compute_hash(raw: str) -> str:
        return hashlib.sha256(raw.encode()).hexdigest()

    @staticmethod
    def _format_of(path: Path) -> str:
        return "json" if path.suffix == ".json" else "yaml"

    def _discover_files(self) -> List[Path]:
        if not self.definitions_dir.exists():
            return []
        return sorted(
            path for path in self.definitions_dir.rglob("*")
            if path.is_file() and path.suffix in DEFINITION_SUFFIXES
        )

    def read_file(self, path: Union[str, Path]) -> Dict[str, Any]:
        """Parse one definition file."""
        path = Path(path)
        if not path.exists():
            raise NotFoundError("WorkflowDefinition", str(path))
        return parse_definition(path.read_text(encoding="utf-8"), self._format_of(path))

    def load_file(self, path: Union[str, Path]) -> WorkflowGraph:
        """Load, validate and build the graph defined in ``path``."""
        return build_graph(self.read_file(path))

    def validate_file(self, path: Union[str, Path]) -> List[str]:
        try:
            content = self.read_file(path)
        except (DefinitionValidationError, NotFoundError) as e:
            return getattr(e, "errors", [e.message])
        return validate_definition(content)

    def _find_file(self, workflow_id: str) -> Optional[Path]:
        for suffix in DEFINITION_SUFFIXES:
            path = self.definitions_dir / f"{workflow_id}{suffix}"
            if path.exists():
                return path

        for path in self._discover_files():
            try:
                if self.read_file(path).get("id") == workflow_id:
                    return path
            except DefinitionValidationError:
                continue
        return None

    def load(self, workflow_id: str) -> WorkflowGraph:
        """
        Load a definition by workflow id.

        Raises:
            NotFoundError: No definition with this id
            DefinitionValidationError: The definition is invalid
        """
        cached = self._cache.get(workflow_id) if self.cache_enabled else None
        if cached is not None and cached.source_path.exists():
            raw = cached.source_path.read_text(encoding="utf-8")
            if self._compute_hash(raw) == cached.content_hash:
                return build_graph(cached.content)

        path = self._find_file(workflow_id)
        if path is None:
            raise NotFoundError("WorkflowDefinition", workflow_id)

        raw = path.read_text(encoding="utf-8")
        content = parse_definition(raw, self._format_of(path))
        graph = build_graph(content)

        if self.cache_enabled:
            self._cache[workflow_id] = _CachedDefinition(content, self._compute_hash(raw), path)
        logger.info("Workflow definition loaded", workflow_id=workflow_id, path=str(path), nodes=len(graph.nodes))
        return graph

    def list_definitions(self) -> List[DefinitionMetadata]:
        """Metadata of every parseable definition; broken files are logged and skipped."""
        definitions = []
        for path in self._discover_files():
            try:
                content = self.read_file(path)
            except DefinitionValidationError as e:
                logger.warning("Skipping unreadable workflow definition", path=str(path), errors=e.errors)
                continue
            if not content.get("id"):
                continue
            nodes = content.get("nodes") or []
            definitions.append(DefinitionMetadata(
                id=str(content["id"]),
                name=content.get("name") or str(content["id"]),
                description=content.get("description", ""),
                version=str(content.get("version", "1.0.0")),
                tags=content.get("tags") or [],
                node_count=len(nodes),
                source_path=str(path),
                updated_at=datetime.fromtimestamp(path.stat().st_mtime),
            ))
        return definitions

    def clear_cache(self) -> None:
        self._cache.clear()
