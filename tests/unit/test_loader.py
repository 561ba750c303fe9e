"""
Unit Tests for Workflow Definition Loading
"""

import json

import pytest

from workflow_engine.exceptions import NotFoundError
from workflow_engine.workflows.nodes import NodeKind
from workflow_engine.workflows.templates import (
    DefinitionValidationError,
    WorkflowDefinitionLoader,
    build_graph,
    parse_definition,
    validate_definition,
)


SIMPLE_YAML = """
id: simple
name: Simple
nodes:
  - id: start
    kind: trigger
  - id: tidy
    type: action
    config:
      actionType: edit-fields
      fieldMappings: []
edges:
  - {from: start, to: tidy}
"""


@pytest.fixture
def definitions_dir(tmp_path):
    (tmp_path / "simple.yaml").write_text(SIMPLE_YAML)
    (tmp_path / "nested").mkdir()
    (tmp_path / "nested" / "other-file.json").write_text(json.dumps({
        "id": "json-flow",
        "name": "JSON flow",
        "tags": ["demo"],
        "nodes": {"t": {"kind": "trigger"}},
    }))
    (tmp_path / "broken.yaml").write_text("id: [unclosed")
    (tmp_path / "notes.txt").write_text("ignored")
    return tmp_path


class TestParseAndValidate:
    """parse_definition and validate_definition"""

    def test_parse_yaml_and_json(self):
        """Both formats parse to mappings; empty text is an empty mapping"""
        assert parse_definition("id: a\nname: A")["id"] == "a"
        assert parse_definition('{"id": "b"}', "json") == {"id": "b"}
        assert parse_definition("") == {}

    def test_parse_rejects_non_mapping(self):
        """A top-level list is rejected"""
        with pytest.raises(DefinitionValidationError, match="must be a mapping"):
            parse_definition("- a\n- b")

    def test_parse_error(self):
        """Malformed text reports the format"""
        with pytest.raises(DefinitionValidationError) as exc_info:
            parse_definition("{", "json")
        assert exc_info.value.errors[0].startswith("Failed to parse JSON")

    def test_collects_every_error(self):
        """Validation reports all problems at once"""
        errors = validate_definition({
            "nodes": [
                {"id": "a", "kind": "trigger"},
                {"id": "a", "kind": "trigger"},
                {"kind": "teleport"},
            ],
            "edges": [{"source": "a", "target": "ghost"}, {"target": "a"}],
        })

        assert "Workflow id is required" in errors
        assert "Workflow name is required" in errors
        assert "Duplicate node ID: a" in errors
        assert "Node 2 missing required field: id" in errors
        assert "Node 2 has invalid kind: teleport" in errors
        assert "Edge 0 references non-existent target node: ghost" in errors
        assert "Edge 1 missing source node" in errors

    def test_requires_nodes(self):
        """A definition without nodes is invalid"""
        assert validate_definition({"id": "x", "name": "X"}) == ["At least one node is required"]

    def test_build_graph(self):
        """The type alias and from/to edges build a graph"""
        graph = build_graph(parse_definition(SIMPLE_YAML))

        assert graph.id == "simple"
        assert graph.get_node("tidy").kind == NodeKind.ACTION
        assert graph.get_node("tidy").action_type == "edit-fields"
        assert graph.get_next_nodes("start") == ["tidy"]

    def test_build_graph_invalid(self):
        """Invalid definitions raise with the definition id as source"""
        with pytest.raises(DefinitionValidationError) as exc_info:
            build_graph({"id": "bad", "name": "Bad", "nodes": [{"id": "a"}]})

        assert exc_info.value.details["source"] == "bad"
        assert exc_info.value.status_code == 400


class TestDefinitionLoader:
    """WorkflowDefinitionLoader over a directory"""

    def test_load_by_file_name(self, definitions_dir):
        """Definitions named after their id load directly"""
        graph = WorkflowDefinitionLoader(definitions_dir).load("simple")

        assert set(graph.nodes) == {"start", "tidy"}

    def test_load_by_scanning(self, definitions_dir):
        """Definitions in other files are found by their id"""
        graph = WorkflowDefinitionLoader(definitions_dir).load("json-flow")

        assert graph.find_trigger().id == "t"

    def test_unknown_id(self, definitions_dir):
        with pytest.raises(NotFoundError):
            WorkflowDefinitionLoader(definitions_dir).load("nope")

    def test_list_skips_broken_files(self, definitions_dir):
        """Unparseable files are skipped; non-definition files are ignored"""
        definitions = WorkflowDefinitionLoader(definitions_dir).list_definitions()

        by_id = {meta.id: meta for meta in definitions}
        assert set(by_id) == {"simple", "json-flow"}
        assert by_id["json-flow"].tags == ["demo"]
        assert by_id["simple"].node_count == 2

    def test_cache_reloads_changed_file(self, definitions_dir):
        """A cached definition is re-read when its file changes"""
        loader = WorkflowDefinitionLoader(definitions_dir)
        assert loader.load("simple").name == "Simple"

        (definitions_dir / "simple.yaml").write_text(SIMPLE_YAML.replace("name: Simple", "name: Renamed"))

        assert loader.load("simple").name == "Renamed"

    def test_validate_file(self, definitions_dir):
        """validate_file returns errors instead of raising"""
        loader = WorkflowDefinitionLoader(definitions_dir)

        assert loader.validate_file(definitions_dir / "simple.yaml") == []
        assert loader.validate_file(definitions_dir / "broken.yaml")[0].startswith("Failed to parse YAML")
        assert loader.validate_file(definitions_dir / "missing.yaml")

    def test_bundled_definitions_are_valid(self):
        """Definitions shipped with the package load and validate"""
        loader = WorkflowDefinitionLoader()
        definitions = loader.list_definitions()

        assert "lead-intake" in {meta.id for meta in definitions}
        for meta in definitions:
            loader.load(meta.id).validate()
