"""
Unit Tests for Workflow Graphs, Nodes and the Node Registry
"""

import pytest

from workflow_engine.exceptions import ConfigurationError, CycleDetectedError, ErrorCode, NoTriggerFound
from workflow_engine.workflows.graph import WorkflowGraph
from workflow_engine.workflows.nodes import (
    ActionType,
    FailurePolicy,
    NodeKind,
    WorkflowEdge,
    WorkflowNode,
    normalize_action_type,
)
from workflow_engine.workflows.registry import NodeRegistry, create_default_registry


# ==================== Nodes ====================


class TestWorkflowNode:
    """Node normalization"""

    def test_kind_aliases(self):
        """Alternative kind spellings map onto canonical kinds"""
        assert WorkflowNode(id="a", kind="aiAgent").kind == NodeKind.AI_COMPLETION
        assert WorkflowNode.model_validate({"id": "g", "type": "customGPT"}).kind == NodeKind.CUSTOM_ASSISTANT

    def test_action_kind_shortcut(self):
        """Splitter and join may be declared directly as kinds"""
        splitter = WorkflowNode.model_validate({"id": "s", "kind": "multi-action-splitter"})
        join = WorkflowNode.model_validate({"id": "j", "kind": "join"})

        assert splitter.kind == NodeKind.ACTION
        assert splitter.is_splitter
        assert join.is_join
        assert join.type_name == "action:join"

    def test_action_type_normalized(self):
        """Snake-case and meeting-* action types are normalized"""
        node = WorkflowNode.model_validate({"id": "t", "kind": "action", "config": {"actionType": "create_task"}})
        meeting = WorkflowNode.model_validate(
            {"id": "m", "kind": "action", "config": {"actionType": "meeting-add-summary"}}
        )

        assert node.action_type == ActionType.CREATE_TASK.value
        assert meeting.action_type == "meeting"
        assert meeting.meeting_action == "add_summary"
        assert normalize_action_type("webhook") == "webhook"

    def test_policy_and_hitl_from_config(self):
        """onFailure and hitlBefore may live inside config"""
        node = WorkflowNode.model_validate({
            "id": "n",
            "kind": "action",
            "data": {
                "actionType": "send-email",
                "onFailure": "continue",
                "hitlBefore": {"enabled": True, "timeoutMinutes": 5, "timeoutAction": "use_default"},
            },
        })

        assert node.on_failure == FailurePolicy.CONTINUE
        assert node.hitl_before.enabled is True
        assert node.hitl_before.timeout_minutes == 5
        assert node.hitl_before.timeout_action == "use_default"
        assert node.hitl_after is None

    def test_unknown_kind_rejected(self):
        """Unknown kinds fail validation"""
        with pytest.raises(ValueError):
            WorkflowNode.model_validate({"id": "x", "kind": "teleport"})

    def test_edge_source_handle(self):
        """sourceHandle is accepted as the edge label"""
        edge = WorkflowEdge.model_validate({"source": "r", "target": "a", "sourceHandle": "high"})
        assert edge.label == "high"


# ==================== Graph ====================


class TestWorkflowGraph:
    """Graph structure operations"""

    def test_find_trigger(self, make_graph):
        """The trigger is the unique node without incoming edges"""
        graph = make_graph(
            [{"id": "t", "kind": "trigger"}, {"id": "a", "kind": "action"}],
            [("t", "a")],
        )
        assert graph.find_trigger().id == "t"

    def test_ambiguous_trigger(self, make_graph):
        """Several root nodes are ambiguous"""
        graph = make_graph([{"id": "t1", "kind": "trigger"}, {"id": "t2", "kind": "trigger"}], [])

        with pytest.raises(NoTriggerFound) as exc_info:
            graph.find_trigger()
        assert exc_info.value.error_code == ErrorCode.WORKFLOW_NO_TRIGGER
        assert sorted(exc_info.value.candidates) == ["t1", "t2"]

    def test_no_trigger(self, make_graph):
        """A graph where every node has an incoming edge has no trigger"""
        graph = make_graph(
            [{"id": "a", "kind": "action"}, {"id": "b", "kind": "action"}],
            [("a", "b"), ("b", "a")],
        )
        with pytest.raises(NoTriggerFound):
            graph.find_trigger()

    def test_cycle_detection(self, make_graph):
        """Cycles reachable from the trigger are reported with their path"""
        graph = make_graph(
            [
                {"id": "t", "kind": "trigger"},
                {"id": "a", "kind": "action"},
                {"id": "b", "kind": "action"},
            ],
            [("t", "a"), ("a", "b"), ("b", "a")],
        )

        assert graph.find_cycle("t") == ["a", "b", "a"]
        with pytest.raises(CycleDetectedError) as exc_info:
            graph.check_acyclic("t")
        assert exc_info.value.details["cycle_path"] == ["a", "b", "a"]

    def test_duplicate_node_rejected(self):
        """Node ids are unique"""
        graph = WorkflowGraph(id="wf")
        graph.add_node(WorkflowNode(id="a", kind="trigger"))
        with pytest.raises(ConfigurationError):
            graph.add_node(WorkflowNode(id="a", kind="action"))

    def test_edge_to_unknown_node_rejected(self):
        """Edges must connect existing nodes"""
        graph = WorkflowGraph(id="wf")
        graph.add_node(WorkflowNode(id="a", kind="trigger"))
        with pytest.raises(ConfigurationError):
            graph.add_edge("a", "missing")

    def test_next_nodes_deduplicated(self, make_graph):
        """Several labelled edges to one target count once"""
        graph = make_graph(
            [{"id": "r", "kind": "router"}, {"id": "a", "kind": "action"}, {"id": "b", "kind": "action"}],
            [("r", "a", "high"), ("r", "a", "medium"), ("r", "b", "low")],
        )
        assert graph.get_next_nodes("r") == ["a", "b"]
        assert graph.get_previous_nodes("a") == ["r"]

    def test_descendants_and_topological_sort(self, make_graph):
        """Reachability and ordering of a diamond"""
        graph = make_graph(
            [{"id": n, "kind": "trigger" if n == "t" else "action"} for n in ("t", "a", "b", "c")],
            [("t", "a"), ("t", "b"), ("a", "c"), ("b", "c")],
        )

        assert graph.descendants(["a"]) == {"a", "c"}
        order = graph.topological_sort()
        assert order[0] == "t"
        assert order[-1] == "c"

    def test_validate(self, make_graph):
        """validate() collects structural problems"""
        graph = make_graph(
            [{"id": "a", "kind": "action"}, {"id": "b", "kind": "action"}],
            [("a", "b"), ("b", "a")],
        )
        errors = graph.validate()
        assert any("No trigger" in e for e in errors)
        assert any("cycle" in e for e in errors)

    def test_dict_round_trip(self, make_graph):
        """Graphs rebuild from their dict form with labels intact"""
        graph = make_graph(
            [{"id": "t", "kind": "trigger"}, {"id": "c", "kind": "condition", "config": {"condition": "x > 1"}},
             {"id": "a", "kind": "action"}],
            [("t", "c"), ("c", "a", "true")],
        )

        rebuilt = WorkflowGraph.from_dict(graph.to_dict())

        assert list(rebuilt.nodes) == ["t", "c", "a"]
        assert rebuilt.edges[1].label == "true"
        assert rebuilt.get_node("c").config == {"condition": "x > 1"}

    def test_from_dict_accepts_node_mapping(self):
        """nodes may be given as {id: node}"""
        graph = WorkflowGraph.from_dict({
            "id": "wf",
            "nodes": {"t": {"kind": "trigger"}, "a": {"kind": "action"}},
            "edges": [{"source": "t", "target": "a"}],
        })
        assert graph.find_trigger().id == "t"


# ==================== Registry ====================


class TestNodeRegistry:
    """Handler resolution"""

    def test_default_registry_covers_builtin_kinds(self):
        """Every built-in kind has a handler"""
        registry = create_default_registry()
        for kind in ("trigger", "form", "ai-completion", "custom-assistant", "assistant-manager", "condition", "router"):
            assert registry.supports(WorkflowNode(id="n", kind=kind))

    def test_missing_handler(self):
        """Resolving a kind without a handler is a configuration error"""
        registry = NodeRegistry()
        with pytest.raises(ConfigurationError):
            registry.resolve(WorkflowNode(id="t", kind="trigger"))

    def test_fallback_action(self):
        """Unknown action types use the fallback handler"""
        registry = create_default_registry()
        node = WorkflowNode.model_validate({"id": "w", "kind": "action", "config": {"actionType": "webhook"}})
        assert registry.supports(node)

    def test_walker_actions_not_dispatched(self):
        """Splitter and join are run by the walker, not a handler"""
        registry = create_default_registry()
        with pytest.raises(ConfigurationError):
            registry.resolve(WorkflowNode(id="j", kind="join"))

    @pytest.mark.asyncio
    async def test_decorator_registration_and_sync_dispatch(self, make_graph, make_context):
        """Handlers register by decorator; sync handlers are accepted"""
        registry = NodeRegistry()

        @registry.handler(NodeKind.TRIGGER)
        def handle(node, context):
            return {"handled": node.id}

        @registry.action("score-lead")
        async def score(node, context):
            return {"score": 7}

        graph = make_graph(
            [{"id": "t", "kind": "trigger"}, {"id": "s", "kind": "action", "config": {"actionType": "score-lead"}}],
            [("t", "s")],
        )
        context = make_context(graph)

        assert await registry.dispatch(graph.get_node("t"), context) == {"handled": "t"}
        assert await registry.dispatch(graph.get_node("s"), context) == {"score": 7}
