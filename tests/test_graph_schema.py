"""Tests for graph schema, loading and validation.

Tests cover:
- Node model parsing (typed configs, camelCase aliases, unknown types)
- Load-time errors: dangling references, duplicates, cycles, bad configs
- Root node ordering and reference extraction
- Non-fatal warnings
"""

from __future__ import annotations

import pytest

from nodeflow.core.errors import GraphValidationError, MalformedConfigError, NodeNotFoundError
from nodeflow.core.graph_schema import (
    ApiCallNode,
    ConditionNode,
    DelayNode,
    LoopNode,
    NodeType,
    UnknownNode,
    WorkflowGraph,
    check_nodes,
    child_references,
)


def _trigger(node_id: str = "t", **config) -> dict:
    return {"id": node_id, "type": "trigger", "config": config}


# =============================================================================
# Model Parsing Tests
# =============================================================================


class TestNodeParsing:
    """Tests for the discriminated node union."""

    def test_typed_config_with_camel_case_keys(self):
        graph = WorkflowGraph.load(
            [
                _trigger(),
                {
                    "id": "loop",
                    "type": "loop",
                    "config": {
                        "arrayField": "items",
                        "itemVariableName": "item",
                        "maxIterations": 5,
                    },
                },
            ]
        )
        loop = graph.get_node("loop")
        assert isinstance(loop, LoopNode)
        assert loop.config.array_field == "items"
        assert loop.config.item_variable_name == "item"
        assert loop.config.max_iterations == 5

    def test_unknown_type_loads_as_unknown_node(self):
        graph = WorkflowGraph.load(
            [_trigger(), {"id": "x", "type": "send_sms", "config": {"to": "+1"}}]
        )
        node = graph.get_node("x")
        assert isinstance(node, UnknownNode)
        assert node.type == "send_sms"
        assert node.config == {"to": "+1"}

    def test_missing_config_uses_defaults(self):
        graph = WorkflowGraph.load([_trigger(), {"id": "d", "type": "delay"}])
        delay = graph.get_node("d")
        assert isinstance(delay, DelayNode)
        assert delay.config.seconds == 0

    def test_api_call_method_normalized(self):
        graph = WorkflowGraph.load(
            [{"id": "a", "type": "api_call", "config": {"url": "https://x", "method": "post"}}]
        )
        node = graph.get_node("a")
        assert isinstance(node, ApiCallNode)
        assert node.config.method == "POST"
        assert node.config.headers == {}

    def test_delay_units(self):
        graph = WorkflowGraph.load(
            [
                {"id": "s", "type": "delay", "config": {"duration": 2}},
                {"id": "m", "type": "delay", "config": {"duration": 1.5, "unit": "minutes"}},
                {"id": "h", "type": "delay", "config": {"duration": 1, "unit": "hours"}},
            ]
        )
        assert graph.get_node("s").config.seconds == 2
        assert graph.get_node("m").config.seconds == 90
        assert graph.get_node("h").config.seconds == 3600

    def test_node_type_enum_matches_models(self):
        graph = WorkflowGraph.load([_trigger()])
        assert graph.entry_node.type == NodeType.TRIGGER


# =============================================================================
# Load-time Error Tests
# =============================================================================


class TestLoadErrors:
    """Tests for errors raised before any node runs."""

    def test_empty_node_list(self):
        with pytest.raises(GraphValidationError, match="No nodes"):
            WorkflowGraph.load([])

    def test_dangling_then_node_id(self):
        nodes = [
            _trigger(),
            {
                "id": "c",
                "type": "condition",
                "config": {"conditions": [{"field": "a", "operator": "equals", "value": 1, "thenNodeId": "ghost"}]},
            },
        ]
        with pytest.raises(NodeNotFoundError) as exc_info:
            WorkflowGraph.load(nodes)
        assert exc_info.value.node_id == "ghost"
        assert exc_info.value.referenced_by == "c"
        assert "Node ghost not found" in str(exc_info.value)

    @pytest.mark.parametrize(
        "config",
        [
            {"elseNodeId": "ghost"},
            {"nextNodeId": "ghost"},
        ],
    )
    def test_dangling_condition_references(self, config):
        with pytest.raises(NodeNotFoundError):
            WorkflowGraph.load([{"id": "c", "type": "condition", "config": config}])

    def test_dangling_loop_and_parallel_references(self):
        with pytest.raises(NodeNotFoundError):
            WorkflowGraph.load([{"id": "l", "type": "loop", "config": {"loopNodeId": "ghost"}}])
        with pytest.raises(NodeNotFoundError):
            WorkflowGraph.load(
                [{"id": "p", "type": "parallel", "config": {"paths": [{"nodeId": "ghost"}]}}]
            )

    def test_duplicate_ids(self):
        with pytest.raises(GraphValidationError, match="Duplicate node ID"):
            WorkflowGraph.load([_trigger("a"), _trigger("a")])

    def test_reference_cycle_rejected(self):
        nodes = [
            _trigger(),
            {"id": "l", "type": "loop", "config": {"arrayField": "xs", "loopNodeId": "body"}},
            {"id": "body", "type": "output", "config": {"nextNodeId": "l"}},
        ]
        with pytest.raises(GraphValidationError, match="Reference cycle"):
            WorkflowGraph.load(nodes)

    def test_self_reference_rejected(self):
        with pytest.raises(GraphValidationError, match="Reference cycle"):
            WorkflowGraph.load([{"id": "a", "type": "output", "config": {"nextNodeId": "a"}}])

    def test_missing_required_url_is_malformed(self):
        with pytest.raises(MalformedConfigError) as exc_info:
            WorkflowGraph.load([{"id": "call", "type": "api_call", "config": {}}])
        assert any("call" in e and "url" in e for e in exc_info.value.errors)

    def test_missing_entity_name_is_malformed(self):
        with pytest.raises(MalformedConfigError):
            WorkflowGraph.load([{"id": "db", "type": "database_query", "config": {"operation": "list"}}])

    def test_unknown_operator_is_malformed(self):
        nodes = [
            {
                "id": "c",
                "type": "condition",
                "config": {"conditions": [{"field": "a", "operator": "matches", "value": 1}]},
            }
        ]
        with pytest.raises(MalformedConfigError):
            WorkflowGraph.load(nodes)

    def test_malformed_is_a_graph_validation_error(self):
        with pytest.raises(GraphValidationError):
            WorkflowGraph.load([{"id": "d", "type": "delay", "config": {"unit": "days"}}])

    def test_missing_id_is_malformed(self):
        with pytest.raises(MalformedConfigError):
            WorkflowGraph.load([{"type": "trigger"}])


# =============================================================================
# Structure Tests
# =============================================================================


class TestGraphStructure:
    """Tests for references and root ordering."""

    def test_child_references_for_condition(self):
        node = ConditionNode(
            id="c",
            config={
                "conditions": [
                    {"field": "a", "operator": "equals", "value": 1, "thenNodeId": "x"},
                    {"field": "a", "operator": "equals", "value": 2},
                    {"field": "a", "operator": "equals", "value": 3, "thenNodeId": "y"},
                ],
                "elseNodeId": "z",
                "nextNodeId": "n",
            },
        )
        assert child_references(node) == [
            ("conditions[0].thenNodeId", "x"),
            ("conditions[2].thenNodeId", "y"),
            ("elseNodeId", "z"),
            ("nextNodeId", "n"),
        ]

    def test_unknown_node_next_reference(self):
        node = UnknownNode(id="u", type="future", config={"nextNodeId": "n"})
        assert child_references(node) == [("nextNodeId", "n")]

    def test_root_nodes_skip_referenced(self, score_workflow):
        graph = WorkflowGraph.load(score_workflow)
        assert [n.id for n in graph.root_nodes()] == ["trigger", "condition"]

    def test_entry_node_is_always_first_root(self):
        nodes = [
            _trigger("entry"),
            {"id": "a", "type": "output"},
            {"id": "b", "type": "output"},
        ]
        graph = WorkflowGraph.load(nodes)
        assert [n.id for n in graph.root_nodes()] == ["entry", "a", "b"]

    def test_terminal_nodes(self, score_workflow):
        graph = WorkflowGraph.load(score_workflow)
        assert graph.get_terminal_nodes() == {"trigger", "high"}


# =============================================================================
# Warning Tests
# =============================================================================


class TestWarnings:
    """Tests for non-fatal authoring issues."""

    def test_clean_graph_has_no_warnings(self, score_workflow):
        assert WorkflowGraph.load(score_workflow).graph_warnings() == []

    def test_first_node_not_trigger(self):
        graph = WorkflowGraph.load([{"id": "o", "type": "output"}])
        assert any("not a trigger" in w for w in graph.graph_warnings())

    def test_unknown_type_warning(self):
        graph = WorkflowGraph.load([_trigger(), {"id": "x", "type": "mystery"}])
        assert any("unknown type 'mystery'" in w for w in graph.graph_warnings())

    def test_control_flow_without_targets(self):
        graph = WorkflowGraph.load(
            [
                _trigger(),
                {"id": "c", "type": "condition", "config": {"conditions": []}},
                {"id": "l", "type": "loop", "config": {}},
                {"id": "p", "type": "parallel", "config": {"paths": [{}]}},
            ]
        )
        warnings = graph.graph_warnings()
        assert any("Condition node 'c'" in w for w in warnings)
        assert any("Loop node 'l' has no loopNodeId" in w for w in warnings)
        assert any("Loop node 'l' has no arrayField" in w for w in warnings)
        assert any("Parallel node 'p'" in w for w in warnings)

    def test_condition_without_operator(self):
        graph = WorkflowGraph.load(
            [
                _trigger(),
                {"id": "c", "type": "condition", "config": {"conditions": [{"field": "a", "thenNodeId": "o"}]}},
                {"id": "f", "type": "filter", "config": {"arrayVariable": "xs", "conditions": [{"field": "a"}]}},
                {"id": "o", "type": "output"},
            ]
        )
        assert graph.nodes[1].config.conditions[0].operator is None
        warnings = graph.graph_warnings()
        assert "Node 'c': conditions[0] has no operator and never matches" in warnings
        assert "Node 'f': conditions[0] has no operator and never matches" in warnings


class TestCheckNodes:
    """Tests for the non-raising validation entry point."""

    def test_valid(self, score_workflow):
        assert check_nodes(score_workflow) == ([], [])

    def test_collects_schema_errors(self):
        errors, warnings = check_nodes([{"id": "call", "type": "api_call", "config": {}}])
        assert errors
        assert warnings == []

    def test_collects_structural_errors(self):
        errors, _ = check_nodes([_trigger("a"), _trigger("a", nextNodeId="ghost")])
        assert any("Duplicate" in e for e in errors)
        assert any("ghost" in e for e in errors)

    def test_empty(self):
        assert check_nodes([]) == (["No nodes to execute"], [])
