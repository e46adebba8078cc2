"""Tests for graph schema models, status transitions and path helpers.

Tests cover:
- Node variants: discriminated parsing, config validation, id rules
- Status transition table
- Dotted path resolution and edge mappings
- Branch instance keys
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from stitch.core.errors import InvalidStateTransition
from stitch.core.graph_schema import (
    CollectorNode,
    EdgeKind,
    JourneyCanvas,
    NodeStatus,
    SplitterNode,
    UXNode,
    WorkerNode,
    WorkflowGraph,
    check_transition,
)
from stitch.core.utils import apply_mapping, branch_key, resolve_path, split_node_key


# =============================================================================
# Node Model Tests
# =============================================================================


class TestNodeVariants:
    """Tests for the node discriminated union."""

    def test_parses_each_node_type(self):
        """The ``type`` field selects the node class and its config."""
        graph = WorkflowGraph.model_validate(
            {
                "id": "g",
                "name": "G",
                "nodes": [
                    {"id": "w", "type": "worker", "config": {"worker_type": "echo"}},
                    {"id": "u", "type": "ux"},
                    {"id": "s", "type": "splitter", "config": {"array_path": "orders"}},
                    {"id": "c", "type": "collector", "config": {"expected_count": 2}},
                    {"id": "m", "type": "section"},
                ],
            }
        )
        nodes = graph.node_map()

        assert isinstance(nodes["w"], WorkerNode)
        assert isinstance(nodes["u"], UXNode)
        assert isinstance(nodes["s"], SplitterNode)
        assert nodes["s"].config.array_path == "orders"
        assert nodes["s"].config.item_field == "item"
        assert isinstance(nodes["c"], CollectorNode)
        assert nodes["c"].config.output_field == "items"
        assert nodes["m"].type == "section"

    def test_unknown_node_type_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowGraph.model_validate(
                {"id": "g", "name": "G", "nodes": [{"id": "x", "type": "robot"}]}
            )

    def test_worker_requires_target(self):
        """A worker needs a worker_type or a webhook_url."""
        with pytest.raises(ValidationError, match="worker_type"):
            WorkerNode.model_validate({"id": "w", "config": {"mode": "sync"}})

    def test_worker_defaults_to_async_mode(self):
        node = WorkerNode.model_validate({"id": "w", "config": {"webhook_url": "http://x"}})
        assert node.config.mode == "async"
        assert node.config.params == {}

    def test_worker_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            WorkerNode.model_validate(
                {"id": "w", "config": {"webhook_url": "http://x", "timeout": 0}}
            )

    @pytest.mark.parametrize("node_id", ["has space", "a:1", "semi;colon", ""])
    def test_invalid_node_ids(self, node_id):
        """':' is reserved for branch instance keys, among other characters."""
        with pytest.raises(ValidationError):
            UXNode(id=node_id)

    def test_blank_splitter_path_rejected(self):
        with pytest.raises(ValidationError):
            SplitterNode.model_validate({"id": "s", "config": {"array_path": "  "}})

    def test_collector_expected_count_must_be_positive(self):
        with pytest.raises(ValidationError):
            CollectorNode.model_validate({"id": "c", "config": {"expected_count": 0}})

    def test_entity_movement_parsed(self):
        node = WorkerNode.model_validate(
            {
                "id": "w",
                "config": {
                    "worker_type": "crm",
                    "entity_movement": {
                        "on_success": {
                            "target_section_id": "won",
                            "complete_as": "success",
                            "set_entity_type": "customer",
                        }
                    },
                },
            }
        )
        movement = node.config.entity_movement
        assert movement.on_success.target_section_id == "won"
        assert movement.on_success.set_entity_type.value == "customer"
        assert movement.on_failure is None


class TestGraphAnalysis:
    def test_parallel_levels(self, diamond_graph):
        assert diamond_graph.analyze_parallelism() == [
            ["start"],
            ["left", "right"],
            ["join"],
        ]


class TestJourneyCanvas:
    def test_spine_helpers(self, spine_canvas):
        assert spine_canvas.is_ux_node("onboard")
        assert not spine_canvas.is_ux_node("missing")
        assert spine_canvas.entry_ux_nodes() == ["signup"]
        edges = spine_canvas.journey_edges_from("signup")
        assert [e.target for e in edges] == ["onboard"]
        assert edges[0].kind == EdgeKind.JOURNEY
        assert spine_canvas.journey_edges_from("active") == []


# =============================================================================
# Status Transition Tests
# =============================================================================


class TestStatusTransitions:
    """Tests for the node status transition table."""

    @pytest.mark.parametrize(
        "current,new",
        [
            (NodeStatus.PENDING, NodeStatus.RUNNING),
            (NodeStatus.RUNNING, NodeStatus.COMPLETED),
            (NodeStatus.RUNNING, NodeStatus.FAILED),
            (NodeStatus.RUNNING, NodeStatus.WAITING_FOR_USER),
            (NodeStatus.WAITING_FOR_USER, NodeStatus.COMPLETED),
            (NodeStatus.WAITING_FOR_USER, NodeStatus.FAILED),
            (NodeStatus.FAILED, NodeStatus.PENDING),
        ],
    )
    def test_allowed(self, current, new):
        check_transition(current, new)

    @pytest.mark.parametrize(
        "current,new",
        [
            (NodeStatus.PENDING, NodeStatus.COMPLETED),
            (NodeStatus.COMPLETED, NodeStatus.RUNNING),
            (NodeStatus.COMPLETED, NodeStatus.FAILED),
            (NodeStatus.FAILED, NodeStatus.COMPLETED),
            (NodeStatus.WAITING_FOR_USER, NodeStatus.RUNNING),
        ],
    )
    def test_rejected(self, current, new):
        with pytest.raises(InvalidStateTransition) as exc_info:
            check_transition(current, new)
        assert exc_info.value.current == current.value
        assert exc_info.value.requested == new.value


# =============================================================================
# Path and Mapping Helper Tests
# =============================================================================


class TestResolvePath:
    def test_nested_dicts_and_lists(self):
        data = {"customer": {"orders": [{"id": "o1"}, {"id": "o2"}]}}
        assert resolve_path(data, "customer.orders.1.id") == "o2"
        assert resolve_path(data, "customer.orders.-1.id") == "o2"

    def test_missing_segments_return_default(self):
        data = {"a": {"b": 1}}
        assert resolve_path(data, "a.c") is None
        assert resolve_path(data, "a.b.c", default="x") == "x"
        assert resolve_path({"items": [1]}, "items.5") is None

    def test_falsy_values_are_found(self):
        assert resolve_path({"n": 0}, "n", default=99) == 0


class TestApplyMapping:
    def test_mapping_selects_fields(self):
        output = {"order": {"total": 42}, "noise": True}
        assert apply_mapping({"amount": "order.total"}, "src", output) == {"amount": 42}

    def test_missing_mapped_path_is_none(self):
        assert apply_mapping({"x": "nope"}, "src", {}) == {"x": None}

    def test_no_mapping_passes_dict_through(self):
        output = {"a": 1}
        mapped = apply_mapping({}, "src", output)
        assert mapped == {"a": 1}
        assert mapped is not output

    def test_no_mapping_wraps_scalars_under_source_id(self):
        assert apply_mapping({}, "src", [1, 2]) == {"src": [1, 2]}


class TestBranchKeys:
    def test_round_trip(self):
        assert branch_key("work", 3) == "work:3"
        assert split_node_key("work:3") == ("work", 3)
        assert split_node_key("work") == ("work", None)

    def test_invalid_index(self):
        with pytest.raises(ValueError):
            split_node_key("work:x")
