"""Tests for the graph compiler and canvas validation.

Tests cover:
- Structural validation (duplicates, dangling edges, cycles, orphans)
- Entry/terminal detection and required arrival counts
- Splitter/collector pairing and branch regions
- Journey canvas rules
"""

from __future__ import annotations

import pytest
from conftest import edge, make_graph, worker

from stitch.core.compiler import check_canvas, compile_graph, validate_canvas
from stitch.core.errors import GraphValidationError, NotFoundError
from stitch.core.graph_schema import JourneyCanvas


def _errors(graph) -> list[str]:
    with pytest.raises(GraphValidationError) as exc_info:
        compile_graph(graph)
    return exc_info.value.errors


# =============================================================================
# Structural Validation
# =============================================================================


class TestStructuralValidation:
    """Problems that make a graph impossible to walk."""

    def test_empty_graph(self):
        assert "Graph has no nodes" in _errors(make_graph([], []))

    def test_duplicate_node_ids(self):
        errors = _errors(make_graph([worker("a", "echo"), worker("a", "echo")], []))
        assert "Duplicate node ID: 'a'" in errors

    def test_duplicate_edges(self):
        graph = make_graph(
            [worker("a", "echo"), worker("b", "echo")],
            [edge("a", "b"), {"id": "again", "source": "a", "target": "b"}],
        )
        assert "Duplicate edge from 'a' to 'b'" in _errors(graph)

    def test_dangling_edge(self):
        graph = make_graph([worker("a", "echo")], [edge("a", "ghost")])
        assert "Edge a->ghost: target 'ghost' not found" in _errors(graph)

    def test_journey_edges_not_allowed_in_workflows(self):
        graph = make_graph(
            [worker("a", "echo"), worker("b", "echo")], [edge("a", "b", kind="journey")]
        )
        assert any("journey edges belong on a canvas" in e for e in _errors(graph))

    def test_blank_mapping_entry(self):
        graph = make_graph(
            [worker("a", "echo"), worker("b", "echo")], [edge("a", "b", mapping={"x": " "})]
        )
        assert any("mapping entries" in e for e in _errors(graph))

    def test_cycle_reported_with_path(self):
        graph = make_graph(
            [worker("a", "echo"), worker("b", "echo"), worker("c", "echo")],
            [edge("a", "b"), edge("b", "c"), edge("c", "b")],
        )
        errors = _errors(graph)
        assert len(errors) == 1
        assert errors[0].startswith("Cycle detected: ")
        assert "b" in errors[0] and "c" in errors[0]

    def test_orphan_node(self):
        graph = make_graph(
            [worker("a", "echo"), worker("b", "echo"), worker("lonely", "echo")],
            [edge("a", "b")],
        )
        assert "Node 'lonely' is orphaned (no incoming or outgoing edges)" in _errors(graph)

    def test_single_node_graph_is_valid(self):
        compiled = compile_graph(make_graph([worker("only", "echo")], []))
        assert compiled.entry_nodes == ["only"]
        assert compiled.terminal_nodes == ["only"]

    def test_error_message_lists_everything(self):
        with pytest.raises(GraphValidationError, match="Invalid graph: .*'a'.*; "):
            compile_graph(
                make_graph([worker("a", "echo"), worker("a", "echo")], [edge("a", "zz")])
            )


# =============================================================================
# Compiled Structure
# =============================================================================


class TestCompiledGraph:
    def test_entries_terminals_and_counts(self, diamond_graph):
        compiled = compile_graph(diamond_graph)

        assert compiled.entry_nodes == ["start"]
        assert compiled.terminal_nodes == ["join"]
        assert compiled.required_counts == {"start": 0, "left": 1, "right": 1, "join": 2}
        assert [e.target for e in compiled.outgoing_edges("start")] == ["left", "right"]
        assert [e.source for e in compiled.incoming_edges("join")] == ["left", "right"]
        assert compiled.static_nodes() == ["start", "left", "right", "join"]

    def test_unknown_node_lookup(self, diamond_graph):
        with pytest.raises(NotFoundError):
            compile_graph(diamond_graph).node("nope")

    def test_compiled_graph_is_frozen(self, linear_graph):
        compiled = compile_graph(linear_graph)
        with pytest.raises(Exception):
            compiled.graph_id = "other"

    def test_serialization_preserves_node_types(self, fan_out_graph):
        compiled = compile_graph(fan_out_graph)
        restored = type(compiled).model_validate_json(compiled.model_dump_json())
        assert restored == compiled
        assert restored.node("split").type == "splitter"

    def test_static_collector_expected_count_bounded_by_in_degree(self):
        graph = make_graph(
            [
                worker("a", "echo"),
                worker("b", "echo"),
                {"id": "c", "type": "collector", "config": {"expected_count": 3}},
            ],
            [edge("a", "c"), edge("b", "c")],
        )
        assert any("expects 3 arrivals but has only 2" in e for e in _errors(graph))

    def test_static_collector_k_of_n(self):
        graph = make_graph(
            [
                worker("a", "echo"),
                worker("b", "echo"),
                worker("c", "echo"),
                {"id": "first_two", "type": "collector", "config": {"expected_count": 2}},
            ],
            [edge("a", "first_two"), edge("b", "first_two"), edge("c", "first_two")],
        )
        assert compile_graph(graph).required_counts["first_two"] == 2


# =============================================================================
# Fan-out / Fan-in Regions
# =============================================================================


class TestRegions:
    """Splitter branch regions and their collectors."""

    def test_region_and_pairing(self, fan_out_graph):
        compiled = compile_graph(fan_out_graph)

        assert compiled.branch_regions == {"split": ["work"]}
        assert compiled.splitter_collectors == {"split": {"gather": 1}}
        assert compiled.region_of == {"work": "split"}
        assert compiled.required_counts["gather"] == 3
        # Branch instances are created lazily
        assert compiled.static_nodes() == ["split", "gather"]

    def test_splitter_without_collector(self):
        graph = make_graph(
            [{"id": "s", "type": "splitter"}, worker("w", "echo")], [edge("s", "w")]
        )
        errors = _errors(graph)
        assert "Splitter 's' does not reach a Collector" in errors
        assert any("ends a branch of splitter 's'" in e for e in errors)

    def test_splitter_without_edges(self):
        graph = make_graph([{"id": "s", "type": "splitter"}], [])
        assert "Splitter 's' has no outgoing edges" in _errors(graph)

    def test_paired_collector_needs_expected_count(self):
        graph = make_graph(
            [{"id": "s", "type": "splitter"}, {"id": "c", "type": "collector"}],
            [edge("s", "c")],
        )
        assert any("must declare expected_count" in e for e in _errors(graph))

    def test_nested_splitter_rejected(self):
        graph = make_graph(
            [
                {"id": "outer", "type": "splitter"},
                {"id": "inner", "type": "splitter"},
                {"id": "c", "type": "collector", "config": {"expected_count": 1}},
            ],
            [edge("outer", "inner"), edge("inner", "c")],
        )
        assert any("nested inside the branches of 'outer'" in e for e in _errors(graph))

    def test_region_node_with_outside_predecessor(self):
        graph = make_graph(
            [
                worker("src", "echo"),
                {"id": "s", "type": "splitter"},
                worker("w", "echo"),
                {"id": "c", "type": "collector", "config": {"expected_count": 2}},
            ],
            [edge("src", "s"), edge("src", "w"), edge("s", "w"), edge("w", "c")],
        )
        assert any("predecessors outside them: src" in e for e in _errors(graph))

    def test_collector_mixing_inputs(self):
        graph = make_graph(
            [
                worker("side", "echo"),
                {"id": "s", "type": "splitter"},
                {"id": "c", "type": "collector", "config": {"expected_count": 2}},
            ],
            [edge("s", "c"), edge("side", "c")],
        )
        assert any("mixes branches of 's' with other inputs" in e for e in _errors(graph))

    def test_two_edges_per_branch_into_collector(self):
        graph = make_graph(
            [
                {"id": "s", "type": "splitter"},
                worker("a", "echo"),
                worker("b", "echo"),
                {"id": "c", "type": "collector", "config": {"expected_count": 4}},
            ],
            [edge("s", "a"), edge("s", "b"), edge("a", "c"), edge("b", "c")],
        )
        compiled = compile_graph(graph)
        assert compiled.splitter_collectors == {"s": {"c": 2}}
        assert sorted(compiled.branch_regions["s"]) == ["a", "b"]


# =============================================================================
# Canvas Validation
# =============================================================================


class TestCanvasValidation:
    def test_valid_spine(self, spine_canvas):
        assert validate_canvas(spine_canvas) == []
        assert check_canvas(spine_canvas) is spine_canvas

    def test_branching_spine_rejected(self, spine_canvas):
        data = spine_canvas.model_dump()
        data["edges"].append(edge("signup", "active", kind="journey"))
        errors = validate_canvas(JourneyCanvas.model_validate(data))
        assert "UX node 'signup' has 2 outgoing journey edges; the spine allows one" in errors

    def test_journey_edges_connect_ux_nodes(self):
        canvas = JourneyCanvas.model_validate(
            {
                "id": "c",
                "name": "C",
                "nodes": [{"id": "u", "type": "ux"}, {"id": "m", "type": "section"}],
                "edges": [edge("u", "m", kind="journey")],
            }
        )
        assert "Journey edge u->m must connect two UX nodes" in validate_canvas(canvas)

    def test_system_path_must_sit_on_ux_node(self):
        canvas = JourneyCanvas.model_validate(
            {
                "id": "c",
                "name": "C",
                "nodes": [{"id": "m", "type": "section"}],
                "system_paths": {"m": "g", "ghost": "g"},
            }
        )
        errors = validate_canvas(canvas)
        assert len(errors) == 2
        with pytest.raises(GraphValidationError):
            check_canvas(canvas)
