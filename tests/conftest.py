# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Stitch test suite.

This module provides foundational fixtures used across all test modules:
- A temporary SQLite database
- An engine wired to a registry of in-process workers
- A journey stitcher attached to that engine
- Graph and canvas builders for common shapes

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from stitch.core.engine import GraphEngine
from stitch.core.executors import NodeExecutor, WorkerRegistry
from stitch.core.graph_schema import JourneyCanvas, WorkflowGraph
from stitch.core.journey import JourneyStitcher
from stitch.core.state import Database


# =============================================================================
# Graph Builders
# =============================================================================


def worker(node_id: str, worker_type: str, **params: Any) -> dict[str, Any]:
    """Integrated worker node definition."""
    return {
        "id": node_id,
        "type": "worker",
        "config": {"worker_type": worker_type, "params": params},
    }


def webhook(node_id: str, url: str = "https://workers.test/hook", mode: str = "async") -> dict:
    """Webhook worker node definition."""
    return {"id": node_id, "type": "worker", "config": {"webhook_url": url, "mode": mode}}


def edge(source: str, target: str, **extra: Any) -> dict[str, Any]:
    return {"id": f"{source}->{target}", "source": source, "target": target, **extra}


def make_graph(
    nodes: list[dict[str, Any]], edges: list[dict[str, Any]], graph_id: str = "g"
) -> WorkflowGraph:
    return WorkflowGraph.model_validate(
        {"id": graph_id, "name": graph_id.title(), "nodes": nodes, "edges": edges}
    )


# =============================================================================
# Database and Engine Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database.

    Creates a fresh SQLite database in a temporary directory.
    Database is automatically cleaned up after the test.
    """
    return Database(tmp_path / "state.db")


@pytest.fixture
def calls() -> list[str]:
    """Names recorded by the ``record`` worker, in call order."""
    return []


@pytest.fixture
def registry(calls: list[str]) -> WorkerRegistry:
    """Integrated workers used by the engine tests.

    - echo: returns its input
    - double: {"value": input.value * 2}
    - tag: {"tag": params.tag}
    - record: appends params.name to ``calls`` and returns its input
    - fail: raises RuntimeError("worker exploded")
    """
    reg = WorkerRegistry()
    reg.register("echo", lambda data, params: dict(data))
    reg.register("double", lambda data, params: {"value": data.get("value", 0) * 2})
    reg.register("tag", lambda data, params: {"tag": params.get("tag")})

    @reg.register("record")
    def record(data: dict, params: dict) -> dict:
        calls.append(params.get("name", "?"))
        return dict(data)

    @reg.register("fail")
    def fail(data: dict, params: dict) -> dict:
        raise RuntimeError("worker exploded")

    return reg


@pytest.fixture
def webhook_requests() -> list[httpx.Request]:
    """Requests received by the mock webhook transport."""
    return []


@pytest.fixture
def http_client(webhook_requests: list[httpx.Request]) -> httpx.Client:
    """httpx client whose transport accepts every webhook with 202."""

    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(202)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def engine(test_db: Database, registry: WorkerRegistry, http_client: httpx.Client) -> GraphEngine:
    """Engine over the temporary database with the test worker registry."""
    executor = NodeExecutor(
        registry=registry,
        callback_url=lambda run_id, key: f"http://stitch.test/callback/{run_id}/{key}",
        http_client=http_client,
    )
    return GraphEngine(test_db, executor=executor)


@pytest.fixture
def stitcher(engine: GraphEngine) -> JourneyStitcher:
    return JourneyStitcher(engine).attach()


@pytest.fixture
def publish(engine: GraphEngine) -> Callable[[WorkflowGraph], str]:
    """Publish a graph and return its version id."""

    def _publish(graph: WorkflowGraph) -> str:
        return engine.graphs.publish(graph).id

    return _publish


# =============================================================================
# Sample Graphs
# =============================================================================


@pytest.fixture
def linear_graph() -> WorkflowGraph:
    """first (double) -> second (double)"""
    return make_graph(
        [worker("first", "double"), worker("second", "double")],
        [edge("first", "second")],
        graph_id="linear",
    )


@pytest.fixture
def diamond_graph() -> WorkflowGraph:
    """start -> left, right -> join; join must run exactly once."""
    return make_graph(
        [
            worker("start", "echo"),
            worker("left", "tag", tag="L"),
            worker("right", "tag", tag="R"),
            worker("join", "record", name="join"),
        ],
        [
            edge("start", "left"),
            edge("start", "right"),
            edge("left", "join", mapping={"left": "tag"}),
            edge("right", "join", mapping={"right": "tag"}),
        ],
        graph_id="diamond",
    )


@pytest.fixture
def fan_out_graph() -> WorkflowGraph:
    """split (items) -> work (double, value <- item) -> gather (expects 3)."""
    return make_graph(
        [
            {"id": "split", "type": "splitter", "config": {"array_path": "items"}},
            worker("work", "double"),
            {"id": "gather", "type": "collector", "config": {"expected_count": 3}},
        ],
        [
            edge("split", "work", mapping={"value": "item"}),
            edge("work", "gather"),
        ],
        graph_id="fanout",
    )


@pytest.fixture
def ux_graph() -> WorkflowGraph:
    """review (UX, 60s timeout) -> after (echo)"""
    return make_graph(
        [
            {"id": "review", "type": "ux", "config": {"prompt": "Approve?", "timeout_seconds": 60}},
            worker("after", "echo"),
        ],
        [edge("review", "after")],
        graph_id="review",
    )


@pytest.fixture
def async_graph() -> WorkflowGraph:
    """remote (async webhook) -> after (record)"""
    return make_graph(
        [webhook("remote"), worker("after", "record", name="after")],
        [edge("remote", "after")],
        graph_id="remote",
    )


@pytest.fixture
def spine_canvas() -> JourneyCanvas:
    """signup -> onboard -> active, with system paths on the first two."""
    return JourneyCanvas.model_validate(
        {
            "id": "spine",
            "name": "Customer spine",
            "nodes": [
                {"id": "signup", "type": "ux"},
                {"id": "onboard", "type": "ux"},
                {"id": "active", "type": "ux"},
            ],
            "edges": [
                edge("signup", "onboard", kind="journey"),
                edge("onboard", "active", kind="journey"),
            ],
            "system_paths": {"signup": "welcome", "onboard": "setup"},
        }
    )
