"""Tests for per-node-type executors.

Tests cover:
- Integrated workers via the registry
- Webhook workers: payload shape, sync/async modes, HTTP failures
- Splitter array extraction
- Collector aggregation order and K-of-N truncation
"""

from __future__ import annotations

import json

import httpx
import pytest

from stitch.core.errors import ExecutionError
from stitch.core.executors import NodeExecutor, WorkerRegistry
from stitch.core.graph_schema import (
    CollectorNode,
    NodeStatus,
    SectionNode,
    SplitterNode,
    UXNode,
    WorkerNode,
)
from stitch.core.models import Arrival


def _executor(handler=None, registry=None) -> NodeExecutor:
    handler = handler or (lambda request: httpx.Response(202))
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return NodeExecutor(
        registry=registry,
        callback_url=lambda run_id, key: f"http://engine/callback/{run_id}/{key}",
        http_client=client,
    )


def _webhook(mode: str = "sync", **config) -> WorkerNode:
    return WorkerNode.model_validate(
        {"id": "hook", "config": {"webhook_url": "https://w.test/run", "mode": mode, **config}}
    )


# =============================================================================
# Worker Registry
# =============================================================================


class TestWorkerRegistry:
    def test_register_and_decorator(self):
        registry = WorkerRegistry()
        registry.register("a", lambda data, params: 1)

        @registry.register("b")
        def b(data, params):
            return 2

        assert "a" in registry and "b" in registry
        assert registry.names() == ["a", "b"]
        assert registry.get("b") is b
        assert registry.get("missing") is None


# =============================================================================
# Integrated Workers
# =============================================================================


class TestIntegratedWorker:
    def test_called_with_input_and_params(self, registry):
        node = WorkerNode.model_validate(
            {"id": "w", "config": {"worker_type": "tag", "params": {"tag": "vip"}}}
        )
        result = _executor(registry=registry).execute("r", "w", node, {})
        assert result.status == NodeStatus.COMPLETED
        assert result.output == {"tag": "vip"}

    def test_exception_becomes_execution_error(self, registry):
        node = WorkerNode.model_validate({"id": "w", "config": {"worker_type": "fail"}})
        with pytest.raises(ExecutionError, match="worker exploded"):
            _executor(registry=registry).execute("r", "w", node, {})

    def test_unknown_worker_type(self):
        node = WorkerNode.model_validate({"id": "w", "config": {"worker_type": "ghost"}})
        with pytest.raises(ExecutionError, match="Unknown worker type 'ghost'"):
            _executor().execute("r", "w", node, {})

    def test_unregistered_type_falls_back_to_webhook(self):
        """A worker_type with no integrated worker still calls its webhook."""
        node = WorkerNode.model_validate(
            {"id": "w", "config": {"worker_type": "remote", "webhook_url": "https://w.test"}}
        )
        assert _executor().execute("r", "w", node, {}).status == NodeStatus.RUNNING


# =============================================================================
# Webhook Workers
# =============================================================================


class TestWebhookWorker:
    """Tests for HTTP webhook dispatch."""

    def test_payload_shape(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        node = _webhook(mode="async", params={"campaign": "spring"})
        result = _executor(handler).execute("run-1", "hook:2", node, {"email": "a@b.c"})

        assert result.status == NodeStatus.RUNNING
        body = json.loads(seen[0].content)
        assert body == {
            "runId": "run-1",
            "nodeId": "hook:2",
            "config": {"campaign": "spring"},
            "input": {"email": "a@b.c"},
            "callbackUrl": "http://engine/callback/run-1/hook:2",
        }
        assert seen[0].method == "POST"
        assert str(seen[0].url) == "https://w.test/run"

    def test_sync_mode_uses_response_body(self):
        result = _executor(lambda r: httpx.Response(200, json={"score": 7})).execute(
            "r", "hook", _webhook(), {}
        )
        assert result.status == NodeStatus.COMPLETED
        assert result.output == {"score": 7}

    def test_sync_mode_empty_body(self):
        result = _executor(lambda r: httpx.Response(204)).execute("r", "hook", _webhook(), {})
        assert result.output == {}

    def test_sync_mode_invalid_json(self):
        with pytest.raises(ExecutionError, match="invalid JSON"):
            _executor(lambda r: httpx.Response(200, text="<html>")).execute(
                "r", "hook", _webhook(), {}
            )

    def test_non_2xx_fails(self):
        with pytest.raises(ExecutionError, match="Worker webhook returned 503"):
            _executor(lambda r: httpx.Response(503)).execute("r", "hook", _webhook("async"), {})

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ExecutionError, match="Worker webhook timeout exceeded"):
            _executor(handler).execute("r", "hook", _webhook(), {})

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ExecutionError, match="Worker webhook request failed: refused"):
            _executor(handler).execute("r", "hook", _webhook(), {})

    def test_per_node_timeout(self, mocker):
        executor = _executor()
        post = mocker.patch.object(executor._http, "post", return_value=httpx.Response(202))
        executor.execute("r", "hook", _webhook("async", timeout=2.5), {})
        assert post.call_args.kwargs["timeout"] == 2.5


# =============================================================================
# Other Node Types
# =============================================================================


class TestStructuralNodes:
    def test_ux_waits_for_user(self):
        result = _executor().execute("r", "u", UXNode(id="u"), {})
        assert result.status == NodeStatus.WAITING_FOR_USER

    def test_section_completes_empty(self):
        result = _executor().execute("r", "s", SectionNode(id="s"), {"x": 1})
        assert result.status == NodeStatus.COMPLETED
        assert result.output == {}


class TestSplitter:
    def test_extracts_array(self):
        node = SplitterNode.model_validate({"id": "s", "config": {"array_path": "order.lines"}})
        result = _executor().execute("r", "s", node, {"order": {"lines": ["a", "b"]}})
        assert result.output == {"items": ["a", "b"], "count": 2}

    def test_missing_array(self):
        with pytest.raises(ExecutionError, match="No array found at path 'items'"):
            _executor().execute("r", "s", SplitterNode(id="s"), {})

    def test_not_an_array(self):
        with pytest.raises(ExecutionError, match="Value at path 'items' is not an array"):
            _executor().execute("r", "s", SplitterNode(id="s"), {"items": "abc"})


class TestCollector:
    def test_orders_by_branch_index(self):
        arrivals = [
            Arrival(arrival_key="w:2", branch_index=2, payload={"v": 2}),
            Arrival(arrival_key="w:0", branch_index=0, payload={"v": 0}),
            Arrival(arrival_key="w:1", branch_index=1, payload={"v": 1}),
        ]
        node = CollectorNode.model_validate(
            {"id": "c", "config": {"expected_count": 3, "output_field": "results"}}
        )
        result = _executor().execute("r", "c", node, {}, arrivals=arrivals, required_count=3)
        assert result.output == {"results": [{"v": 0}, {"v": 1}, {"v": 2}]}

    def test_takes_first_k_arrivals(self):
        arrivals = [
            Arrival(arrival_key="b", payload={"from": "b"}),
            Arrival(arrival_key="a", payload={"from": "a"}),
            Arrival(arrival_key="c", payload={"from": "c"}),
        ]
        result = _executor().execute(
            "r", "c", CollectorNode(id="c"), {}, arrivals=arrivals, required_count=2
        )
        assert result.output == {"items": [{"from": "b"}, {"from": "a"}]}
