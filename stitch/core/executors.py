"""Per-node-type execution behavior.

The executor fires a single claimed node and reports what happened; it
never touches run state itself. Persisting the result and walking edges is
the engine's job.

- WORKER: integrated Python worker (sync) or HTTP webhook (sync or async)
- UX: parks the node until an explicit completion
- SPLITTER: extracts the array to fan out over
- COLLECTOR: aggregates branch arrivals into one array
- SECTION: completes immediately with empty output
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import BaseModel

from stitch.core.errors import ExecutionError
from stitch.core.graph_schema import (
    CollectorNode,
    Node,
    NodeStatus,
    SectionNode,
    SplitterNode,
    UXNode,
    WorkerNode,
)
from stitch.core.models import Arrival
from stitch.core.state import _safe_json_dumps
from stitch.core.utils import resolve_path

logger = logging.getLogger(__name__)

WorkerFunc = Callable[[dict[str, Any], dict[str, Any]], Any]


class DispatchResult(BaseModel):
    """Outcome of firing a node.

    ``RUNNING`` means an asynchronous worker accepted the job and the node
    now waits for its callback. Splitters report their elements under
    ``output["items"]``.
    """

    status: NodeStatus
    output: Any = None


class WorkerRegistry:
    """Integrated workers, looked up by ``worker_type``.

    A worker is called as ``func(input, params)`` and returns its output;
    raising fails the node with the exception message.
    """

    def __init__(self):
        self._workers: dict[str, WorkerFunc] = {}

    def register(self, name: str, func: WorkerFunc | None = None):
        """Register ``func`` under ``name``; usable as a decorator."""
        if func is None:

            def decorator(f: WorkerFunc) -> WorkerFunc:
                self._workers[name] = f
                return f

            return decorator
        self._workers[name] = func
        return func

    def get(self, name: str) -> WorkerFunc | None:
        return self._workers.get(name)

    def names(self) -> list[str]:
        return sorted(self._workers)

    def __contains__(self, name: str) -> bool:
        return name in self._workers


class NodeExecutor:
    """Fires nodes of every type.

    Args:
        registry: integrated workers available to WORKER nodes
        callback_url: builds the URL async webhook workers report back to
        http_client: client used for webhook calls (one is created if omitted)
        worker_timeout: default webhook timeout in seconds
    """

    def __init__(
        self,
        registry: WorkerRegistry | None = None,
        callback_url: Callable[[str, str], str] | None = None,
        http_client: httpx.Client | None = None,
        worker_timeout: float = 30.0,
    ):
        self.registry = registry or WorkerRegistry()
        self.callback_url = callback_url or (
            lambda run_id, node_key: f"/callback/{run_id}/{node_key}"
        )
        self.worker_timeout = worker_timeout
        self._http = http_client or httpx.Client(
            headers={"Content-Type": "application/json"}, timeout=worker_timeout
        )

    def close(self) -> None:
        self._http.close()

    def execute(
        self,
        run_id: str,
        node_key: str,
        node: Node,
        input_data: dict[str, Any],
        arrivals: list[Arrival] | None = None,
        required_count: int | None = None,
    ) -> DispatchResult:
        """Fire ``node``. Raises ExecutionError when the node should fail."""
        match node:
            case WorkerNode():
                return self._execute_worker(run_id, node_key, node, input_data)
            case UXNode():
                return DispatchResult(status=NodeStatus.WAITING_FOR_USER)
            case SplitterNode():
                return self._execute_splitter(node, input_data)
            case CollectorNode():
                return self._execute_collector(node, arrivals or [], required_count)
            case SectionNode():
                return DispatchResult(status=NodeStatus.COMPLETED, output={})
            case _:
                raise ExecutionError(f"Unknown node type: {type(node).__name__}")

    # ========== Worker ==========

    def _execute_worker(
        self, run_id: str, node_key: str, node: WorkerNode, input_data: dict[str, Any]
    ) -> DispatchResult:
        config = node.config

        if config.worker_type and config.worker_type in self.registry:
            func = self.registry.get(config.worker_type)
            logger.info(f"Running integrated worker '{config.worker_type}' for {node_key}")
            try:
                output = func(input_data, dict(config.params))
            except Exception as e:
                raise ExecutionError(str(e) or type(e).__name__) from e
            if hasattr(output, "model_dump"):
                output = output.model_dump(mode="json")
            try:
                _safe_json_dumps(output)
            except (TypeError, ValueError) as e:
                raise ExecutionError(
                    f"Worker '{config.worker_type}' returned output that cannot be stored: {e}"
                ) from e
            return DispatchResult(status=NodeStatus.COMPLETED, output=output)

        if not config.webhook_url:
            if config.worker_type:
                raise ExecutionError(f"Unknown worker type '{config.worker_type}'")
            raise ExecutionError("Worker node missing webhook_url in configuration")

        payload = {
            "runId": run_id,
            "nodeId": node_key,
            "config": config.params,
            "input": input_data,
            "callbackUrl": self.callback_url(run_id, node_key),
        }
        timeout = config.timeout or self.worker_timeout
        logger.info(f"Calling worker webhook for {node_key} ({config.mode})")
        try:
            response = self._http.post(config.webhook_url, json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            raise ExecutionError("Worker webhook timeout exceeded") from e
        except httpx.HTTPError as e:
            raise ExecutionError(f"Worker webhook request failed: {e}") from e

        if not response.is_success:
            raise ExecutionError(f"Worker webhook returned {response.status_code}")

        if config.mode == "async":
            return DispatchResult(status=NodeStatus.RUNNING)

        if not response.content:
            return DispatchResult(status=NodeStatus.COMPLETED, output={})
        try:
            output = response.json()
        except ValueError as e:
            raise ExecutionError("Worker webhook returned invalid JSON") from e
        return DispatchResult(status=NodeStatus.COMPLETED, output=output)

    # ========== Fan-out / fan-in ==========

    def _execute_splitter(self, node: SplitterNode, input_data: dict[str, Any]) -> DispatchResult:
        path = node.config.array_path
        value = resolve_path(input_data, path)
        if value is None:
            raise ExecutionError(f"No array found at path '{path}'")
        if not isinstance(value, list):
            raise ExecutionError(f"Value at path '{path}' is not an array")
        return DispatchResult(
            status=NodeStatus.COMPLETED,
            output={"items": list(value), "count": len(value)},
        )

    def _execute_collector(
        self, node: CollectorNode, arrivals: list[Arrival], required_count: int | None
    ) -> DispatchResult:
        """Aggregate arrivals ordered by branch index.

        Only the first ``required_count`` arrivals count; late arrivals into
        a collector that needed fewer than its in-degree are ignored.
        """
        counted = arrivals[:required_count] if required_count else arrivals
        ordered = sorted(
            enumerate(counted),
            key=lambda pair: (
                pair[1].branch_index if pair[1].branch_index is not None else -1,
                pair[0],
            ),
        )
        results = [arrival.payload for _, arrival in ordered]
        return DispatchResult(
            status=NodeStatus.COMPLETED, output={node.config.output_field: results}
        )
