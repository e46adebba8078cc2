"""Durable, callback-driven graph execution engine.

This module owns every mutation of run state:

- start_run: creates a run against a pinned graph version and fires entry nodes
- advance: walks the outgoing edges of a completed node (the edge walker)
- on_callback: applies an async worker's completion or failure, idempotently
- retry / complete: operator and UX re-entry points
- expire_waits: fails (or default-completes) overdue UX waits exactly once

Design:
- No in-memory continuation. Suspended nodes are just rows; resuming means
  loading fresh state and advancing, which is safe from any process.
- Every read-decide-write step runs in a ``BEGIN IMMEDIATE`` transaction with
  guarded status updates, so a node is claimed (pending -> running) at most
  once and arrival counting is increment-and-compare under the write lock.
- External I/O (worker webhooks) happens after the claim commits, outside
  any transaction.
- Synchronous completions feed a work queue, making the walker a transitive
  closure over ready frontiers without recursion.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from stitch.core.compiler import ExecutionGraph
from stitch.core.errors import ExecutionError, InvalidStateTransition
from stitch.core.executors import NodeExecutor
from stitch.core.graph_schema import (
    TERMINAL_STATUSES,
    CollectorNode,
    Node,
    NodeStatus,
    SplitterNode,
    UXNode,
    WorkerNode,
)
from stitch.core.models import (
    CallbackOutcome,
    NodeReport,
    NodeState,
    Run,
    RunReport,
    RunStatus,
    TriggerMetadata,
)
from stitch.core.state import Database, _utc_now
from stitch.core.store import EntityStore, GraphStore, RunStore
from stitch.core.utils import apply_mapping, branch_key, split_node_key

logger = logging.getLogger(__name__)

CompletionListener = Callable[[Run], None]
NodeListener = Callable[[str, str, Node, bool], None]


class GraphEngine:
    """
    Stateless workflow graph engine.

    Key Features:
    - All state in the database; any instance can serve any request
    - At-most-once dispatch per (run, node key)
    - Fan-out/fan-in with per-branch node states
    - Completion listeners (journey stitching) fire once per run
    """

    def __init__(
        self,
        db: Database,
        graphs: GraphStore | None = None,
        runs: RunStore | None = None,
        entities: EntityStore | None = None,
        executor: NodeExecutor | None = None,
    ):
        self.db = db
        self.graphs = graphs or GraphStore(db)
        self.runs = runs or RunStore(db)
        self.entities = entities or EntityStore(db)
        self.executor = executor or NodeExecutor()
        self._completion_listeners: list[CompletionListener] = []
        self._node_listeners: list[NodeListener] = []

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Call ``listener(run)`` once when a run's terminal nodes have all completed."""
        self._completion_listeners.append(listener)

    def add_node_listener(self, listener: NodeListener) -> None:
        """Call ``listener(run_id, node_key, node, succeeded)`` after a node completes or fails."""
        self._node_listeners.append(listener)

    def close(self) -> None:
        self.executor.close()

    # ========== Database Transaction Helpers ==========

    def _run_in_transaction(self, func, *args):
        """Execute a function within a DB write transaction."""
        return self.db.run_in_transaction(func, *args)

    def _graph_for_run(self, run_id: str) -> ExecutionGraph:
        return self.graphs.get_execution_graph_snapshot(self.runs.get_version_id(run_id))

    # ========== Run Lifecycle ==========

    def start_run(
        self,
        version_id: str,
        run_input: Any = None,
        entity_id: str | None = None,
        trigger: TriggerMetadata | None = None,
    ) -> str:
        """
        Start a run of a published graph version.

        Args:
            version_id: Graph version to pin for the lifetime of the run
            run_input: Input for every entry node (non-dict values land under "input")
            entity_id: Optional entity the run acts for
            trigger: What started the run; ``ux_node_id`` marks a system path

        Returns:
            run_id: Unique ID for this run
        """
        graph = self.graphs.get_execution_graph_snapshot(version_id)
        trigger = trigger or TriggerMetadata()
        if entity_id is not None:
            self.entities.get_entity(entity_id)

        # Use 'is None' so falsy inputs like 0 or "" are preserved
        if run_input is None:
            data: dict[str, Any] = {}
        elif isinstance(run_input, dict):
            data = dict(run_input)
        else:
            data = {"input": run_input}

        run_id = str(uuid.uuid4())

        def init_run(conn: sqlite3.Connection) -> list[str]:
            self.runs.create_run(conn, run_id, version_id, entity_id, trigger, data)
            if entity_id and trigger.ux_node_id:
                superseded = self.runs.supersede_runs(conn, entity_id, trigger.ux_node_id, run_id)
                if superseded:
                    logger.info(f"Run {run_id} supersedes {superseded} earlier run(s)")
            for node_id in graph.static_nodes():
                self.runs.insert_node_state(
                    conn, run_id, node_id, node_id, graph.required_counts[node_id]
                )
            claimed = []
            for entry in graph.entry_nodes:
                self.runs.set_input(conn, run_id, entry, data)
                if self.runs.update_node_state(
                    conn, run_id, entry, NodeStatus.RUNNING, expected_status=NodeStatus.PENDING
                ):
                    claimed.append(entry)
            return claimed

        claimed = self._run_in_transaction(init_run)
        logger.info(f"Started run {run_id} of {version_id} (trigger={trigger.type.value})")
        self._drain(run_id, graph, claimed)
        return run_id

    def get_run(self, run_id: str) -> Run:
        return self.runs.get_run(run_id)

    def get_status(self, run_id: str) -> RunReport:
        """
        Derive the overall run status.

        failed if any node failed; completed if all terminal nodes completed;
        running if any node is running or waiting for a user; else pending.
        """
        run = self.runs.get_run(run_id)
        graph = self.graphs.get_execution_graph_snapshot(run.version_id)
        states = run.nodes.values()

        terminals_done = all(
            run.nodes[t].status == NodeStatus.COMPLETED
            for t in graph.terminal_nodes
            if t in run.nodes
        )
        if any(s.status == NodeStatus.FAILED for s in states):
            status = RunStatus.FAILED
        elif terminals_done:
            status = RunStatus.COMPLETED
        elif any(s.status in (NodeStatus.RUNNING, NodeStatus.WAITING_FOR_USER) for s in states):
            status = RunStatus.RUNNING
        else:
            status = RunStatus.PENDING

        final_outputs = None
        if status == RunStatus.COMPLETED:
            final_outputs = {t: run.nodes[t].output for t in graph.terminal_nodes}

        return RunReport(
            run_id=run_id,
            status=status,
            nodes={
                key: NodeReport(status=s.status, output=s.output, error=s.error)
                for key, s in run.nodes.items()
            },
            final_outputs=final_outputs,
        )

    # ========== Edge Walker ==========

    def advance(self, run_id: str, node_key: str) -> list[str]:
        """
        Walk the outgoing edges of a completed node and dispatch whatever became ready.

        Safe to call repeatedly: arrivals are keyed by the delivering node, so a
        re-entrant call never double counts and never re-dispatches.

        Returns the node keys claimed by this call (before transitive walking).
        """
        graph = self._graph_for_run(run_id)

        def walk(conn: sqlite3.Connection) -> list[str]:
            state = self.runs.get_node_state(conn, run_id, node_key)
            if state.status != NodeStatus.COMPLETED:
                raise InvalidStateTransition(
                    f"Cannot advance from {node_key}: node is {state.status.value}",
                    current=state.status.value,
                    requested=NodeStatus.COMPLETED.value,
                )
            return self._advance_in_txn(conn, run_id, graph, state, state.output)

        ready = self._run_in_transaction(walk)
        self._drain(run_id, graph, ready)
        return ready

    def _advance_in_txn(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        graph: ExecutionGraph,
        state: NodeState,
        output: Any,
    ) -> list[str]:
        """Deliver ``output`` along every outgoing edge; return newly claimed keys."""
        node = graph.node(state.node_id)
        if isinstance(node, SplitterNode):
            items = output.get("items", []) if isinstance(output, dict) else []
            return self._fan_out(conn, run_id, graph, node, items)

        ready = []
        for edge in graph.outgoing_edges(node.id):
            payload = apply_mapping(edge.mapping, node.id, output)
            target = graph.node(edge.target)

            # Inside a fan-out, instance i feeds instance i; collectors join them
            if state.branch_index is not None and not isinstance(target, CollectorNode):
                target_key = branch_key(edge.target, state.branch_index)
                self.runs.insert_node_state(
                    conn,
                    run_id,
                    target_key,
                    edge.target,
                    graph.required_counts[edge.target],
                    branch_index=state.branch_index,
                )
            else:
                target_key = edge.target

            if self._arrive(conn, run_id, target_key, state.node_key, payload, state.branch_index):
                ready.append(target_key)
        return ready

    def _fan_out(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        graph: ExecutionGraph,
        splitter: SplitterNode,
        items: list[Any],
    ) -> list[str]:
        """Create one branch instance per item for every outgoing edge."""
        ready = []
        if not items:
            # Nothing to fan out: paired collectors complete with an empty array
            for collector_id in graph.splitter_collectors.get(splitter.id, {}):
                if self.runs.update_node_state(
                    conn, run_id, collector_id, NodeStatus.RUNNING, NodeStatus.PENDING
                ):
                    logger.info(
                        f"Splitter {splitter.id} produced no items; {collector_id} closes empty"
                    )
                    ready.append(collector_id)
            return ready

        for index, item in enumerate(items):
            instance_key = branch_key(splitter.id, index)
            branch_output = {splitter.config.item_field: item, "index": index}
            for edge in graph.outgoing_edges(splitter.id):
                payload = apply_mapping(edge.mapping, splitter.id, branch_output)
                if isinstance(graph.node(edge.target), CollectorNode):
                    target_key = edge.target
                else:
                    target_key = branch_key(edge.target, index)
                    self.runs.insert_node_state(
                        conn,
                        run_id,
                        target_key,
                        edge.target,
                        graph.required_counts[edge.target],
                        branch_index=index,
                    )
                if self._arrive(conn, run_id, target_key, instance_key, payload, index):
                    ready.append(target_key)

        logger.info(f"Splitter {splitter.id} fanned out {len(items)} branch(es) in run {run_id}")
        return ready

    def _arrive(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        target_key: str,
        arrival_key: str,
        payload: dict[str, Any],
        branch_index: int | None,
    ) -> bool:
        """Record an arrival; claim the target if it just became ready.

        Increment-and-compare happens under the caller's write lock, so
        exactly one arrival observes ``arrived == required``.
        """
        current = self.runs.get_node_state(conn, run_id, target_key)
        if current.status != NodeStatus.PENDING:
            logger.info(
                f"Arrival {arrival_key} -> {target_key} ignored (node is {current.status.value})"
            )
            return False

        state = self.runs.record_arrival(
            conn, run_id, target_key, arrival_key, payload, branch_index
        )
        if state is None:
            logger.info(f"Duplicate arrival {arrival_key} -> {target_key} ignored")
            return False
        if state.arrived_count < state.required_count:
            return False
        return self.runs.update_node_state(
            conn, run_id, target_key, NodeStatus.RUNNING, expected_status=NodeStatus.PENDING
        )

    def _drain(self, run_id: str, graph: ExecutionGraph, ready: list[str]) -> None:
        """Dispatch claimed nodes until nothing more is immediately runnable."""
        queue = deque(ready)
        while queue:
            node_key = queue.popleft()
            queue.extend(self._dispatch(run_id, graph, node_key))
        self._check_run_completion(run_id, graph)

    # ========== Node Dispatch ==========

    def _dispatch(self, run_id: str, graph: ExecutionGraph, node_key: str) -> list[str]:
        """
        Fire a claimed (running) node and persist what happened.

        Returns node keys that became ready as a consequence.
        """
        state = self.runs.load_node_state(run_id, node_key)
        if state.status != NodeStatus.RUNNING:
            logger.info(f"Skipping dispatch of {node_key}: node is {state.status.value}")
            return []
        node = graph.node(state.node_id)
        arrivals = (
            self.runs.get_arrivals(run_id, node_key) if isinstance(node, CollectorNode) else None
        )

        try:
            result = self.executor.execute(
                run_id,
                node_key,
                node,
                state.input,
                arrivals=arrivals,
                required_count=state.required_count,
            )
            if isinstance(node, SplitterNode):
                self._check_fan_out(graph, node, result.output["items"])
        except ExecutionError as e:
            logger.error(f"Node {node_key} failed: {e}")
            return self._fail_claimed(run_id, graph, node_key, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error executing {node_key}")
            return self._fail_claimed(run_id, graph, node_key, f"Unexpected error: {e}")

        match result.status:
            case NodeStatus.COMPLETED:
                try:
                    return self._finish(
                        run_id,
                        graph,
                        node_key,
                        NodeStatus.RUNNING,
                        NodeStatus.COMPLETED,
                        output=result.output,
                    )
                except (TypeError, ValueError) as e:
                    logger.error(f"Could not persist output of {node_key}: {e}")
                    return self._fail_claimed(
                        run_id, graph, node_key, f"Could not persist output: {e}"
                    )
            case NodeStatus.WAITING_FOR_USER:
                self._park_for_user(run_id, node_key, node)
                return []
            case _:
                logger.info(f"Node {node_key} dispatched; awaiting callback")
                return []

    def _fail_claimed(
        self, run_id: str, graph: ExecutionGraph, node_key: str, error: str
    ) -> list[str]:
        return self._finish(
            run_id, graph, node_key, NodeStatus.RUNNING, NodeStatus.FAILED, error=error
        )

    def _check_fan_out(self, graph: ExecutionGraph, splitter: SplitterNode, items: list) -> None:
        """Fail the splitter up front if its collectors could never fill."""
        if not items:
            return
        for collector_id, per_branch in graph.splitter_collectors.get(splitter.id, {}).items():
            expected = graph.required_counts[collector_id]
            if len(items) * per_branch != expected:
                raise ExecutionError(
                    f"Splitter produced {len(items)} items but collector '{collector_id}' "
                    f"expects {expected} arrivals ({per_branch} per item)"
                )

    def _park_for_user(self, run_id: str, node_key: str, node: UXNode) -> None:
        deadline = None
        if node.config.timeout_seconds:
            deadline = _utc_now() + timedelta(seconds=node.config.timeout_seconds)

        parked = self._run_in_transaction(
            lambda conn: self.runs.update_node_state(
                conn,
                run_id,
                node_key,
                NodeStatus.WAITING_FOR_USER,
                expected_status=NodeStatus.RUNNING,
                deadline=deadline,
            )
        )
        if parked:
            logger.info(f"Node {node_key} waiting for user input")

    def _persist_outcome(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        graph: ExecutionGraph,
        node_key: str,
        expected: NodeStatus,
        new_status: NodeStatus,
        output: Any = None,
        error: str | None = None,
    ) -> list[str] | None:
        """Guarded terminal transition, plus the edge walk for completions.

        Returns None if the node was no longer in ``expected`` status.
        """
        if new_status == NodeStatus.COMPLETED:
            if not self.runs.update_node_state(
                conn, run_id, node_key, NodeStatus.COMPLETED, expected, output=output, error=None
            ):
                return None
            state = self.runs.get_node_state(conn, run_id, node_key)
            return self._advance_in_txn(conn, run_id, graph, state, output)

        if not self.runs.update_node_state(
            conn, run_id, node_key, NodeStatus.FAILED, expected, error=error
        ):
            return None
        return []

    def _finish(
        self,
        run_id: str,
        graph: ExecutionGraph,
        node_key: str,
        expected: NodeStatus,
        new_status: NodeStatus,
        output: Any = None,
        error: str | None = None,
    ) -> list[str]:
        ready = self._run_in_transaction(
            self._persist_outcome, run_id, graph, node_key, expected, new_status, output, error
        )
        if ready is None:
            logger.info(
                f"Node {node_key} {new_status.value} discarded (status changed during execution)"
            )
            return []
        self._notify_node(run_id, graph, node_key, new_status == NodeStatus.COMPLETED)
        return ready

    def _notify_node(
        self, run_id: str, graph: ExecutionGraph, node_key: str, succeeded: bool
    ) -> None:
        if not self._node_listeners:
            return
        node = graph.node(split_node_key(node_key)[0])
        for listener in self._node_listeners:
            try:
                listener(run_id, node_key, node, succeeded)
            except Exception as e:
                logger.error(f"Node listener failed for {run_id}/{node_key}: {e}")

    def _check_run_completion(self, run_id: str, graph: ExecutionGraph) -> None:
        """Mark the run completed once, then notify completion listeners."""
        with self.db._connect() as conn:
            statuses = {s.node_key: s.status for s in self.runs.list_node_states(conn, run_id)}
        if not all(statuses.get(t) == NodeStatus.COMPLETED for t in graph.terminal_nodes):
            return
        if not self._run_in_transaction(self.runs.mark_run_completed, run_id):
            return

        run = self.runs.get_run(run_id)
        logger.info(f"Run {run_id} completed")
        for listener in self._completion_listeners:
            try:
                listener(run)
            except Exception as e:
                logger.error(f"Completion listener failed for run {run_id}: {e}")

    # ========== Re-entry Points ==========

    def on_callback(self, run_id: str, node_key: str, outcome: CallbackOutcome) -> bool:
        """
        Apply an async worker's outcome.

        Idempotent: repeating the outcome already recorded is a logged no-op
        (returns False). A conflicting outcome for a finished node, or any
        callback for a node that is not running, raises InvalidStateTransition.
        """
        graph = self._graph_for_run(run_id)
        new_status = outcome.node_status

        def apply(conn: sqlite3.Connection) -> list[str] | None:
            state = self.runs.get_node_state(conn, run_id, node_key)
            if state.status in TERMINAL_STATUSES:
                if self._same_outcome(state, outcome):
                    return None
                raise InvalidStateTransition(
                    f"Node {node_key} is already {state.status.value}; "
                    f"rejecting conflicting '{outcome.status}' callback",
                    current=state.status.value,
                    requested=new_status.value,
                )
            node = graph.node(state.node_id)
            if not isinstance(node, WorkerNode):
                raise InvalidStateTransition(
                    f"Node {node_key} is a {node.type} node; callbacks are only accepted "
                    f"for worker nodes",
                    current=state.status.value,
                    requested=new_status.value,
                )
            if state.status != NodeStatus.RUNNING:
                raise InvalidStateTransition(
                    f"Node {node_key} is {state.status.value}, expected running",
                    current=state.status.value,
                    requested=new_status.value,
                )
            return self._persist_outcome(
                conn,
                run_id,
                graph,
                node_key,
                NodeStatus.RUNNING,
                new_status,
                output=outcome.output,
                error=outcome.failure_message,
            )

        try:
            ready = self._run_in_transaction(apply)
        except InvalidStateTransition as e:
            logger.warning(f"Rejected callback for {run_id}/{node_key}: {e}")
            raise

        if ready is None:
            logger.info(f"Duplicate '{outcome.status}' callback for {run_id}/{node_key} ignored")
            return False

        logger.info(f"Callback applied: {run_id}/{node_key} -> {new_status.value}")
        self._notify_node(run_id, graph, node_key, new_status == NodeStatus.COMPLETED)
        self._drain(run_id, graph, ready)
        return True

    @staticmethod
    def _same_outcome(state: NodeState, outcome: CallbackOutcome) -> bool:
        """An outcome repeats only if both its status and its output or error match."""
        if state.status != outcome.node_status:
            return False
        if state.status == NodeStatus.COMPLETED:
            return state.output == outcome.output
        return state.error == outcome.failure_message

    def retry(self, run_id: str, node_key: str) -> NodeStatus:
        """
        Reset a failed node to pending and re-dispatch it with its stored input.

        No edges are re-traversed: the merged input from the original
        arrivals is reused as-is. Returns the node's status afterwards.
        """
        graph = self._graph_for_run(run_id)

        def reset(conn: sqlite3.Connection) -> bool:
            state = self.runs.get_node_state(conn, run_id, node_key)
            if state.status != NodeStatus.FAILED:
                raise InvalidStateTransition(
                    f"Node {node_key} is {state.status.value}; only failed nodes can be retried",
                    current=state.status.value,
                    requested=NodeStatus.PENDING.value,
                )
            self.runs.update_node_state(
                conn,
                run_id,
                node_key,
                NodeStatus.PENDING,
                expected_status=NodeStatus.FAILED,
                output=None,
                error=None,
                deadline=None,
                bump_attempts=True,
            )
            return self.runs.update_node_state(
                conn, run_id, node_key, NodeStatus.RUNNING, expected_status=NodeStatus.PENDING
            )

        claimed = self._run_in_transaction(reset)
        logger.info(f"Retrying {node_key} in run {run_id}")
        if claimed:
            self._drain(run_id, graph, [node_key])
        return self.runs.load_node_state(run_id, node_key).status

    def complete(self, run_id: str, node_key: str, output: Any = None) -> None:
        """Complete a UX node that is waiting for user input, then advance."""
        graph = self._graph_for_run(run_id)

        def finish(conn: sqlite3.Connection) -> list[str] | None:
            state = self.runs.get_node_state(conn, run_id, node_key)
            node = graph.node(state.node_id)
            if not isinstance(node, UXNode):
                raise InvalidStateTransition(
                    f"Node {node_key} is a {node.type} node, not a UX node",
                    current=state.status.value,
                    requested=NodeStatus.COMPLETED.value,
                )
            if state.status != NodeStatus.WAITING_FOR_USER:
                raise InvalidStateTransition(
                    f"Node {node_key} is {state.status.value}, expected waiting_for_user",
                    current=state.status.value,
                    requested=NodeStatus.COMPLETED.value,
                )
            return self._persist_outcome(
                conn,
                run_id,
                graph,
                node_key,
                NodeStatus.WAITING_FOR_USER,
                NodeStatus.COMPLETED,
                output=output if output is not None else {},
            )

        ready = self._run_in_transaction(finish)
        logger.info(f"UX node {node_key} completed in run {run_id}")
        self._notify_node(run_id, graph, node_key, True)
        self._drain(run_id, graph, ready or [])

    def expire_waits(self, now: datetime | None = None) -> int:
        """
        Time out every overdue UX wait exactly once.

        A late user completion racing the sweep is serialized by the same
        guarded transition, so only one of them wins. Returns the number of
        nodes expired by this call.
        """
        now = now or _utc_now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)

        expired = 0
        for run_id, node_key in self.runs.list_overdue_waits(now):
            graph = self._graph_for_run(run_id)
            node = graph.node(split_node_key(node_key)[0])
            if not isinstance(node, UXNode):
                continue

            ready = self._run_in_transaction(self._expire_wait, run_id, graph, node_key, node, now)
            if ready is None:
                continue

            expired += 1
            completed = node.config.on_timeout == "complete"
            logger.info(
                f"UX node {node_key} in run {run_id} timed out "
                f"({'completed with default' if completed else 'failed'})"
            )
            self._notify_node(run_id, graph, node_key, completed)
            self._drain(run_id, graph, ready)
        return expired

    def _expire_wait(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        graph: ExecutionGraph,
        node_key: str,
        node: UXNode,
        now: datetime,
    ) -> list[str] | None:
        state = self.runs.get_node_state(conn, run_id, node_key)
        if state.status != NodeStatus.WAITING_FOR_USER:
            return None
        if state.deadline is None or state.deadline > now:
            return None

        if node.config.on_timeout == "complete":
            return self._persist_outcome(
                conn,
                run_id,
                graph,
                node_key,
                NodeStatus.WAITING_FOR_USER,
                NodeStatus.COMPLETED,
                output=dict(node.config.default_output),
            )
        return self._persist_outcome(
            conn,
            run_id,
            graph,
            node_key,
            NodeStatus.WAITING_FOR_USER,
            NodeStatus.FAILED,
            error=f"UX node timed out after {node.config.timeout_seconds:g}s",
        )
