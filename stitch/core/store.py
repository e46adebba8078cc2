"""Graph, run and entity stores over the SQLite Database.

Methods that take a ``conn`` run inside the caller's transaction (see
``Database.transaction``); the rest open their own read connection.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime

from stitch.core.compiler import ExecutionGraph, check_canvas, compile_graph
from stitch.core.errors import NotFoundError
from stitch.core.graph_schema import (
    EntityType,
    JourneyCanvas,
    NodeStatus,
    WorkflowGraph,
    check_transition,
)
from stitch.core.models import (
    Arrival,
    Entity,
    GraphVersion,
    JourneyEvent,
    JourneyEventType,
    NodeState,
    Run,
    TriggerMetadata,
)
from stitch.core.state import (
    Database,
    _json_loads,
    _parse_timestamp,
    _safe_json_dumps,
    _utc_now,
)

logger = logging.getLogger(__name__)

_UNSET = object()


class GraphStore:
    """Versioned workflow graphs and journey canvases.

    Compiled ExecutionGraphs are immutable, so they are cached per version
    id and shared between threads without locking.
    """

    def __init__(self, db: Database):
        self.db = db
        self._cache: dict[str, ExecutionGraph] = {}

    def publish(self, graph: WorkflowGraph) -> GraphVersion:
        """Compile ``graph`` and store it as the next version of ``graph.id``.

        Raises GraphValidationError before anything is written.
        """
        execution_graph = compile_graph(graph)

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) FROM graph_versions WHERE graph_id = ?",
                (graph.id,),
            ).fetchone()
            version = row[0] + 1
            version_id = f"{graph.id}@v{version}"
            created_at = _utc_now()
            conn.execute(
                """
                INSERT INTO graph_versions
                    (id, graph_id, version, name, definition, execution_graph, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    version_id,
                    graph.id,
                    version,
                    graph.name,
                    graph.model_dump_json(),
                    execution_graph.model_dump_json(),
                    created_at.isoformat(),
                ),
            )

        self._cache[version_id] = execution_graph
        logger.info(f"Published graph {graph.id} as {version_id}")
        return GraphVersion(
            id=version_id, graph_id=graph.id, version=version, name=graph.name, created_at=created_at
        )

    def get_execution_graph_snapshot(self, version_id: str) -> ExecutionGraph:
        cached = self._cache.get(version_id)
        if cached is not None:
            return cached
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT execution_graph FROM graph_versions WHERE id = ?", (version_id,)
            ).fetchone()
        if not row:
            raise NotFoundError(f"Graph version '{version_id}' not found")
        execution_graph = ExecutionGraph.model_validate_json(row[0])
        self._cache[version_id] = execution_graph
        return execution_graph

    def get_definition(self, version_id: str) -> WorkflowGraph:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM graph_versions WHERE id = ?", (version_id,)
            ).fetchone()
        if not row:
            raise NotFoundError(f"Graph version '{version_id}' not found")
        return WorkflowGraph.model_validate_json(row[0])

    def get_version(self, version_id: str) -> GraphVersion:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT id, graph_id, version, name, created_at FROM graph_versions WHERE id = ?",
                (version_id,),
            ).fetchone()
        if not row:
            raise NotFoundError(f"Graph version '{version_id}' not found")
        return self._row_to_version(row)

    def latest_version(self, graph_id: str) -> GraphVersion:
        versions = self.list_versions(graph_id)
        if not versions:
            raise NotFoundError(f"No published versions for graph '{graph_id}'")
        return versions[-1]

    def list_versions(self, graph_id: str) -> list[GraphVersion]:
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, graph_id, version, name, created_at FROM graph_versions
                WHERE graph_id = ? ORDER BY version
                """,
                (graph_id,),
            ).fetchall()
        return [self._row_to_version(row) for row in rows]

    def _row_to_version(self, row: sqlite3.Row) -> GraphVersion:
        return GraphVersion(
            id=row["id"],
            graph_id=row["graph_id"],
            version=row["version"],
            name=row["name"],
            created_at=_parse_timestamp(row["created_at"]),
        )

    # --- Canvases ---

    def save_canvas(self, canvas: JourneyCanvas) -> JourneyCanvas:
        """Validate and upsert a canvas.

        Uses ON CONFLICT DO UPDATE instead of REPLACE to preserve FK
        references from entities placed on this canvas.
        """
        check_canvas(canvas)
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO canvases (id, name, definition, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    definition = excluded.definition,
                    updated_at = excluded.updated_at
                """,
                (canvas.id, canvas.name, canvas.model_dump_json(), _utc_now().isoformat()),
            )
        return canvas

    def get_canvas(self, canvas_id: str) -> JourneyCanvas:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM canvases WHERE id = ?", (canvas_id,)
            ).fetchone()
        if not row:
            raise NotFoundError(f"Canvas '{canvas_id}' not found")
        return JourneyCanvas.model_validate_json(row[0])


class RunStore:
    """Runs and their node states."""

    def __init__(self, db: Database):
        self.db = db

    # --- Runs ---

    def create_run(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        version_id: str,
        entity_id: str | None,
        trigger: TriggerMetadata,
        run_input: dict,
    ) -> None:
        conn.execute(
            """
            INSERT INTO runs (id, version_id, entity_id, trigger, ux_node_id, input, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                version_id,
                entity_id,
                trigger.model_dump_json(),
                trigger.ux_node_id,
                _safe_json_dumps(run_input),
                _utc_now().isoformat(),
            ),
        )

    def supersede_runs(
        self, conn: sqlite3.Connection, entity_id: str, ux_node_id: str, new_run_id: str
    ) -> int:
        """Mark older unfinished runs of the same entity and UX node as superseded."""
        result = conn.execute(
            """
            UPDATE runs SET superseded_by = ?
            WHERE entity_id = ? AND ux_node_id = ? AND id != ?
              AND superseded_by IS NULL AND completed_at IS NULL
            """,
            (new_run_id, entity_id, ux_node_id, new_run_id),
        )
        return result.rowcount

    def mark_run_completed(self, conn: sqlite3.Connection, run_id: str) -> bool:
        """Set completed_at once. Returns False if it was already set."""
        result = conn.execute(
            "UPDATE runs SET completed_at = ? WHERE id = ? AND completed_at IS NULL",
            (_utc_now().isoformat(), run_id),
        )
        return result.rowcount > 0

    def mark_stitched(self, conn: sqlite3.Connection, run_id: str) -> bool:
        """Claim the run for journey stitching. Returns False if already claimed."""
        result = conn.execute(
            "UPDATE runs SET stitched = 1 WHERE id = ? AND stitched = 0", (run_id,)
        )
        return result.rowcount > 0

    def get_run(self, run_id: str, include_nodes: bool = True) -> Run:
        with self.db._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Run '{run_id}' not found")
            nodes = self.list_node_states(conn, run_id) if include_nodes else []
        return Run(
            id=row["id"],
            version_id=row["version_id"],
            entity_id=row["entity_id"],
            trigger=TriggerMetadata.model_validate_json(row["trigger"]),
            input=_json_loads(row["input"], {}),
            nodes={state.node_key: state for state in nodes},
            created_at=_parse_timestamp(row["created_at"]),
            completed_at=_parse_timestamp(row["completed_at"]),
            superseded_by=row["superseded_by"],
        )

    def get_version_id(self, run_id: str) -> str:
        with self.db._connect() as conn:
            row = conn.execute("SELECT version_id FROM runs WHERE id = ?", (run_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Run '{run_id}' not found")
        return row[0]

    def list_runs(self, entity_id: str | None = None, limit: int = 20) -> list[Run]:
        with self.db._connect() as conn:
            if entity_id:
                rows = conn.execute(
                    "SELECT id FROM runs WHERE entity_id = ? ORDER BY created_at DESC LIMIT ?",
                    (entity_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT id FROM runs ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
        return [self.get_run(row[0], include_nodes=False) for row in rows]

    # --- Node states ---

    def insert_node_state(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        node_key: str,
        node_id: str,
        required_count: int,
        branch_index: int | None = None,
    ) -> bool:
        """Create a pending node state if it does not exist yet."""
        result = conn.execute(
            """
            INSERT OR IGNORE INTO node_states
                (run_id, node_key, node_id, branch_index, status, input,
                 required_count, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                node_key,
                node_id,
                branch_index,
                NodeStatus.PENDING.value,
                "{}",
                required_count,
                _utc_now().isoformat(),
            ),
        )
        return result.rowcount > 0

    def get_node_state(self, conn: sqlite3.Connection, run_id: str, node_key: str) -> NodeState:
        row = conn.execute(
            "SELECT * FROM node_states WHERE run_id = ? AND node_key = ?", (run_id, node_key)
        ).fetchone()
        if not row:
            raise NotFoundError(f"Node '{node_key}' not found in run '{run_id}'")
        return self._row_to_node_state(row)

    def load_node_state(self, run_id: str, node_key: str) -> NodeState:
        """Read a node state on a fresh connection."""
        with self.db._connect() as conn:
            return self.get_node_state(conn, run_id, node_key)

    def list_node_states(self, conn: sqlite3.Connection, run_id: str) -> list[NodeState]:
        rows = conn.execute(
            "SELECT * FROM node_states WHERE run_id = ? ORDER BY id", (run_id,)
        ).fetchall()
        return [self._row_to_node_state(row) for row in rows]

    def _row_to_node_state(self, row: sqlite3.Row) -> NodeState:
        return NodeState(
            run_id=row["run_id"],
            node_key=row["node_key"],
            node_id=row["node_id"],
            branch_index=row["branch_index"],
            status=NodeStatus(row["status"]),
            input=_json_loads(row["input"], {}),
            output=_json_loads(row["output"]),
            error=row["error"],
            required_count=row["required_count"],
            arrived_count=row["arrived_count"],
            attempts=row["attempts"],
            deadline=_parse_timestamp(row["deadline"]),
            version=row["version"],
            updated_at=_parse_timestamp(row["updated_at"]),
        )

    def update_node_state(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        node_key: str,
        new_status: NodeStatus,
        expected_status: NodeStatus,
        output=_UNSET,
        error=_UNSET,
        deadline=_UNSET,
        bump_attempts: bool = False,
    ) -> bool:
        """Set node status only if the current status matches ``expected_status``.

        Returns True if the update was applied, False if a concurrent writer
        changed the status first. The transition itself must be legal.
        """
        check_transition(expected_status, new_status)

        assignments = ["status = ?", "version = version + 1", "updated_at = ?"]
        params: list = [new_status.value, _utc_now().isoformat()]
        if output is not _UNSET:
            assignments.append("output = ?")
            params.append(_safe_json_dumps(output) if output is not None else None)
        if error is not _UNSET:
            assignments.append("error = ?")
            params.append(error)
        if deadline is not _UNSET:
            assignments.append("deadline = ?")
            params.append(
                deadline.isoformat(timespec="microseconds") if deadline is not None else None
            )
        if bump_attempts:
            assignments.append("attempts = attempts + 1")

        result = conn.execute(
            f"""
            UPDATE node_states SET {", ".join(assignments)}
            WHERE run_id = ? AND node_key = ? AND status = ?
            """,
            (*params, run_id, node_key, expected_status.value),
        )
        return result.rowcount > 0

    def record_arrival(
        self,
        conn: sqlite3.Connection,
        run_id: str,
        node_key: str,
        arrival_key: str,
        payload: dict,
        branch_index: int | None = None,
    ) -> NodeState | None:
        """Record one predecessor delivering ``payload`` to ``node_key``.

        The arrival is keyed by the delivering instance, so repeats are
        ignored and return None. Otherwise the payload fields are merged into
        the node's input and its arrived count is incremented, all inside the
        caller's transaction.
        """
        inserted = conn.execute(
            """
            INSERT OR IGNORE INTO node_arrivals
                (run_id, node_key, arrival_key, branch_index, payload)
            VALUES (?, ?, ?, ?, ?)
            """,
            (run_id, node_key, arrival_key, branch_index, _safe_json_dumps(payload)),
        )
        if inserted.rowcount == 0:
            return None

        state = self.get_node_state(conn, run_id, node_key)
        merged = dict(state.input)
        merged.update(payload)
        conn.execute(
            """
            UPDATE node_states
            SET input = ?, arrived_count = arrived_count + 1, version = version + 1,
                updated_at = ?
            WHERE run_id = ? AND node_key = ?
            """,
            (_safe_json_dumps(merged), _utc_now().isoformat(), run_id, node_key),
        )
        return self.get_node_state(conn, run_id, node_key)

    def set_input(self, conn: sqlite3.Connection, run_id: str, node_key: str, data: dict) -> None:
        conn.execute(
            "UPDATE node_states SET input = ? WHERE run_id = ? AND node_key = ?",
            (_safe_json_dumps(data), run_id, node_key),
        )

    def get_arrivals(self, run_id: str, node_key: str) -> list[Arrival]:
        """Arrivals in the order they were recorded."""
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT arrival_key, branch_index, payload FROM node_arrivals
                WHERE run_id = ? AND node_key = ? ORDER BY id
                """,
                (run_id, node_key),
            ).fetchall()
        return [
            Arrival(
                arrival_key=row["arrival_key"],
                branch_index=row["branch_index"],
                payload=_json_loads(row["payload"], {}),
            )
            for row in rows
        ]

    def list_overdue_waits(self, now: datetime) -> list[tuple[str, str]]:
        """(run_id, node_key) pairs of UX waits whose deadline has passed."""
        with self.db._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_id, node_key FROM node_states
                WHERE status = ? AND deadline IS NOT NULL AND deadline <= ?
                ORDER BY deadline
                """,
                (NodeStatus.WAITING_FOR_USER.value, now.isoformat(timespec="microseconds")),
            ).fetchall()
        return [(row[0], row[1]) for row in rows]


class EntityStore:
    """Entities and their append-only journey event log."""

    def __init__(self, db: Database):
        self.db = db

    def create_entity(self, entity: Entity) -> Entity:
        now = _utc_now()
        try:
            with self.db._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO entities (id, canvas_id, name, email, entity_type,
                                          current_node_id, metadata, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entity.id,
                        entity.canvas_id,
                        entity.name,
                        entity.email,
                        entity.entity_type.value,
                        None,
                        _safe_json_dumps(entity.metadata),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            if entity.canvas_id and "FOREIGN KEY" in str(e):
                raise NotFoundError(f"Canvas '{entity.canvas_id}' not found") from e
            raise
        return entity.model_copy(
            update={"current_node_id": None, "created_at": now, "updated_at": now}
        )

    def get_entity(self, entity_id: str, conn: sqlite3.Connection | None = None) -> Entity:
        if conn is None:
            with self.db._connect() as own_conn:
                return self.get_entity(entity_id, own_conn)
        row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Entity '{entity_id}' not found")
        return Entity(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            entity_type=EntityType(row["entity_type"]),
            canvas_id=row["canvas_id"],
            current_node_id=row["current_node_id"],
            metadata=_json_loads(row["metadata"], {}),
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )

    def move_entity(
        self,
        conn: sqlite3.Connection,
        entity_id: str,
        node_id: str,
        expected_node_id=_UNSET,
    ) -> bool:
        """Point the entity at ``node_id``.

        With ``expected_node_id`` the move only applies if the entity is still
        there, so a stale stitch cannot clobber a newer position. Callers are
        responsible for checking ``node_id`` is a UX node.
        """
        if expected_node_id is _UNSET:
            result = conn.execute(
                "UPDATE entities SET current_node_id = ?, updated_at = ? WHERE id = ?",
                (node_id, _utc_now().isoformat(), entity_id),
            )
        else:
            result = conn.execute(
                """
                UPDATE entities SET current_node_id = ?, updated_at = ?
                WHERE id = ? AND current_node_id IS ?
                """,
                (node_id, _utc_now().isoformat(), entity_id, expected_node_id),
            )
        return result.rowcount > 0

    def set_entity_type(
        self, conn: sqlite3.Connection, entity_id: str, entity_type: EntityType
    ) -> None:
        conn.execute(
            "UPDATE entities SET entity_type = ?, updated_at = ? WHERE id = ?",
            (entity_type.value, _utc_now().isoformat(), entity_id),
        )

    def append_event(self, conn: sqlite3.Connection, event: JourneyEvent) -> int:
        cursor = conn.execute(
            """
            INSERT INTO journey_events
                (entity_id, event_type, node_id, edge_id, run_id, metadata, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.entity_id,
                event.event_type.value,
                event.node_id,
                event.edge_id,
                event.run_id,
                _safe_json_dumps(event.metadata),
                (event.timestamp or _utc_now()).isoformat(),
            ),
        )
        return cursor.lastrowid  # type: ignore

    def get_events(
        self, entity_id: str, event_types: list[JourneyEventType] | None = None
    ) -> list[JourneyEvent]:
        """Journey history for an entity, oldest first."""
        with self.db._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM journey_events
                    WHERE entity_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [entity_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM journey_events WHERE entity_id = ? ORDER BY id", (entity_id,)
                ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def get_events_for_run(self, run_id: str) -> list[JourneyEvent]:
        """Journey events recorded by one run, oldest first."""
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM journey_events WHERE run_id = ? ORDER BY id", (run_id,)
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> JourneyEvent:
        return JourneyEvent(
            id=row["id"],
            entity_id=row["entity_id"],
            event_type=JourneyEventType(row["event_type"]),
            node_id=row["node_id"],
            edge_id=row["edge_id"],
            run_id=row["run_id"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            timestamp=_parse_timestamp(row["timestamp"]),
        )

    def entities_at_node(self, canvas_id: str, node_id: str) -> list[Entity]:
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM entities WHERE canvas_id = ? AND current_node_id = ? ORDER BY id",
                (canvas_id, node_id),
            ).fetchall()
            return [self.get_entity(row[0], conn) for row in rows]
