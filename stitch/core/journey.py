"""Journey stitching: keep an entity's position on its canvas UX spine in sync.

An entity sits on a UX node of a JourneyCanvas. The system path mapped to
that node runs as an ordinary Run tagged with ``ux_node_id``. When that run
completes, the stitcher follows the single journey edge out of the UX node,
moves the entity, records the movement and starts the next system path.

Core invariant: an entity's ``current_node_id`` is only ever null or a UX
node on its canvas. Every write checks this against the canvas instead of
trusting the caller.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from stitch.core.errors import JourneyConfigurationError, NotFoundError
from stitch.core.graph_schema import JourneyCanvas, Node, WorkerNode
from stitch.core.models import (
    Entity,
    JourneyEvent,
    JourneyEventType,
    Run,
    TriggerMetadata,
    TriggerType,
)
from stitch.core.store import EntityStore

if TYPE_CHECKING:
    from stitch.core.engine import GraphEngine

logger = logging.getLogger(__name__)


class JourneyStitcher:
    """Advances entities along the UX spine as their system paths complete."""

    def __init__(self, engine: GraphEngine, entities: EntityStore | None = None):
        self.engine = engine
        self.db = engine.db
        self.graphs = engine.graphs
        self.runs = engine.runs
        self.entities = entities or engine.entities

    def attach(self) -> JourneyStitcher:
        """Subscribe to run completions and worker outcomes on the engine."""
        self.engine.add_completion_listener(self.on_system_path_complete)
        self.engine.add_node_listener(self.on_node_finished)
        return self

    # ========== Helpers ==========

    def _canvas_for(self, entity: Entity, canvas_id: str | None = None) -> JourneyCanvas:
        canvas_id = canvas_id or entity.canvas_id
        if not canvas_id:
            raise JourneyConfigurationError(f"Entity '{entity.id}' is not placed on a canvas")
        return self.graphs.get_canvas(canvas_id)

    def _require_ux_node(self, canvas: JourneyCanvas, node_id: str) -> None:
        """The one check every position write goes through."""
        if not canvas.is_ux_node(node_id):
            raise JourneyConfigurationError(
                f"Node '{node_id}' is not a UX node on canvas '{canvas.id}'; "
                f"entities may only rest on UX nodes"
            )

    def _append(
        self, conn: sqlite3.Connection, entity_id: str, event_type: JourneyEventType, **fields
    ) -> int:
        return self.entities.append_event(
            conn, JourneyEvent(entity_id=entity_id, event_type=event_type, **fields)
        )

    def _entity_context(self, entity: Entity) -> dict:
        return {
            "entity": {
                "id": entity.id,
                "name": entity.name,
                "email": entity.email,
                "entity_type": entity.entity_type.value,
                "metadata": entity.metadata,
            }
        }

    def _start_system_path(
        self, entity: Entity, canvas: JourneyCanvas, ux_node_id: str
    ) -> str | None:
        graph_id = canvas.system_paths.get(ux_node_id)
        if not graph_id:
            logger.info(f"Entity {entity.id} rests at {ux_node_id} (no system path mapped)")
            return None
        version = self.graphs.latest_version(graph_id)
        run_id = self.engine.start_run(
            version.id,
            run_input=self._entity_context(entity),
            entity_id=entity.id,
            trigger=TriggerMetadata(
                type=TriggerType.JOURNEY, ux_node_id=ux_node_id, canvas_id=canvas.id
            ),
        )
        logger.info(f"Started system path {version.id} for entity {entity.id} at {ux_node_id}")
        return run_id

    # ========== Stitching ==========

    def on_system_path_complete(self, run: Run) -> str | None:
        """
        Advance the run's entity one step along the spine.

        Invoked once per completed run. Runs without a UX node or entity,
        and runs superseded by a newer one, are ignored. Returns the id of
        the next system-path run, if one was started.
        """
        ux_node_id = run.trigger.ux_node_id
        if not ux_node_id or not run.entity_id:
            return None
        if run.superseded_by:
            logger.info(f"Run {run.id} was superseded by {run.superseded_by}; not stitching")
            return None

        entity = self.entities.get_entity(run.entity_id)
        canvas = self._canvas_for(entity, run.trigger.canvas_id)
        self._require_ux_node(canvas, ux_node_id)

        edges = canvas.journey_edges_from(ux_node_id)
        if len(edges) > 1:
            raise JourneyConfigurationError(
                f"UX node '{ux_node_id}' has {len(edges)} outgoing journey edges; expected one"
            )
        edge = edges[0] if edges else None
        if edge is not None:
            self._require_ux_node(canvas, edge.target)

        def stitch(conn: sqlite3.Connection) -> str:
            if not self.runs.mark_stitched(conn, run.id):
                return "already_stitched"
            if edge is None:
                self._append(
                    conn,
                    entity.id,
                    JourneyEventType.NODE_COMPLETE,
                    node_id=ux_node_id,
                    run_id=run.id,
                    metadata={"reason": "journey_end"},
                )
                return "journey_end"
            if not self.entities.move_entity(
                conn, entity.id, edge.target, expected_node_id=ux_node_id
            ):
                return "moved_elsewhere"
            self._append(
                conn, entity.id, JourneyEventType.NODE_DEPARTURE, node_id=ux_node_id, run_id=run.id
            )
            self._append(
                conn,
                entity.id,
                JourneyEventType.EDGE_TRAVERSAL,
                edge_id=edge.id,
                run_id=run.id,
                metadata={"from": ux_node_id, "to": edge.target},
            )
            self._append(
                conn, entity.id, JourneyEventType.NODE_ARRIVAL, node_id=edge.target, run_id=run.id
            )
            return "moved"

        outcome = self.db.run_in_transaction(stitch)
        if outcome == "journey_end":
            logger.info(f"Entity {entity.id} reached the end of its journey at {ux_node_id}")
            return None
        if outcome == "moved_elsewhere":
            logger.warning(
                f"Entity {entity.id} is no longer at {ux_node_id}; not stitching run {run.id}"
            )
            return None
        if outcome != "moved":
            return None

        logger.info(f"Entity {entity.id} moved {ux_node_id} -> {edge.target}")
        return self._start_system_path(entity, canvas, edge.target)

    def start_journey(self, entity_id: str, ux_node_id: str | None = None) -> str | None:
        """
        Place an entity on its canvas and start the system path there.

        Without ``ux_node_id`` the spine's single entry UX node is used.
        Returns the started run id, if any.
        """
        entity = self.entities.get_entity(entity_id)
        canvas = self._canvas_for(entity)

        if ux_node_id is None:
            entries = canvas.entry_ux_nodes()
            if len(entries) != 1:
                raise JourneyConfigurationError(
                    f"Canvas '{canvas.id}' has {len(entries)} entry UX nodes; specify one"
                )
            ux_node_id = entries[0]
        self._require_ux_node(canvas, ux_node_id)

        def place(conn: sqlite3.Connection) -> None:
            self.entities.move_entity(conn, entity_id, ux_node_id)
            self._append(
                conn,
                entity_id,
                JourneyEventType.NODE_ARRIVAL,
                node_id=ux_node_id,
                metadata={"reason": "journey_started", "from": entity.current_node_id},
            )

        self.db.run_in_transaction(place)
        logger.info(f"Entity {entity_id} started journey at {ux_node_id}")
        return self._start_system_path(entity, canvas, ux_node_id)

    def manual_move(self, entity_id: str, node_id: str, reason: str | None = None) -> Entity:
        """Operator override of an entity's position (still UX nodes only)."""
        entity = self.entities.get_entity(entity_id)
        canvas = self._canvas_for(entity)
        self._require_ux_node(canvas, node_id)

        def move(conn: sqlite3.Connection) -> None:
            self.entities.move_entity(conn, entity_id, node_id)
            self._append(
                conn,
                entity_id,
                JourneyEventType.MANUAL_MOVE,
                node_id=node_id,
                metadata={"from": entity.current_node_id, "to": node_id, "reason": reason},
            )

        self.db.run_in_transaction(move)
        logger.info(f"Entity {entity_id} manually moved {entity.current_node_id} -> {node_id}")
        return self.entities.get_entity(entity_id)

    def on_node_finished(self, run_id: str, node_key: str, node: Node, succeeded: bool) -> None:
        """Record failures in the entity's journey and apply worker ``entity_movement``.

        A movement pointing at anything but a UX node is logged and skipped;
        it never corrupts the entity's position.
        """
        movement = node.config.entity_movement if isinstance(node, WorkerNode) else None
        target = None
        if movement is not None:
            target = movement.on_success if succeeded else movement.on_failure
        if succeeded and target is None:
            return

        run = self.runs.get_run(run_id, include_nodes=False)
        if not run.entity_id:
            return
        if not succeeded:
            self._record_failure(run, node_key)
        if target is None:
            return
        entity = self.entities.get_entity(run.entity_id)
        try:
            canvas = self._canvas_for(entity, run.trigger.canvas_id)
            self._require_ux_node(canvas, target.target_section_id)
        except (JourneyConfigurationError, NotFoundError) as e:
            logger.warning(f"Skipping entity movement from worker {node.id}: {e}")
            return

        def move(conn: sqlite3.Connection) -> None:
            previous = entity.current_node_id
            self.entities.move_entity(conn, entity.id, target.target_section_id)
            if target.set_entity_type is not None:
                self.entities.set_entity_type(conn, entity.id, target.set_entity_type)
            if previous and previous != target.target_section_id:
                self._append(
                    conn, entity.id, JourneyEventType.NODE_DEPARTURE, node_id=previous, run_id=run_id
                )
            self._append(
                conn,
                entity.id,
                JourneyEventType.NODE_ARRIVAL,
                node_id=target.target_section_id,
                run_id=run_id,
                metadata={
                    "complete_as": target.complete_as,
                    "worker_node_id": node.id,
                    "from": previous,
                },
            )

        self.db.run_in_transaction(move)
        logger.info(
            f"Worker {node.id} moved entity {entity.id} to {target.target_section_id} "
            f"({target.complete_as})"
        )

    def _record_failure(self, run: Run, node_key: str) -> None:
        state = self.runs.load_node_state(run.id, node_key)
        self.db.run_in_transaction(
            lambda conn: self._append(
                conn,
                run.entity_id,
                JourneyEventType.NODE_FAILURE,
                node_id=node_key,
                run_id=run.id,
                metadata={"error": state.error, "ux_node_id": run.trigger.ux_node_id},
            )
        )
        logger.info(f"Recorded failure of {node_key} in run {run.id} for entity {run.entity_id}")

    # ========== Queries ==========

    def get_journey(self, entity_id: str) -> list[JourneyEvent]:
        self.entities.get_entity(entity_id)
        return self.entities.get_events(entity_id)

    def get_timeline(self, run_id: str) -> list[JourneyEvent]:
        """Journey events recorded by one run, oldest first."""
        self.runs.get_version_id(run_id)
        return self.entities.get_events_for_run(run_id)

    def entities_at(self, canvas_id: str, node_id: str) -> list[Entity]:
        return self.entities.entities_at_node(canvas_id, node_id)
