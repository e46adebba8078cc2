"""Runtime data models: runs, node states, entities and journey events.

Uses Pydantic for schema-enforced structures shared by the store, the
engine and the HTTP layer.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stitch.core.graph_schema import EntityType, NodeStatus


class RunStatus(str, Enum):
    """Overall status of a run, derived from its node states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    JOURNEY = "journey"


class TriggerMetadata(BaseModel):
    """What started a run. ``ux_node_id`` marks a system path under a UX node."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: TriggerType = TriggerType.MANUAL
    ux_node_id: str | None = None
    canvas_id: str | None = None
    source: dict[str, Any] = Field(default_factory=dict)


class NodeState(BaseModel):
    """Per-node execution record within a run."""

    run_id: str
    node_key: str  # node id, or node_id:index for branch instances
    node_id: str
    branch_index: int | None = None
    status: NodeStatus = NodeStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None
    required_count: int = 0
    arrived_count: int = 0
    attempts: int = 0
    deadline: datetime | None = None
    version: int = 0
    updated_at: datetime | None = None


class Arrival(BaseModel):
    """One predecessor instance delivering its mapped fields to a node."""

    arrival_key: str
    branch_index: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class Run(BaseModel):
    """One execution of one graph version, optionally bound to an entity."""

    id: str
    version_id: str
    entity_id: str | None = None
    trigger: TriggerMetadata = Field(default_factory=TriggerMetadata)
    input: dict[str, Any] = Field(default_factory=dict)
    nodes: dict[str, NodeState] = Field(default_factory=dict)
    created_at: datetime | None = None
    completed_at: datetime | None = None
    superseded_by: str | None = None


class CallbackOutcome(BaseModel):
    """Completion report delivered by an external worker."""

    status: Literal["completed", "failed"]
    output: Any = None
    error: str | None = None

    @property
    def node_status(self) -> NodeStatus:
        return NodeStatus.COMPLETED if self.status == "completed" else NodeStatus.FAILED

    @property
    def failure_message(self) -> str:
        return self.error or "Worker reported failure"


class NodeReport(BaseModel):
    status: NodeStatus
    output: Any = None
    error: str | None = None


class RunReport(BaseModel):
    """Status view of a run as returned by ``GET /status``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    run_id: str
    status: RunStatus
    nodes: dict[str, NodeReport]
    final_outputs: dict[str, Any] | None = None


class GraphVersion(BaseModel):
    """A published, immutable snapshot of a workflow graph."""

    id: str
    graph_id: str
    version: int
    name: str
    created_at: datetime | None = None


# --- Journey models ---


class JourneyEventType(str, Enum):
    NODE_ARRIVAL = "node_arrival"
    NODE_DEPARTURE = "node_departure"
    EDGE_TRAVERSAL = "edge_traversal"
    NODE_COMPLETE = "node_complete"
    NODE_FAILURE = "node_failure"
    MANUAL_MOVE = "manual_move"


class Entity(BaseModel):
    """A tracked customer/lead whose position lives on a canvas UX node."""

    id: str
    name: str
    email: str | None = None
    entity_type: EntityType = EntityType.LEAD
    canvas_id: str | None = None
    current_node_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class JourneyEvent(BaseModel):
    """Immutable record of an entity movement."""

    id: int | None = None
    entity_id: str
    event_type: JourneyEventType
    node_id: str | None = None
    edge_id: str | None = None
    run_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None
