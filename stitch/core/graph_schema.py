"""Graph schema definitions using Pydantic models.

Workflows are directed graphs of typed nodes (WORKER, UX, SPLITTER,
COLLECTOR, SECTION) joined by edges that optionally map fields from the
source's output onto the target's input. Each node kind carries only its
own config; the ``type`` field discriminates between them.

A JourneyCanvas is the coarser graph an entity moves along: UX nodes joined
by journey edges, each UX node optionally owning a system-path workflow.
"""

import re
from enum import Enum
from typing import Annotated, Any, Literal

import networkx as nx
from pydantic import BaseModel, Field, field_validator, model_validator

from stitch.core.errors import InvalidStateTransition

NODE_ID_PATTERN = r"^[A-Za-z0-9_\-]+$"


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    WORKER = "worker"  # External side-effecting call (integrated or webhook)
    UX = "ux"  # Waits for an explicit external completion
    SPLITTER = "splitter"  # Fans out one branch instance per array element
    COLLECTOR = "collector"  # Fans in branch outputs into a single array
    SECTION = "section"  # Structural marker, completes immediately


class NodeStatus(str, Enum):
    """Execution status for nodes"""

    PENDING = "pending"  # Waiting on predecessors
    RUNNING = "running"  # Dispatched (or awaiting a worker callback)
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_FOR_USER = "waiting_for_user"  # UX node parked until /complete


TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED})

VALID_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.WAITING_FOR_USER}
    ),
    NodeStatus.WAITING_FOR_USER: frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED}),
    NodeStatus.FAILED: frozenset({NodeStatus.PENDING}),
    NodeStatus.COMPLETED: frozenset(),
}


def check_transition(current: NodeStatus, new: NodeStatus) -> None:
    """Raise InvalidStateTransition unless ``current -> new`` is allowed."""
    if new not in VALID_TRANSITIONS[NodeStatus(current)]:
        raise InvalidStateTransition(
            f"Invalid status transition: {NodeStatus(current).value} -> {NodeStatus(new).value}",
            current=NodeStatus(current).value,
            requested=NodeStatus(new).value,
        )


class EdgeKind(str, Enum):
    """Edge flavours: data edges drive execution, journey edges form the UX spine."""

    DATA = "data"
    JOURNEY = "journey"


class EntityType(str, Enum):
    LEAD = "lead"
    CUSTOMER = "customer"
    CHURNED = "churned"


class Edge(BaseModel):
    """Directed edge between nodes with optional field mapping"""

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    mapping: dict[str, str] = Field(default_factory=dict)  # target field -> source path
    kind: EdgeKind = EdgeKind.DATA


# --- Node configs ---


class MovementTarget(BaseModel):
    """Where a worker moves its run's entity once it finishes."""

    target_section_id: str  # UX node on the entity's canvas
    complete_as: Literal["success", "failure", "neutral"] = "neutral"
    set_entity_type: EntityType | None = None


class EntityMovement(BaseModel):
    on_success: MovementTarget | None = None
    on_failure: MovementTarget | None = None


class WorkerConfig(BaseModel):
    """Configuration for WORKER nodes.

    ``worker_type`` names an integrated worker from the registry; otherwise
    ``webhook_url`` is POSTed. Integrated workers always complete
    synchronously. Webhooks complete from their response body in ``sync``
    mode, or later through the callback endpoint in ``async`` mode.
    """

    worker_type: str | None = None
    webhook_url: str | None = None
    mode: Literal["sync", "async"] = "async"
    timeout: float | None = Field(default=None, gt=0)  # Overrides the engine default
    params: dict[str, Any] = Field(default_factory=dict)  # Passed through to the worker
    entity_movement: EntityMovement | None = None

    @model_validator(mode="after")
    def check_target(self) -> "WorkerConfig":
        if not self.worker_type and not self.webhook_url:
            raise ValueError("Worker config requires 'worker_type' or 'webhook_url'")
        return self


class UXConfig(BaseModel):
    """Configuration for UX nodes - parked until an explicit completion"""

    prompt: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    on_timeout: Literal["fail", "complete"] = "fail"
    default_output: dict[str, Any] = Field(default_factory=dict)


class SplitterConfig(BaseModel):
    array_path: str = "items"  # Dotted path into the splitter's input
    item_field: str = "item"  # Field each branch instance receives its element under

    @field_validator("array_path", "item_field")
    @classmethod
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError("Splitter paths must not be empty")
        return v


class CollectorConfig(BaseModel):
    expected_count: int | None = Field(default=None, ge=1)
    output_field: str = "items"


# --- Nodes ---


class _NodeBase(BaseModel):
    id: str
    label: str | None = None
    description: str | None = None
    ui_metadata: dict | None = None  # Canvas position, styling

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        """Node IDs are letters, digits, '_' and '-'.

        ':' is reserved for branch instance keys (``node_id:index``).
        """
        if not re.match(NODE_ID_PATTERN, v):
            raise ValueError(f"Invalid node ID: '{v}'. Use letters, digits, '_' or '-'.")
        return v


class WorkerNode(_NodeBase):
    type: Literal["worker"] = "worker"
    config: WorkerConfig


class UXNode(_NodeBase):
    type: Literal["ux"] = "ux"
    config: UXConfig = Field(default_factory=UXConfig)


class SplitterNode(_NodeBase):
    type: Literal["splitter"] = "splitter"
    config: SplitterConfig = Field(default_factory=SplitterConfig)


class CollectorNode(_NodeBase):
    type: Literal["collector"] = "collector"
    config: CollectorConfig = Field(default_factory=CollectorConfig)


class SectionNode(_NodeBase):
    type: Literal["section"] = "section"


Node = Annotated[
    WorkerNode | UXNode | SplitterNode | CollectorNode | SectionNode,
    Field(discriminator="type"),
]


class WorkflowGraph(BaseModel):
    """Editable workflow definition (one system path)"""

    id: str
    name: str
    description: str | None = None

    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)

    def node_map(self) -> dict[str, Node]:
        return {node.id: node for node in self.nodes}

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    def analyze_parallelism(self) -> list[list[str]]:
        """Find nodes that can execute in parallel (topological levels)"""
        G = self._to_networkx()
        try:
            return [sorted(level) for level in nx.topological_generations(G)]
        except nx.NetworkXError:
            return []  # Has cycles


class JourneyCanvas(BaseModel):
    """The UX spine an entity travels along.

    ``system_paths`` maps a UX node id to the workflow graph id executed
    while an entity sits on that node.
    """

    id: str
    name: str
    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)
    system_paths: dict[str, str] = Field(default_factory=dict)

    def node_map(self) -> dict[str, Node]:
        return {node.id: node for node in self.nodes}

    def is_ux_node(self, node_id: str) -> bool:
        node = self.node_map().get(node_id)
        return isinstance(node, UXNode)

    def journey_edges_from(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.kind == EdgeKind.JOURNEY and e.source == node_id]

    def entry_ux_nodes(self) -> list[str]:
        """UX nodes with no incoming journey edge, in declaration order."""
        targets = {e.target for e in self.edges if e.kind == EdgeKind.JOURNEY}
        return [n.id for n in self.nodes if isinstance(n, UXNode) and n.id not in targets]
