"""Core modules for the Stitch engine."""

from stitch.core.compiler import ExecutionGraph, compile_graph
from stitch.core.engine import GraphEngine
from stitch.core.errors import (
    ExecutionError,
    GraphValidationError,
    InvalidStateTransition,
    JourneyConfigurationError,
    NotFoundError,
    StitchError,
)
from stitch.core.graph_schema import JourneyCanvas, NodeStatus, NodeType, WorkflowGraph
from stitch.core.journey import JourneyStitcher
from stitch.core.state import Database

__all__ = [
    "Database",
    "ExecutionError",
    "ExecutionGraph",
    "GraphEngine",
    "GraphValidationError",
    "InvalidStateTransition",
    "JourneyCanvas",
    "JourneyConfigurationError",
    "JourneyStitcher",
    "NodeStatus",
    "NodeType",
    "NotFoundError",
    "StitchError",
    "WorkflowGraph",
    "compile_graph",
]
