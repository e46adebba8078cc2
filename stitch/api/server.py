"""FastAPI surface for the Stitch engine.

This module provides:
- Run endpoints: start, status, listing and timelines, worker callbacks,
  retry, UX completion
- Graph publishing and version lookup
- Canvas, entity and journey endpoints

Architecture Notes:
- The engine is stateless; every request loads state from the database, so
  any number of server processes may share one database file.
- Engine calls are synchronous (SQLite + httpx) and run in the threadpool.
- A TimeoutSweeper runs alongside the app while it is served, expiring
  overdue UX waits.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from stitch import __version__
from stitch.core.config import EngineSettings
from stitch.core.engine import GraphEngine
from stitch.core.errors import (
    GraphValidationError,
    InvalidStateTransition,
    JourneyConfigurationError,
    NotFoundError,
)
from stitch.core.graph_schema import EntityType, JourneyCanvas, WorkflowGraph
from stitch.core.journey import JourneyStitcher
from stitch.core.models import CallbackOutcome, Entity, TriggerMetadata
from stitch.core.runtime import Runtime, build_runtime
from stitch.core.worker import TimeoutSweeper

logger = logging.getLogger(__name__)

# Global runtime - initialized lazily
_runtime: Runtime | None = None


def get_runtime() -> Runtime:
    """Get or create the engine runtime."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(EngineSettings.load())
    return _runtime


def get_engine() -> GraphEngine:
    return get_runtime().engine


def get_stitcher() -> JourneyStitcher:
    return get_runtime().stitcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    sweeper = TimeoutSweeper(runtime.engine, poll_interval=runtime.settings.sweep_interval)
    task = asyncio.create_task(sweeper.start_daemon())
    try:
        yield
    finally:
        sweeper.stop()
        task.cancel()
        runtime.engine.close()


app = FastAPI(
    title="Stitch Engine API",
    description="Durable workflow graphs and journey stitching",
    version=__version__,
    lifespan=lifespan,
)


# ========== Error Mapping ==========


@app.exception_handler(NotFoundError)
async def handle_not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateTransition)
async def handle_invalid_transition(request: Request, exc: InvalidStateTransition):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(GraphValidationError)
async def handle_graph_validation(request: Request, exc: GraphValidationError):
    return JSONResponse(status_code=400, content={"detail": {"validation_errors": exc.errors}})


@app.exception_handler(JourneyConfigurationError)
async def handle_journey_config(request: Request, exc: JourneyConfigurationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ========== API Models ==========


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunRequest(_CamelModel):
    """Request to start a run.

    ``execution_graph_ref`` is a version id (``graph@vN``) or a graph id,
    which resolves to its latest published version.
    """

    execution_graph_ref: str
    entity_id: str | None = None
    input: Any = None
    trigger: TriggerMetadata = Field(default_factory=TriggerMetadata)


class CallbackRequest(BaseModel):
    """Outcome reported by an async webhook worker"""

    status: Literal["completed", "failed"]
    output: Any = None
    error: str | None = None


class CompleteRequest(BaseModel):
    """User-provided output for a waiting UX node"""

    output: Any = None


class EntityCreateRequest(_CamelModel):
    id: str
    name: str
    email: str | None = None
    entity_type: EntityType = EntityType.LEAD
    canvas_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StartJourneyRequest(_CamelModel):
    ux_node_id: str | None = None


class MoveRequest(_CamelModel):
    node_id: str
    reason: str | None = None


def _resolve_version(engine: GraphEngine, ref: str) -> str:
    try:
        return engine.graphs.get_version(ref).id
    except NotFoundError:
        return engine.graphs.latest_version(ref).id


# ========== Run Endpoints ==========


@app.post("/run")
async def start_run(request: RunRequest) -> dict[str, Any]:
    """Start a run of a published graph version."""
    engine = get_engine()

    def start() -> tuple[str, str]:
        version_id = _resolve_version(engine, request.execution_graph_ref)
        run_id = engine.start_run(
            version_id,
            run_input=request.input,
            entity_id=request.entity_id,
            trigger=request.trigger,
        )
        return run_id, engine.get_status(run_id).status.value

    run_id, status = await run_in_threadpool(start)
    return {"runId": run_id, "status": status}


@app.get("/status/{run_id}")
async def get_status(run_id: str) -> dict[str, Any]:
    """Derived run status with per-node detail."""
    report = await run_in_threadpool(get_engine().get_status, run_id)
    return report.model_dump(by_alias=True, mode="json", exclude_none=True)


@app.get("/runs")
async def list_runs(
    entity_id: str | None = Query(None, alias="entityId"),
    limit: int = Query(20, ge=1, le=200),
) -> list[dict[str, Any]]:
    """Most recent runs first, optionally only those acting for one entity."""
    runs = await run_in_threadpool(get_engine().runs.list_runs, entity_id, limit)
    return [r.model_dump(mode="json", exclude={"nodes", "input"}) for r in runs]


@app.get("/runs/{run_id}/timeline")
async def get_timeline(run_id: str) -> list[dict[str, Any]]:
    """Journey events (movements and failures) recorded by one run."""
    events = await run_in_threadpool(get_stitcher().get_timeline, run_id)
    return [e.model_dump(mode="json") for e in events]


@app.post("/callback/{run_id}/{node_id}")
async def worker_callback(run_id: str, node_id: str, request: CallbackRequest) -> dict[str, Any]:
    """Apply an async worker's outcome. Repeating the same outcome is a no-op."""
    outcome = CallbackOutcome(status=request.status, output=request.output, error=request.error)
    applied = await run_in_threadpool(get_engine().on_callback, run_id, node_id, outcome)
    return {"success": True, "applied": applied}


@app.post("/retry/{run_id}/{node_id}")
async def retry_node(run_id: str, node_id: str) -> dict[str, Any]:
    """Re-dispatch a failed node with its stored input."""
    status = await run_in_threadpool(get_engine().retry, run_id, node_id)
    return {"success": True, "status": status.value}


@app.post("/complete/{run_id}/{node_id}")
async def complete_node(run_id: str, node_id: str, request: CompleteRequest) -> dict[str, Any]:
    """Complete a UX node that is waiting for user input."""
    await run_in_threadpool(get_engine().complete, run_id, node_id, request.output)
    return {"success": True}


# ========== Graph Endpoints ==========


@app.post("/graphs", status_code=201)
async def publish_graph(graph: WorkflowGraph) -> dict[str, Any]:
    """Compile and publish a new immutable version of a graph."""
    version = await run_in_threadpool(get_engine().graphs.publish, graph)
    return version.model_dump(mode="json")


@app.get("/graphs/{graph_id}/versions")
async def list_versions(graph_id: str) -> list[dict[str, Any]]:
    versions = await run_in_threadpool(get_engine().graphs.list_versions, graph_id)
    if not versions:
        raise HTTPException(status_code=404, detail=f"Graph '{graph_id}' has no versions")
    return [v.model_dump(mode="json") for v in versions]


@app.get("/versions/{version_id}")
async def get_version(version_id: str) -> dict[str, Any]:
    """Version metadata together with the published definition."""
    graphs = get_engine().graphs

    def load() -> dict[str, Any]:
        version = graphs.get_version(version_id)
        definition = graphs.get_definition(version_id)
        return {**version.model_dump(mode="json"), "definition": definition.model_dump(mode="json")}

    return await run_in_threadpool(load)


# ========== Canvas & Journey Endpoints ==========


@app.post("/canvases", status_code=201)
async def save_canvas(canvas: JourneyCanvas) -> dict[str, Any]:
    saved = await run_in_threadpool(get_engine().graphs.save_canvas, canvas)
    return saved.model_dump(mode="json")


@app.get("/canvases/{canvas_id}")
async def get_canvas(canvas_id: str) -> dict[str, Any]:
    canvas = await run_in_threadpool(get_engine().graphs.get_canvas, canvas_id)
    return canvas.model_dump(mode="json")


@app.post("/entities", status_code=201)
async def create_entity(request: EntityCreateRequest) -> dict[str, Any]:
    entity = Entity(**request.model_dump())
    try:
        created = await run_in_threadpool(get_engine().entities.create_entity, entity)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail=f"Entity '{request.id}' already exists")
    return created.model_dump(mode="json")


@app.get("/entities/{entity_id}")
async def get_entity(entity_id: str) -> dict[str, Any]:
    entity = await run_in_threadpool(get_engine().entities.get_entity, entity_id)
    return entity.model_dump(mode="json")


@app.post("/entities/{entity_id}/journey")
async def start_journey(entity_id: str, request: StartJourneyRequest) -> dict[str, Any]:
    """Place an entity on its canvas and start the first system path."""
    run_id = await run_in_threadpool(get_stitcher().start_journey, entity_id, request.ux_node_id)
    return {"success": True, "runId": run_id}


@app.get("/entities/{entity_id}/journey")
async def get_journey(entity_id: str) -> list[dict[str, Any]]:
    events = await run_in_threadpool(get_stitcher().get_journey, entity_id)
    return [e.model_dump(mode="json") for e in events]


@app.post("/entities/{entity_id}/move")
async def move_entity(entity_id: str, request: MoveRequest) -> dict[str, Any]:
    entity = await run_in_threadpool(
        get_stitcher().manual_move, entity_id, request.node_id, request.reason
    )
    return entity.model_dump(mode="json")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "version": __version__}
