"""Wiring: build a database, engine and journey stitcher from settings."""

from __future__ import annotations

from typing import NamedTuple

from stitch.core.config import EngineSettings
from stitch.core.engine import GraphEngine
from stitch.core.executors import NodeExecutor, WorkerRegistry
from stitch.core.journey import JourneyStitcher
from stitch.core.state import Database


class Runtime(NamedTuple):
    db: Database
    engine: GraphEngine
    stitcher: JourneyStitcher
    settings: EngineSettings


def build_runtime(
    settings: EngineSettings | None = None,
    registry: WorkerRegistry | None = None,
) -> Runtime:
    """Create the engine stack with journey stitching attached."""
    settings = settings or EngineSettings.load()
    db = Database(settings.db_path)
    executor = NodeExecutor(
        registry=registry,
        callback_url=settings.callback_url,
        worker_timeout=settings.worker_timeout,
    )
    engine = GraphEngine(db, executor=executor)
    stitcher = JourneyStitcher(engine).attach()
    return Runtime(db=db, engine=engine, stitcher=stitcher, settings=settings)
