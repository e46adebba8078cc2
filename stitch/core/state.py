"""SQLite persistence for graph versions, runs, node states and journeys.

All execution state lives here so the process can restart at any point
without losing progress. Writers serialize through ``BEGIN IMMEDIATE``
transactions and guarded ``UPDATE ... WHERE status = ?`` statements;
readers use WAL snapshots and never block writers.

Runs and journey events are append-only: triggers reject deletes (and, for
journey events, updates).
"""

import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _json_loads(value: str | None, default: Any = None) -> Any:
    return json.loads(value) if value is not None else default


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class Database:
    """SQLite database holding all engine state."""

    SCHEMA = """
    -- Published graph versions (immutable snapshots)
    CREATE TABLE IF NOT EXISTS graph_versions (
        id TEXT PRIMARY KEY,
        graph_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        name TEXT NOT NULL,
        definition JSON NOT NULL,
        execution_graph JSON NOT NULL,
        created_at TIMESTAMP NOT NULL,
        UNIQUE(graph_id, version)
    );

    -- Journey canvases (UX spine + system path mapping)
    CREATE TABLE IF NOT EXISTS canvases (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        definition JSON NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        canvas_id TEXT REFERENCES canvases(id),
        name TEXT NOT NULL,
        email TEXT,
        entity_type TEXT NOT NULL DEFAULT 'lead',
        current_node_id TEXT,
        metadata JSON,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        version_id TEXT NOT NULL REFERENCES graph_versions(id),
        entity_id TEXT REFERENCES entities(id),
        trigger JSON NOT NULL,
        ux_node_id TEXT,
        input JSON,
        created_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        superseded_by TEXT,
        stitched INTEGER NOT NULL DEFAULT 0
    );

    -- One row per (run, node key); branch instances use node_id:index keys
    CREATE TABLE IF NOT EXISTS node_states (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES runs(id),
        node_key TEXT NOT NULL,
        node_id TEXT NOT NULL,
        branch_index INTEGER,
        status TEXT NOT NULL,
        input JSON,
        output JSON,
        error TEXT,
        required_count INTEGER NOT NULL DEFAULT 0,
        arrived_count INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 0,
        deadline TIMESTAMP,
        version INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP NOT NULL,
        UNIQUE(run_id, node_key)
    );

    -- Distinct predecessor instances that delivered to a node
    CREATE TABLE IF NOT EXISTS node_arrivals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES runs(id),
        node_key TEXT NOT NULL,
        arrival_key TEXT NOT NULL,
        branch_index INTEGER,
        payload JSON,
        UNIQUE(run_id, node_key, arrival_key)
    );

    CREATE TABLE IF NOT EXISTS journey_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_id TEXT NOT NULL REFERENCES entities(id),
        event_type TEXT NOT NULL,
        node_id TEXT,
        edge_id TEXT,
        run_id TEXT,
        metadata JSON,
        timestamp TIMESTAMP NOT NULL
    );

    CREATE TRIGGER IF NOT EXISTS journey_events_no_update
    BEFORE UPDATE ON journey_events
    BEGIN
        SELECT RAISE(ABORT, 'journey events are immutable');
    END;

    CREATE TRIGGER IF NOT EXISTS journey_events_no_delete
    BEFORE DELETE ON journey_events
    BEGIN
        SELECT RAISE(ABORT, 'journey events are immutable');
    END;

    CREATE TRIGGER IF NOT EXISTS runs_no_delete
    BEFORE DELETE ON runs
    BEGIN
        SELECT RAISE(ABORT, 'runs are never deleted');
    END;

    CREATE INDEX IF NOT EXISTS idx_graph_versions_graph ON graph_versions(graph_id, version);
    CREATE INDEX IF NOT EXISTS idx_node_states_status ON node_states(run_id, status);
    CREATE INDEX IF NOT EXISTS idx_node_states_waiting ON node_states(deadline)
        WHERE status = 'waiting_for_user';
    CREATE INDEX IF NOT EXISTS idx_runs_entity ON runs(entity_id, ux_node_id);
    CREATE INDEX IF NOT EXISTS idx_journey_events_entity ON journey_events(entity_id, id);
    CREATE INDEX IF NOT EXISTS idx_journey_events_run ON journey_events(run_id, id);
    CREATE INDEX IF NOT EXISTS idx_entities_position ON entities(canvas_id, current_node_id);
    """

    def __init__(self, db_path: str | Path = ".stitch/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            # WAL lets readers and writers operate simultaneously without blocking
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction that takes the database write lock up front.

        ``BEGIN IMMEDIATE`` serializes every read-decide-write step, so two
        concurrent callers can never both observe the same pre-state.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    def run_in_transaction(self, func, *args):
        """Execute ``func(conn, *args)`` within a write transaction."""
        with self.transaction() as conn:
            return func(conn, *args)
