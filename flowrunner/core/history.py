"""Run history stored in SQLite.

Keeps the summaries of the most recent runs (``history_size``, default 50);
older entries are pruned on every insert.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from flowrunner.core.results import RunResult
from flowrunner.core.utils import json_safe

logger = logging.getLogger(__name__)


class HistoryEntry(BaseModel):
    """One stored run summary"""

    run_id: str
    flow_name: str | None = None
    status: str
    started_at: datetime
    finished_at: datetime
    ended_early: bool = False
    executed: int = 0
    failed_node: str | None = None
    error: str | None = None
    outputs: dict[str, Any] = {}


class RunHistory:
    """Bounded store of recent run summaries."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS runs (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL UNIQUE,
        flow_name TEXT,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT NOT NULL,
        ended_early INTEGER NOT NULL DEFAULT 0,
        executed INTEGER NOT NULL DEFAULT 0,
        failed_node TEXT,
        error TEXT,
        outputs TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at);
    """

    def __init__(self, db_path: str | Path, max_runs: int = 50):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_runs = max_runs
        self._init_db()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections; commits on success."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def record(self, result: RunResult, flow_name: str | None = None) -> None:
        """Store a run summary and prune entries beyond ``max_runs``."""
        summary = result.summary()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO runs
                    (run_id, flow_name, status, started_at, finished_at, ended_early,
                     executed, failed_node, error, outputs)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    summary["run_id"],
                    flow_name,
                    summary["status"],
                    summary["started_at"],
                    summary["finished_at"],
                    int(summary["ended_early"]),
                    summary["executed"],
                    summary["failed_node"],
                    summary["error"],
                    json.dumps(json_safe(result.outputs)),
                ),
            )
            if self.max_runs > 0:
                conn.execute(
                    """
                    DELETE FROM runs WHERE seq NOT IN (
                        SELECT seq FROM runs ORDER BY seq DESC LIMIT ?
                    )
                    """,
                    (self.max_runs,),
                )
            else:
                conn.execute("DELETE FROM runs")
        logger.debug(f"Recorded run {result.run_id} in history")

    def _entry(self, row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            run_id=row["run_id"],
            flow_name=row["flow_name"],
            status=row["status"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]),
            ended_early=bool(row["ended_early"]),
            executed=row["executed"],
            failed_node=row["failed_node"],
            error=row["error"],
            outputs=json.loads(row["outputs"]) if row["outputs"] else {},
        )

    def recent(self, limit: int | None = None) -> list[HistoryEntry]:
        """Most recent runs first."""
        query = "SELECT * FROM runs ORDER BY seq DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._entry(row) for row in rows]

    def get(self, run_id: str) -> HistoryEntry | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        return self._entry(row) if row else None

    def clear(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM runs")
            return cursor.rowcount
