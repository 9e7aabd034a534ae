from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from relay.errors import StateStoreError
from relay.state.base import (
    PIPELINES,
    PR_TRACKING,
    PROCESSED_CACHE,
    PROCESSED_COMMENTS,
    REVIEW_CYCLES,
    Record,
    StateStore,
    Updater,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS pipelines (
  task_id TEXT PRIMARY KEY,
  task_name TEXT NOT NULL,
  current_stage TEXT NOT NULL,
  status TEXT NOT NULL CHECK(status IN ('pending', 'in_progress', 'completed', 'failed', 'skipped')),
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  completed_at TEXT,
  failed_at TEXT,
  total_duration_ms INTEGER,
  metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_pipelines_status ON pipelines(status);

CREATE TABLE IF NOT EXISTS stages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  pipeline_task_id TEXT NOT NULL,
  position INTEGER NOT NULL,
  name TEXT NOT NULL,
  stage TEXT NOT NULL,
  status TEXT NOT NULL CHECK(status IN ('pending', 'in_progress', 'completed', 'failed', 'skipped')),
  started_at TEXT NOT NULL,
  completed_at TEXT,
  duration_ms INTEGER,
  error TEXT,
  details TEXT NOT NULL DEFAULT '{}',
  UNIQUE (pipeline_task_id, stage),
  FOREIGN KEY (pipeline_task_id) REFERENCES pipelines(task_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_stages_pipeline_id ON stages(pipeline_task_id);

CREATE TABLE IF NOT EXISTS pipeline_errors (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  pipeline_task_id TEXT NOT NULL,
  stage TEXT NOT NULL,
  error TEXT NOT NULL,
  timestamp TEXT NOT NULL,
  FOREIGN KEY (pipeline_task_id) REFERENCES pipelines(task_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_errors_pipeline_id ON pipeline_errors(pipeline_task_id);

CREATE TABLE IF NOT EXISTS review_cycles (
  task_id TEXT PRIMARY KEY,
  task_name TEXT NOT NULL,
  branch TEXT NOT NULL,
  pr_number INTEGER NOT NULL,
  pr_url TEXT NOT NULL,
  started_at TEXT NOT NULL,
  owner TEXT,
  repo TEXT,
  stage TEXT NOT NULL CHECK(stage IN ('waiting_for_codex_review', 'waiting_for_claude_fixes')),
  iteration INTEGER NOT NULL DEFAULT 0,
  max_iterations INTEGER NOT NULL DEFAULT 3,
  last_commit_sha TEXT,
  last_checked_at TEXT
);

CREATE TABLE IF NOT EXISTS pr_tracking (
  task_id TEXT PRIMARY KEY,
  task_name TEXT NOT NULL,
  branch TEXT NOT NULL,
  started_at TEXT NOT NULL,
  owner TEXT,
  repo TEXT,
  last_checked_at TEXT
);

CREATE TABLE IF NOT EXISTS processed_tasks (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  description TEXT,
  detected_at TEXT NOT NULL,
  expires_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_processed_tasks_expires ON processed_tasks(expires_at);

CREATE TABLE IF NOT EXISTS processed_comments (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  description TEXT,
  detected_at TEXT NOT NULL,
  expires_at TEXT NOT NULL
);
"""

# collection -> (table, key column, columns)
_FLAT_TABLES: dict[str, tuple[str, str, tuple[str, ...]]] = {
    REVIEW_CYCLES: (
        "review_cycles",
        "task_id",
        (
            "task_id",
            "task_name",
            "branch",
            "pr_number",
            "pr_url",
            "started_at",
            "owner",
            "repo",
            "stage",
            "iteration",
            "max_iterations",
            "last_commit_sha",
            "last_checked_at",
        ),
    ),
    PR_TRACKING: (
        "pr_tracking",
        "task_id",
        ("task_id", "task_name", "branch", "started_at", "owner", "repo", "last_checked_at"),
    ),
    PROCESSED_CACHE: (
        "processed_tasks",
        "id",
        ("id", "title", "description", "detected_at", "expires_at"),
    ),
    PROCESSED_COMMENTS: (
        "processed_comments",
        "id",
        ("id", "title", "description", "detected_at", "expires_at"),
    ),
}

_PIPELINE_COLUMNS = (
    "task_id",
    "task_name",
    "current_stage",
    "status",
    "created_at",
    "updated_at",
    "completed_at",
    "failed_at",
    "total_duration_ms",
)


class SqliteStateStore(StateStore):
    """Relational backend. Pipeline stages and errors live in child tables."""

    def __init__(self, database: Path) -> None:
        self.database = database
        if str(database) != ":memory:":
            database.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(database), isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise StateStoreError(f"Cannot open state database {database}: {exc}") from exc

    def close(self) -> None:
        self._conn.close()

    def _read_pipeline(self, task_id: str) -> Record | None:
        row = self._conn.execute(
            "SELECT * FROM pipelines WHERE task_id = ?", (task_id,)
        ).fetchone()
        if row is None:
            return None
        record: Record = {column: row[column] for column in _PIPELINE_COLUMNS}
        record["metadata"] = json.loads(row["metadata"] or "{}")
        record["stages"] = [
            {
                "name": stage_row["name"],
                "stage": stage_row["stage"],
                "status": stage_row["status"],
                "started_at": stage_row["started_at"],
                "completed_at": stage_row["completed_at"],
                "duration_ms": stage_row["duration_ms"],
                "error": stage_row["error"],
                "details": json.loads(stage_row["details"] or "{}"),
            }
            for stage_row in self._conn.execute(
                "SELECT * FROM stages WHERE pipeline_task_id = ? ORDER BY position",
                (task_id,),
            )
        ]
        record["errors"] = [
            {
                "stage": error_row["stage"],
                "error": error_row["error"],
                "timestamp": error_row["timestamp"],
            }
            for error_row in self._conn.execute(
                "SELECT * FROM pipeline_errors WHERE pipeline_task_id = ? ORDER BY id",
                (task_id,),
            )
        ]
        return record

    def _write_pipeline(self, task_id: str, record: Record) -> None:
        values = [record.get(column) for column in _PIPELINE_COLUMNS]
        values[0] = task_id
        assignments = ", ".join(
            f"{column} = excluded.{column}" for column in (*_PIPELINE_COLUMNS[1:], "metadata")
        )
        self._conn.execute(
            f"INSERT INTO pipelines ({', '.join(_PIPELINE_COLUMNS)}, metadata) "
            f"VALUES ({', '.join('?' for _ in range(len(_PIPELINE_COLUMNS) + 1))}) "
            f"ON CONFLICT(task_id) DO UPDATE SET {assignments}",
            (*values, json.dumps(record.get("metadata") or {}, ensure_ascii=False)),
        )
        self._conn.execute("DELETE FROM stages WHERE pipeline_task_id = ?", (task_id,))
        for position, stage in enumerate(record.get("stages") or []):
            self._conn.execute(
                "INSERT INTO stages (pipeline_task_id, position, name, stage, status, "
                "started_at, completed_at, duration_ms, error, details) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task_id,
                    position,
                    stage.get("name") or stage["stage"],
                    stage["stage"],
                    stage["status"],
                    stage["started_at"],
                    stage.get("completed_at"),
                    stage.get("duration_ms"),
                    stage.get("error"),
                    json.dumps(stage.get("details") or {}, ensure_ascii=False),
                ),
            )
        self._conn.execute("DELETE FROM pipeline_errors WHERE pipeline_task_id = ?", (task_id,))
        for error in record.get("errors") or []:
            self._conn.execute(
                "INSERT INTO pipeline_errors (pipeline_task_id, stage, error, timestamp) "
                "VALUES (?, ?, ?, ?)",
                (task_id, error["stage"], error["error"], error["timestamp"]),
            )

    def _read_flat(self, collection: str, key: str) -> Record | None:
        table, key_column, columns = _FLAT_TABLES[collection]
        row = self._conn.execute(
            f"SELECT * FROM {table} WHERE {key_column} = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return {column: row[column] for column in columns}

    def _write_flat(self, collection: str, key: str, record: Record) -> None:
        table, key_column, columns = _FLAT_TABLES[collection]
        values: list[Any] = [record.get(column) for column in columns]
        values[columns.index(key_column)] = key
        self._conn.execute(
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            values,
        )

    def _read(self, collection: str, key: str) -> Record | None:
        if collection == PIPELINES:
            return self._read_pipeline(key)
        return self._read_flat(collection, key)

    def _delete(self, collection: str, key: str) -> None:
        if collection == PIPELINES:
            self._conn.execute("DELETE FROM pipelines WHERE task_id = ?", (key,))
            return
        table, key_column, _columns = _FLAT_TABLES[collection]
        self._conn.execute(f"DELETE FROM {table} WHERE {key_column} = ?", (key,))

    def get(self, collection: str, key: str) -> Record | None:
        self._validate_collection(collection)
        try:
            return self._read(collection, key)
        except sqlite3.Error as exc:
            raise StateStoreError(f"Failed to read {collection}/{key}: {exc}") from exc

    def all(self, collection: str) -> dict[str, Record]:
        self._validate_collection(collection)
        if collection == PIPELINES:
            table, key_column = "pipelines", "task_id"
        else:
            table, key_column, _columns = _FLAT_TABLES[collection]
        try:
            keys = [
                row[0]
                for row in self._conn.execute(
                    f"SELECT {key_column} FROM {table} ORDER BY rowid"
                )
            ]
            records = {key: self._read(collection, key) for key in keys}
        except sqlite3.Error as exc:
            raise StateStoreError(f"Failed to list {collection}: {exc}") from exc
        return {key: record for key, record in records.items() if record is not None}

    def update(self, collection: str, key: str, updater: Updater) -> Record | None:
        self._validate_collection(collection)
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise StateStoreError(f"Cannot start transaction: {exc}") from exc
        try:
            current = self._read(collection, key)
            updated = updater(current)
            if updated is None:
                if current is not None:
                    self._delete(collection, key)
            elif collection == PIPELINES:
                self._write_pipeline(key, updated)
            else:
                self._write_flat(collection, key, updated)
        except sqlite3.Error as exc:
            self._conn.execute("ROLLBACK")
            raise StateStoreError(f"Failed to update {collection}/{key}: {exc}") from exc
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")
        return updated
