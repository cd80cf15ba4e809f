"""SQLite persistence for workflows, instances and node executions."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

log = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    id TEXT PRIMARY KEY,
    name TEXT,
    meta TEXT,
    raw_json TEXT
);

CREATE TABLE IF NOT EXISTS workflow_instances (
    id TEXT PRIMARY KEY,
    workflow_id TEXT,
    current_node_instance_id TEXT,
    context TEXT,
    waiting_signal TEXT,
    expires_at DATETIME,
    created_at DATETIME,
    updated_at DATETIME
);

CREATE TABLE IF NOT EXISTS workflow_instance_nodes (
    id TEXT PRIMARY KEY,
    workflow_instance_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    context TEXT,
    waiting_signal TEXT,
    expires_at DATETIME,
    created_at DATETIME,
    updated_at DATETIME,
    FOREIGN KEY (workflow_instance_id) REFERENCES workflow_instances(id)
);
"""


class NotFoundError(LookupError):
    """Raised when a requested row does not exist."""


def format_time(moment: datetime) -> str:
    """Format a datetime as RFC 3339 with second precision."""
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.replace(microsecond=0).isoformat()
    if moment.utcoffset() == timezone.utc.utcoffset(None):
        text = text[: -len("+00:00")] + "Z"
    return text


def parse_time(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; raises ValueError if malformed."""
    if not text or "T" not in text:
        raise ValueError(f"not an RFC 3339 timestamp: {text!r}")
    normalised = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    moment = datetime.fromisoformat(normalised)
    if moment.tzinfo is None:
        raise ValueError(f"RFC 3339 timestamp lacks a zone offset: {text!r}")
    return moment


def _parse_optional(text: Optional[str]) -> Optional[datetime]:
    if text is None:
        return None
    try:
        return parse_time(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class WorkflowRecord:
    id: str
    name: str
    meta: str
    raw_json: str


@dataclass(frozen=True)
class InstanceRecord:
    id: str
    workflow_id: str
    current_node_instance_id: str
    context: str
    waiting_signal: str
    expires_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


@dataclass(frozen=True)
class NodeInstanceRecord:
    id: str
    workflow_instance_id: str
    node_id: str
    context: str
    waiting_signal: str
    expires_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class Store:
    """A thread-safe SQLite store."""

    def __init__(self, path: str) -> None:
        self._lock = threading.RLock()
        self._last_stamp = 0
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            path, check_same_thread=False
        )
        try:
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error:
            self._conn.close()
            self._conn = None
            raise
        log.info("Database initialized and tables ensured.")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                log.info("Database connection closed.")

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("store is closed")
        return self._conn

    def _unique_stamp(self) -> int:
        stamp = time.time_ns()
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return stamp

    def save_workflow(self, workflow_id: str, name: str, meta: str, raw_json: str) -> None:
        with self._lock, self._db as conn:
            conn.execute(
                "INSERT INTO workflows (id, name, meta, raw_json) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET name=excluded.name, meta=excluded.meta, "
                "raw_json=excluded.raw_json",
                (workflow_id, name, meta, raw_json),
            )

    def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        with self._lock:
            row = self._db.execute(
                "SELECT id, name, meta, raw_json FROM workflows WHERE id = ?",
                (workflow_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"workflow '{workflow_id}' not found")
        return WorkflowRecord(*(value or "" for value in row))

    def save_new_instance(
        self,
        instance_id: str,
        workflow_id: str,
        initial_node_id: str,
        context: str,
        waiting_signal: str,
        expires_at: Optional[datetime],
    ) -> tuple[str, str]:
        """Create an instance with its initial node entry; return both ids."""
        now = format_time(datetime.now().astimezone())
        expires = format_time(expires_at) if expires_at is not None else None
        node_instance_id = f"{initial_node_id}-{instance_id}"
        with self._lock, self._db as conn:
            conn.execute(
                "INSERT INTO workflow_instances (id, workflow_id, current_node_instance_id, "
                "context, waiting_signal, expires_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (instance_id, workflow_id, node_instance_id, context, waiting_signal,
                 expires, now, now),
            )
            conn.execute(
                "INSERT INTO workflow_instance_nodes (id, workflow_instance_id, node_id, "
                "context, waiting_signal, expires_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (node_instance_id, instance_id, initial_node_id, context, waiting_signal,
                 expires, now, now),
            )
        return instance_id, node_instance_id

    def update_instance_current_node_and_context(
        self,
        instance_id: str,
        new_node_id: str,
        new_context: str,
        waiting_signal: str,
        expires_at: Optional[datetime],
    ) -> str:
        """Record a transition to a node and return the new node instance id."""
        moment = datetime.now().astimezone()
        now = format_time(moment)
        expires = format_time(expires_at) if expires_at is not None else None
        with self._lock, self._db as conn:
            node_instance_id = f"{new_node_id}-{instance_id}-{self._unique_stamp()}"
            conn.execute(
                "INSERT INTO workflow_instance_nodes (id, workflow_instance_id, node_id, "
                "context, waiting_signal, expires_at, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (node_instance_id, instance_id, new_node_id, new_context, waiting_signal,
                 expires, now, now),
            )
            conn.execute(
                "UPDATE workflow_instances SET current_node_instance_id = ?, context = ?, "
                "waiting_signal = ?, expires_at = ?, updated_at = ? WHERE id = ?",
                (node_instance_id, new_context, waiting_signal, expires, now, instance_id),
            )
        return node_instance_id

    def get_instance(self, instance_id: str) -> InstanceRecord:
        with self._lock:
            row = self._db.execute(
                "SELECT id, workflow_id, current_node_instance_id, context, waiting_signal, "
                "expires_at, created_at, updated_at FROM workflow_instances WHERE id = ?",
                (instance_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"workflow instance '{instance_id}' not found")
        return InstanceRecord(
            *(value or "" for value in row[:5]),
            *(_parse_optional(value) for value in row[5:]),
        )

    def get_node_instance(self, node_instance_id: str) -> NodeInstanceRecord:
        with self._lock:
            row = self._db.execute(
                "SELECT id, workflow_instance_id, node_id, context, waiting_signal, "
                "expires_at, created_at, updated_at FROM workflow_instance_nodes WHERE id = ?",
                (node_instance_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"node instance '{node_instance_id}' not found")
        return NodeInstanceRecord(
            *(value or "" for value in row[:5]),
            *(_parse_optional(value) for value in row[5:]),
        )

    def get_instances_waiting_for_signal(self, signal_name: str) -> list[str]:
        with self._lock:
            rows = self._db.execute(
                "SELECT id FROM workflow_instances WHERE waiting_signal = ?",
                (signal_name,),
            ).fetchall()
        return [row[0] for row in rows]

    def get_expired_instances(self) -> list[str]:
        now = format_time(datetime.now().astimezone())
        with self._lock:
            rows = self._db.execute(
                "SELECT id FROM workflow_instances "
                "WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            ).fetchall()
        return [row[0] for row in rows]