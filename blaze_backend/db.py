from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Any

from .types import RequestScope
from .utils import dumps_json, loads_json, utc_now_iso


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS projects (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  root_path TEXT NOT NULL UNIQUE,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chats (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id TEXT NOT NULL,
  org_id TEXT NOT NULL,
  workspace_id TEXT NOT NULL,
  title TEXT NOT NULL,
  created_at TEXT NOT NULL,
  FOREIGN KEY(project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS usage_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  org_id TEXT NOT NULL,
  workspace_id TEXT NOT NULL,
  user_id TEXT,
  metric_type TEXT NOT NULL,
  value INTEGER NOT NULL,
  ts TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_scope ON usage_records(org_id, workspace_id, metric_type);

CREATE TABLE IF NOT EXISTS audit_events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  org_id TEXT NOT NULL,
  workspace_id TEXT NOT NULL,
  user_id TEXT,
  action TEXT NOT NULL,
  resource_type TEXT NOT NULL,
  resource_id TEXT,
  metadata_json TEXT,
  ts TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_scope ON audit_events(org_id, workspace_id, id);
"""


def init_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {k: row[k] for k in row.keys()}


class ServiceRepository:
    """SQLite persistence for projects, chat bindings, usage counters and audit events.

    Methods block; async callers run them with ``asyncio.to_thread``.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        init_schema(self._conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur

    def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return _row_to_dict(row)

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_dict(r) for r in rows if r is not None]

    def upsert_project(self, *, project_id: str, name: str, root_path: str, created_at: str) -> None:
        self._execute(
            """
            INSERT INTO projects(id, name, root_path, created_at) VALUES(?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name=excluded.name
            """,
            (project_id, name, root_path, created_at),
        )

    def list_projects(self) -> list[dict[str, Any]]:
        return self._fetchall("SELECT id, name, root_path, created_at FROM projects ORDER BY created_at ASC")

    def create_chat(self, *, project_id: str, org_id: str, workspace_id: str, title: str) -> dict[str, Any]:
        now = utc_now_iso()
        cur = self._execute(
            """
            INSERT INTO chats(project_id, org_id, workspace_id, title, created_at)
            VALUES(?, ?, ?, ?, ?)
            """,
            (project_id, org_id, workspace_id, title, now),
        )
        return {
            "id": int(cur.lastrowid),
            "project_id": project_id,
            "org_id": org_id,
            "workspace_id": workspace_id,
            "title": title,
            "created_at": now,
        }

    def get_chat(self, chat_id: int) -> dict[str, Any] | None:
        return self._fetchone(
            "SELECT id, project_id, org_id, workspace_id, title, created_at FROM chats WHERE id=?",
            (chat_id,),
        )

    def record_usage(self, scope: RequestScope, metric_type: str, value: int) -> None:
        self._execute(
            """
            INSERT INTO usage_records(org_id, workspace_id, user_id, metric_type, value, ts)
            VALUES(?, ?, ?, ?, ?, ?)
            """,
            (scope.org_id, scope.workspace_id, scope.user_id, metric_type, int(value), utc_now_iso()),
        )

    def usage_totals(self, *, org_id: str, workspace_id: str) -> dict[str, int]:
        rows = self._fetchall(
            """
            SELECT metric_type, SUM(value) AS total
            FROM usage_records
            WHERE org_id=? AND workspace_id=?
            GROUP BY metric_type
            """,
            (org_id, workspace_id),
        )
        return {row["metric_type"]: int(row["total"] or 0) for row in rows}

    def write_audit_event(
        self,
        scope: RequestScope,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        now = utc_now_iso()
        cur = self._execute(
            """
            INSERT INTO audit_events(org_id, workspace_id, user_id, action, resource_type, resource_id, metadata_json, ts)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (scope.org_id, scope.workspace_id, scope.user_id, action, resource_type, resource_id, dumps_json(metadata or {}), now),
        )
        return {
            "id": int(cur.lastrowid),
            "org_id": scope.org_id,
            "workspace_id": scope.workspace_id,
            "user_id": scope.user_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "metadata": metadata or {},
            "ts": now,
        }

    def list_audit_events(
        self,
        *,
        org_id: str | None = None,
        workspace_id: str | None = None,
        after_id: int = 0,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        clauses = ["id > ?"]
        params: list[Any] = [after_id]
        if org_id:
            clauses.append("org_id = ?")
            params.append(org_id)
        if workspace_id:
            clauses.append("workspace_id = ?")
            params.append(workspace_id)
        params.append(limit)
        rows = self._fetchall(
            f"""
            SELECT id, org_id, workspace_id, user_id, action, resource_type, resource_id, metadata_json, ts
            FROM audit_events
            WHERE {' AND '.join(clauses)}
            ORDER BY id ASC
            LIMIT ?
            """,
            tuple(params),
        )
        return [
            {
                "id": int(row["id"]),
                "org_id": row["org_id"],
                "workspace_id": row["workspace_id"],
                "user_id": row.get("user_id"),
                "action": row["action"],
                "resource_type": row["resource_type"],
                "resource_id": row.get("resource_id"),
                "metadata": loads_json(row.get("metadata_json"), {}),
                "ts": row["ts"],
            }
            for row in rows
        ]
