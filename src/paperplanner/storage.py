"""SQLite persistence for named projects and their saved snapshots."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

DB_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Project:
    """Named project record."""

    id: int
    name: str


class ProjectStore:
    """Database access layer for saved plans."""

    def __init__(self, db_path: Path | str) -> None:
        """Open the database and bring its schema up to date."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        self._conn = sqlite3.connect(target)
        self._conn.row_factory = sqlite3.Row
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > DB_SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {DB_SCHEMA_VERSION}.")

        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, DB_SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            with self._conn:
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(UTC).isoformat()),
                )
            logger.info("Project database migrated to version %d", version)

    def _migrate_to_v1(self) -> None:
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    saved_at TEXT NOT NULL
                )
                """)

    def list_projects(self) -> list[Project]:
        """Return projects ordered by name."""
        rows = self._conn.execute("SELECT id, name FROM projects ORDER BY name").fetchall()
        return [Project(id=int(row["id"]), name=str(row["name"])) for row in rows]

    def create_project(self, name: str) -> Project:
        """Create a new project. Names are unique."""
        now = datetime.now(UTC).isoformat()
        with self._conn:
            cursor = self._conn.execute(
                "INSERT INTO projects (name, created_at) VALUES (?, ?)",
                (name, now),
            )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Could not create project.")
        return Project(id=int(row_id), name=name)

    def get_project(self, project_id: int) -> Project | None:
        row = self._conn.execute("SELECT id, name FROM projects WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            return None
        return Project(id=int(row["id"]), name=str(row["name"]))

    def delete_project(self, project_id: int) -> bool:
        """Delete a project and every snapshot saved for it."""
        with self._conn:
            self._conn.execute("DELETE FROM snapshots WHERE project_id = ?", (project_id,))
            cursor = self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        return cursor.rowcount > 0

    def save_snapshot(self, project_id: int, payload: dict[str, object]) -> int:
        """Store a snapshot payload as JSON text and return its row id."""
        if self.get_project(project_id) is None:
            raise ValueError(f"Unknown project id: {project_id}")
        text = json.dumps(payload, ensure_ascii=True, sort_keys=True)
        now = datetime.now(UTC).isoformat()
        with self._conn:
            cursor = self._conn.execute(
                "INSERT INTO snapshots (project_id, payload, saved_at) VALUES (?, ?, ?)",
                (project_id, text, now),
            )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Could not save snapshot.")
        logger.debug("Saved snapshot %d for project %d", row_id, project_id)
        return int(row_id)

    def latest_snapshot(self, project_id: int) -> dict[str, object] | None:
        """Return the most recently saved payload for a project."""
        row = self._conn.execute(
            "SELECT payload FROM snapshots WHERE project_id = ? ORDER BY id DESC LIMIT 1",
            (project_id,),
        ).fetchone()
        if row is None:
            return None
        payload = json.loads(str(row["payload"]))
        if not isinstance(payload, dict):
            raise ValueError(f"Stored snapshot for project {project_id} is not a JSON object")
        return payload

    def snapshot_count(self, project_id: int) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS total FROM snapshots WHERE project_id = ?", (project_id,)).fetchone()
        return int(row["total"])

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()
