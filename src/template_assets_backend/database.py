"""
SQLite persistence for organisation entities and import jobs.

This module owns the schema, connection settings and transactions. Entity
queries live in :mod:`template_assets_backend.entities` and take the
connection handed out here, so a whole import can run inside a single
``with database.transaction() as conn:`` block and roll back as one unit.
"""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .utils import deserialize_datetime, ensure_directory, new_id, serialize_datetime

# Default database path
DEFAULT_DB_PATH = Path("data/template_assets.db")

DEFAULT_ENGINES = ("Pandoc", "Pandoc + Typst", "Latex")
DEFAULT_FIELD_TYPES = ("String", "Text", "Date", "Number", "File", "Image", "Boolean", "Table")

SCHEMA = """
CREATE TABLE IF NOT EXISTS assets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    file_name TEXT NOT NULL,
    content_type TEXT NOT NULL,
    storage_key TEXT NOT NULL,
    size INTEGER NOT NULL,
    organisation_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    inserted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS engines (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS field_types (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS themes (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    font TEXT,
    primary_color TEXT,
    secondary_color TEXT,
    body_color TEXT,
    organisation_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    inserted_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS themes_name_unique_index ON themes(organisation_id, name);

CREATE TABLE IF NOT EXISTS theme_assets (
    theme_id TEXT NOT NULL REFERENCES themes(id) ON DELETE CASCADE,
    asset_id TEXT NOT NULL REFERENCES assets(id),
    position INTEGER NOT NULL,
    PRIMARY KEY (theme_id, asset_id)
);

CREATE TABLE IF NOT EXISTS frames (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    type TEXT NOT NULL,
    asset_id TEXT REFERENCES assets(id),
    organisation_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    inserted_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS frames_name_unique_index ON frames(organisation_id, name);

CREATE TABLE IF NOT EXISTS layouts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL,
    slug TEXT NOT NULL,
    meta TEXT,
    width REAL NOT NULL,
    height REAL NOT NULL,
    unit TEXT NOT NULL,
    engine_id TEXT REFERENCES engines(id),
    frame_id TEXT REFERENCES frames(id),
    asset_id TEXT REFERENCES assets(id),
    organisation_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    inserted_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS layouts_name_unique_index ON layouts(organisation_id, name);

CREATE TABLE IF NOT EXISTS flows (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    controlled INTEGER NOT NULL DEFAULT 0,
    organisation_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    inserted_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS flows_name_unique_index ON flows(organisation_id, name);

CREATE TABLE IF NOT EXISTS flow_states (
    id TEXT PRIMARY KEY,
    flow_id TEXT NOT NULL REFERENCES flows(id) ON DELETE CASCADE,
    state TEXT NOT NULL,
    position INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS content_types (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    color TEXT,
    prefix TEXT NOT NULL,
    theme_id TEXT REFERENCES themes(id),
    layout_id TEXT REFERENCES layouts(id),
    flow_id TEXT REFERENCES flows(id),
    organisation_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    inserted_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS content_types_name_unique_index ON content_types(organisation_id, name);

CREATE TABLE IF NOT EXISTS content_type_fields (
    id TEXT PRIMARY KEY,
    content_type_id TEXT NOT NULL REFERENCES content_types(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    key TEXT NOT NULL,
    description TEXT,
    field_type_id TEXT NOT NULL REFERENCES field_types(id),
    position INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS data_templates (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    title_template TEXT,
    data TEXT NOT NULL,
    serialized TEXT NOT NULL,
    content_type_id TEXT NOT NULL REFERENCES content_types(id),
    organisation_id TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    inserted_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS data_templates_title_unique_index ON data_templates(creator_id, title);

CREATE TABLE IF NOT EXISTS template_assets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    file_name TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    storage_key TEXT NOT NULL,
    manifest TEXT NOT NULL,
    file_entries TEXT NOT NULL,
    -- both NULL for public templates
    organisation_id TEXT,
    creator_id TEXT,
    inserted_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_template_assets_org ON template_assets(organisation_id, inserted_at DESC);

CREATE TABLE IF NOT EXISTS import_jobs (
    id TEXT PRIMARY KEY,
    template_asset_id TEXT NOT NULL,
    organisation_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    options TEXT,
    result TEXT,
    error TEXT,
    events TEXT
);
CREATE INDEX IF NOT EXISTS idx_import_jobs_org ON import_jobs(organisation_id, created_at DESC);
"""


class Database:
    """
    SQLite database for entities and import jobs.

    Thread-safe: every call opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        # autocommit mode; transactions are opened explicitly
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """A plain connection for reads and single statements."""
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically.

        The write lock is taken up front (``BEGIN IMMEDIATE``) so two imports
        cannot interleave between a name check and the insert that follows
        it. Any exception rolls back everything written in the block.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema and reference data."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)
        with self.transaction() as conn:
            for name in DEFAULT_ENGINES:
                conn.execute("INSERT OR IGNORE INTO engines (id, name) VALUES (?, ?)", (new_id(), name))
            for name in DEFAULT_FIELD_TYPES:
                conn.execute("INSERT OR IGNORE INTO field_types (id, name) VALUES (?, ?)", (new_id(), name))

    # --- Import jobs -------------------------------------------------------

    def save_job(self, job_data: Dict[str, Any]) -> None:
        """
        Save or update an import job record.

        Args:
            job_data: Dictionary with job fields
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO import_jobs (
                    id, template_asset_id, organisation_id, user_id, status,
                    created_at, updated_at, options, result, error, events
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_data["id"],
                    job_data["template_asset_id"],
                    job_data["organisation_id"],
                    job_data["user_id"],
                    job_data["status"],
                    serialize_datetime(job_data["created_at"]),
                    serialize_datetime(job_data["updated_at"]),
                    json.dumps(job_data.get("options", {})),
                    json.dumps(job_data.get("result", {})),
                    job_data.get("error"),
                    json.dumps(
                        [
                            {"timestamp": serialize_datetime(e["timestamp"]), "message": e["message"]}
                            for e in job_data.get("events", [])
                        ]
                    ),
                ),
            )

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve an import job by ID.

        Returns:
            Job data dictionary or None if not found
        """
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM import_jobs WHERE id = ?", (job_id,)).fetchone()
            return self._job_row_to_dict(row) if row else None

    def list_jobs(self, organisation_id: str) -> List[Dict[str, Any]]:
        """Import jobs of an organisation, newest first."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM import_jobs WHERE organisation_id = ? ORDER BY created_at DESC",
                (organisation_id,),
            ).fetchall()
            return [self._job_row_to_dict(row) for row in rows]

    def _job_row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        events = [
            {"timestamp": deserialize_datetime(e["timestamp"]), "message": e["message"]}
            for e in json.loads(row["events"] or "[]")
        ]
        return {
            "id": row["id"],
            "template_asset_id": row["template_asset_id"],
            "organisation_id": row["organisation_id"],
            "user_id": row["user_id"],
            "status": row["status"],
            "created_at": deserialize_datetime(row["created_at"]),
            "updated_at": deserialize_datetime(row["updated_at"]),
            "options": json.loads(row["options"] or "{}"),
            "result": json.loads(row["result"] or "{}"),
            "error": row["error"],
            "events": events,
        }
