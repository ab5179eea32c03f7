import hashlib
import secrets
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .entities import CurrentUser
from .utils import new_id, serialize_datetime, utc_now


@dataclass
class APIKeyRecord:
    id: str
    owner: str
    organisation_id: str
    prefix: str
    max_imports: int
    current_imports: int
    is_active: bool
    created_at: str

    @property
    def user(self) -> CurrentUser:
        return CurrentUser(id=self.owner, organisation_id=self.organisation_id)


class KeyManager:
    """
    Manages API keys and import quotas in the local SQLite database.

    A key belongs to one user of one organisation; requests made with it act
    as that user.
    """

    def __init__(self, db_path: str = "data/template_assets.db"):
        self.db_path = Path(db_path)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    organisation_id TEXT NOT NULL,
                    max_imports INTEGER NOT NULL,
                    current_imports INTEGER DEFAULT 0,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def _hash_key(self, key: str) -> str:
        """SHA-256 hash of the API key."""
        return hashlib.sha256(key.encode()).hexdigest()

    def create_key(self, owner: str, organisation_id: str, max_imports: int = 100) -> Tuple[str, Dict[str, Any]]:
        """
        Generate a new API key for a user of an organisation.

        Returns:
            Tuple[str, dict]: (raw_api_key, key_record_dict)
            The raw key is only returned here; the database keeps its hash.
        """
        raw_key = f"tpl_{secrets.token_urlsafe(32)}"
        prefix = raw_key[:8]
        key_id = new_id()
        created_at = serialize_datetime(utc_now())

        with self._get_conn() as conn:
            conn.execute(
                """
                INSERT INTO api_keys (id, key_hash, prefix, owner, organisation_id, max_imports, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (key_id, self._hash_key(raw_key), prefix, owner, organisation_id, max_imports, created_at),
            )

        record = {
            "id": key_id,
            "prefix": prefix,
            "owner": owner,
            "organisation_id": organisation_id,
            "max_imports": max_imports,
            "current_imports": 0,
            "is_active": True,
            "created_at": created_at,
        }
        return raw_key, record

    def validate_key(self, key: str) -> Optional[APIKeyRecord]:
        """Return the active record for a raw key, or None."""
        if not key:
            return None

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1", (self._hash_key(key),)
            ).fetchone()

        if row is None:
            return None
        return APIKeyRecord(
            id=row["id"],
            owner=row["owner"],
            organisation_id=row["organisation_id"],
            prefix=row["prefix"],
            max_imports=row["max_imports"],
            current_imports=row["current_imports"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def increment_usage(self, key_id: str) -> bool:
        """
        Count one import against a key.

        Returns:
            False when the key is unknown or its quota is used up
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT max_imports, current_imports FROM api_keys WHERE id = ?", (key_id,)
            ).fetchone()
            if not row or row["current_imports"] >= row["max_imports"]:
                conn.rollback()
                return False
            conn.execute("UPDATE api_keys SET current_imports = current_imports + 1 WHERE id = ?", (key_id,))
            conn.commit()
            return True
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_keys(self) -> List[Dict[str, Any]]:
        """List all API keys (admin only)."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """
                SELECT id, prefix, owner, organisation_id, max_imports, current_imports, is_active, created_at
                FROM api_keys ORDER BY created_at DESC
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        with self._get_conn() as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
        return cursor.rowcount > 0
