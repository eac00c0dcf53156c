"""SQLite helpers."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from pydantic import ValidationError

from .config import get_config
from .schemas import SNAPSHOT_VERSION, StoreSnapshot

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_SNAPSHOT_COLLECTIONS = (
    "profiles",
    "stars",
    "fasting_logs",
    "suhoor_logs",
    "messages",
    "memories",
    "time_capsules",
    "pending_actions",
)


def _resolve(db_path: Optional[PathLike]) -> Path:
    path = Path(db_path) if db_path is not None else get_config().resolved_database_path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, ddl: str) -> None:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    existing = {row[1] for row in cursor.fetchall()}
    if column not in existing:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")


def initialize_db(db_path: Optional[PathLike] = None) -> None:
    with sqlite3.connect(_resolve(db_path)) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS store_snapshots (
                key TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation TEXT NOT NULL,
                outcome TEXT NOT NULL,
                duration_ms INTEGER,
                created_at TEXT NOT NULL
            );
            """
        )
        _ensure_column(conn, "sync_metrics", "family_id", "TEXT")
        _ensure_column(conn, "sync_metrics", "error_type", "TEXT")
        _ensure_column(conn, "sync_metrics", "processed_count", "INTEGER DEFAULT 0")
        _ensure_column(conn, "sync_metrics", "failed_count", "INTEGER DEFAULT 0")
        conn.commit()


@contextmanager
def get_connection(db_path: Optional[PathLike] = None) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(_resolve(db_path))
    try:
        yield conn
    finally:
        conn.close()


def migrate_snapshot(data: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade a persisted snapshot dict to the current version in place."""
    version = data.get("version") or 1
    if version < 2:
        # v1 kept only today's records under todays_* keys.
        for name in ("stars", "fasting_logs", "suhoor_logs", "messages"):
            legacy = data.pop(f"todays_{name}", None)
            if name not in data and legacy is not None:
                data[name] = legacy
        if "locked_to_profile_id" not in data and "locked_profile_id" in data:
            data["locked_to_profile_id"] = data.pop("locked_profile_id")
    for name in _SNAPSHOT_COLLECTIONS:
        if not isinstance(data.get(name), list):
            data[name] = []
    data["version"] = SNAPSHOT_VERSION
    return data


def save_snapshot(key: str, snapshot: StoreSnapshot, db_path: Optional[PathLike] = None) -> None:
    now = datetime.now(timezone.utc).isoformat()
    payload = snapshot.model_dump_json()
    with get_connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO store_snapshots (key, version, payload, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                version = excluded.version,
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (key, snapshot.version, payload, now),
        )
        conn.commit()


def load_snapshot(key: str, db_path: Optional[PathLike] = None) -> Optional[StoreSnapshot]:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT version, payload FROM store_snapshots WHERE key = ?",
            (key,),
        ).fetchone()
    if row is None:
        return None
    try:
        data = json.loads(row[1])
        data.setdefault("version", row[0])
        return StoreSnapshot.model_validate(migrate_snapshot(data))
    except (ValueError, ValidationError):
        logger.exception("Discarding unreadable store snapshot", extra={"key": key})
        return None


def delete_snapshot(key: str, db_path: Optional[PathLike] = None) -> None:
    with get_connection(db_path) as conn:
        conn.execute("DELETE FROM store_snapshots WHERE key = ?", (key,))
        conn.commit()


class SqliteSnapshotStorage:
    """Snapshot storage backed by the `store_snapshots` table."""

    def __init__(self, key: Optional[str] = None, db_path: Optional[PathLike] = None) -> None:
        self.key = key or get_config().snapshot_key
        self.db_path = db_path
        initialize_db(db_path)

    def load(self) -> Optional[StoreSnapshot]:
        return load_snapshot(self.key, self.db_path)

    def save(self, snapshot: StoreSnapshot) -> None:
        save_snapshot(self.key, snapshot, self.db_path)

    def clear(self) -> None:
        delete_snapshot(self.key, self.db_path)
