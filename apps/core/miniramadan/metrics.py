"""Telemetry storage for pull and queue-drain attempts."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .db import PathLike, get_connection


def record_sync_metric(
    *,
    operation: str,
    outcome: str,
    duration_ms: Optional[int],
    family_id: Optional[str] = None,
    error_type: Optional[str] = None,
    processed_count: int = 0,
    failed_count: int = 0,
    db_path: Optional[PathLike] = None,
) -> None:
    now = datetime.now(timezone.utc).isoformat()
    with get_connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO sync_metrics (
                operation,
                outcome,
                duration_ms,
                family_id,
                error_type,
                processed_count,
                failed_count,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                operation,
                outcome,
                duration_ms,
                family_id,
                error_type,
                processed_count,
                failed_count,
                now,
            ),
        )
        conn.commit()


class SqliteMetricsRecorder:
    def __init__(self, db_path: Optional[PathLike] = None) -> None:
        self.db_path = db_path

    def __call__(self, **fields) -> None:
        record_sync_metric(db_path=self.db_path, **fields)
