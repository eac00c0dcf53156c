from __future__ import annotations

import json
from datetime import date, datetime, timezone

import pytest

from miniramadan.config import AppConfig, load_config
from miniramadan.db import (
    SqliteSnapshotStorage,
    get_connection,
    initialize_db,
    load_snapshot,
    migrate_snapshot,
)
from miniramadan.metrics import SqliteMetricsRecorder, record_sync_metric
from miniramadan.schemas import SNAPSHOT_VERSION
from miniramadan.store import FamilyStore

from .fakes import FixedClock, make_family, make_profile


@pytest.fixture()
def db_path(tmp_path):
    path = tmp_path / "core.db"
    initialize_db(path)
    return path


def test_store_survives_restart_in_sqlite(db_path) -> None:
    storage = SqliteSnapshotStorage("family", db_path)
    store = FamilyStore(storage, clock=FixedClock())
    store.hydrate()
    store.set_family(make_family())
    store.profiles.append(make_profile("p-0"))
    assert store.add_star("p-0", "fasting", 3).ok

    reopened = FamilyStore(SqliteSnapshotStorage("family", db_path), clock=FixedClock())
    reopened.hydrate()
    assert reopened.family.id == "fam-1"
    assert reopened.total_family_stars() == 3
    assert reopened.pending_count == 1
    assert reopened.pending_actions[0].payload["ramadan_day"] == 3


def test_snapshots_are_keyed(db_path) -> None:
    first = SqliteSnapshotStorage("a", db_path)
    first.save(FamilyStore(first).snapshot())
    assert SqliteSnapshotStorage("b", db_path).load() is None
    assert first.load() is not None
    first.clear()
    assert first.load() is None


def test_unreadable_snapshot_is_discarded(db_path) -> None:
    with get_connection(db_path) as conn:
        conn.execute(
            "INSERT INTO store_snapshots (key, version, payload, updated_at) VALUES (?, ?, ?, ?)",
            ("broken", 2, "{not json", datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
    assert load_snapshot("broken", db_path) is None


def test_v1_snapshot_is_migrated(db_path) -> None:
    legacy = {
        "family": make_family().model_dump(mode="json"),
        "profiles": [make_profile("p-0").model_dump(mode="json")],
        "locked_profile_id": "p-0",
        "todays_stars": [
            {
                "id": "srv-1",
                "profile_id": "p-0",
                "family_id": "fam-1",
                "date": "2026-03-02",
                "season_day": 3,
                "source": "fasting",
                "count": 3,
            }
        ],
        "pending_actions": None,
    }
    with get_connection(db_path) as conn:
        conn.execute(
            "INSERT INTO store_snapshots (key, version, payload, updated_at) VALUES (?, ?, ?, ?)",
            ("legacy", 1, json.dumps(legacy), datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()

    snapshot = load_snapshot("legacy", db_path)
    assert snapshot.version == SNAPSHOT_VERSION
    assert snapshot.locked_to_profile_id == "p-0"
    assert [s.id for s in snapshot.stars] == ["srv-1"]
    assert snapshot.stars[0].date == date(2026, 3, 2)
    assert snapshot.pending_actions == []
    assert snapshot.memories == []


def test_migrate_leaves_current_snapshots_alone() -> None:
    data = {"version": SNAPSHOT_VERSION, "stars": [], "todays_stars": [{"id": "ignored"}]}
    migrated = migrate_snapshot(data)
    assert migrated["stars"] == []
    assert migrated["messages"] == []


def test_sync_metrics_are_recorded(db_path) -> None:
    record_sync_metric(operation="pull", outcome="ok", duration_ms=12, family_id="fam-1", db_path=db_path)
    SqliteMetricsRecorder(db_path)(
        operation="drain",
        outcome="stopped",
        duration_ms=3,
        error_type="network",
        processed_count=1,
    )
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT operation, outcome, family_id, error_type, processed_count FROM sync_metrics ORDER BY id"
        ).fetchall()
    assert rows == [("pull", "ok", "fam-1", None, 0), ("drain", "stopped", None, "network", 1)]


def test_initialize_db_is_idempotent(db_path) -> None:
    initialize_db(db_path)
    with get_connection(db_path) as conn:
        columns = {row[1] for row in conn.execute("PRAGMA table_info(sync_metrics)")}
    assert {"family_id", "error_type", "processed_count", "failed_count"} <= columns


# Configuration


def test_config_defaults() -> None:
    config = AppConfig()
    assert config.max_pending_retries == 5
    assert config.clear_cache_on_sign_out is False
    assert config.realtime_kinds == ["stars", "messages"]
    assert config.resolved_database_path.is_absolute()


def test_load_config_from_file(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"max_pending_retries": 3, "database_path": str(tmp_path / "x.db")}))
    config = load_config(str(path))
    assert config.max_pending_retries == 3
    assert config.resolved_database_path == tmp_path / "x.db"


def test_load_config_from_env(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "env.json"
    path.write_text(json.dumps({"clear_cache_on_sign_out": True}))
    monkeypatch.setenv("MINIRAMADAN_CONFIG", str(path))
    assert load_config().clear_cache_on_sign_out is True


def test_explicit_missing_config_fails(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.json"))
