from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tracking_monitor.errors import DuplicateError, PersistenceError
from tracking_monitor.store import SCHEMA_VERSION, TrackingStore


def test_create_and_load_preserves_created_at(tmp_path: Path) -> None:
    store = TrackingStore(str(tmp_path / "db" / "tracking.db"))
    created = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    req = store.create(42, " 123456 ", created_at=created)
    loaded = store.load_all()

    assert req.token == "123456"
    assert len(loaded) == 1
    assert loaded[0].owner == 42
    assert loaded[0].token == "123456"
    assert loaded[0].created_at == created


def test_create_duplicate_for_same_owner(tmp_path: Path) -> None:
    store = TrackingStore(str(tmp_path / "tracking.db"))
    store.create(1, "77-01/2024")
    with pytest.raises(DuplicateError):
        store.create(1, "77-01/2024 ")

    store.create(2, "77-01/2024")
    assert len(store.load_all()) == 2


def test_delete_by_token_and_owner(tmp_path: Path) -> None:
    store = TrackingStore(str(tmp_path / "tracking.db"))
    store.create(1, "555")
    store.create(2, "555")
    store.create(1, "556")

    assert store.delete("555", owner=1) == 1
    assert sorted((r.owner, r.token) for r in store.load_all()) == [(1, "556"), (2, "555")]

    assert store.delete("555") == 1
    assert store.delete("555") == 0
    assert [(r.owner, r.token) for r in store.load_all()] == [(1, "556")]


def test_load_all_orders_by_creation(tmp_path: Path) -> None:
    store = TrackingStore(str(tmp_path / "tracking.db"))
    now = datetime.now(timezone.utc)
    store.create(1, "2", created_at=now)
    store.create(1, "1", created_at=now - timedelta(hours=1))
    assert [r.token for r in store.load_all()] == ["1", "2"]


def test_schema_version_recorded(tmp_path: Path) -> None:
    path = tmp_path / "tracking.db"
    TrackingStore(str(path)).ensure_schema()
    conn = sqlite3.connect(path)
    try:
        (version,) = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    finally:
        conn.close()
    assert int(version) == SCHEMA_VERSION


def test_unusable_path_raises_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x", encoding="utf-8")
    store = TrackingStore(str(blocker / "tracking.db"))
    with pytest.raises(PersistenceError):
        store.load_all()
