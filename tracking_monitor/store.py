from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import structlog

from tracking_monitor.errors import DuplicateError, PersistenceError
from tracking_monitor.models import TrackingRequest, normalize_token, token_key, utc_now


logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 1


def _to_ts(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return float(dt.timestamp())


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tracking_requests (
          owner INTEGER NOT NULL,
          token TEXT NOT NULL,
          token_key TEXT NOT NULL,
          created_at_ts REAL NOT NULL,
          UNIQUE(owner, token_key)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tracking_requests_token_key ON tracking_requests(token_key);")


class TrackingStore:
    """
    SQLite-backed set of pending tracking requests.

    Rows are (owner, token, created_at). A row exists exactly as long as the
    request is pending; fulfillment deletes it. Every method opens its own
    connection, so one instance can be shared by concurrent watcher threads.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def ensure_schema(self) -> None:
        conn = self._open()
        conn.close()

    def _open(self) -> sqlite3.Connection:
        try:
            conn = _connect(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot open {self.db_path}: {e}") from e
        try:
            _ensure_schema_conn(conn)
        except sqlite3.Error as e:
            conn.close()
            raise PersistenceError(f"Cannot prepare schema in {self.db_path}: {e}") from e
        return conn

    def create(self, owner: int, token: str, *, created_at: datetime | None = None) -> TrackingRequest:
        req = TrackingRequest(owner=int(owner), token=normalize_token(token), created_at=created_at or utc_now())
        conn = self._open()
        try:
            conn.execute(
                "INSERT INTO tracking_requests (owner, token, token_key, created_at_ts) VALUES (?, ?, ?, ?)",
                (req.owner, req.token, token_key(req.token), _to_ts(req.created_at)),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateError(req.owner, req.token) from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save tracking number {req.token!r}: {e}") from e
        finally:
            conn.close()
        logger.info("Saved tracking number", owner=req.owner, token=req.token)
        return req

    def delete(self, token: str, owner: int | None = None) -> int:
        """Deletes the token (for one owner when given) and returns the number of removed rows."""
        key = token_key(token)
        conn = self._open()
        try:
            if owner is None:
                cur = conn.execute("DELETE FROM tracking_requests WHERE token_key=?", (key,))
            else:
                cur = conn.execute(
                    "DELETE FROM tracking_requests WHERE token_key=? AND owner=?",
                    (key, int(owner)),
                )
            removed = int(cur.rowcount or 0)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to delete tracking number {token!r}: {e}") from e
        finally:
            conn.close()
        logger.info("Deleted tracking number", token=token, owner=owner, removed=removed)
        return removed

    def load_all(self) -> list[TrackingRequest]:
        conn = self._open()
        try:
            rows = conn.execute(
                "SELECT owner, token, created_at_ts FROM tracking_requests ORDER BY created_at_ts, owner"
            ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load tracking numbers: {e}") from e
        finally:
            conn.close()

        out: list[TrackingRequest] = []
        for r in rows:
            out.append(
                TrackingRequest(
                    owner=int(r["owner"]),
                    token=str(r["token"]),
                    created_at=_from_ts(r["created_at_ts"]),
                )
            )
        return out
