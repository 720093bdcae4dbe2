from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable

from medsync.models import (
    ACTION_TYPES,
    DAY_MS,
    DEFAULT_MAX_AGE_DAYS,
    DEFAULT_QUOTA_BYTES,
    PendingAction,
    StorageStats,
    StoredItem,
    now_ms,
)

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = "1.0"
SUPPORTED_BACKUP_VERSIONS = frozenset({BACKUP_FORMAT_VERSION})
MAX_ERROR_LENGTH = 500


class QuotaExceededError(Exception):
    pass


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=_json_default)


def _new_action_id(timestamp: int) -> str:
    return f"{timestamp}_{uuid.uuid4().hex[:9]}"


class LocalStore:
    """Durable key/value cache plus the ordered log of pending remote mutations.

    Every public method swallows storage and serialization errors: they are
    logged and reported as ``False``/``None``/empty results so callers never
    have to guard against the store itself.
    """

    def __init__(
        self,
        db_path: str,
        *,
        max_age_ms: int = DEFAULT_MAX_AGE_DAYS * DAY_MS,
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
        online: Callable[[], bool] | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.db_path = db_path
        self.max_age_ms = int(max_age_ms)
        self.quota_bytes = int(quota_bytes)
        self._online = online or (lambda: True)
        self._clock = clock or now_ms
        self._lock = threading.RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()
        removed = self.evict_expired()
        if removed:
            logger.info("Evicted %d expired offline item(s) from %s", removed, db_path)

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS stored_items (
            key TEXT PRIMARY KEY,
            data_json TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            synced INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS pending_actions (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            type TEXT NOT NULL,
            resource TEXT NOT NULL,
            data_json TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            synced INTEGER NOT NULL,
            failed INTEGER NOT NULL
        );
        """
        with self._lock:
            self._conn.executescript(schema_sql)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Internal helpers, called with the lock held.

    def _load_items(self, conn: sqlite3.Connection) -> dict[str, dict[str, Any]]:
        rows = conn.execute("SELECT key, data_json, timestamp, synced FROM stored_items ORDER BY key").fetchall()
        return {
            row["key"]: StoredItem(
                data=json.loads(row["data_json"]),
                timestamp=int(row["timestamp"]),
                synced=bool(row["synced"]),
            ).to_dict()
            for row in rows
        }

    def _load_pending(self, conn: sqlite3.Connection) -> list[PendingAction]:
        rows = conn.execute(
            """
            SELECT id, type, resource, data_json, timestamp, attempts, last_error
            FROM pending_actions
            ORDER BY seq
            """
        ).fetchall()
        actions: list[PendingAction] = []
        for row in rows:
            try:
                data = json.loads(row["data_json"])
            except ValueError as exc:
                logger.error("Pending action %s has unreadable payload: %s", row["id"], exc)
                continue
            actions.append(
                PendingAction(
                    id=row["id"],
                    type=row["type"],
                    resource=row["resource"],
                    data=data,
                    timestamp=int(row["timestamp"]),
                    attempts=int(row["attempts"]),
                    last_error=row["last_error"] or "",
                )
            )
        return actions

    def _serialized_size(self, conn: sqlite3.Connection) -> int:
        items = self._load_items(conn)
        pending = [action.to_dict() for action in self._load_pending(conn)]
        return len(_dumps(items).encode("utf-8")) + len(_dumps(pending).encode("utf-8"))

    def _enforce_quota(self, conn: sqlite3.Connection) -> None:
        size = self._serialized_size(conn)
        if size > self.quota_bytes:
            raise QuotaExceededError(f"offline storage quota exceeded ({size} > {self.quota_bytes} bytes)")

    def _next_timestamp(self, conn: sqlite3.Connection, key: str) -> int:
        now = self._clock()
        row = conn.execute("SELECT timestamp FROM stored_items WHERE key = ?", (key,)).fetchone()
        if row is None:
            return now
        return max(now, int(row["timestamp"]))

    # Key/value store.

    def save(self, key: str, data: Any, synced: bool | None = None) -> bool:
        try:
            data_json = _dumps(data)
        except (TypeError, ValueError) as exc:
            logger.error("Error saving offline data %r: %s", key, exc)
            return False
        flag = self._online() if synced is None else bool(synced)
        try:
            with self._lock, self._conn as conn:
                timestamp = self._next_timestamp(conn, key)
                conn.execute(
                    """
                    INSERT INTO stored_items(key, data_json, timestamp, synced)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        data_json = excluded.data_json,
                        timestamp = excluded.timestamp,
                        synced = excluded.synced
                    """,
                    (key, data_json, timestamp, int(flag)),
                )
                self._enforce_quota(conn)
            return True
        except (QuotaExceededError, sqlite3.Error, ValueError) as exc:
            logger.error("Error saving offline data %r: %s", key, exc)
            return False

    def get_item(self, key: str) -> StoredItem | None:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT data_json, timestamp, synced FROM stored_items WHERE key = ?",
                    (key,),
                ).fetchone()
            if row is None:
                return None
            return StoredItem(
                data=json.loads(row["data_json"]),
                timestamp=int(row["timestamp"]),
                synced=bool(row["synced"]),
            )
        except (sqlite3.Error, ValueError) as exc:
            logger.error("Error retrieving offline data %r: %s", key, exc)
            return None

    def get(self, key: str) -> Any:
        item = self.get_item(key)
        if item is None:
            return None
        if self._clock() - item.timestamp > self.max_age_ms:
            logger.debug("Offline data %r expired, evicting", key)
            self.remove(key)
            return None
        return item.data

    def has_valid_data(self, key: str, max_age_ms: int | None = None) -> bool:
        item = self.get_item(key)
        if item is None:
            return False
        limit = self.max_age_ms if max_age_ms is None else int(max_age_ms)
        return self._clock() - item.timestamp <= limit

    def keys(self) -> list[str]:
        try:
            with self._lock:
                rows = self._conn.execute("SELECT key FROM stored_items ORDER BY key").fetchall()
            return [row["key"] for row in rows]
        except sqlite3.Error as exc:
            logger.error("Error listing offline keys: %s", exc)
            return []

    def remove(self, key: str) -> bool:
        try:
            with self._lock, self._conn as conn:
                conn.execute("DELETE FROM stored_items WHERE key = ?", (key,))
            return True
        except sqlite3.Error as exc:
            logger.error("Error removing offline data %r: %s", key, exc)
            return False

    def mark_synced(self, key: str) -> bool:
        try:
            with self._lock, self._conn as conn:
                row = conn.execute("SELECT timestamp FROM stored_items WHERE key = ?", (key,)).fetchone()
                if row is None:
                    return False
                conn.execute(
                    "UPDATE stored_items SET synced = 1, timestamp = ? WHERE key = ?",
                    (max(self._clock(), int(row["timestamp"])), key),
                )
            return True
        except sqlite3.Error as exc:
            logger.error("Error marking offline data %r as synced: %s", key, exc)
            return False

    def evict_expired(self, max_age_ms: int | None = None) -> int:
        limit = self.max_age_ms if max_age_ms is None else int(max_age_ms)
        cutoff = self._clock() - limit
        try:
            with self._lock, self._conn as conn:
                cursor = conn.execute("DELETE FROM stored_items WHERE timestamp < ?", (cutoff,))
            return max(0, cursor.rowcount)
        except sqlite3.Error as exc:
            logger.error("Error cleaning old offline data: %s", exc)
            return 0

    def clear_all(self) -> bool:
        try:
            with self._lock, self._conn as conn:
                conn.execute("DELETE FROM stored_items")
                conn.execute("DELETE FROM pending_actions")
            return True
        except sqlite3.Error as exc:
            logger.error("Error clearing offline data: %s", exc)
            return False

    def stats(self) -> StorageStats:
        try:
            with self._lock:
                items = self._load_items(self._conn)
                pending = self._load_pending(self._conn)
                size = self._serialized_size(self._conn)
        except (sqlite3.Error, ValueError) as exc:
            logger.error("Error computing offline storage stats: %s", exc)
            return StorageStats()
        synced_timestamps = [item["timestamp"] for item in items.values() if item["synced"]]
        return StorageStats(
            size_bytes=size,
            item_count=len(items),
            pending_actions=len(pending),
            last_sync=max(synced_timestamps) if synced_timestamps else None,
        )

    def check_quota(self) -> dict[str, int]:
        used = self.stats().size_bytes
        return {"used": used, "quota": self.quota_bytes, "available": max(0, self.quota_bytes - used)}

    # Pending action log.

    def add_pending_action(self, action_type: str, resource: str, data: dict[str, Any]) -> str | None:
        action_type = str(action_type or "").strip().upper()
        if action_type not in ACTION_TYPES:
            logger.error("Refusing pending action with unknown type %r", action_type)
            return None
        if not isinstance(data, dict):
            logger.error("Refusing pending action %s %s: payload is not an object", action_type, resource)
            return None
        try:
            data_json = _dumps(data)
        except (TypeError, ValueError) as exc:
            logger.error("Error adding pending action %s %s: %s", action_type, resource, exc)
            return None
        timestamp = self._clock()
        action_id = _new_action_id(timestamp)
        try:
            with self._lock, self._conn as conn:
                conn.execute(
                    """
                    INSERT INTO pending_actions(id, type, resource, data_json, timestamp)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (action_id, action_type, str(resource), data_json, timestamp),
                )
                self._enforce_quota(conn)
            return action_id
        except (QuotaExceededError, sqlite3.Error, ValueError) as exc:
            logger.error("Error adding pending action %s %s: %s", action_type, resource, exc)
            return None

    def pending_actions(self) -> list[PendingAction]:
        try:
            with self._lock:
                return self._load_pending(self._conn)
        except sqlite3.Error as exc:
            logger.error("Error retrieving pending actions: %s", exc)
            return []

    def get_pending_action(self, action_id: str) -> PendingAction | None:
        for action in self.pending_actions():
            if action.id == action_id:
                return action
        return None

    def pending_count(self) -> int:
        try:
            with self._lock:
                row = self._conn.execute("SELECT COUNT(*) AS total FROM pending_actions").fetchone()
            return int(row["total"])
        except sqlite3.Error as exc:
            logger.error("Error counting pending actions: %s", exc)
            return 0

    def remove_pending_action(self, action_id: str) -> bool:
        try:
            with self._lock, self._conn as conn:
                conn.execute("DELETE FROM pending_actions WHERE id = ?", (action_id,))
            return True
        except sqlite3.Error as exc:
            logger.error("Error removing pending action %s: %s", action_id, exc)
            return False

    def record_action_failure(self, action_id: str, error: str) -> bool:
        try:
            with self._lock, self._conn as conn:
                cursor = conn.execute(
                    """
                    UPDATE pending_actions
                    SET attempts = attempts + 1, last_error = ?
                    WHERE id = ?
                    """,
                    (str(error)[:MAX_ERROR_LENGTH], action_id),
                )
            return cursor.rowcount > 0
        except sqlite3.Error as exc:
            logger.error("Error recording failure of pending action %s: %s", action_id, exc)
            return False

    def clear_pending_actions(self) -> bool:
        try:
            with self._lock, self._conn as conn:
                conn.execute("DELETE FROM pending_actions")
            return True
        except sqlite3.Error as exc:
            logger.error("Error clearing pending actions: %s", exc)
            return False

    # Sync history.

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        synced: int,
        failed: int,
    ) -> int | None:
        try:
            with self._lock, self._conn as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, synced, failed)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, status, message, int(duration_ms), int(synced), int(failed)),
                )
            return int(cursor.lastrowid)
        except sqlite3.Error as exc:
            logger.error("Error recording sync run: %s", exc)
            return None

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, synced, failed
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
            return [dict(row) for row in rows]
        except sqlite3.Error as exc:
            logger.error("Error reading sync runs: %s", exc)
            return []

    # Backup and restore.

    def export_backup(self) -> str | None:
        try:
            with self._lock:
                items = self._load_items(self._conn)
                pending = [action.to_dict() for action in self._load_pending(self._conn)]
            backup = {
                "version": BACKUP_FORMAT_VERSION,
                "exported_at": _utc_now(),
                "data": items,
                "pending_actions": pending,
            }
            return json.dumps(backup, ensure_ascii=False, indent=2, default=_json_default)
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.error("Error exporting offline backup: %s", exc)
            return None

    def import_backup(self, snapshot: str | bytes | dict[str, Any]) -> bool:
        try:
            backup = snapshot if isinstance(snapshot, dict) else json.loads(snapshot)
            if not isinstance(backup, dict):
                raise ValueError("backup root must be an object")
            version = str(backup.get("version", ""))
            if version not in SUPPORTED_BACKUP_VERSIONS:
                raise ValueError(f"unsupported backup version: {version!r}")
            raw_items = backup.get("data")
            if not isinstance(raw_items, dict):
                raise ValueError("backup data must be an object")
            raw_pending = backup.get("pending_actions") or []
            if not isinstance(raw_pending, list):
                raise ValueError("backup pending_actions must be a list")
            items = {str(key): StoredItem.from_dict(value) for key, value in raw_items.items()}
            actions = [PendingAction.from_dict(value) for value in raw_pending]
            if len({action.id for action in actions}) != len(actions):
                raise ValueError("backup contains duplicate pending action ids")
            rows = [(key, _dumps(item.data), item.timestamp, int(item.synced)) for key, item in items.items()]
            action_rows = [
                (
                    action.id,
                    action.type,
                    action.resource,
                    _dumps(action.data),
                    action.timestamp,
                    action.attempts,
                    action.last_error,
                )
                for action in actions
            ]
        except (TypeError, ValueError) as exc:
            logger.error("Rejected offline backup: %s", exc)
            return False

        try:
            with self._lock, self._conn as conn:
                conn.execute("DELETE FROM stored_items")
                conn.execute("DELETE FROM pending_actions")
                conn.executemany(
                    "INSERT INTO stored_items(key, data_json, timestamp, synced) VALUES (?, ?, ?, ?)",
                    rows,
                )
                conn.executemany(
                    """
                    INSERT INTO pending_actions(id, type, resource, data_json, timestamp, attempts, last_error)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    action_rows,
                )
                self._enforce_quota(conn)
            logger.info("Imported offline backup: %d item(s), %d pending action(s)", len(rows), len(action_rows))
            return True
        except (QuotaExceededError, sqlite3.Error, ValueError) as exc:
            logger.error("Error importing offline backup: %s", exc)
            return False
