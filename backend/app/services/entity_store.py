"""SQLite-backed, tenant-scoped entity store with change subscriptions."""
from __future__ import annotations

import asyncio
import json
import sqlite3
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.core.config import get_settings
from app.core.logging import logger


ChangeCallback = Callable[[List[Dict[str, Any]]], None]
ErrorCallback = Callable[[Exception], None]


class StoreIOError(Exception):
    """Generic store I/O failure surfaced to callers of the adapter."""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


class EntityStore:
    """Durable per-tenant record store for every TMS entity type.

    Records are JSON documents keyed by ``(tenant_id, entity_type, entity_id)``.
    Public methods are coroutines; the sqlite work runs on a worker thread and
    subscribers are notified on the caller's event loop once a write commits.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: Optional[str] = None) -> None:
        settings = get_settings()
        path = (db_path or settings.tms_db_path or "").strip() or "./data/tms_state.db"

        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=settings.store_busy_timeout_seconds,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute(f"PRAGMA busy_timeout = {int(settings.store_busy_timeout_seconds * 1000)}")
        self._subscribers: Dict[Tuple[str, str], List[Tuple[ChangeCallback, ErrorCallback]]] = defaultdict(list)
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    next_value INTEGER NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE TABLE IF NOT EXISTS entities (
                    tenant_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, entity_type, entity_id)
                );

                CREATE INDEX IF NOT EXISTS idx_entities_tenant_type
                    ON entities (tenant_id, entity_type, updated_at DESC);

                CREATE TABLE IF NOT EXISTS audit_logs (
                    tenant_id TEXT NOT NULL,
                    log_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, log_id)
                );

                CREATE INDEX IF NOT EXISTS idx_audit_tenant_entity
                    ON audit_logs (tenant_id, entity_type, entity_id, timestamp DESC);
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # sync core (runs on a worker thread)
    # ------------------------------------------------------------------

    def _get_row(self, tenant_id: str, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM entities WHERE tenant_id = ? AND entity_type = ? AND entity_id = ?",
                (tenant_id, entity_type, entity_id),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def _list_rows(self, tenant_id: str, entity_type: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM entities
                WHERE tenant_id = ? AND entity_type = ?
                ORDER BY updated_at DESC, entity_id
                """,
                (tenant_id, entity_type),
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    def _save_row(self, tenant_id: str, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        entity_id = str(record.get("id") or "").strip()
        if not entity_id:
            raise StoreIOError(f"{entity_type} record has no id")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO entities (tenant_id, entity_type, entity_id, data_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, entity_type, entity_id)
                DO UPDATE SET data_json = excluded.data_json, updated_at = excluded.updated_at
                """,
                (tenant_id, entity_type, entity_id, _json_dumps(record), _utc_now_iso()),
            )
            self._conn.commit()
        return record

    def _delete_row(self, tenant_id: str, entity_type: str, entity_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM entities WHERE tenant_id = ? AND entity_type = ? AND entity_id = ?",
                (tenant_id, entity_type, entity_id),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def _next_sequence(self, tenant_id: str, key: str, start: int) -> int:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                row = self._conn.execute(
                    "SELECT next_value FROM sequences WHERE tenant_id = ? AND key_name = ?",
                    (tenant_id, key),
                ).fetchone()
                if row is None:
                    current = start
                    self._conn.execute(
                        "INSERT INTO sequences (tenant_id, key_name, next_value) VALUES (?, ?, ?)",
                        (tenant_id, key, current + 1),
                    )
                else:
                    current = int(row["next_value"])
                    self._conn.execute(
                        "UPDATE sequences SET next_value = ? WHERE tenant_id = ? AND key_name = ?",
                        (current + 1, tenant_id, key),
                    )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            return current

    def _append_audit_row(self, tenant_id: str, entry: Dict[str, Any]) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO audit_logs (tenant_id, log_id, entity_type, entity_id, action, timestamp, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    entry["id"],
                    entry["entity_type"],
                    entry["entity_id"],
                    entry["action"],
                    entry["timestamp"],
                    _json_dumps(entry),
                ),
            )
            self._conn.commit()

    def _list_audit_rows(
        self,
        tenant_id: str,
        entity_type: Optional[str],
        entity_id: Optional[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT data_json FROM audit_logs
                WHERE {' AND '.join(clauses)}
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [json.loads(row["data_json"]) for row in rows]

    # ------------------------------------------------------------------
    # async adapter
    # ------------------------------------------------------------------

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except StoreIOError:
            raise
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            logger.error("Entity store operation failed", operation=operation, error=str(exc))
            raise StoreIOError(f"Store {operation} failed: {exc}") from exc

    async def get(self, tenant_id: str, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return await self._run("get", self._get_row, tenant_id, entity_type, entity_id)

    async def list(self, tenant_id: str, entity_type: str) -> List[Dict[str, Any]]:
        return await self._run("list", self._list_rows, tenant_id, entity_type)

    async def save(self, tenant_id: str, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        saved = await self._run("save", self._save_row, tenant_id, entity_type, record)
        await self._notify(tenant_id, entity_type)
        return saved

    async def delete(self, tenant_id: str, entity_type: str, entity_id: str) -> bool:
        removed = await self._run("delete", self._delete_row, tenant_id, entity_type, entity_id)
        await self._notify(tenant_id, entity_type)
        return removed

    async def next_sequence(self, tenant_id: str, key: str, start: int = 1) -> int:
        """Allocate the next value of a tenant-scoped counter in one transaction."""
        return await self._run("next_sequence", self._next_sequence, tenant_id, key, start)

    async def append_audit(self, tenant_id: str, entry: Dict[str, Any]) -> None:
        await self._run("append_audit", self._append_audit_row, tenant_id, entry)

    async def list_audit(
        self,
        tenant_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 300,
    ) -> List[Dict[str, Any]]:
        return await self._run("list_audit", self._list_audit_rows, tenant_id, entity_type, entity_id, limit)

    # ------------------------------------------------------------------
    # subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        tenant_id: str,
        entity_type: str,
        on_change: ChangeCallback,
        on_error: ErrorCallback,
    ) -> Callable[[], None]:
        """Register for full-collection pushes after each committed write."""
        key = (tenant_id, entity_type)
        entry = (on_change, on_error)
        self._subscribers[key].append(entry)

        def _unsubscribe() -> None:
            listeners = self._subscribers.get(key) or []
            if entry in listeners:
                listeners.remove(entry)

        return _unsubscribe

    async def _notify(self, tenant_id: str, entity_type: str) -> None:
        listeners = list(self._subscribers.get((tenant_id, entity_type)) or [])
        if not listeners:
            return
        try:
            records = await self._run("list", self._list_rows, tenant_id, entity_type)
        except StoreIOError as exc:
            for _, on_error in listeners:
                on_error(exc)
            return
        for on_change, on_error in listeners:
            try:
                on_change(records)
            except Exception as exc:  # listener bugs must not fail the write
                logger.warning(
                    "Subscriber rejected change push",
                    tenant_id=tenant_id,
                    entity_type=entity_type,
                    error=str(exc),
                )
                on_error(exc)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
