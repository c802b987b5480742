from __future__ import annotations

import inspect
import json
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional, Sequence

from .jsonlog import json_log
from .models import SyncMetadata

SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  category TEXT NOT NULL DEFAULT '',
  buying_price REAL NOT NULL DEFAULT 0,
  selling_price REAL NOT NULL DEFAULT 0,
  quantity INTEGER NOT NULL DEFAULT 0,
  low_stock_level INTEGER NOT NULL DEFAULT 7,
  image_url TEXT DEFAULT '',
  created_at TEXT,
  updated_at TEXT,
  synced INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_products_synced ON products(synced);
CREATE INDEX IF NOT EXISTS idx_products_updated_at ON products(updated_at);

CREATE TABLE IF NOT EXISTS sales (
  id TEXT PRIMARY KEY,
  product_id TEXT,
  product_name TEXT NOT NULL,
  quantity_sold INTEGER NOT NULL,
  unit_price REAL NOT NULL,
  total_price REAL NOT NULL,
  sale_date TEXT,
  created_at TEXT,
  synced INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sales_synced ON sales(synced);
CREATE INDEX IF NOT EXISTS idx_sales_sale_date ON sales(sale_date);
CREATE INDEX IF NOT EXISTS idx_sales_product_id ON sales(product_id);

CREATE TABLE IF NOT EXISTS notifications (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL,
  message TEXT NOT NULL,
  product_id TEXT,
  created_at TEXT,
  cleared INTEGER NOT NULL DEFAULT 0,
  synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_notifications_synced ON notifications(synced);
CREATE INDEX IF NOT EXISTS idx_notifications_cleared_created ON notifications(cleared, created_at);
CREATE INDEX IF NOT EXISTS idx_notifications_product_id ON notifications(product_id);

CREATE TABLE IF NOT EXISTS settings (
  id TEXT PRIMARY KEY,
  key TEXT NOT NULL,
  value TEXT,
  created_at TEXT,
  updated_at TEXT,
  synced INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_settings_synced ON settings(synced);
CREATE INDEX IF NOT EXISTS idx_settings_key ON settings(key);

CREATE TABLE IF NOT EXISTS images (
  id TEXT PRIMARY KEY,
  product_id TEXT NOT NULL,
  filename TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  size INTEGER NOT NULL DEFAULT 0,
  mimetype TEXT NOT NULL DEFAULT 'image/webp',
  remote_url TEXT,
  data BLOB,
  created_at TEXT,
  synced INTEGER NOT NULL DEFAULT 0,
  last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_images_product_id ON images(product_id);
CREATE INDEX IF NOT EXISTS idx_images_synced ON images(synced);

CREATE TABLE IF NOT EXISTS mutations (
  id TEXT PRIMARY KEY,
  client_id TEXT NOT NULL,
  collection TEXT NOT NULL,
  operation TEXT NOT NULL,
  record_id TEXT NOT NULL,
  payload TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  seq INTEGER NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  retries INTEGER NOT NULL DEFAULT 0,
  last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_mutations_status_seq ON mutations(status, seq);
CREATE INDEX IF NOT EXISTS idx_mutations_target ON mutations(collection, record_id);

CREATE TABLE IF NOT EXISTS sync_meta (
  key TEXT PRIMARY KEY,
  client_id TEXT NOT NULL,
  last_synced_at TEXT
);
"""

SYNC_META_KEY = "sync_meta"

_PRIMARY_KEYS = {"sync_meta": "key"}
_BOOL_COLUMNS = frozenset({"synced", "cleared"})
_JSON_COLUMNS = {"settings": frozenset({"value"}), "mutations": frozenset({"payload"})}


class LocalStoreError(RuntimeError):
    """The local database refused or lost a write; surfaced to the user as "unable to save"."""


@dataclass
class _Subscription:
    table: str
    callback: Callable[[list[dict[str, Any]]], Any]
    where: Optional[dict[str, Any]]
    order_by: Optional[str]
    desc: bool


class LocalStore:
    """
    Durable local database (sqlite) acting as the application's source of truth.

    Methods are coroutines so callers treat the store like any other suspension point,
    but each one runs to completion on the event loop thread: two writes never overlap.
    """

    def __init__(self, path: str = ":memory:") -> None:
        self.path = path
        try:
            # The loop thread owns the connection; check_same_thread=False only lets test
            # clients and uvicorn hand it across thread boundaries they already serialize.
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL" if path != ":memory:" else "PRAGMA journal_mode=MEMORY")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as ex:
            raise LocalStoreError(f"cannot open local database {path}: {ex}") from ex
        self._columns: dict[str, list[str]] = {}
        for table in ("products", "sales", "notifications", "settings", "images", "mutations", "sync_meta"):
            cur = self._conn.execute(f"PRAGMA table_info({table})")
            self._columns[table] = [r[1] for r in cur.fetchall()]
        self._subscribers: dict[str, list[_Subscription]] = {}
        # Tables written inside `batch()`; subscribers hear about them once, on exit.
        self._batch_depth = 0
        self._dirty: set[str] = set()

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error:
            pass

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _table(self, table: str) -> list[str]:
        cols = self._columns.get(table)
        if cols is None:
            raise ValueError(f"unknown table: {table}")
        return cols

    def _pk(self, table: str) -> str:
        return _PRIMARY_KEYS.get(table, "id")

    def _encode(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        cols = self._table(table)
        json_cols = _JSON_COLUMNS.get(table, frozenset())
        out: dict[str, Any] = {}
        for key, value in record.items():
            if key not in cols:
                continue
            if key in json_cols:
                value = json.dumps(value, sort_keys=True, default=str)
            elif key in _BOOL_COLUMNS and value is not None:
                value = 1 if value else 0
            out[key] = value
        return out

    def _decode(self, table: str, row: sqlite3.Row) -> dict[str, Any]:
        json_cols = _JSON_COLUMNS.get(table, frozenset())
        out = dict(row)
        for key in list(out.keys()):
            if key in json_cols and out[key] is not None:
                out[key] = json.loads(out[key])
            elif key in _BOOL_COLUMNS and out[key] is not None:
                out[key] = bool(out[key])
        return out

    def _where_sql(self, table: str, where: Optional[dict[str, Any]]) -> tuple[str, list[Any]]:
        if not where:
            return "", []
        cols = self._table(table)
        clauses: list[str] = []
        params: list[Any] = []
        for key, value in where.items():
            if key not in cols:
                raise ValueError(f"unknown column {table}.{key}")
            if value is None:
                clauses.append(f"{key} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{key} IN ({','.join(['?'] * len(values))})")
                params.extend(values)
            else:
                clauses.append(f"{key} = ?")
                params.append((1 if value else 0) if isinstance(value, bool) else value)
        return " WHERE " + " AND ".join(clauses), params

    def _run(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            with self._conn:
                return self._conn.execute(sql, tuple(params))
        except sqlite3.Error as ex:
            json_log("error", "store.write_failed", path=self.path, error=str(ex))
            raise LocalStoreError(str(ex)) from ex

    def _fetch(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as ex:
            json_log("error", "store.read_failed", path=self.path, error=str(ex))
            raise LocalStoreError(str(ex)) from ex

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, table: str, record_id: str) -> Optional[dict[str, Any]]:
        rows = self._fetch(f"SELECT * FROM {table} WHERE {self._pk(table)} = ?", (record_id,))
        return self._decode(table, rows[0]) if rows else None

    async def list(
        self,
        table: str,
        where: Optional[dict[str, Any]] = None,
        *,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        where_sql, params = self._where_sql(table, where)
        sql = f"SELECT * FROM {table}{where_sql}"
        if order_by:
            if order_by not in self._table(table):
                raise ValueError(f"unknown column {table}.{order_by}")
            sql += f" ORDER BY {order_by} {'DESC' if desc else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [self._decode(table, r) for r in self._fetch(sql, params)]

    async def count(self, table: str, where: Optional[dict[str, Any]] = None) -> int:
        where_sql, params = self._where_sql(table, where)
        rows = self._fetch(f"SELECT COUNT(1) FROM {table}{where_sql}", params)
        return int(rows[0][0] if rows else 0)

    async def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        rows = self._fetch(sql, params)
        return rows[0][0] if rows else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, table: str, record: dict[str, Any]) -> None:
        row = self._encode(table, record)
        cols = list(row.keys())
        self._run(
            f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join(['?'] * len(cols))})",
            [row[c] for c in cols],
        )
        await self._notify(table)

    async def put(self, table: str, record: dict[str, Any]) -> None:
        """Upsert by primary key; columns absent from `record` keep their stored value."""
        row = self._encode(table, record)
        pk = self._pk(table)
        if pk not in row:
            raise ValueError(f"{table} record without {pk}")
        cols = list(row.keys())
        update_cols = [c for c in cols if c != pk]
        sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join(['?'] * len(cols))})"
        if update_cols:
            sql += f" ON CONFLICT({pk}) DO UPDATE SET " + ", ".join(f"{c}=excluded.{c}" for c in update_cols)
        else:
            sql += f" ON CONFLICT({pk}) DO NOTHING"
        self._run(sql, [row[c] for c in cols])
        await self._notify(table)

    async def update(self, table: str, record_id: str, fields: dict[str, Any]) -> int:
        row = self._encode(table, fields)
        row.pop(self._pk(table), None)
        if not row:
            return 0
        cols = list(row.keys())
        cur = self._run(
            f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in cols)} WHERE {self._pk(table)} = ?",
            [row[c] for c in cols] + [record_id],
        )
        if cur.rowcount:
            await self._notify(table)
        return cur.rowcount

    async def update_where(self, table: str, where: dict[str, Any], fields: dict[str, Any]) -> int:
        row = self._encode(table, fields)
        if not row or not where:
            return 0
        where_sql, params = self._where_sql(table, where)
        cols = list(row.keys())
        cur = self._run(
            f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in cols)}{where_sql}",
            [row[c] for c in cols] + params,
        )
        if cur.rowcount:
            await self._notify(table)
        return cur.rowcount

    async def delete(self, table: str, record_id: str) -> int:
        cur = self._run(f"DELETE FROM {table} WHERE {self._pk(table)} = ?", (record_id,))
        if cur.rowcount:
            await self._notify(table)
        return cur.rowcount

    async def delete_where(self, table: str, where: dict[str, Any]) -> int:
        if not where:
            raise ValueError("delete_where needs a filter")
        where_sql, params = self._where_sql(table, where)
        cur = self._run(f"DELETE FROM {table}{where_sql}", params)
        if cur.rowcount:
            await self._notify(table)
        return cur.rowcount

    async def replace_id(
        self, table: str, old_id: str, new_id: str, fields: Optional[dict[str, Any]] = None
    ) -> Optional[dict[str, Any]]:
        """Re-key a row (placeholder -> server id) in one transaction. Returns the new row."""
        rows = self._fetch(f"SELECT * FROM {table} WHERE id = ?", (old_id,))
        if not rows:
            return None
        record = {**self._decode(table, rows[0]), **(fields or {}), "id": new_id}
        row = self._encode(table, record)
        cols = list(row.keys())
        try:
            with self._conn:
                self._conn.execute(f"DELETE FROM {table} WHERE id = ?", (old_id,))
                self._conn.execute(
                    f"INSERT OR REPLACE INTO {table} ({', '.join(cols)}) VALUES ({', '.join(['?'] * len(cols))})",
                    [row[c] for c in cols],
                )
        except sqlite3.Error as ex:
            json_log("error", "store.write_failed", path=self.path, error=str(ex))
            raise LocalStoreError(str(ex)) from ex
        await self._notify(table)
        return record

    # ------------------------------------------------------------------
    # Sync metadata
    # ------------------------------------------------------------------

    async def init_sync_meta(self, client_id: str) -> SyncMetadata:
        existing = await self.get_sync_meta()
        if existing:
            return existing
        self._run(
            "INSERT INTO sync_meta (key, client_id, last_synced_at) VALUES (?, ?, NULL)",
            (SYNC_META_KEY, client_id),
        )
        return SyncMetadata(client_id=client_id, last_synced_at=None)

    async def get_sync_meta(self) -> Optional[SyncMetadata]:
        row = await self.get("sync_meta", SYNC_META_KEY)
        return SyncMetadata(**row) if row else None

    async def set_last_synced_at(self, ts: str) -> None:
        self._run("UPDATE sync_meta SET last_synced_at = ? WHERE key = ?", (ts, SYNC_META_KEY))

    # ------------------------------------------------------------------
    # Change subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        table: str,
        callback: Callable[[list[dict[str, Any]]], Any],
        *,
        where: Optional[dict[str, Any]] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
    ) -> Callable[[], None]:
        """
        Deliver the filtered/sorted projection of `table` now and after every committed
        write to it. Returns an unsubscribe function.
        """
        self._table(table)
        sub = _Subscription(table=table, callback=callback, where=where, order_by=order_by, desc=desc)
        self._subscribers.setdefault(table, []).append(sub)
        await self._deliver(sub)

        def _unsubscribe() -> None:
            subs = self._subscribers.get(table) or []
            if sub in subs:
                subs.remove(sub)

        return _unsubscribe

    async def _deliver(self, sub: _Subscription) -> None:
        rows = await self.list(sub.table, sub.where, order_by=sub.order_by, desc=sub.desc)
        try:
            res = sub.callback(rows)
            if inspect.isawaitable(res):
                await res
        except Exception as ex:
            json_log("warning", "store.subscriber_failed", table=sub.table, error=str(ex))

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[None]:
        """Hold subscriber deliveries until the block exits (one per touched table)."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                dirty, self._dirty = self._dirty, set()
                for table in sorted(dirty):
                    await self._notify(table)

    async def _notify(self, table: str) -> None:
        if not self._subscribers.get(table):
            return
        if self._batch_depth:
            self._dirty.add(table)
            return
        for sub in list(self._subscribers.get(table) or []):
            await self._deliver(sub)
