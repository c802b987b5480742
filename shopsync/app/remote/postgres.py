import json
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from ..jsonlog import json_log
from ..models import REMOTE_COLLECTIONS
from .base import RemoteBackend, RemoteError, SchemaNotReadyError


def _plain(v: Any) -> Any:
    # Match what the REST adapter would hand back (JSON scalars).
    if isinstance(v, Decimal):
        return float(v)
    if isinstance(v, uuid.UUID):
        return str(v)
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return v


def _prep_value(column: dict[str, Any], v: Any) -> Any:
    if v is None:
        return None
    data_type = (column.get("data_type") or "").strip().lower()
    if data_type in {"json", "jsonb"} and not isinstance(v, str):
        return json.dumps(v)
    return v


class PostgresBackend(RemoteBackend):
    """Direct relational access to the same schema PostgREST exposes (psycopg 3, async pool)."""

    def __init__(
        self,
        conninfo: str,
        *,
        min_size: int = 1,
        max_size: int = 4,
        timeout_s: float = 5.0,
        pool: Optional[AsyncConnectionPool] = None,
    ) -> None:
        self._pool = pool if pool is not None else AsyncConnectionPool(
            conninfo=conninfo,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_s,
            kwargs={"row_factory": dict_row, "connect_timeout": max(1, int(timeout_s))},
            open=False,
        )
        self._opened = False
        self._columns: dict[str, list[dict[str, Any]]] = {}

    async def _ensure_open(self) -> None:
        if not self._opened:
            await self._pool.open()
            self._opened = True

    async def aclose(self) -> None:
        if self._opened:
            await self._pool.close()
            self._opened = False

    def _check_table(self, table: str) -> str:
        if table not in REMOTE_COLLECTIONS:
            raise ValueError(f"table not synced: {table}")
        return table

    async def _execute(self, table: str, sql: str, params: tuple = (), *, fetch: bool = False) -> list[dict[str, Any]]:
        await self._ensure_open()
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(sql, params)
                    if fetch:
                        return [dict(r) for r in (await cur.fetchall() or [])]
                    return []
        except psycopg.errors.UndefinedTable as ex:
            raise SchemaNotReadyError(f"relation {table} not found", code="42P01") from ex
        except psycopg.Error as ex:
            code = getattr(getattr(ex, "diag", None), "sqlstate", None) or getattr(ex, "sqlstate", None)
            json_log("warning", "remote.postgres.error", table=table, code=code, error=str(ex)[:300])
            raise RemoteError(str(ex), code=code) from ex
        except Exception as ex:
            # Pool timeouts and connection failures raised outside psycopg.Error.
            raise RemoteError(f"{table}: {ex}", code="transport") from ex

    async def _load_columns(self, table: str) -> list[dict[str, Any]]:
        cols = self._columns.get(table)
        if cols is None:
            cols = await self._execute(
                table,
                """
                SELECT column_name, data_type
                FROM information_schema.columns
                WHERE table_schema='public' AND table_name=%s
                ORDER BY ordinal_position ASC
                """,
                (table,),
                fetch=True,
            )
            if not cols:
                raise SchemaNotReadyError(f"relation {table} not found", code="42P01")
            self._columns[table] = cols
        return cols

    async def select_all(self, table: str) -> list[dict[str, Any]]:
        self._check_table(table)
        rows = await self._execute(table, f"SELECT * FROM {table}", fetch=True)
        return [{k: _plain(v) for k, v in r.items()} for r in rows]

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        self._check_table(table)
        cols = await self._load_columns(table)
        col_by_name = {str(c["column_name"]): c for c in cols}
        # Only columns present in the row, so version skew never writes NULLs over remote data.
        names = [k for k in row.keys() if k in col_by_name]
        if "id" not in names:
            raise ValueError(f"{table} row without id")
        update_cols = [c for c in names if c != "id"]
        sql = f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join(['%s'] * len(names))})"
        if update_cols:
            sql += " ON CONFLICT (id) DO UPDATE SET " + ", ".join(f"{c}=EXCLUDED.{c}" for c in update_cols)
        else:
            sql += " ON CONFLICT (id) DO NOTHING"
        await self._execute(table, sql, tuple(_prep_value(col_by_name[n], row.get(n)) for n in names))

    async def update_by_id(self, table: str, record_id: str, fields: dict[str, Any]) -> None:
        self._check_table(table)
        cols = await self._load_columns(table)
        col_by_name = {str(c["column_name"]): c for c in cols}
        names = [k for k in fields.keys() if k in col_by_name and k != "id"]
        if not names:
            return
        sql = f"UPDATE {table} SET {', '.join(f'{n}=%s' for n in names)} WHERE id=%s"
        params = tuple(_prep_value(col_by_name[n], fields.get(n)) for n in names) + (record_id,)
        await self._execute(table, sql, params)

    async def delete_by_id(self, table: str, record_id: str) -> None:
        self._check_table(table)
        await self._execute(table, f"DELETE FROM {table} WHERE id=%s", (record_id,))

    async def delete_by_ids(self, table: str, record_ids: Iterable[str]) -> None:
        self._check_table(table)
        ids = [str(i) for i in record_ids if i]
        if not ids:
            return
        await self._execute(table, f"DELETE FROM {table} WHERE id::text = ANY(%s)", (ids,))

    async def probe(self, table: str) -> None:
        self._check_table(table)
        await self._execute(table, f"SELECT 1 FROM {table} LIMIT 1", fetch=True)
