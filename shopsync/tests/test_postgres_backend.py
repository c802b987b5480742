import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

import psycopg
import pytest

from shopsync.app.remote.base import RemoteError, SchemaNotReadyError
from shopsync.app.remote.postgres import PostgresBackend

PRODUCT_COLUMNS = [
    {"column_name": "id", "data_type": "uuid"},
    {"column_name": "name", "data_type": "text"},
    {"column_name": "quantity", "data_type": "integer"},
    {"column_name": "selling_price", "data_type": "numeric"},
]
SALE_COLUMNS = [
    {"column_name": "id", "data_type": "uuid"},
    {"column_name": "items", "data_type": "jsonb"},
]


class FakeCursor:
    def __init__(self, pool):
        self.pool = pool
        self.rows = []

    async def execute(self, sql, params=()):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.errors:
            raise self.pool.errors.pop(0)
        if "information_schema.columns" in sql:
            self.rows = self.pool.columns.get(params[0], [])
        else:
            self.rows = self.pool.rows

    async def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    @asynccontextmanager
    async def cursor(self):
        yield FakeCursor(self.pool)


class FakePool:
    """Records every statement instead of talking to a server."""

    def __init__(self, columns=None, rows=None):
        self.columns = columns if columns is not None else {"products": PRODUCT_COLUMNS, "sales": SALE_COLUMNS}
        self.rows = rows or []
        self.errors = []
        self.executed = []
        self.opened = 0
        self.closed = 0

    async def open(self):
        self.opened += 1

    async def close(self):
        self.closed += 1

    @asynccontextmanager
    async def connection(self):
        yield FakeConnection(self)


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def backend(pool):
    return PostgresBackend("postgresql://unused", pool=pool)


async def test_insert_upserts_known_columns_only(backend, pool):
    await backend.insert("products", {"id": "p1", "name": "Hair Cream", "quantity": 3, "local_only": "x"})

    lookup, upsert = pool.executed
    assert "information_schema.columns" in lookup[0]
    assert lookup[1] == ("products",)
    assert upsert[0] == (
        "INSERT INTO products (id, name, quantity) VALUES (%s, %s, %s) "
        "ON CONFLICT (id) DO UPDATE SET name=EXCLUDED.name, quantity=EXCLUDED.quantity"
    )
    assert upsert[1] == ("p1", "Hair Cream", 3)
    assert pool.opened == 1

    # Column metadata is cached per table.
    await backend.insert("products", {"id": "p2"})
    assert len(pool.executed) == 3
    assert pool.executed[-1][0].endswith("ON CONFLICT (id) DO NOTHING")


async def test_insert_requires_id(backend):
    with pytest.raises(ValueError):
        await backend.insert("products", {"name": "Hair Cream"})


async def test_json_columns_are_serialized(backend, pool):
    await backend.insert("sales", {"id": "s1", "items": [{"product_id": "p1", "quantity": 2}]})

    sql, params = pool.executed[-1]
    assert sql.startswith("INSERT INTO sales (id, items)")
    assert params == ("s1", '[{"product_id": "p1", "quantity": 2}]')


async def test_update_by_id(backend, pool):
    await backend.update_by_id("products", "p1", {"id": "ignored", "quantity": 7, "stock_status": "in_stock"})

    sql, params = pool.executed[-1]
    assert sql == "UPDATE products SET quantity=%s WHERE id=%s"
    assert params == (7, "p1")

    # Nothing the table knows about: no statement at all.
    before = len(pool.executed)
    await backend.update_by_id("products", "p1", {"stock_status": "low_stock"})
    assert len(pool.executed) == before


async def test_deletes(backend, pool):
    await backend.delete_by_id("products", "p1")
    await backend.delete_by_ids("products", ["p2", "", "p3"])
    await backend.delete_by_ids("products", [])

    assert pool.executed == [
        ("DELETE FROM products WHERE id=%s", ("p1",)),
        ("DELETE FROM products WHERE id::text = ANY(%s)", (["p2", "p3"],)),
    ]


async def test_select_all_returns_json_scalars(pool):
    rid = uuid.UUID("0f4b8a9e-3333-4000-8000-000000000001")
    pool.rows = [
        {
            "id": rid,
            "selling_price": Decimal("499.50"),
            "created_at": datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            "name": "Hair Cream",
        }
    ]
    backend = PostgresBackend("postgresql://unused", pool=pool)

    [row] = await backend.select_all("products")

    assert row == {
        "id": str(rid),
        "selling_price": 499.5,
        "created_at": "2026-01-02T03:04:05+00:00",
        "name": "Hair Cream",
    }
    assert pool.executed == [("SELECT * FROM products", ())]


async def test_unknown_table_is_rejected(backend, pool):
    with pytest.raises(ValueError):
        await backend.select_all("mutations")
    assert pool.executed == []


async def test_missing_relation_is_schema_not_ready(backend, pool):
    pool.errors.append(psycopg.errors.UndefinedTable('relation "products" does not exist'))

    with pytest.raises(SchemaNotReadyError) as ei:
        await backend.probe("products")
    assert ei.value.code == "42P01"


async def test_table_without_columns_is_schema_not_ready(pool):
    pool.columns = {}
    backend = PostgresBackend("postgresql://unused", pool=pool)

    with pytest.raises(SchemaNotReadyError):
        await backend.insert("products", {"id": "p1"})


async def test_database_errors_keep_their_sqlstate(backend, pool):
    await backend.insert("products", {"id": "p1"})
    pool.errors.append(psycopg.errors.UniqueViolation("duplicate key value"))

    with pytest.raises(RemoteError) as ei:
        await backend.insert("products", {"id": "p1", "name": "Hair Cream"})
    assert ei.value.code == "23505"
    assert not isinstance(ei.value, SchemaNotReadyError)


async def test_connection_failures_are_transport_errors(backend, pool):
    pool.errors.append(OSError("connection refused"))

    with pytest.raises(RemoteError) as ei:
        await backend.delete_by_id("products", "p1")
    assert ei.value.code == "transport"


async def test_aclose_closes_an_opened_pool(backend, pool):
    await backend.aclose()
    assert pool.closed == 0

    await backend.probe("products")
    await backend.aclose()
    assert pool.closed == 1
