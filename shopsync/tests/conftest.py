import asyncio
import os
import sys
from typing import Any, Iterable, Optional

import pytest


# Allow running pytest from either the repo root or from within `shopsync/`.
# Tests import `shopsync.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from shopsync.app.db import LocalStore  # noqa: E402
from shopsync.app.outbox import MutationQueue  # noqa: E402
from shopsync.app.remote.base import RemoteBackend, RemoteError, SchemaNotReadyError  # noqa: E402
from shopsync.app.shop import ShopOperations  # noqa: E402


class FakeRemote(RemoteBackend):
    """In-memory stand-in for the relational backend."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {
            "products": {},
            "sales": {},
            "notifications": {},
            "settings": {},
        }
        self.missing: set[str] = set()
        self.failing_ids: set[str] = set()
        self.failing_tables: set[str] = set()
        self.failing_inserts: set[str] = set()
        self.unreachable = False
        self.gate: Optional[asyncio.Event] = None
        self.calls: list[tuple] = []

    def _check(self, table: str, record_id: Optional[str] = None) -> None:
        if self.unreachable:
            raise RemoteError("connection refused", code="transport")
        if table in self.missing:
            raise SchemaNotReadyError(f"relation {table} not found", code="PGRST205", status=404)
        if table in self.failing_tables or (record_id and record_id in self.failing_ids):
            raise RemoteError("boom", code="23514", status=400)

    async def select_all(self, table: str) -> list[dict[str, Any]]:
        self.calls.append(("select", table))
        if self.gate is not None:
            await self.gate.wait()
        self._check(table)
        return [dict(r) for r in self.tables[table].values()]

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        self.calls.append(("insert", table, row["id"]))
        self._check(table, row["id"])
        if table in self.failing_inserts:
            raise RemoteError("insert rejected", code="23503", status=409)
        self.tables[table][row["id"]] = {**self.tables[table].get(row["id"], {}), **row}

    async def update_by_id(self, table: str, record_id: str, fields: dict[str, Any]) -> None:
        self.calls.append(("update", table, record_id))
        self._check(table, record_id)
        if record_id in self.tables[table]:
            self.tables[table][record_id].update(fields)

    async def delete_by_id(self, table: str, record_id: str) -> None:
        self.calls.append(("delete", table, record_id))
        self._check(table, record_id)
        self.tables[table].pop(record_id, None)

    async def delete_by_ids(self, table: str, record_ids: Iterable[str]) -> None:
        for record_id in list(record_ids):
            await self.delete_by_id(table, record_id)

    async def probe(self, table: str) -> None:
        self.calls.append(("probe", table))
        self._check(table)


class FakeStorage:
    def __init__(self, base_url: str = "https://cdn.test/product-images") -> None:
        self.base_url = base_url
        self.objects: dict[str, bytes] = {}
        self.failing_paths: set[str] = set()

    async def upload(self, path: str, data: bytes, content_type: str = "image/webp", *, upsert: bool = True) -> str:
        if path in self.failing_paths:
            raise RuntimeError("upload failed")
        self.objects[path] = data
        return "etag"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"


@pytest.fixture
def store():
    s = LocalStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def queue(store):
    return MutationQueue(store, "client_test", max_retries=5)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def shop(store, queue):
    return ShopOperations(store, queue)


@pytest.fixture
def hair_cream():
    return {"name": "Hair Cream", "category": "Hair", "buying_price": 200, "selling_price": 500, "quantity": 10}


@pytest.fixture
def storage():
    return FakeStorage()
