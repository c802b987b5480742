"""
Durable outbox of local changes waiting to reach the remote backend.

Rows are appended by shop operations (and the recovery scan), drained in creation order by the
push reconciler, and garbage-collected once confirmed. A row that keeps failing is parked as
`failed` after `max_retries` attempts so it stops blocking the rest of the queue.
"""

import uuid
from typing import Any, Optional

from .db import LocalStore
from .jsonlog import json_log
from .models import Mutation, utcnow_iso, validate_payload

TABLE = "mutations"
# Not yet delivered: still queued, or parked until an operator retries or deletes it.
OPEN_STATUSES = ("pending", "failed")


class MutationQueue:
    def __init__(self, store: LocalStore, client_id: str, *, max_retries: int = 5) -> None:
        self.store = store
        self.client_id = client_id
        self.max_retries = max(1, int(max_retries))

    async def enqueue(
        self,
        collection: str,
        operation: str,
        record_id: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Mutation:
        """
        Validate and append one mutation. Only a malformed payload or a local database failure
        can make this raise; connectivity plays no part.
        """
        clean = validate_payload(collection, operation, payload)
        seq = int(await self.store.scalar("SELECT COALESCE(MAX(seq), 0) + 1 FROM mutations") or 1)
        mutation = Mutation(
            id=str(uuid.uuid4()),
            client_id=self.client_id,
            collection=collection,
            operation=operation,
            record_id=record_id,
            payload=clean,
            created_at=utcnow_iso(),
            seq=seq,
        )
        await self.store.add(TABLE, mutation.model_dump())
        json_log(
            "info",
            "outbox.enqueued",
            mutation_id=mutation.id,
            collection=collection,
            operation=operation,
            record_id=record_id,
            seq=seq,
        )
        return mutation

    async def get(self, mutation_id: str) -> Optional[Mutation]:
        row = await self.store.get(TABLE, mutation_id)
        return Mutation(**row) if row else None

    async def find_pending(
        self, collection: str, record_id: str, operation: Optional[str] = None
    ) -> Optional[Mutation]:
        where: dict[str, Any] = {"collection": collection, "record_id": record_id, "status": "pending"}
        if operation:
            where["operation"] = operation
        rows = await self.store.list(TABLE, where, order_by="seq", limit=1)
        return Mutation(**rows[0]) if rows else None

    async def find_open(
        self, collection: str, record_id: str, *, exclude: Optional[str] = None
    ) -> Optional[Mutation]:
        """First pending or parked mutation for a record: the local row still has undelivered changes."""
        rows = await self.store.list(
            TABLE,
            {"collection": collection, "record_id": record_id, "status": list(OPEN_STATUSES)},
            order_by="seq",
        )
        for row in rows:
            if row["id"] != exclude:
                return Mutation(**row)
        return None

    async def list_open(self, collection: str, operation: Optional[str] = None) -> list[Mutation]:
        where: dict[str, Any] = {"collection": collection, "status": list(OPEN_STATUSES)}
        if operation:
            where["operation"] = operation
        rows = await self.store.list(TABLE, where, order_by="seq")
        return [Mutation(**r) for r in rows]

    async def list_pending(self) -> list[Mutation]:
        rows = await self.store.list(TABLE, {"status": "pending"}, order_by="seq")
        return [Mutation(**r) for r in rows]

    async def list_failed(self) -> list[Mutation]:
        rows = await self.store.list(TABLE, {"status": "failed"}, order_by="seq")
        return [Mutation(**r) for r in rows]

    async def list_all(self, status: Optional[str] = None, limit: int = 200) -> list[Mutation]:
        where = {"status": status} if status else None
        rows = await self.store.list(TABLE, where, order_by="seq", limit=limit)
        return [Mutation(**r) for r in rows]

    async def mark_synced(self, mutation_id: str) -> None:
        await self.store.update(TABLE, mutation_id, {"status": "synced", "last_error": None})

    async def mark_failed(self, mutation_id: str, error: str) -> Optional[Mutation]:
        current = await self.get(mutation_id)
        if not current:
            return None
        retries = current.retries + 1
        status = "failed" if retries >= self.max_retries else "pending"
        await self.store.update(
            TABLE, mutation_id, {"retries": retries, "last_error": str(error)[:2000], "status": status}
        )
        if status == "failed":
            json_log(
                "warning",
                "outbox.parked",
                mutation_id=mutation_id,
                collection=current.collection,
                operation=current.operation,
                record_id=current.record_id,
                retries=retries,
                error=str(error)[:500],
            )
        return current.model_copy(update={"retries": retries, "status": status, "last_error": str(error)[:2000]})

    async def retry(self, mutation_id: str) -> bool:
        n = await self.store.update(TABLE, mutation_id, {"status": "pending", "retries": 0, "last_error": None})
        return bool(n)

    async def delete(self, mutation_id: str) -> bool:
        return bool(await self.store.delete(TABLE, mutation_id))

    async def clear_synced(self) -> int:
        return await self.store.delete_where(TABLE, {"status": "synced"})

    async def rewrite_payload(self, mutation_id: str, payload: dict[str, Any]) -> None:
        await self.store.update(TABLE, mutation_id, {"payload": payload})

    async def rewrite_record_id(self, collection: str, old_id: str, new_id: str) -> int:
        return await self.store.update_where(
            TABLE, {"collection": collection, "record_id": old_id, "status": "pending"}, {"record_id": new_id}
        )

    async def stats(self) -> dict[str, int]:
        out = {"pending": 0, "synced": 0, "failed": 0}
        for status in out:
            out[status] = await self.store.count(TABLE, {"status": status})
        out["total"] = out["pending"] + out["synced"] + out["failed"]
        return out
