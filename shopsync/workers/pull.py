"""
Remote -> local pull (server wins).

Every remote row is upserted into the local store by primary key and marked synced. Local rows
the server does not know about are never deleted. Rows already identical locally are left
alone, so pulling twice in a row writes nothing the second time. A row with updates still
queued keeps those field values and stays unsynced until the push delivers them.
"""

from typing import Any, Iterable, Optional

from pydantic import ValidationError

from ..app.db import LocalStore
from ..app.jsonlog import json_log
from ..app.models import ENTITY_MODELS, REMOTE_COLLECTIONS, remote_fields, utcnow_iso
from ..app.outbox import MutationQueue
from ..app.remote.base import RemoteBackend, SchemaNotReadyError


class PullReconciler:
    def __init__(
        self,
        store: LocalStore,
        remote: RemoteBackend,
        collections: Iterable[str] = REMOTE_COLLECTIONS,
        *,
        queue: Optional[MutationQueue] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.collections = tuple(collections)
        self.queue = queue

    async def pull_all(self) -> dict[str, Any]:
        summary: dict[str, Any] = {"ok": True, "collections": {}}
        for collection in self.collections:
            try:
                res = await self.pull_collection(collection)
            except Exception as ex:
                # One collection failing never stops the others (or the push that follows).
                json_log("error", "sync.pull.error", collection=collection, error=str(ex))
                res = {"pulled": 0, "changed": 0, "invalid": 0, "error": str(ex)}
                summary["ok"] = False
            summary["collections"][collection] = res
        return summary

    async def pull_collection(self, collection: str) -> dict[str, Any]:
        try:
            rows = await self.remote.select_all(collection)
        except SchemaNotReadyError:
            json_log("info", "sync.pull.schema_not_ready", collection=collection)
            return {"pulled": 0, "changed": 0, "invalid": 0, "error": None}

        model = ENTITY_MODELS[collection]
        fields = remote_fields(collection)
        stamps = "last_synced_at" in model.model_fields
        local_edits = await self._open_updates(collection)
        changed = 0
        invalid = 0
        async with self.store.batch():
            for row in rows:
                try:
                    incoming = model.model_validate(row).model_dump()
                except ValidationError as ex:
                    invalid += 1
                    json_log("warning", "sync.pull.invalid_row", collection=collection, id=row.get("id"), error=str(ex)[:300])
                    continue
                record = {f: incoming[f] for f in fields}
                edits = local_edits.get(record["id"])
                if edits:
                    # Queued local changes stay on top until the push delivers them.
                    record.update({k: v for k, v in edits.items() if k in fields and k != "id"})
                record["synced"] = not edits
                existing = await self.store.get(collection, record["id"])
                if existing is not None and bool(existing.get("synced")) == record["synced"] and _same(existing, record):
                    continue
                if stamps and not edits:
                    record["last_synced_at"] = utcnow_iso()
                await self.store.put(collection, record)
                changed += 1

        json_log("info", "sync.pull.collection", collection=collection, pulled=len(rows), changed=changed, invalid=invalid)
        return {"pulled": len(rows), "changed": changed, "invalid": invalid, "error": None}

    async def _open_updates(self, collection: str) -> dict[str, dict[str, Any]]:
        """record_id -> merged payload of its not-yet-pushed updates, oldest first."""
        out: dict[str, dict[str, Any]] = {}
        if self.queue is None:
            return out
        for m in await self.queue.list_open(collection, operation="update"):
            out.setdefault(m.record_id, {}).update(m.payload)
        return out


def _same(existing: dict[str, Any], incoming: dict[str, Any]) -> bool:
    return all(_norm(existing.get(k)) == _norm(v) for k, v in incoming.items())


def _norm(v: Optional[Any]) -> Any:
    # sqlite hands back REAL for whole-number prices the remote may send as ints.
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return float(v)
    return v
