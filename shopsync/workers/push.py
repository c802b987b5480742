"""
Local -> remote push (queue wins).

Drains the pending mutations in creation order. Records created offline carry placeholder ids;
the first successful insert gives them a UUID, re-keys the local row and points every other
queued mutation at the new id.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from ..app.db import LocalStore
from ..app.jsonlog import json_log
from ..app.models import (
    ENTITY_MODELS,
    FOREIGN_KEYS,
    REMOTE_COLLECTIONS,
    Mutation,
    is_placeholder,
    remote_fields,
    utcnow_iso,
)
from ..app.outbox import MutationQueue
from ..app.remote.base import RemoteBackend, RemoteError, SchemaNotReadyError

PROBE_TABLE = "products"


@dataclass
class PushResult:
    ok: bool = True
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    aborted: bool = False
    error: Optional[str] = None
    # {collection: {placeholder: uuid}} for inserts confirmed by the backend in this pass.
    id_mappings: dict[str, dict[str, str]] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "aborted": self.aborted,
            "error": self.error,
            "id_mappings": self.id_mappings,
        }


class _Deferred(Exception):
    """A referenced record has not reached the backend yet; try again next cycle."""


class PushReconciler:
    def __init__(self, store: LocalStore, queue: MutationQueue, remote: RemoteBackend) -> None:
        self.store = store
        self.queue = queue
        self.remote = remote

    async def push(self) -> PushResult:
        result = PushResult()
        pending = await self.queue.list_pending()
        if not pending:
            await self.queue.clear_synced()
            return result

        try:
            await self.remote.probe(PROBE_TABLE)
        except SchemaNotReadyError as ex:
            json_log("warning", "sync.push.schema_not_ready", error=str(ex))
            return PushResult(ok=False, aborted=True, error=f"remote schema not ready: {ex}")
        except RemoteError as ex:
            json_log("warning", "sync.push.unreachable", error=str(ex))
            return PushResult(ok=False, aborted=True, error=str(ex))

        planned = await self._plan_ids(pending)
        payloads = await self._rewrite_payloads(pending, planned)

        confirmed: dict[str, dict[str, str]] = {}
        inserts_ahead = {(m.collection, m.record_id) for m in pending if m.operation == "insert"}
        for m in pending:
            if m.operation == "insert":
                inserts_ahead.discard((m.collection, m.record_id))
            try:
                outcome = await self._apply(m, payloads[m.id], planned, confirmed, inserts_ahead)
            except _Deferred as ex:
                result.deferred += 1
                json_log("info", "sync.push.deferred", mutation_id=m.id, collection=m.collection, reason=str(ex))
                continue
            except Exception as ex:
                result.failed += 1
                result.ok = False
                json_log(
                    "error",
                    "sync.push.mutation_failed",
                    mutation_id=m.id,
                    collection=m.collection,
                    operation=m.operation,
                    record_id=m.record_id,
                    error=str(ex),
                )
                await self.queue.mark_failed(m.id, str(ex))
                continue
            await self.queue.mark_synced(m.id)
            if outcome == "skipped":
                result.skipped += 1
            else:
                result.synced += 1

        await self.queue.clear_synced()
        result.id_mappings = {c: dict(m) for c, m in confirmed.items() if m}
        json_log(
            "info",
            "sync.push.done",
            synced=result.synced,
            failed=result.failed,
            skipped=result.skipped,
            deferred=result.deferred,
            remapped=sum(len(m) for m in result.id_mappings.values()),
        )
        return result

    async def _plan_ids(self, pending: list[Mutation]) -> dict[str, dict[str, str]]:
        """
        Pick the UUID each placeholder insert will land under. The choice is persisted in the
        insert's payload so a failed attempt retries under the same id next cycle and any
        payload already rewritten to point at it stays valid.
        """
        planned: dict[str, dict[str, str]] = {}
        for m in pending:
            if m.operation != "insert" or m.collection not in REMOTE_COLLECTIONS:
                continue
            if not is_placeholder(m.collection, m.record_id):
                continue
            new_id = str(m.payload.get("id") or "")
            if not new_id or is_placeholder(m.collection, new_id):
                new_id = str(uuid.uuid4())
                m.payload = {**m.payload, "id": new_id}
                await self.queue.rewrite_payload(m.id, m.payload)
            planned.setdefault(m.collection, {})[m.record_id] = new_id
        return planned

    async def _rewrite_payloads(
        self, pending: list[Mutation], planned: dict[str, dict[str, str]]
    ) -> dict[str, dict[str, Any]]:
        payloads: dict[str, dict[str, Any]] = {}
        for m in pending:
            payload = dict(m.payload)
            changed = False
            for fk, target in FOREIGN_KEYS.get(m.collection, {}).items():
                ref = payload.get(fk)
                new_ref = planned.get(target, {}).get(ref) if ref else None
                if new_ref:
                    payload[fk] = new_ref
                    changed = True
            if changed:
                await self.queue.rewrite_payload(m.id, payload)
            payloads[m.id] = payload
        return payloads

    def _resolve_target(self, m: Mutation, confirmed: dict[str, dict[str, str]]) -> Optional[str]:
        if not is_placeholder(m.collection, m.record_id):
            return m.record_id
        return confirmed.get(m.collection, {}).get(m.record_id)

    async def _resolve_refs(
        self,
        collection: str,
        row: dict[str, Any],
        planned: dict[str, dict[str, str]],
        confirmed: dict[str, dict[str, str]],
    ) -> dict[str, Any]:
        out = dict(row)
        for fk, target in FOREIGN_KEYS.get(collection, {}).items():
            ref = out.get(fk)
            if not ref:
                continue
            if ref in confirmed.get(target, {}):
                out[fk] = confirmed[target][ref]
                continue
            pending_ids = set(planned.get(target, {}).values()) - set(confirmed.get(target, {}).values())
            if ref in pending_ids or ref in planned.get(target, {}):
                raise _Deferred(f"{fk} -> {target} {ref} not pushed yet")
            if is_placeholder(target, ref):
                if await self.store.get(target, ref) is not None:
                    raise _Deferred(f"{fk} -> {target} {ref} has no pending insert")
                # Referenced record was deleted before it ever reached the backend.
                out[fk] = None
        return out

    async def _apply(
        self,
        m: Mutation,
        payload: dict[str, Any],
        planned: dict[str, dict[str, str]],
        confirmed: dict[str, dict[str, str]],
        inserts_ahead: set[tuple[str, str]],
    ) -> str:
        if m.collection not in REMOTE_COLLECTIONS:
            raise ValueError(f"collection {m.collection} is not pushed through the queue")
        if m.operation == "insert":
            return await self._apply_insert(m, payload, planned, confirmed)

        target = self._resolve_target(m, confirmed)
        if target is None:
            if (m.collection, m.record_id) in inserts_ahead:
                json_log(
                    "warning",
                    "sync.push.ordering_violation",
                    mutation_id=m.id,
                    collection=m.collection,
                    operation=m.operation,
                    record_id=m.record_id,
                )
            # The insert (built from the current local row) carries this change, or the row is gone.
            return "skipped"

        if m.operation == "update":
            fields = await self._resolve_refs(m.collection, payload, planned, confirmed)
            fields.pop("id", None)
            await self.remote.update_by_id(m.collection, target, fields)
            await self._apply_local_update(m, target, fields)
        elif m.operation == "delete":
            await self.remote.delete_by_id(m.collection, target)
        else:
            raise ValueError(f"unsupported operation: {m.operation}")
        return "synced"

    async def _apply_insert(
        self,
        m: Mutation,
        payload: dict[str, Any],
        planned: dict[str, dict[str, str]],
        confirmed: dict[str, dict[str, str]],
    ) -> str:
        placeholder = is_placeholder(m.collection, m.record_id)
        local = await self.store.get(m.collection, m.record_id)
        if placeholder and local is None:
            # Deleted before it ever reached the backend; references to it resolve to NULL.
            planned.get(m.collection, {}).pop(m.record_id, None)
            json_log("info", "sync.push.insert_dropped", mutation_id=m.id, collection=m.collection, record_id=m.record_id)
            return "skipped"

        fields = remote_fields(m.collection)
        source = local if local is not None else payload
        row = {k: source[k] for k in fields if k in source}
        new_id = planned.get(m.collection, {}).get(m.record_id) if placeholder else m.record_id
        row["id"] = new_id
        row = await self._resolve_refs(m.collection, row, planned, confirmed)

        await self.remote.insert(m.collection, row)

        if placeholder:
            local_fields = {**row, "synced": True}
            if "last_synced_at" in ENTITY_MODELS[m.collection].model_fields:
                local_fields["last_synced_at"] = utcnow_iso()
            await self.store.replace_id(m.collection, m.record_id, new_id, local_fields)
            await self.queue.rewrite_record_id(m.collection, m.record_id, new_id)
            confirmed.setdefault(m.collection, {})[m.record_id] = new_id
            json_log("info", "sync.push.remapped", collection=m.collection, old_id=m.record_id, new_id=new_id)
        elif local is not None:
            await self._mark_local_synced(m.collection, new_id)
        return "synced"

    async def _apply_local_update(self, m: Mutation, record_id: str, fields: dict[str, Any]) -> None:
        """
        Write the delivered fields back along with the synced flag, so the local row holds what
        the backend now holds even if something overwrote it since the change was queued.
        """
        if await self.queue.find_open(m.collection, record_id, exclude=m.id) is not None:
            # Later changes to the same row are still queued; the local row already carries them.
            return
        local_fields = {k: v for k, v in fields.items() if k in remote_fields(m.collection) and k != "id"}
        await self.store.update(m.collection, record_id, local_fields)
        await self._mark_local_synced(m.collection, record_id)

    async def _mark_local_synced(self, collection: str, record_id: str) -> None:
        fields: dict[str, Any] = {"synced": True}
        if "last_synced_at" in ENTITY_MODELS[collection].model_fields:
            fields["last_synced_at"] = utcnow_iso()
        await self.store.update(collection, record_id, fields)
