from typing import Any

from ..app.db import LocalStore
from ..app.jsonlog import json_log
from ..app.models import PAYLOAD_MODELS, REMOTE_COLLECTIONS, is_placeholder
from ..app.outbox import MutationQueue


async def enqueue_unsynced_records(store: LocalStore, queue: MutationQueue) -> dict[str, Any]:
    """
    Start-up scan: any business row still flagged unsynced with nothing queued for it
    (e.g. the queue was cleared, or a crash between the write and the enqueue) gets a fresh
    insert (placeholder ids) or update (server ids) queued. Rows whose mutation is parked as
    failed are left to the operator.
    """
    summary: dict[str, Any] = {"enqueued": 0, "invalid": 0, "collections": {}}
    for collection in REMOTE_COLLECTIONS:
        count = 0
        for row in await store.list(collection, {"synced": False}, order_by="created_at"):
            if await queue.find_open(collection, row["id"]) is not None:
                continue
            operation = "insert" if is_placeholder(collection, row["id"]) else "update"
            model = PAYLOAD_MODELS[(collection, operation)]
            payload = {k: row[k] for k in model.model_fields if k in row and row[k] is not None}
            try:
                await queue.enqueue(collection, operation, row["id"], payload)
            except ValueError as ex:
                # Includes "empty update": nothing the backend needs from this row.
                summary["invalid"] += 1
                json_log("warning", "sync.recovery.skipped", collection=collection, id=row["id"], error=str(ex)[:300])
                continue
            count += 1
        summary["collections"][collection] = count
        summary["enqueued"] += count
    json_log("info", "sync.recovery.done", enqueued=summary["enqueued"], invalid=summary["invalid"])
    return summary


async def verify_sync(store: LocalStore, queue: MutationQueue) -> dict[str, Any]:
    """Operator view: unsynced rows per collection and every mutation not yet delivered."""
    unsynced: dict[str, Any] = {}
    for collection in REMOTE_COLLECTIONS:
        rows = await store.list(collection, {"synced": False}, order_by="created_at")
        unsynced[collection] = {"count": len(rows), "ids": [r["id"] for r in rows]}
    pending = await queue.list_pending()
    failed = await queue.list_failed()
    return {
        "unsynced": unsynced,
        "pending": [m.model_dump() for m in pending],
        "failed": [m.model_dump() for m in failed],
        "stats": await queue.stats(),
    }


async def mark_all_unsynced(store: LocalStore, queue: MutationQueue) -> dict[str, Any]:
    """Force a full re-push: flag every row unsynced, then queue whatever has nothing queued."""
    marked: dict[str, int] = {}
    for collection in REMOTE_COLLECTIONS:
        marked[collection] = await store.update_where(collection, {"synced": True}, {"synced": False})
    json_log("info", "sync.recovery.marked_unsynced", **marked)
    summary = await enqueue_unsynced_records(store, queue)
    return {**summary, "marked": marked}
