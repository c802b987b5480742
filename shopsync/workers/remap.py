from typing import Any

from ..app.db import LocalStore
from ..app.jsonlog import json_log
from ..app.models import FOREIGN_KEYS, REMOTE_COLLECTIONS, is_placeholder
from ..app.outbox import MutationQueue


class ReferenceRemapper:
    """
    After a push re-keys records, point every stored reference at the new ids.

    Walks FOREIGN_KEYS, so a new relation only needs a new entry there. Rows that already live
    on the backend under their own id also get an update queued for the fk field; rows still
    under a placeholder pick the new value up when their insert is built.
    """

    def __init__(self, store: LocalStore, queue: MutationQueue) -> None:
        self.store = store
        self.queue = queue

    async def apply(self, mappings: dict[str, dict[str, str]]) -> dict[str, Any]:
        summary = {"rewritten": 0, "enqueued": 0}
        if not any(mappings.values()):
            return summary

        for collection, fks in FOREIGN_KEYS.items():
            for fk, target in fks.items():
                mapping = mappings.get(target) or {}
                if not mapping:
                    continue
                rows = await self.store.list(collection, {fk: list(mapping.keys())})
                for row in rows:
                    new_ref = mapping[row[fk]]
                    remote_copy = collection in REMOTE_COLLECTIONS and not is_placeholder(collection, row["id"])
                    fields: dict[str, Any] = {fk: new_ref}
                    if remote_copy:
                        fields["synced"] = False
                    await self.store.update(collection, row["id"], fields)
                    summary["rewritten"] += 1
                    if remote_copy:
                        await self.queue.enqueue(collection, "update", row["id"], {fk: new_ref})
                        summary["enqueued"] += 1

        json_log("info", "sync.remap.done", **summary)
        return summary
