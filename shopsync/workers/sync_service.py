"""
Full sync cycle: pull -> push -> images -> reference fixup -> stamp.

Only one cycle runs at a time and attempts closer together than the debounce window are
dropped. Both guards live on the instance, so tests (and a second agent in one process) get
independent state.
"""

import time
from typing import Any, Callable, Optional

from ..app.db import LocalStore
from ..app.jsonlog import json_log
from ..app.models import utcnow_iso
from ..app.outbox import MutationQueue
from .images import ImageSync
from .pull import PullReconciler
from .push import PushReconciler
from .remap import ReferenceRemapper


class SyncOrchestrator:
    def __init__(
        self,
        store: LocalStore,
        queue: MutationQueue,
        puller: PullReconciler,
        pusher: PushReconciler,
        remapper: ReferenceRemapper,
        images: Optional[ImageSync] = None,
        *,
        debounce_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.queue = queue
        self.puller = puller
        self.pusher = pusher
        self.remapper = remapper
        self.images = images
        self.debounce_s = float(debounce_s)
        self._clock = clock
        self._in_progress = False
        self._last_attempt: Optional[float] = None
        self.state = "idle"
        self.last_report: Optional[dict[str, Any]] = None

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def full_sync(self) -> dict[str, Any]:
        now = self._clock()
        if self._in_progress:
            json_log("info", "sync.skipped", reason="in_progress")
            return {"ok": False, "skipped": True, "reason": "in_progress"}
        if self._last_attempt is not None and now - self._last_attempt < self.debounce_s:
            json_log("info", "sync.skipped", reason="debounced")
            return {"ok": False, "skipped": True, "reason": "debounced"}

        self._in_progress = True
        self._last_attempt = now
        self.state = "syncing"
        started = time.monotonic()
        report: dict[str, Any] = {"ok": False, "skipped": False}
        try:
            pull = await self.puller.pull_all()
            report["pull"] = pull

            push = await self.pusher.push()
            report["push"] = push.as_dict()

            if self.images is not None:
                report["images"] = await self.images.sync_images(push.id_mappings)

            if push.id_mappings:
                report["remap"] = await self.remapper.apply(push.id_mappings)

            if not push.aborted:
                ts = utcnow_iso()
                await self.store.set_last_synced_at(ts)
                report["last_synced_at"] = ts
            report["ok"] = bool(pull.get("ok")) and push.ok
        except Exception as ex:
            report["error"] = str(ex)
            json_log("error", "sync.failed", error=str(ex))
        finally:
            self._in_progress = False
            self.state = "idle"

        report["duration_ms"] = int((time.monotonic() - started) * 1000)
        self.last_report = report
        json_log(
            "info",
            "sync.done",
            ok=report["ok"],
            duration_ms=report["duration_ms"],
            pushed=(report.get("push") or {}).get("synced"),
            failed=(report.get("push") or {}).get("failed"),
        )
        return report

    async def status(self) -> dict[str, Any]:
        stats = await self.queue.stats()
        meta = await self.store.get_sync_meta()
        return {
            "state": self.state,
            "pending": stats["pending"],
            "failed": stats["failed"],
            "last_synced_at": meta.last_synced_at if meta else None,
            "client_id": meta.client_id if meta else self.queue.client_id,
        }
