from functools import partial
from typing import Any, Awaitable, Callable, Optional

from ..workers.connectivity import ConnectivityWatcher, http_probe
from ..workers.images import ImageSync
from ..workers.pull import PullReconciler
from ..workers.push import PushReconciler
from ..workers.recovery import enqueue_unsynced_records
from ..workers.remap import ReferenceRemapper
from ..workers.sync_service import SyncOrchestrator
from .config import Settings
from .db import LocalStore
from .identity import get_or_create_client_id
from .jsonlog import json_log
from .outbox import MutationQueue
from .remote.base import RemoteBackend
from .shop import ShopOperations
from .storage.s3 import S3ObjectStorage, get_s3_config


def build_remote(settings: Settings) -> RemoteBackend:
    if settings.remote == "postgres":
        from .remote.postgres import PostgresBackend

        return PostgresBackend(settings.database_url, timeout_s=settings.request_timeout_s)
    if settings.remote == "postgrest":
        from .remote.postgrest import PostgrestBackend

        return PostgrestBackend(settings.supabase_url, settings.supabase_key, timeout_s=settings.request_timeout_s)
    raise ValueError(f"unknown SHOPSYNC_REMOTE: {settings.remote}")


def build_storage() -> Optional[S3ObjectStorage]:
    cfg = get_s3_config()
    return S3ObjectStorage(cfg) if cfg else None


class SyncAgent:
    """Everything one POS installation runs: store, queue, shop API, sync engine, watcher."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[LocalStore] = None,
        remote: Optional[RemoteBackend] = None,
        storage: Optional[S3ObjectStorage] = None,
        probe: Optional[Callable[[], Awaitable[bool]]] = None,
        client_id: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.client_id = client_id or get_or_create_client_id(settings.identity_path)
        self.store = store or LocalStore(settings.db_path)
        self.remote = remote or build_remote(settings)
        self.storage = storage if storage is not None else build_storage()
        self.queue = MutationQueue(self.store, self.client_id, max_retries=settings.max_retries)
        self.shop = ShopOperations(self.store, self.queue)
        self.sync = SyncOrchestrator(
            self.store,
            self.queue,
            PullReconciler(self.store, self.remote, queue=self.queue),
            PushReconciler(self.store, self.queue, self.remote),
            ReferenceRemapper(self.store, self.queue),
            ImageSync(self.store, self.storage, prefix=settings.image_prefix),
            debounce_s=settings.sync_debounce_s,
        )
        self.watcher = ConnectivityWatcher(
            self.sync.full_sync,
            probe or partial(http_probe, settings.probe_url, settings.probe_timeout_s),
            interval_s=settings.auto_sync_interval_s,
            retry_delay_s=settings.probe_retry_delay_s,
        )

    async def start(self) -> dict[str, Any]:
        await self.store.init_sync_meta(self.client_id)
        recovered = await enqueue_unsynced_records(self.store, self.queue)
        json_log("info", "agent.started", client_id=self.client_id, db_path=self.store.path, recovered=recovered["enqueued"])
        return recovered

    async def status(self) -> dict[str, Any]:
        out = await self.sync.status()
        out["connectivity"] = self.watcher.state
        return out

    async def close(self) -> None:
        await self.watcher.stop()
        await self.remote.aclose()
        self.store.close()
