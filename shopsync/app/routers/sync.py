from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from ...workers.recovery import mark_all_unsynced, verify_sync
from ..agent import SyncAgent
from ..deps import get_agent
from ..validation import MutationStatus

router = APIRouter(prefix="/api", tags=["sync"])


class ConnectivityIn(BaseModel):
    online: bool


@router.get("/sync/status")
async def sync_status(agent: SyncAgent = Depends(get_agent)):
    return await agent.status()


@router.post("/sync/now")
async def sync_now(agent: SyncAgent = Depends(get_agent)):
    # Same guards as automatic syncs: a second click inside the debounce window is a no-op.
    return await agent.sync.full_sync()


@router.get("/sync/verify")
async def sync_verify(agent: SyncAgent = Depends(get_agent)):
    return await verify_sync(agent.store, agent.queue)


@router.post("/sync/resync")
async def sync_resync(agent: SyncAgent = Depends(get_agent)):
    # Re-queues everything; the next sync (automatic or /sync/now) delivers it.
    return await mark_all_unsynced(agent.store, agent.queue)


@router.post("/connectivity")
async def connectivity(data: ConnectivityIn, background: BackgroundTasks, agent: SyncAgent = Depends(get_agent)):
    if data.online:
        background.add_task(agent.watcher.handle_online)
        return {"accepted": True, "state": agent.watcher.state}
    state = await agent.watcher.handle_offline()
    return {"accepted": True, "state": state}


@router.get("/outbox")
async def list_outbox(status: Optional[MutationStatus] = None, limit: int = 200, agent: SyncAgent = Depends(get_agent)):
    limit = max(1, min(int(limit), 1000))
    rows = await agent.queue.list_all(status=status, limit=limit)
    return {"mutations": [m.model_dump() for m in rows], "stats": await agent.queue.stats()}


@router.post("/outbox/{mutation_id}/retry")
async def retry_mutation(mutation_id: str, agent: SyncAgent = Depends(get_agent)):
    if not await agent.queue.retry(mutation_id):
        raise HTTPException(status_code=404, detail="mutation not found")
    return {"ok": True}


@router.delete("/outbox/{mutation_id}")
async def delete_mutation(mutation_id: str, agent: SyncAgent = Depends(get_agent)):
    if not await agent.queue.delete(mutation_id):
        raise HTTPException(status_code=404, detail="mutation not found")
    return {"ok": True}
