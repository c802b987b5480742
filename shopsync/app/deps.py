from fastapi import HTTPException, Request

from .agent import SyncAgent


def get_agent(request: Request) -> SyncAgent:
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(status_code=503, detail="agent not started")
    return agent
