#!/usr/bin/env python3
import argparse
import asyncio
import json
import os
import sys

ROOT = os.path.dirname(os.path.abspath(__file__))
REPO_ROOT = os.path.dirname(ROOT)
# Allow running as a script from a checkout: `python3 pos-desktop/agent.py`.
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

import uvicorn  # noqa: E402

from shopsync.app.agent import SyncAgent  # noqa: E402
from shopsync.app.config import settings  # noqa: E402
from shopsync.app.db import LocalStore  # noqa: E402
from shopsync.app.main import create_app  # noqa: E402

DB_PATH = os.path.join(ROOT, "shopsync.sqlite")
IDENTITY_PATH = os.path.join(ROOT, "client.json")


async def _sync_once() -> dict:
    agent = SyncAgent(settings)
    try:
        await agent.start()
        return await agent.sync.full_sync()
    finally:
        await agent.close()


async def _status() -> dict:
    agent = SyncAgent(settings)
    try:
        await agent.store.init_sync_meta(agent.client_id)
        return {**await agent.sync.status(), "outbox": await agent.queue.stats()}
    finally:
        await agent.close()


def main():
    parser = argparse.ArgumentParser(description="Local-first POS agent: local API + background sync")
    parser.add_argument("--init-db", action="store_true", help="Initialize local SQLite schema and exit")
    parser.add_argument(
        "--db",
        default=os.environ.get("SHOPSYNC_DB_PATH", DB_PATH),
        help="SQLite DB path (default: pos-desktop/shopsync.sqlite).",
    )
    parser.add_argument(
        "--identity",
        default=os.environ.get("SHOPSYNC_IDENTITY_PATH", IDENTITY_PATH),
        help="Client identity JSON path (default: pos-desktop/client.json). Survives a DB reset.",
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("POS_HOST", "127.0.0.1"),
        help="HTTP host to bind (default: 127.0.0.1). Use 0.0.0.0 only if you explicitly want LAN exposure.",
    )
    parser.add_argument("--port", type=int, default=int(os.environ.get("POS_PORT", "7070")), help="HTTP port (default: 7070)")
    parser.add_argument("--sync-once", action="store_true", help="Run one full sync cycle, print the report and exit")
    parser.add_argument("--status", action="store_true", help="Print queue/sync status and exit")
    parser.add_argument("--offline", action="store_true", help="Do not probe the backend on start-up")
    args = parser.parse_args()

    # Settings are read by every component; CLI flags win over the environment.
    settings.db_path = os.path.abspath(args.db)
    settings.identity_path = os.path.abspath(args.identity)

    if args.init_db:
        LocalStore(settings.db_path).close()
        print("ok")
        return

    if args.sync_once:
        report = asyncio.run(_sync_once())
        print(json.dumps(report, indent=2, default=str))
        sys.exit(0 if report.get("ok") else 1)

    if args.status:
        print(json.dumps(asyncio.run(_status()), indent=2, default=str))
        return

    app = create_app(connect=not args.offline)
    # Print localhost for convenience when bound locally; otherwise print the explicit host.
    public_host = "localhost" if args.host in {"127.0.0.1", "localhost"} else args.host
    print(f"POS Agent running on http://{public_host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
