"""
Connectivity watcher: offline -> verifying -> online.

The OS "online" signal is only a hint; a HEAD probe against the backend confirms it before
any sync is attempted. While online a periodic task keeps syncing so writes made during a
long session still drain without another connectivity event.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..app.jsonlog import json_log

OFFLINE = "offline"
VERIFYING = "verifying"
ONLINE = "online"


async def http_probe(url: str, timeout_s: float = 1.0, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> bool:
    """Any HTTP answer counts as reachable; timeouts and transport errors do not."""
    if not url:
        return False
    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            await client.head(url)
    except httpx.HTTPError as ex:
        json_log("info", "connectivity.probe_failed", url=url, error=str(ex) or type(ex).__name__)
        return False
    return True


class ConnectivityWatcher:
    def __init__(
        self,
        sync: Callable[[], Awaitable[Any]],
        probe: Callable[[], Awaitable[bool]],
        *,
        interval_s: float = 60.0,
        retry_delay_s: float = 1.0,
        on_status: Optional[Callable[[str], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._sync = sync
        self._probe = probe
        self.interval_s = float(interval_s)
        self.retry_delay_s = float(retry_delay_s)
        self._on_status = on_status
        self._sleep = sleep
        self.state = OFFLINE
        self._periodic: Optional[asyncio.Task] = None

    @property
    def online(self) -> bool:
        return self.state == ONLINE

    def _set(self, state: str) -> None:
        if state == self.state:
            return
        json_log("info", "connectivity.state", previous=self.state, state=state)
        self.state = state
        if self._on_status is not None:
            try:
                self._on_status(state)
            except Exception as ex:
                json_log("warning", "connectivity.callback_failed", error=str(ex))

    async def _probe_once(self) -> bool:
        try:
            return bool(await self._probe())
        except Exception as ex:
            json_log("warning", "connectivity.probe_error", error=str(ex))
            return False

    async def handle_online(self) -> str:
        if self.state in (ONLINE, VERIFYING):
            return self.state
        self._set(VERIFYING)
        reachable = await self._probe_once()
        if not reachable:
            await self._sleep(self.retry_delay_s)
            if self.state != VERIFYING:
                return self.state
            reachable = await self._probe_once()
        # An offline event may have arrived while the probe was in flight.
        if self.state != VERIFYING:
            return self.state
        if not reachable:
            self._set(OFFLINE)
            return self.state

        self._set(ONLINE)
        self._start_periodic()
        await self._run_sync("online")
        return self.state

    async def handle_offline(self) -> str:
        self._set(OFFLINE)
        self._cancel_periodic()
        return self.state

    async def stop(self) -> None:
        task = self._periodic
        self._cancel_periodic()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set(OFFLINE)

    def _start_periodic(self) -> None:
        self._cancel_periodic()
        self._periodic = asyncio.create_task(self._periodic_loop())

    def _cancel_periodic(self) -> None:
        if self._periodic is not None and not self._periodic.done():
            self._periodic.cancel()
        self._periodic = None

    async def _periodic_loop(self) -> None:
        while self.state == ONLINE:
            await self._sleep(self.interval_s)
            if self.state != ONLINE:
                break
            await self._run_sync("periodic")

    async def _run_sync(self, reason: str) -> None:
        try:
            await self._sync()
        except Exception as ex:
            json_log("error", "connectivity.sync_failed", reason=reason, error=str(ex))
