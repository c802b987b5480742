from typing import Any, Iterable, Optional

import httpx

from ..jsonlog import json_log
from .base import RemoteBackend, RemoteError, SchemaNotReadyError, is_relation_missing


class PostgrestBackend(RemoteBackend):
    """
    Supabase / PostgREST adapter.

    Every call goes through one `httpx.AsyncClient` with a short timeout; timeouts and transport
    failures surface as RemoteError like any other failure.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("missing SUPABASE_URL")
        headers = {"apikey": api_key, "Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            headers=headers,
            timeout=timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(method, f"/{table}", params=params, json=json, headers=headers)
        except httpx.TimeoutException as ex:
            raise RemoteError(f"{method} {table} timed out", code="timeout") from ex
        except httpx.HTTPError as ex:
            raise RemoteError(f"{method} {table} failed: {ex}", code="transport") from ex
        if resp.status_code >= 400:
            self._raise_for_error(method, table, resp)
        return resp

    def _raise_for_error(self, method: str, table: str, resp: httpx.Response) -> None:
        code: Optional[str] = None
        message = resp.reason_phrase or f"HTTP {resp.status_code}"
        if resp.content:
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                code = str(body.get("code") or "") or None
                message = str(body.get("message") or message)
        # HEAD responses carry no body: a 404 on a table endpoint is the missing relation.
        if is_relation_missing(code, message) or (method == "HEAD" and resp.status_code == 404):
            raise SchemaNotReadyError(f"relation {table} not found", code=code or "PGRST205", status=resp.status_code)
        json_log("warning", "remote.postgrest.error", method=method, table=table, status=resp.status_code, code=code)
        raise RemoteError(message, code=code, status=resp.status_code)

    async def select_all(self, table: str) -> list[dict[str, Any]]:
        resp = await self._request("GET", table, params={"select": "*"})
        rows = resp.json()
        return rows if isinstance(rows, list) else []

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        await self._request(
            "POST",
            table,
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def update_by_id(self, table: str, record_id: str, fields: dict[str, Any]) -> None:
        await self._request(
            "PATCH", table, params={"id": f"eq.{record_id}"}, json=fields, headers={"Prefer": "return=minimal"}
        )

    async def delete_by_id(self, table: str, record_id: str) -> None:
        await self._request("DELETE", table, params={"id": f"eq.{record_id}"})

    async def delete_by_ids(self, table: str, record_ids: Iterable[str]) -> None:
        ids = [str(i) for i in record_ids if i]
        if not ids:
            return
        await self._request("DELETE", table, params={"id": f"in.({','.join(ids)})"})

    async def probe(self, table: str) -> None:
        await self._request("HEAD", table, params={"select": "id", "limit": "1"})
