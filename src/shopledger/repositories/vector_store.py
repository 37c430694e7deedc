from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence

import requests

from shopledger.domain.errors import StoreRequestError


class HttpVectorStore:
    """Qdrant REST client. Blocking requests run in worker threads."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self.session.headers.update({"api-key": api_key})

    def _request(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, json=body, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise StoreRequestError(f"{method} {path} timed out", transient=True) from e
        except requests.RequestException as e:
            raise StoreRequestError(f"{method} {path} failed: {e}") from e

        if r.status_code >= 400:
            detail = r.text[:500] if r.text else r.reason
            raise StoreRequestError(f"{method} {path} -> {r.status_code}: {detail}", status_code=r.status_code)

        if not r.content:
            return None
        try:
            data = r.json()
        except ValueError as e:
            raise StoreRequestError(f"{method} {path} returned invalid JSON") from e
        return data.get("result") if isinstance(data, dict) else data

    async def _call(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None) -> Any:
        return await asyncio.to_thread(self._request, method, path, body, params)

    async def get_collection(self, name: str) -> Optional[dict]:
        try:
            return await self._call("GET", f"/collections/{name}")
        except StoreRequestError as e:
            if e.status_code == 404:
                return None
            raise

    async def create_payload_index(self, name: str, field: str, schema_type: str) -> None:
        await self._call(
            "PUT",
            f"/collections/{name}/index",
            {"field_name": field, "field_schema": schema_type},
            {"wait": "true"},
        )

    async def delete_payload_index(self, name: str, field: str) -> None:
        await self._call("DELETE", f"/collections/{name}/index/{field}", params={"wait": "true"})

    async def scroll(
        self,
        name: str,
        *,
        limit: int,
        offset: Any = None,
        filter: Optional[dict] = None,
        with_vector: bool = False,
    ) -> tuple[list[dict], Any]:
        body: dict[str, Any] = {"limit": limit, "with_payload": True, "with_vector": with_vector}
        if offset is not None:
            body["offset"] = offset
        if filter:
            body["filter"] = filter
        result = await self._call("POST", f"/collections/{name}/points/scroll", body) or {}
        return list(result.get("points") or []), result.get("next_page_offset")

    async def upsert(self, name: str, points: Sequence[dict]) -> None:
        if not points:
            return
        await self._call("PUT", f"/collections/{name}/points", {"points": list(points)}, {"wait": "true"})

    async def delete_points(self, name: str, ids: Sequence[str]) -> None:
        if not ids:
            return
        await self._call("POST", f"/collections/{name}/points/delete", {"points": list(ids)}, {"wait": "true"})

    async def delete_by_filter(self, name: str, filter: dict) -> None:
        await self._call("POST", f"/collections/{name}/points/delete", {"filter": filter}, {"wait": "true"})

    async def search(self, name: str, vector: Any, *, limit: int, filter: Optional[dict] = None) -> list[dict]:
        body: dict[str, Any] = {"vector": vector, "limit": limit, "with_payload": True}
        if filter:
            body["filter"] = filter
        return list(await self._call("POST", f"/collections/{name}/points/search", body) or [])

    async def retrieve(self, name: str, ids: Sequence[str], with_vector: bool = True) -> list[dict]:
        body = {"ids": list(ids), "with_payload": True, "with_vector": with_vector}
        return list(await self._call("POST", f"/collections/{name}/points", body) or [])
