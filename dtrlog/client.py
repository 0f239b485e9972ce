from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import requests

from dtrlog.errors import HasChildren, InvariantViolation, NotFound, StoreError
from dtrlog.gateway import StoreGateway, StoreResult
from dtrlog.models import (
    CHILD_LEVEL,
    COLLECTION_FOR_LEVEL,
    LEVEL_ROOT,
    Node,
    node_from_dict,
    node_from_snapshot,
    require_level,
)


log = logging.getLogger("dtrlog.client")


class HttpStoreGateway(StoreGateway):
    """Talks to the store service over its JSON API.

    Calls go through a blocking ``requests``-style session on a worker
    thread. Any object with a compatible ``request`` method can be passed
    as ``session`` (FastAPI's ``TestClient`` included).
    """

    def __init__(self, base_url: str, *, timeout_seconds: float = 15.0, session: Any = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._owns_session = session is None
        self._session = session if session is not None else requests.Session()

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def _url(self, *parts: str) -> str:
        return "/".join([self._base_url, "api/v1", *(quote(str(p), safe="") for p in parts)])

    def _request(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None = None,
        target: tuple[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._session.request(method, url, json=body, timeout=self._timeout)
        except requests.RequestException as exc:
            raise StoreError(f"{method} {url} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        status = response.status_code
        if status != 200:
            message = payload.get("error") if isinstance(payload, dict) else response.text[:200]
            log.debug("%s %s -> HTTP %s: %s", method, url, status, message)
            if status == 409 and isinstance(payload, dict) and payload.get("has_children") and target is not None:
                raise HasChildren(*target)
            if status == 409:
                raise InvariantViolation(str(message))
            if status == 404:
                raise NotFound(str(message))
            raise StoreError(f"HTTP {status}: {message}", status_code=status)
        if not isinstance(payload, dict):
            raise StoreError(f"non-JSON response: {response.text[:200]}", status_code=status)
        if payload.get("ok") is False:
            raise StoreError(f"API error: {payload.get('error')}", status_code=status)
        return payload

    async def _call(
        self,
        method: str,
        url: str,
        body: dict[str, Any] | None = None,
        target: tuple[str, str] | None = None,
    ) -> dict[str, Any]:
        return await asyncio.to_thread(self._request, method, url, body, target)

    def _result(self, level: str, payload: dict[str, Any]) -> StoreResult:
        raw_entity = payload.get("entity")
        entity = node_from_dict(level, raw_entity) if isinstance(raw_entity, dict) else None
        ancestors = tuple(node_from_snapshot(a) for a in payload.get("ancestors") or [])
        return StoreResult(entity=entity, ancestors=ancestors)

    async def fetch_children(self, level: str, parent_id: str) -> list[Node]:
        child_level = CHILD_LEVEL[level]
        if level == LEVEL_ROOT:
            url = self._url(COLLECTION_FOR_LEVEL[child_level])
        else:
            url = self._url(COLLECTION_FOR_LEVEL[level], parent_id, "children")
        payload = await self._call("GET", url)
        return [node_from_dict(child_level, row) for row in payload.get("children") or []]

    async def create_entity(self, level: str, payload: dict[str, Any]) -> StoreResult:
        require_level(level)
        data = await self._call("POST", self._url(COLLECTION_FOR_LEVEL[level]), payload)
        return self._result(level, data)

    async def update_entity(self, level: str, node_id: str, patch: dict[str, Any]) -> StoreResult:
        require_level(level)
        data = await self._call("PUT", self._url(COLLECTION_FOR_LEVEL[level], node_id), patch)
        return self._result(level, data)

    async def delete_entity(self, level: str, node_id: str) -> StoreResult:
        require_level(level)
        data = await self._call("DELETE", self._url(COLLECTION_FOR_LEVEL[level], node_id), target=(level, node_id))
        return self._result(level, data)

    async def probe_has_children(self, level: str, node_id: str) -> bool:
        require_level(level)
        data = await self._call("GET", self._url(COLLECTION_FOR_LEVEL[level], node_id, "has-children"))
        return bool(data.get("has_children"))
