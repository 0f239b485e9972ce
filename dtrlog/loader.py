from __future__ import annotations

import asyncio
import logging

from dtrlog.aggregate import recompute_in_store
from dtrlog.errors import FetchFailed, InvariantViolation
from dtrlog.gateway import StoreGateway
from dtrlog.models import CHILD_LEVEL, Node
from dtrlog.node_store import LOAD_LOADING, NodeStore


log = logging.getLogger("dtrlog.loader")


def retrieve_failure(task: asyncio.Task) -> None:
    """Done-callback that reads a failed task's exception.

    Callers may drop the tasks returned by ``expand`` and ``select``; the
    failure is then logged here instead of by the event loop.
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.debug("Background task %s failed: %s", task.get_name(), exc)


class LazyLoader:
    """Loads one parent's children on demand and caches them in the NodeStore.

    Concurrent requests for the same parent share a single fetch. A failed
    fetch leaves the parent *unknown* so the next request retries.
    """

    def __init__(self, store: NodeStore, gateway: StoreGateway) -> None:
        self._store = store
        self._gateway = gateway
        self._inflight: dict[tuple[str, str], asyncio.Task[list[Node]]] = {}

    def is_loading(self, level: str, parent_id: str) -> bool:
        return (level, parent_id) in self._inflight

    async def ensure_children_loaded(self, level: str, parent_id: str) -> list[Node]:
        child_level = CHILD_LEVEL.get(level)
        if child_level is None:
            raise InvariantViolation(f"{level} rows have no children")

        cached = self._store.children(level, parent_id)
        if cached is not None:
            log.debug("Children of %s %s already loaded (%d)", level, parent_id, len(cached))
            return cached

        key = (level, parent_id)
        task = self._inflight.get(key)
        if task is None:
            self._store.mark_loading(level, parent_id)
            task = asyncio.get_running_loop().create_task(self._fetch(level, parent_id, child_level))
            self._inflight[key] = task
        else:
            log.debug("Joining in-flight load of %s %s", level, parent_id)
        # One caller being cancelled must not cancel the shared fetch.
        return await asyncio.shield(task)

    async def _fetch(self, level: str, parent_id: str, child_level: str) -> list[Node]:
        try:
            children = await self._gateway.fetch_children(level, parent_id)
            if self._store.load_state(level, parent_id) != LOAD_LOADING:
                log.debug("Discarding children of %s %s: parent was removed during the load", level, parent_id)
                return list(children)
            loaded = self._store.set_children(level, parent_id, child_level, children)
            recompute_in_store(self._store, level, parent_id)
            log.debug("Loaded %d %s rows under %s %s", len(loaded), child_level, level, parent_id)
            return loaded
        except InvariantViolation:
            log.exception("Rejected children of %s %s", level, parent_id)
            raise
        except Exception as exc:
            log.warning("Failed to load children of %s %s: %s", level, parent_id, exc)
            raise FetchFailed(level, parent_id) from exc
        finally:
            self._inflight.pop((level, parent_id), None)
            if self._store.load_state(level, parent_id) == LOAD_LOADING:
                self._store.mark_unknown(level, parent_id)

    async def has_children(self, level: str, node_id: str) -> bool:
        """Whether a node has at least one child, without loading them."""
        if CHILD_LEVEL.get(level) is None:
            return False
        cached = self._store.children(level, node_id)
        if cached is not None:
            return bool(cached)
        task = self._inflight.get((level, node_id))
        if task is not None:
            return bool(await asyncio.shield(task))
        try:
            return bool(await self._gateway.probe_has_children(level, node_id))
        except Exception as exc:
            log.warning("Failed to probe children of %s %s: %s", level, node_id, exc)
            raise FetchFailed(level, node_id, f"Failed to check children of {level} {node_id}") from exc

    def invalidate(self, level: str, parent_id: str) -> bool:
        """Force the next :meth:`ensure_children_loaded` to fetch again.

        Returns False while a fetch for the parent is in flight.
        """
        if self.is_loading(level, parent_id):
            return False
        self._store.mark_unknown(level, parent_id)
        return True

    async def reload(self, level: str, parent_id: str) -> list[Node]:
        if not self.invalidate(level, parent_id):
            log.debug("Reload of %s %s joins the in-flight load", level, parent_id)
        return await self.ensure_children_loaded(level, parent_id)
