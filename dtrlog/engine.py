from __future__ import annotations

import logging
from typing import Any, Callable

from dtrlog.errors import InvariantViolation
from dtrlog.expansion import ExpansionController
from dtrlog.gateway import StoreGateway
from dtrlog.loader import LazyLoader
from dtrlog.models import CHILD_LEVEL, LEVEL_ROOT, ROOT_ID, Node
from dtrlog.mutations import MutationCoordinator, MutationRecord, MutationResult
from dtrlog.node_store import LOAD_LOADED, NodeStore
from dtrlog.selection import SelectionTracker


log = logging.getLogger("dtrlog.engine")

Listener = Callable[[dict[str, Any]], None]


class TimesheetEngine:
    """What a grid or table adapter talks to.

    Every handler updates the components and then hands the new snapshot
    to each subscriber.
    """

    def __init__(
        self,
        gateway: StoreGateway,
        *,
        optimistic_updates: bool = True,
        history_size: int = 50,
    ) -> None:
        self.store = NodeStore()
        self.loader = LazyLoader(self.store, gateway)
        self.expansion = ExpansionController(self.loader)
        self.selection = SelectionTracker(self.store, self.loader, self.expansion)
        self.mutations = MutationCoordinator(
            self.store,
            gateway,
            self.expansion,
            self.selection,
            optimistic_updates=optimistic_updates,
            history_size=history_size,
        )
        self.store.on_drop(self._forget_dropped)
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _forget_dropped(self, dropped: list[tuple[str, str]]) -> None:
        for level, node_id in dropped:
            self.expansion.forget(level, node_id)
        self.selection.on_removed(dropped)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                log.exception("Snapshot listener %r failed", listener)

    async def load_timesheets(self) -> list[Node]:
        try:
            return await self.loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        finally:
            self._notify()

    async def on_expand(self, level: str, parent_id: str, node_id: str) -> list[Node]:
        task = self.expansion.expand(level, parent_id, node_id)
        if task is None:
            raise InvariantViolation("expansion has no loader attached")
        self._notify()
        try:
            return await task
        finally:
            self.selection.sync_children()
            self._notify()

    def on_collapse(self, level: str, parent_id: str) -> str | None:
        collapsed = self.expansion.collapse(level, parent_id)
        self._notify()
        return collapsed

    async def on_select(self, level: str, node: Node) -> bool:
        """Select a row; resolves to whether it has children."""
        probe = self.selection.select(level, node)
        self._notify()
        if probe is None:
            return self.selection.has_children
        try:
            return await probe
        finally:
            self._notify()

    async def on_create(self, level: str, payload: dict[str, Any]) -> MutationResult:
        try:
            return await self.mutations.create(level, payload)
        finally:
            self._notify()

    async def on_update(self, level: str, node_id: str, patch: dict[str, Any]) -> MutationResult:
        try:
            return await self.mutations.update(level, node_id, patch)
        finally:
            self._notify()

    async def on_delete(self, level: str, node_id: str) -> MutationResult:
        try:
            return await self.mutations.remove(level, node_id)
        finally:
            self._notify()

    async def retry(self, level: str, parent_id: str) -> list[Node]:
        """Throw away one parent's children and fetch them again."""
        try:
            return await self.loader.reload(level, parent_id)
        finally:
            self.selection.sync_children()
            self._notify()

    def pending(self) -> list[MutationRecord]:
        return self.mutations.pending()

    def _rows(self, level: str, parent_id: str) -> list[dict[str, Any]]:
        sel = self.selection.selected
        rows: list[dict[str, Any]] = []
        for child in self.store.children(level, parent_id) or []:
            child_level = child.LEVEL
            row = child.to_dict()
            row["level"] = child_level
            row["expanded"] = self.expansion.is_expanded(child_level, parent_id, child.id)
            row["selected"] = sel is not None and sel.level == child_level and sel.node.id == child.id
            if CHILD_LEVEL.get(child_level) is not None:
                state = self.store.load_state(child_level, child.id)
                row["load_state"] = state
                if state == LOAD_LOADED:
                    row["children"] = self._rows(child_level, child.id)
            rows.append(row)
        return rows

    def snapshot(self) -> dict[str, Any]:
        sel = self.selection.selected
        selection: dict[str, Any] | None = None
        if sel is not None:
            selection = {
                "level": sel.level,
                "id": sel.node.id,
                "has_children": self.selection.has_children,
                "expanded": self.selection.expanded,
                "can_delete": self.selection.can_delete,
                "add_label": self.selection.add_label(),
            }
        return {
            "load_state": self.store.load_state(LEVEL_ROOT, ROOT_ID),
            "timesheets": self._rows(LEVEL_ROOT, ROOT_ID),
            "selection": selection,
            "add_label": self.selection.add_label(),
            "pending": len(self.mutations.pending()),
        }
