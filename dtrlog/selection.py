from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from dtrlog.errors import FetchFailed, InvariantViolation
from dtrlog.expansion import ExpansionController
from dtrlog.loader import LazyLoader, retrieve_failure
from dtrlog.models import (
    CHILD_LEVEL,
    LEVEL_CLOCKEVENT,
    LEVEL_DTR,
    LEVEL_TIMELOG,
    LEVEL_TIMESHEET,
    NODE_TYPES,
    Node,
    require_level,
)
from dtrlog.node_store import NodeStore


log = logging.getLogger("dtrlog.selection")

ADD_LABELS = {
    LEVEL_TIMESHEET: "+ ADD TIMESHEET",
    LEVEL_DTR: "+ ADD DTR",
    LEVEL_TIMELOG: "+ ADD TIMELOG",
    LEVEL_CLOCKEVENT: "+ ADD CLOCK EVENT",
}


@dataclass(frozen=True)
class Selection:
    level: str
    node: Node


class SelectionTracker:
    """The selected row and what the toolbar may do with it.

    ``has_children`` gates delete. Until the child probe answers it is
    True, and it stays True when the probe fails.
    """

    def __init__(
        self,
        store: NodeStore,
        loader: LazyLoader | None = None,
        expansion: ExpansionController | None = None,
    ) -> None:
        self._store = store
        self._loader = loader
        self._expansion = expansion
        self._selected: Selection | None = None
        self._path: dict[str, Node] = {}
        self._generation = 0
        self.has_children = False
        self.probing = False

    @property
    def selected(self) -> Selection | None:
        return self._selected

    def selected_at(self, level: str) -> Node | None:
        return self._path.get(level)

    @property
    def expanded(self) -> bool:
        sel = self._selected
        if sel is None or self._expansion is None:
            return False
        return self._expansion.is_expanded(sel.level, sel.node.parent_id, sel.node.id)

    @property
    def can_delete(self) -> bool:
        return self._selected is not None and not self.has_children

    def select(self, level: str, node: Node) -> asyncio.Task[bool] | None:
        """Select a node and find out whether it has children.

        Selecting clears every deeper-level selection. Returns the probe
        task, or None when the answer is already known locally.
        """
        require_level(level)
        if not isinstance(node, NODE_TYPES[level]):
            raise InvariantViolation(f"{type(node).__name__} is not a {level}")
        self._generation += 1
        self._selected = Selection(level=level, node=node)
        self._path = {lvl: ancestor for lvl, ancestor in self._store.ancestors(level, node.id)}
        self._path[level] = node

        if CHILD_LEVEL.get(level) is None:
            self._set_children_flag(False)
            return None
        loaded = self._store.children(level, node.id)
        if loaded is not None:
            self._set_children_flag(bool(loaded))
            return None

        self.has_children = True
        if self._loader is None:
            return None
        self.probing = True
        generation = self._generation
        task = asyncio.get_running_loop().create_task(self._probe(level, node.id, generation))
        task.add_done_callback(retrieve_failure)
        return task

    async def _probe(self, level: str, node_id: str, generation: int) -> bool:
        if self._loader is None:
            raise InvariantViolation("selection has no loader attached")
        try:
            result = await self._loader.has_children(level, node_id)
        except FetchFailed:
            log.warning("Could not tell whether %s %s has children; blocking delete", level, node_id)
            result = True
        if generation == self._generation:
            self._set_children_flag(result)
        return result

    def _set_children_flag(self, value: bool) -> None:
        self.has_children = value
        self.probing = False

    def clear(self) -> None:
        self._generation += 1
        self._selected = None
        self._path = {}
        self._set_children_flag(False)

    def refresh(self, level: str, node: Node) -> None:
        """Point the selection at a newer snapshot of the same node."""
        if self._path.get(level) is not None and self._path[level].id == node.id:
            self._path[level] = node
        sel = self._selected
        if sel is not None and sel.level == level and sel.node.id == node.id:
            self._selected = Selection(level=level, node=node)

    def sync_children(self) -> None:
        """Re-derive ``has_children`` from loaded children, if any."""
        sel = self._selected
        if sel is None or CHILD_LEVEL.get(sel.level) is None:
            return
        loaded = self._store.children(sel.level, sel.node.id)
        if loaded is not None:
            self._generation += 1
            self._set_children_flag(bool(loaded))

    def on_removed(self, removed: Iterable[tuple[str, str]]) -> None:
        keys = set(removed)
        sel = self._selected
        if sel is not None and (sel.level, sel.node.id) in keys:
            self.clear()
            return
        for level, node in list(self._path.items()):
            if (level, node.id) in keys:
                del self._path[level]

    def add_target(self) -> tuple[str, str] | None:
        """``(level, parent_id)`` of the row the add button would create.

        An expanded selection gets a child, a collapsed one a sibling.
        Clock events take neither.
        """
        sel = self._selected
        if sel is None or sel.level == LEVEL_CLOCKEVENT:
            return None
        if self.expanded:
            return CHILD_LEVEL[sel.level], sel.node.id
        return sel.level, sel.node.parent_id

    def add_label(self) -> str:
        target = self.add_target()
        if target is None:
            return "ADD"
        return ADD_LABELS[target[0]]
