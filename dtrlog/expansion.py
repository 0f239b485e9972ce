from __future__ import annotations

import asyncio
import logging

from dtrlog.errors import InvariantViolation
from dtrlog.loader import LazyLoader, retrieve_failure
from dtrlog.models import CHILD_LEVEL, Node, require_level


log = logging.getLogger("dtrlog.expansion")


class ExpansionController:
    """At most one expanded node per sibling group.

    State is ``level -> {parent_id: node_id}``. Expanding a node collapses
    its expanded sibling (same parent) and nothing else: other branches,
    ancestors and descendants keep their state, so a collapsed branch
    reopens the way it was left.
    """

    def __init__(self, loader: LazyLoader | None = None) -> None:
        self._loader = loader
        self._expanded: dict[str, dict[str, str]] = {}

    def expand(self, level: str, parent_id: str, node_id: str) -> asyncio.Task[list[Node]] | None:
        """Mark ``node_id`` expanded and start loading its children.

        The state change is synchronous. The returned task resolves to the
        node's children (immediately when they are cached); it is None when
        no loader is attached.
        """
        require_level(level)
        if CHILD_LEVEL.get(level) is None:
            raise InvariantViolation(f"{level} rows cannot be expanded")
        group = self._expanded.setdefault(level, {})
        previous = group.get(parent_id)
        if previous != node_id:
            group[parent_id] = node_id
            if previous is not None:
                log.debug("Collapsed %s %s in favour of %s", level, previous, node_id)
        if self._loader is None:
            return None
        # Re-expanding costs nothing when loaded and retries after a failed load.
        task = asyncio.get_running_loop().create_task(self._loader.ensure_children_loaded(level, node_id))
        task.add_done_callback(retrieve_failure)
        return task

    def collapse(self, level: str, parent_id: str) -> str | None:
        """Collapse whatever is expanded under ``parent_id``; returns its id."""
        group = self._expanded.get(level)
        if not group:
            return None
        return group.pop(parent_id, None)

    def is_expanded(self, level: str, parent_id: str, node_id: str) -> bool:
        return self._expanded.get(level, {}).get(parent_id) == node_id

    def expanded_id(self, level: str, parent_id: str) -> str | None:
        return self._expanded.get(level, {}).get(parent_id)

    def forget(self, level: str, node_id: str) -> None:
        """Drop state that refers to a removed node."""
        group = self._expanded.get(level, {})
        for parent_id, expanded in list(group.items()):
            if expanded == node_id:
                del group[parent_id]
        child_level = CHILD_LEVEL.get(level)
        if child_level is not None:
            self._expanded.get(child_level, {}).pop(node_id, None)

    def state(self) -> dict[str, dict[str, str]]:
        return {level: dict(group) for level, group in self._expanded.items() if group}
