from __future__ import annotations

import logging
from typing import Callable, Iterable

from dtrlog.errors import InvariantViolation
from dtrlog.models import (
    CHILD_LEVEL,
    LEVEL_ROOT,
    NODE_TYPES,
    PARENT_LEVEL,
    Node,
    require_level,
)


log = logging.getLogger("dtrlog.store")

LOAD_UNKNOWN = "unknown"
LOAD_LOADING = "loading"
LOAD_LOADED = "loaded"
LOAD_STATES = {LOAD_UNKNOWN, LOAD_LOADING, LOAD_LOADED}


class NodeStore:
    """In-memory tree of every hierarchy node the client has seen.

    Nodes are keyed by ``(level, id)``. Child lists are kept per parent
    together with a load-state; a list is only visible while the parent's
    children are *loaded*. The store never performs I/O.
    """

    def __init__(self) -> None:
        self._nodes: dict[tuple[str, str], Node] = {}
        self._children: dict[tuple[str, str], list[str]] = {}
        self._load_state: dict[tuple[str, str], str] = {}
        self._drop_listeners: list[Callable[[list[tuple[str, str]]], None]] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._nodes

    def get(self, level: str, node_id: str) -> Node | None:
        return self._nodes.get((level, node_id))

    def on_drop(self, listener: Callable[[list[tuple[str, str]]], None]) -> None:
        """Call ``listener`` with the keys a reload no longer returns."""
        self._drop_listeners.append(listener)

    def _check_node(self, level: str, node: Node) -> None:
        require_level(level)
        if not isinstance(node, NODE_TYPES[level]):
            raise InvariantViolation(f"{type(node).__name__} cannot be stored at level {level}")
        if not node.id:
            raise InvariantViolation(f"{level} node without id")
        if not node.parent_id:
            raise InvariantViolation(f"{level} {node.id} has no parent id")

    def put(self, level: str, node: Node) -> Node:
        """Insert or replace a node.

        A new node is appended to its parent's child list when that list is
        already loaded. Changing the parent of a known node is rejected
        before any state is touched.
        """
        self._check_node(level, node)
        key = (level, node.id)
        current = self._nodes.get(key)
        if current is not None and current.parent_id != node.parent_id:
            raise InvariantViolation(
                f"Cannot move {level} {node.id} from parent {current.parent_id} to {node.parent_id}"
            )
        self._nodes[key] = node
        if current is None:
            parent_key = (PARENT_LEVEL[level], node.parent_id)
            siblings = self._children.get(parent_key)
            if siblings is not None and self._load_state.get(parent_key) == LOAD_LOADED and node.id not in siblings:
                siblings.append(node.id)
        return node

    def set_children(self, level: str, parent_id: str, child_level: str, children: Iterable[Node]) -> list[Node]:
        if CHILD_LEVEL.get(level) != child_level:
            raise InvariantViolation(f"{child_level} is not the child level of {level}")
        if level != LEVEL_ROOT and (level, parent_id) not in self._nodes:
            log.debug("Recording children of %s %s before the parent itself is known", level, parent_id)
        items = list(children)
        for child in items:
            self._check_node(child_level, child)
            if child.parent_id != parent_id:
                raise InvariantViolation(
                    f"{child_level} {child.id} belongs to {child.parent_id}, not {level} {parent_id}"
                )
            current = self._nodes.get((child_level, child.id))
            if current is not None and current.parent_id != child.parent_id:
                raise InvariantViolation(f"Cannot move {child_level} {child.id} to {level} {parent_id}")

        key = (level, parent_id)
        fresh_ids = [child.id for child in items]
        dropped: list[tuple[str, str]] = []
        for stale_id in list(self._children.get(key, [])):
            if stale_id not in fresh_ids:
                dropped.extend(self.remove(child_level, stale_id))
        for child in items:
            self._nodes[(child_level, child.id)] = child
        self._children[key] = fresh_ids
        self._load_state[key] = LOAD_LOADED
        if dropped:
            log.debug("Reload of %s %s dropped %d nodes", level, parent_id, len(dropped))
            for listener in list(self._drop_listeners):
                listener(dropped)
        return items

    def remove(self, level: str, node_id: str) -> list[tuple[str, str]]:
        """Remove a node and, recursively, its loaded descendants.

        Returns the ``(level, id)`` keys that were dropped. Children that
        were never loaded are not known here and are simply forgotten.
        """
        removed: list[tuple[str, str]] = []
        node = self._nodes.pop((level, node_id), None)
        if node is None:
            return removed
        removed.append((level, node_id))

        child_level = CHILD_LEVEL.get(level)
        key = (level, node_id)
        child_ids = self._children.pop(key, [])
        self._load_state.pop(key, None)
        if child_level is not None:
            for child_id in child_ids:
                removed.extend(self.remove(child_level, child_id))

        siblings = self._children.get((PARENT_LEVEL[level], node.parent_id))
        if siblings is not None and node_id in siblings:
            siblings.remove(node_id)
        return removed

    def load_state(self, level: str, parent_id: str) -> str:
        return self._load_state.get((level, parent_id), LOAD_UNKNOWN)

    def mark_loading(self, level: str, parent_id: str) -> None:
        key = (level, parent_id)
        if self._load_state.get(key) == LOAD_LOADED:
            raise InvariantViolation(f"Children of {level} {parent_id} are already loaded")
        self._load_state[key] = LOAD_LOADING

    def mark_unknown(self, level: str, parent_id: str) -> None:
        """Forget the load-state of one parent.

        Nodes of an already loaded list stay in the map until the next
        :meth:`set_children` replaces them, but are no longer rendered.
        """
        self._load_state.pop((level, parent_id), None)

    def children(self, level: str, parent_id: str) -> list[Node] | None:
        """Loaded children of a parent, or ``None`` if they are not loaded."""
        ids = self._children.get((level, parent_id))
        if ids is None or self.load_state(level, parent_id) != LOAD_LOADED:
            return None
        child_level = CHILD_LEVEL[level]
        return [self._nodes[(child_level, child_id)] for child_id in ids]

    def has_loaded_children(self, level: str, node_id: str) -> bool:
        loaded = self.children(level, node_id)
        return bool(loaded)

    def ancestors(self, level: str, node_id: str) -> list[tuple[str, Node]]:
        """Known ancestors of a node, nearest first."""
        out: list[tuple[str, Node]] = []
        node = self._nodes.get((level, node_id))
        while node is not None:
            parent_level = PARENT_LEVEL[level]
            if parent_level == LEVEL_ROOT:
                break
            parent = self._nodes.get((parent_level, node.parent_id))
            if parent is None:
                break
            out.append((parent_level, parent))
            level, node = parent_level, parent
        return out

