from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from dtrlog.models import HOUR_FIELDS, LEVEL_TIMESHEET, Node
from dtrlog.node_store import NodeStore


# Only a Timesheet is derived from its children. DTR hours are set directly;
# Timelogs and ClockEvents carry timestamps, not durations.
AGGREGATE_LEVELS = {LEVEL_TIMESHEET}


def totals(children: Iterable[Node]) -> dict[str, float]:
    out = {name: 0.0 for name in HOUR_FIELDS}
    for child in children:
        for name in HOUR_FIELDS:
            out[name] += float(getattr(child, name, 0.0) or 0.0)
    return out


def recompute(parent: Node, children: Iterable[Node]) -> Node:
    """Return ``parent`` with its hour totals summed from ``children``.

    An empty list yields zero totals. Levels that are not aggregates are
    returned unchanged.
    """
    if parent.LEVEL not in AGGREGATE_LEVELS:
        return parent
    summed = totals(children)
    if all(getattr(parent, name) == value for name, value in summed.items()):
        return parent
    return replace(parent, **summed)


def recompute_in_store(store: NodeStore, level: str, node_id: str) -> Node | None:
    """Recompute one stored parent from its loaded children.

    Nothing happens when the parent is unknown, is not an aggregate level,
    or its children are not loaded; in that case the stored value stays the
    last snapshot received from the store.
    """
    if level not in AGGREGATE_LEVELS:
        return None
    parent = store.get(level, node_id)
    if parent is None:
        return None
    children = store.children(level, node_id)
    if children is None:
        return None
    updated = recompute(parent, children)
    if updated is not parent:
        store.put(level, updated)
    return updated


def rollup(store: NodeStore, level: str, node_id: str) -> list[Node]:
    """Recompute every known ancestor of a node, nearest first."""
    changed: list[Node] = []
    for ancestor_level, ancestor in store.ancestors(level, node_id):
        before = store.get(ancestor_level, ancestor.id)
        after = recompute_in_store(store, ancestor_level, ancestor.id)
        if after is not None and after is not before:
            changed.append(after)
    return changed
