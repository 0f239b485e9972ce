from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

from dtrlog.errors import HasChildren, NotFound, StoreError
from dtrlog.gateway import StoreGateway, StoreResult
from dtrlog.models import (
    CHILD_LEVEL,
    DTR,
    HOUR_FIELDS,
    LEVEL_DTR,
    LEVEL_TIMESHEET,
    ClockEvent,
    Node,
    Timelog,
    Timesheet,
    node_from_dict,
)


def timesheet(node_id: str, **kw: Any) -> Timesheet:
    kw.setdefault("employee_name", f"Employee {node_id}")
    kw.setdefault("pay_period", "January 1 to 15")
    kw.setdefault("detachment", "Diliman")
    kw.setdefault("shift", "Day Shift")
    return Timesheet(id=node_id, **kw)


def dtr(node_id: str, timesheet_id: str, regular_hours: float = 0.0, **kw: Any) -> DTR:
    kw.setdefault("date", "2025-01-02")
    return DTR(id=node_id, timesheet_id=timesheet_id, regular_hours=regular_hours, **kw)


def timelog(node_id: str, dtr_id: str, mode: str = "in", **kw: Any) -> Timelog:
    kw.setdefault("timestamp", "2025-01-02T06:00:00")
    return Timelog(id=node_id, dtr_id=dtr_id, mode=mode, **kw)


def clock_event(node_id: str, timelog_id: str, **kw: Any) -> ClockEvent:
    kw.setdefault("clock_time", "2025-01-02T06:00:00")
    return ClockEvent(id=node_id, timelog_id=timelog_id, **kw)


class FakeGateway(StoreGateway):
    """In-memory store that records calls.

    ``hold_fetch``/``hold_probe``/``hold_mutations`` park calls on an
    ``asyncio.Event`` until the test releases it; ``fail`` makes the next
    call of one operation raise.
    """

    def __init__(self, *nodes: Node) -> None:
        self.nodes: dict[tuple[str, str], Node] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.fetch_holds: dict[tuple[str, str], asyncio.Event] = {}
        self.probe_holds: dict[tuple[str, str], asyncio.Event] = {}
        self.mutation_hold: asyncio.Event | None = None
        self.failures: dict[str, Exception] = {}
        self._seq = 0
        for node in nodes:
            self.add(node)

    def add(self, node: Node) -> Node:
        self.nodes[(node.LEVEL, node.id)] = node
        return node

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def hold_fetch(self, level: str, parent_id: str) -> asyncio.Event:
        event = asyncio.Event()
        self.fetch_holds[(level, parent_id)] = event
        return event

    def hold_probe(self, level: str, node_id: str) -> asyncio.Event:
        event = asyncio.Event()
        self.probe_holds[(level, node_id)] = event
        return event

    def hold_mutations(self) -> asyncio.Event:
        self.mutation_hold = asyncio.Event()
        return self.mutation_hold

    def fail(self, op: str, exc: Exception | None = None) -> None:
        self.failures[op] = exc or StoreError("store unavailable", status_code=503)

    def _maybe_fail(self, op: str) -> None:
        exc = self.failures.pop(op, None)
        if exc is not None:
            raise exc

    def _children_of(self, level: str, parent_id: str) -> list[Node]:
        child_level = CHILD_LEVEL[level]
        return [n for (lvl, _), n in self.nodes.items() if lvl == child_level and n.parent_id == parent_id]

    def _ancestors(self, node: Node) -> tuple[Node, ...]:
        if node.LEVEL != LEVEL_DTR:
            return ()
        key = (LEVEL_TIMESHEET, node.parent_id)
        parent = self.nodes[key]
        dtrs = self._children_of(LEVEL_TIMESHEET, parent.id)
        sums = {name: sum(getattr(d, name) for d in dtrs) for name in HOUR_FIELDS}
        self.nodes[key] = replace(parent, **sums)
        return (self.nodes[key],)

    async def _wait_mutation(self) -> None:
        if self.mutation_hold is not None:
            await self.mutation_hold.wait()

    async def fetch_children(self, level: str, parent_id: str) -> list[Node]:
        self.calls.append(("fetch_children", level, parent_id))
        hold = self.fetch_holds.get((level, parent_id))
        if hold is not None:
            await hold.wait()
        self._maybe_fail("fetch_children")
        return self._children_of(level, parent_id)

    async def create_entity(self, level: str, payload: dict[str, Any]) -> StoreResult:
        self.calls.append(("create_entity", level, dict(payload)))
        await self._wait_mutation()
        self._maybe_fail("create_entity")
        self._seq += 1
        node = node_from_dict(level, {"id": f"{level}-{self._seq}", **payload})
        self.add(node)
        return StoreResult(entity=node, ancestors=self._ancestors(node))

    async def update_entity(self, level: str, node_id: str, patch: dict[str, Any]) -> StoreResult:
        self.calls.append(("update_entity", level, node_id, dict(patch)))
        await self._wait_mutation()
        self._maybe_fail("update_entity")
        current = self.nodes.get((level, node_id))
        if current is None:
            raise NotFound(f"{level} not found: {node_id}")
        node = node_from_dict(level, {**current.to_dict(), **patch, "id": node_id})
        self.add(node)
        return StoreResult(entity=node, ancestors=self._ancestors(node))

    async def delete_entity(self, level: str, node_id: str) -> StoreResult:
        self.calls.append(("delete_entity", level, node_id))
        await self._wait_mutation()
        self._maybe_fail("delete_entity")
        node = self.nodes.get((level, node_id))
        if node is None:
            raise NotFound(f"{level} not found: {node_id}")
        if CHILD_LEVEL.get(level) and self._children_of(level, node_id):
            raise HasChildren(level, node_id)
        del self.nodes[(level, node_id)]
        return StoreResult(entity=None, ancestors=self._ancestors(node))

    async def probe_has_children(self, level: str, node_id: str) -> bool:
        self.calls.append(("probe_has_children", level, node_id))
        hold = self.probe_holds.get((level, node_id))
        if hold is not None:
            await hold.wait()
        self._maybe_fail("probe_has_children")
        return bool(CHILD_LEVEL.get(level)) and bool(self._children_of(level, node_id))
