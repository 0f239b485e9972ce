from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable

from dtrlog.aggregate import recompute_in_store, rollup
from dtrlog.errors import HasChildren, InvariantViolation, MutationFailed
from dtrlog.expansion import ExpansionController
from dtrlog.gateway import StoreGateway, StoreResult
from dtrlog.models import (
    HOUR_FIELDS,
    LEVEL_DTR,
    LEVEL_ROOT,
    LEVEL_TIMESHEET,
    PARENT_FIELD,
    PARENT_LEVEL,
    Node,
    require_level,
)
from dtrlog.node_store import NodeStore
from dtrlog.selection import SelectionTracker


log = logging.getLogger("dtrlog.mutations")

KIND_CREATE = "create"
KIND_UPDATE = "update"
KIND_DELETE = "delete"

STATE_PENDING = "pending"
STATE_SUCCESS = "success"
STATE_FAILED = "failed"


@dataclass
class MutationRecord:
    kind: str
    level: str
    target_id: str | None
    payload: dict[str, Any]
    state: str = STATE_PENDING
    error: str = ""
    started_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None


@dataclass(frozen=True)
class MutationResult:
    kind: str
    level: str
    node: Node | None
    removed_id: str | None
    updated_ancestors: tuple[Node, ...]


class MutationCoordinator:
    """Sends create/update/delete to the store and merges the answer.

    The store's ancestor snapshots are authoritative: they overwrite any
    client-side recompute because they include children this client never
    loaded. Nothing in the NodeStore changes when a mutation fails.
    """

    def __init__(
        self,
        store: NodeStore,
        gateway: StoreGateway,
        expansion: ExpansionController | None = None,
        selection: SelectionTracker | None = None,
        *,
        optimistic_updates: bool = True,
        history_size: int = 50,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._expansion = expansion
        self._selection = selection
        self.optimistic_updates = optimistic_updates
        self._pending: list[MutationRecord] = []
        self.history: deque[MutationRecord] = deque(maxlen=history_size)

    def pending(self) -> list[MutationRecord]:
        return list(self._pending)

    def _begin(self, kind: str, level: str, target_id: str | None, payload: dict[str, Any]) -> MutationRecord:
        record = MutationRecord(kind=kind, level=level, target_id=target_id, payload=dict(payload))
        self._pending.append(record)
        self.history.append(record)
        return record

    def _end(self, record: MutationRecord, state: str, error: str = "") -> None:
        record.state = state
        record.error = error
        record.finished_at = time.monotonic()
        if record in self._pending:
            self._pending.remove(record)

    async def _send(self, record: MutationRecord, call: Awaitable[StoreResult]) -> StoreResult:
        try:
            return await call
        except HasChildren as exc:
            self._end(record, STATE_FAILED, str(exc))
            log.warning("Store refused to %s %s %s: it has children", record.kind, record.level, record.target_id)
            raise
        except InvariantViolation as exc:
            self._end(record, STATE_FAILED, str(exc))
            log.exception("Store rejected %s of %s %s", record.kind, record.level, record.target_id)
            raise
        except asyncio.CancelledError:
            self._end(record, STATE_FAILED, "cancelled")
            raise
        except Exception as exc:
            self._end(record, STATE_FAILED, str(exc))
            log.warning("Failed to %s %s %s: %s", record.kind, record.level, record.target_id or "", exc)
            raise MutationFailed(record.kind, record.level, record.payload, f"Failed to {record.kind} {record.level}: {exc}") from exc

    def _merge(self, level: str, node: Node) -> bool:
        """Store a server snapshot if this client holds the node or its siblings."""
        if self._store.get(level, node.id) is None and self._store.children(PARENT_LEVEL[level], node.parent_id) is None:
            return False
        self._store.put(level, node)
        return True

    def _rollup_from(self, parent_level: str, parent_id: str) -> None:
        if parent_level == LEVEL_ROOT:
            return
        recompute_in_store(self._store, parent_level, parent_id)
        rollup(self._store, parent_level, parent_id)

    def _apply_ancestors(self, ancestors: tuple[Node, ...]) -> None:
        for ancestor in ancestors:
            level = ancestor.LEVEL
            if self._store.get(level, ancestor.id) is None:
                log.debug("Ignoring snapshot of %s %s: not loaded here", level, ancestor.id)
                continue
            self._store.put(level, ancestor)
            if self._selection is not None:
                self._selection.refresh(level, ancestor)

    def _check_entity(self, record: MutationRecord, entity: Node | None, node_id: str | None = None) -> Node:
        if entity is None or entity.LEVEL != record.level or (node_id is not None and entity.id != node_id):
            self._end(record, STATE_FAILED, "unexpected store response")
            raise InvariantViolation(f"Store answered {record.kind} of {record.level} with {entity!r}")
        return entity

    async def create(self, level: str, payload: dict[str, Any]) -> MutationResult:
        require_level(level)
        parent_field = PARENT_FIELD[level]
        if parent_field is not None and not str(payload.get(parent_field) or "").strip():
            raise InvariantViolation(f"A new {level} needs {parent_field}")
        record = self._begin(KIND_CREATE, level, None, payload)
        result = await self._send(record, self._gateway.create_entity(level, dict(payload)))
        created = self._check_entity(record, result.entity)
        record.target_id = created.id

        self._merge(level, created)
        self._rollup_from(PARENT_LEVEL[level], created.parent_id)
        self._apply_ancestors(result.ancestors)
        if self._selection is not None:
            self._selection.sync_children()
        self._end(record, STATE_SUCCESS)
        log.info("Created %s %s", level, created.id)
        return MutationResult(KIND_CREATE, level, created, None, result.ancestors)

    def _apply_optimistic(self, level: str, node_id: str, patch: dict[str, Any]) -> list[tuple[str, Node, Node]]:
        """Show edited DTR hours and the Timesheet total before the store answers.

        Returns ``(level, original, optimistic)`` entries for rollback.
        """
        if level != LEVEL_DTR or not any(name in patch for name in HOUR_FIELDS):
            return []
        current = self._store.get(level, node_id)
        if current is None or self._store.children(LEVEL_TIMESHEET, current.parent_id) is None:
            return []
        try:
            values = {name: float(patch[name]) for name in HOUR_FIELDS if name in patch}
        except (TypeError, ValueError):
            return []
        restore: list[tuple[str, Node, Node]] = []
        optimistic = replace(current, **values)
        self._store.put(level, optimistic)
        restore.append((level, current, optimistic))
        timesheet = self._store.get(LEVEL_TIMESHEET, current.parent_id)
        if timesheet is not None:
            updated = recompute_in_store(self._store, LEVEL_TIMESHEET, current.parent_id)
            if updated is not None and updated is not timesheet:
                restore.append((LEVEL_TIMESHEET, timesheet, updated))
        return restore

    def _rollback(self, restore: list[tuple[str, Node, Node]]) -> None:
        for level, original, optimistic in reversed(restore):
            # A newer snapshot may have landed meanwhile; keep it.
            if self._store.get(level, original.id) is optimistic:
                self._store.put(level, original)

    async def update(self, level: str, node_id: str, patch: dict[str, Any]) -> MutationResult:
        require_level(level)
        parent_field = PARENT_FIELD[level]
        current = self._store.get(level, node_id)
        if parent_field is not None and parent_field in patch and current is not None:
            if str(patch[parent_field]) != current.parent_id:
                log.warning("Rejected move of %s %s to %s", level, node_id, patch[parent_field])
                raise InvariantViolation(f"Cannot move {level} {node_id} to another parent")

        record = self._begin(KIND_UPDATE, level, node_id, patch)
        restore = self._apply_optimistic(level, node_id, patch) if self.optimistic_updates else []
        try:
            result = await self._send(record, self._gateway.update_entity(level, node_id, dict(patch)))
            updated = self._check_entity(record, result.entity, node_id)
        except BaseException:
            self._rollback(restore)
            raise

        self._merge(level, updated)
        self._rollup_from(PARENT_LEVEL[level], updated.parent_id)
        self._apply_ancestors(result.ancestors)
        if self._selection is not None:
            self._selection.refresh(level, updated)
        self._end(record, STATE_SUCCESS)
        log.info("Updated %s %s", level, node_id)
        return MutationResult(KIND_UPDATE, level, updated, None, result.ancestors)

    async def remove(self, level: str, node_id: str) -> MutationResult:
        require_level(level)
        if self._store.has_loaded_children(level, node_id):
            log.warning("Refused to delete %s %s: it has loaded children", level, node_id)
            raise HasChildren(level, node_id)

        node = self._store.get(level, node_id)
        record = self._begin(KIND_DELETE, level, node_id, {})
        result = await self._send(record, self._gateway.delete_entity(level, node_id))

        removed = self._store.remove(level, node_id) or [(level, node_id)]
        if node is not None:
            self._rollup_from(PARENT_LEVEL[level], node.parent_id)
        self._apply_ancestors(result.ancestors)
        if self._expansion is not None:
            for removed_level, removed_id in removed:
                self._expansion.forget(removed_level, removed_id)
        if self._selection is not None:
            self._selection.on_removed(removed)
            self._selection.sync_children()
        self._end(record, STATE_SUCCESS)
        log.info("Deleted %s %s", level, node_id)
        return MutationResult(KIND_DELETE, level, None, node_id, result.ancestors)
