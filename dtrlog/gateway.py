from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dtrlog.db import TimesheetDB
from dtrlog.models import Node


@dataclass(frozen=True)
class StoreResult:
    entity: Node | None
    ancestors: tuple[Node, ...] = field(default_factory=tuple)


class StoreGateway:
    """The remote store as seen by the engine.

    ``level`` in :meth:`fetch_children` is the parent's level (``root`` for
    the Timesheet list); every other method takes the entity's own level.
    """

    async def fetch_children(self, level: str, parent_id: str) -> list[Node]:  # pragma: no cover - interface
        raise NotImplementedError

    async def create_entity(self, level: str, payload: dict[str, Any]) -> StoreResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def update_entity(self, level: str, node_id: str, patch: dict[str, Any]) -> StoreResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete_entity(self, level: str, node_id: str) -> StoreResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def probe_has_children(self, level: str, node_id: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


class LocalStoreGateway(StoreGateway):
    """Runs against a :class:`TimesheetDB` in the same process."""

    def __init__(self, db: TimesheetDB) -> None:
        self._db = db

    async def fetch_children(self, level: str, parent_id: str) -> list[Node]:
        return self._db.list_children(level, parent_id)

    async def create_entity(self, level: str, payload: dict[str, Any]) -> StoreResult:
        entity, ancestors = self._db.create(level, payload)
        return StoreResult(entity=entity, ancestors=tuple(ancestors))

    async def update_entity(self, level: str, node_id: str, patch: dict[str, Any]) -> StoreResult:
        entity, ancestors = self._db.update(level, node_id, patch)
        return StoreResult(entity=entity, ancestors=tuple(ancestors))

    async def delete_entity(self, level: str, node_id: str) -> StoreResult:
        ancestors = self._db.delete(level, node_id)
        return StoreResult(entity=None, ancestors=tuple(ancestors))

    async def probe_has_children(self, level: str, node_id: str) -> bool:
        return self._db.has_children(level, node_id)
