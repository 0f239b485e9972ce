from __future__ import annotations

from typing import Any


class DtrlogError(RuntimeError):
    pass


class ConfigError(DtrlogError):
    pass


class InvariantViolation(DtrlogError):
    """The tree shape would be corrupted (reparenting, wrong level, orphan)."""


class FetchFailed(DtrlogError):
    def __init__(self, level: str, parent_id: str, message: str = "") -> None:
        self.level = level
        self.parent_id = parent_id
        super().__init__(message or f"Failed to load children of {level} {parent_id}")


class HasChildren(DtrlogError):
    def __init__(self, level: str, node_id: str) -> None:
        self.level = level
        self.node_id = node_id
        super().__init__(f"Cannot delete {level} {node_id}: it has child records")


class MutationFailed(DtrlogError):
    def __init__(self, kind: str, level: str, payload: dict[str, Any] | None = None, message: str = "") -> None:
        self.kind = kind
        self.level = level
        # Attempted values, kept so the caller can re-present its form.
        self.payload = dict(payload or {})
        super().__init__(message or f"Failed to {kind} {level}")


class StoreError(DtrlogError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NotFound(StoreError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)
