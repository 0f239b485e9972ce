from __future__ import annotations

import time
from dataclasses import MISSING, asdict, dataclass, fields
from typing import Any, ClassVar, Union


LEVEL_ROOT = "root"
LEVEL_TIMESHEET = "timesheet"
LEVEL_DTR = "dtr"
LEVEL_TIMELOG = "timelog"
LEVEL_CLOCKEVENT = "clockevent"

ROOT_ID = "root"

LEVELS = (LEVEL_TIMESHEET, LEVEL_DTR, LEVEL_TIMELOG, LEVEL_CLOCKEVENT)

CHILD_LEVEL: dict[str, str] = {
    LEVEL_ROOT: LEVEL_TIMESHEET,
    LEVEL_TIMESHEET: LEVEL_DTR,
    LEVEL_DTR: LEVEL_TIMELOG,
    LEVEL_TIMELOG: LEVEL_CLOCKEVENT,
}

PARENT_LEVEL: dict[str, str] = {child: parent for parent, child in CHILD_LEVEL.items()}

# URL collection names used by the store service.
COLLECTIONS: dict[str, str] = {
    "timesheets": LEVEL_TIMESHEET,
    "dtrs": LEVEL_DTR,
    "timelogs": LEVEL_TIMELOG,
    "clockevents": LEVEL_CLOCKEVENT,
}
COLLECTION_FOR_LEVEL: dict[str, str] = {level: name for name, level in COLLECTIONS.items()}

HOUR_FIELDS = ("regular_hours", "overtime_hours", "night_differential")

MODE_IN = "in"
MODE_OUT = "out"
TIMELOG_MODES = {MODE_IN, MODE_OUT}

SHIFT_DAY = "Day Shift"
SHIFT_NIGHT = "Night Shift"
SHIFT_MID = "Mid Shift"


def now_ts() -> int:
    return int(time.time())


def _as_hours(value: Any) -> float:
    if value is None:
        return 0.0
    text = str(value).strip()
    if not text:
        return 0.0
    return float(text)


@dataclass(frozen=True)
class Timesheet:
    LEVEL: ClassVar[str] = LEVEL_TIMESHEET

    id: str
    employee_name: str
    pay_period: str
    detachment: str
    shift: str
    regular_hours: float = 0.0
    overtime_hours: float = 0.0
    night_differential: float = 0.0
    created_at: int = 0
    updated_at: int = 0

    @property
    def parent_id(self) -> str:
        return ROOT_ID

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DTR:
    LEVEL: ClassVar[str] = LEVEL_DTR

    id: str
    timesheet_id: str
    date: str
    regular_hours: float = 0.0
    overtime_hours: float = 0.0
    night_differential: float = 0.0
    created_at: int = 0
    updated_at: int = 0

    @property
    def parent_id(self) -> str:
        return self.timesheet_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Timelog:
    LEVEL: ClassVar[str] = LEVEL_TIMELOG

    id: str
    dtr_id: str
    mode: str
    timestamp: str
    created_at: int = 0
    updated_at: int = 0

    @property
    def parent_id(self) -> str:
        return self.dtr_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ClockEvent:
    LEVEL: ClassVar[str] = LEVEL_CLOCKEVENT

    id: str
    timelog_id: str
    clock_time: str
    created_at: int = 0
    updated_at: int = 0

    @property
    def parent_id(self) -> str:
        return self.timelog_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Node = Union[Timesheet, DTR, Timelog, ClockEvent]

NODE_TYPES: dict[str, type] = {
    LEVEL_TIMESHEET: Timesheet,
    LEVEL_DTR: DTR,
    LEVEL_TIMELOG: Timelog,
    LEVEL_CLOCKEVENT: ClockEvent,
}

# Field on each entity that points at its parent; Timesheets hang off the virtual root.
PARENT_FIELD: dict[str, str | None] = {
    LEVEL_TIMESHEET: None,
    LEVEL_DTR: "timesheet_id",
    LEVEL_TIMELOG: "dtr_id",
    LEVEL_CLOCKEVENT: "timelog_id",
}


def require_level(level: str) -> str:
    if level not in NODE_TYPES:
        raise ValueError(f"Unknown level: {level!r}")
    return level


def node_from_dict(level: str, payload: dict[str, Any]) -> Node:
    """Build an entity of ``level`` from a wire/row mapping.

    Unknown keys are ignored so store responses can carry extra columns
    (for example the ``level`` tag on ancestor snapshots).
    """
    cls = NODE_TYPES[require_level(level)]
    names = {f.name for f in fields(cls)}
    data = {k: v for k, v in payload.items() if k in names}
    if "id" not in data or not str(data["id"]).strip():
        raise ValueError(f"{level} payload is missing id")
    data["id"] = str(data["id"])
    for name in HOUR_FIELDS:
        if name in names:
            data[name] = _as_hours(data.get(name))
    for name in ("created_at", "updated_at"):
        if name in names:
            data[name] = int(data.get(name) or 0)
    parent_field = PARENT_FIELD[level]
    if parent_field is not None:
        raw_parent = data.get(parent_field)
        if raw_parent is None or not str(raw_parent).strip():
            raise ValueError(f"{level} payload is missing {parent_field}")
        data[parent_field] = str(raw_parent)
    if level == LEVEL_TIMELOG:
        mode = str(data.get("mode") or "").strip().lower()
        if mode not in TIMELOG_MODES:
            raise ValueError(f"timelog mode must be 'in' or 'out', got {data.get('mode')!r}")
        data["mode"] = mode
    for f in fields(cls):
        if f.name not in data and f.default is MISSING:
            data[f.name] = ""
    return cls(**data)


def snapshot_to_dict(node: Node) -> dict[str, Any]:
    out = node.to_dict()
    out["level"] = node.LEVEL
    return out


def node_from_snapshot(payload: dict[str, Any]) -> Node:
    return node_from_dict(str(payload.get("level") or ""), payload)
