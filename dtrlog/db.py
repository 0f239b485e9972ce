from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Iterator, cast

from dtrlog.errors import HasChildren, InvariantViolation, NotFound, StoreError
from dtrlog.models import (
    CHILD_LEVEL,
    HOUR_FIELDS,
    LEVEL_CLOCKEVENT,
    LEVEL_DTR,
    LEVEL_ROOT,
    LEVEL_TIMELOG,
    LEVEL_TIMESHEET,
    MODE_IN,
    MODE_OUT,
    PARENT_FIELD,
    PARENT_LEVEL,
    SHIFT_DAY,
    SHIFT_MID,
    SHIFT_NIGHT,
    TIMELOG_MODES,
    Node,
    Timesheet,
    node_from_dict,
    now_ts,
    require_level,
)


log = logging.getLogger("dtrlog.db")

SCHEMA_VERSION = 1

MEMORY_PATH = ":memory:"

TABLES: dict[str, str] = {
    LEVEL_TIMESHEET: "timesheets",
    LEVEL_DTR: "dtrs",
    LEVEL_TIMELOG: "timelogs",
    LEVEL_CLOCKEVENT: "clock_events",
}

ORDER_BY: dict[str, str] = {
    LEVEL_TIMESHEET: "employee_name ASC, id ASC",
    LEVEL_DTR: "date ASC, id ASC",
    LEVEL_TIMELOG: "timestamp ASC, id ASC",
    LEVEL_CLOCKEVENT: "clock_time ASC, id ASC",
}

EDITABLE_FIELDS: dict[str, tuple[str, ...]] = {
    LEVEL_TIMESHEET: ("employee_name", "pay_period", "detachment", "shift", *HOUR_FIELDS),
    LEVEL_DTR: ("date", *HOUR_FIELDS),
    LEVEL_TIMELOG: ("mode", "timestamp"),
    LEVEL_CLOCKEVENT: ("clock_time",),
}


def _iso_now() -> str:
    return datetime.now().astimezone().replace(microsecond=0).isoformat()


def _clean_hours(name: str, value: Any) -> float:
    text = str(value if value is not None else "").strip()
    if not text:
        return 0.0
    try:
        hours = float(text)
    except ValueError as exc:
        raise StoreError(f"{name} must be a number", status_code=400) from exc
    if hours < 0:
        raise StoreError(f"{name} must not be negative", status_code=400)
    return hours


def _clean_date(value: Any) -> str:
    text = str(value or "").strip()
    try:
        # Accept full timestamps from date pickers; keep only the day.
        return datetime.fromisoformat(text).date().isoformat() if "T" in text else date.fromisoformat(text).isoformat()
    except ValueError as exc:
        raise StoreError(f"invalid date: {text!r}", status_code=400) from exc


def _clean_timestamp(name: str, value: Any) -> str:
    text = str(value or "").strip()
    try:
        return datetime.fromisoformat(text).isoformat()
    except ValueError as exc:
        raise StoreError(f"invalid {name}: {text!r}", status_code=400) from exc


def _clean_fields(level: str, payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in EDITABLE_FIELDS[level]:
        if name not in payload:
            continue
        value = payload[name]
        if name in HOUR_FIELDS:
            out[name] = _clean_hours(name, value)
        elif name == "date":
            out[name] = _clean_date(value)
        elif name in {"timestamp", "clock_time"}:
            out[name] = _clean_timestamp(name, value)
        elif name == "mode":
            mode = str(value or "").strip().lower()
            if mode not in TIMELOG_MODES:
                raise StoreError("mode must be 'in' or 'out'", status_code=400)
            out[name] = mode
        else:
            out[name] = str(value or "").strip()
    return out


def _create_defaults(level: str) -> dict[str, Any]:
    if level == LEVEL_TIMESHEET:
        return {"employee_name": "", "pay_period": "", "detachment": "", "shift": "", **{h: 0.0 for h in HOUR_FIELDS}}
    if level == LEVEL_DTR:
        return {"date": date.today().isoformat(), **{h: 0.0 for h in HOUR_FIELDS}}
    if level == LEVEL_TIMELOG:
        return {"mode": MODE_IN, "timestamp": _iso_now()}
    return {"clock_time": _iso_now()}


class TimesheetDB:
    """Persistent store for the timesheet hierarchy.

    Every mutation returns the ancestors whose aggregates it changed, as
    full snapshots, so clients can patch their trees without re-fetching.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = str(db_path)
        if self._db_path != MEMORY_PATH:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON;")
        if self._db_path != MEMORY_PATH:
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._init_schema()

    @property
    def path(self) -> str:
        return self._db_path

    def close(self) -> None:
        self._conn.close()

    @contextlib.contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            )
            """
        )
        version = self.get_setting_int("schema_version", 0)
        if version == 0:
            self.set_setting("schema_version", str(SCHEMA_VERSION))
            version = SCHEMA_VERSION
        if version > SCHEMA_VERSION:
            raise RuntimeError(f"Unsupported schema_version={version}")

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS timesheets (
              id TEXT PRIMARY KEY,
              employee_name TEXT NOT NULL DEFAULT '',
              pay_period TEXT NOT NULL DEFAULT '',
              detachment TEXT NOT NULL DEFAULT '',
              shift TEXT NOT NULL DEFAULT '',
              regular_hours REAL NOT NULL DEFAULT 0,
              overtime_hours REAL NOT NULL DEFAULT 0,
              night_differential REAL NOT NULL DEFAULT 0,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS dtrs (
              id TEXT PRIMARY KEY,
              timesheet_id TEXT NOT NULL,
              date TEXT NOT NULL,
              regular_hours REAL NOT NULL DEFAULT 0,
              overtime_hours REAL NOT NULL DEFAULT 0,
              night_differential REAL NOT NULL DEFAULT 0,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              FOREIGN KEY(timesheet_id) REFERENCES timesheets(id) ON DELETE RESTRICT
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS timelogs (
              id TEXT PRIMARY KEY,
              dtr_id TEXT NOT NULL,
              mode TEXT NOT NULL CHECK (mode IN ('in', 'out')),
              timestamp TEXT NOT NULL,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              FOREIGN KEY(dtr_id) REFERENCES dtrs(id) ON DELETE RESTRICT
            )
            """
        )

        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS clock_events (
              id TEXT PRIMARY KEY,
              timelog_id TEXT NOT NULL,
              clock_time TEXT NOT NULL,
              created_at INTEGER NOT NULL,
              updated_at INTEGER NOT NULL,
              FOREIGN KEY(timelog_id) REFERENCES timelogs(id) ON DELETE RESTRICT
            )
            """
        )

        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_dtrs_timesheet_date ON dtrs(timesheet_id, date)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_timelogs_dtr_ts ON timelogs(dtr_id, timestamp)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_clock_events_timelog ON clock_events(timelog_id, clock_time)")
        if version < SCHEMA_VERSION:
            self.set_setting("schema_version", str(SCHEMA_VERSION))
        self._conn.commit()

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO settings(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                (key, value),
            )
            self._conn.commit()

    def get_setting(self, key: str, default: str = "") -> str:
        row = self._conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        if not row:
            return default
        value = row["value"]
        if value is None:
            return default
        return str(value)

    def get_setting_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get_setting(key, str(default)))
        except ValueError:
            return default

    def _to_node(self, level: str, row: sqlite3.Row) -> Node:
        return node_from_dict(level, dict(row))

    def _fetch_node(self, level: str, node_id: str) -> Node | None:
        row = self._conn.execute(f"SELECT * FROM {TABLES[level]} WHERE id=?", (node_id,)).fetchone()
        if not row:
            return None
        return self._to_node(level, row)

    def get(self, level: str, node_id: str) -> Node | None:
        require_level(level)
        with self._lock:
            return self._fetch_node(level, node_id)

    def _require(self, level: str, node_id: str) -> Node:
        node = self._fetch_node(level, node_id)
        if node is None:
            raise NotFound(f"{level} not found: {node_id}")
        return node

    def count(self, level: str) -> int:
        require_level(level)
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) AS c FROM {TABLES[level]}").fetchone()
            return int(row["c"] or 0)

    def list_children(self, level: str, parent_id: str) -> list[Node]:
        """Children of ``(level, parent_id)``; ``level='root'`` lists Timesheets."""
        child_level = CHILD_LEVEL.get(level)
        if child_level is None:
            raise StoreError(f"{level} has no children", status_code=400)
        with self._lock:
            if level == LEVEL_ROOT:
                rows = self._conn.execute(
                    f"SELECT * FROM {TABLES[child_level]} ORDER BY {ORDER_BY[child_level]}"
                ).fetchall()
            else:
                self._require(level, parent_id)
                parent_field = PARENT_FIELD[child_level]
                rows = self._conn.execute(
                    f"SELECT * FROM {TABLES[child_level]} WHERE {parent_field}=? ORDER BY {ORDER_BY[child_level]}",
                    (parent_id,),
                ).fetchall()
            return [self._to_node(child_level, row) for row in rows]

    def _has_children(self, level: str, node_id: str) -> bool:
        child_level = CHILD_LEVEL.get(level)
        if child_level is None:
            return False
        parent_field = PARENT_FIELD[child_level]
        row = self._conn.execute(
            f"SELECT 1 FROM {TABLES[child_level]} WHERE {parent_field}=? LIMIT 1",
            (node_id,),
        ).fetchone()
        return row is not None

    def has_children(self, level: str, node_id: str) -> bool:
        require_level(level)
        with self._lock:
            self._require(level, node_id)
            return self._has_children(level, node_id)

    def _recompute_timesheet(self, timesheet_id: str, ts: int) -> Timesheet:
        row = self._conn.execute(
            """
            SELECT
              COALESCE(SUM(regular_hours), 0) AS regular_hours,
              COALESCE(SUM(overtime_hours), 0) AS overtime_hours,
              COALESCE(SUM(night_differential), 0) AS night_differential
            FROM dtrs WHERE timesheet_id=?
            """,
            (timesheet_id,),
        ).fetchone()
        self._conn.execute(
            """
            UPDATE timesheets
            SET regular_hours=?, overtime_hours=?, night_differential=?, updated_at=?
            WHERE id=?
            """,
            (
                float(row["regular_hours"]),
                float(row["overtime_hours"]),
                float(row["night_differential"]),
                ts,
                timesheet_id,
            ),
        )
        return cast(Timesheet, self._require(LEVEL_TIMESHEET, timesheet_id))

    def _ancestors_after_change(self, level: str, node: Node, ts: int) -> list[Node]:
        if level == LEVEL_DTR:
            return [self._recompute_timesheet(node.parent_id, ts)]
        return []

    def create(self, level: str, payload: dict[str, Any]) -> tuple[Node, list[Node]]:
        require_level(level)
        values = _create_defaults(level)
        values.update(_clean_fields(level, payload))
        parent_field = PARENT_FIELD[level]
        ts = now_ts()
        with self._tx() as conn:
            if parent_field is not None:
                parent_id = str(payload.get(parent_field) or "").strip()
                if not parent_id:
                    raise StoreError(f"{parent_field} is required", status_code=400)
                self._require(PARENT_LEVEL[level], parent_id)
                values[parent_field] = parent_id
            values["id"] = uuid.uuid4().hex
            values["created_at"] = ts
            values["updated_at"] = ts
            columns = list(values)
            conn.execute(
                f"INSERT INTO {TABLES[level]}({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                [values[c] for c in columns],
            )
            node = self._require(level, values["id"])
            ancestors = self._ancestors_after_change(level, node, ts)
        log.info("Created %s %s", level, node.id)
        return node, ancestors

    def update(self, level: str, node_id: str, patch: dict[str, Any]) -> tuple[Node, list[Node]]:
        require_level(level)
        changes = _clean_fields(level, patch)
        parent_field = PARENT_FIELD[level]
        ts = now_ts()
        with self._tx() as conn:
            current = self._require(level, node_id)
            if parent_field is not None and parent_field in patch:
                requested = str(patch.get(parent_field) or "").strip()
                if requested and requested != current.parent_id:
                    raise InvariantViolation(f"Cannot move {level} {node_id} to another parent")
            if changes:
                changes["updated_at"] = ts
                assignments = ", ".join(f"{name}=?" for name in changes)
                conn.execute(
                    f"UPDATE {TABLES[level]} SET {assignments} WHERE id=?",
                    [*changes.values(), node_id],
                )
            node = self._require(level, node_id)
            ancestors = self._ancestors_after_change(level, node, ts) if changes else []
        log.info("Updated %s %s (%s)", level, node_id, ", ".join(sorted(changes)) or "no changes")
        return node, ancestors

    def delete(self, level: str, node_id: str) -> list[Node]:
        require_level(level)
        ts = now_ts()
        with self._tx() as conn:
            node = self._require(level, node_id)
            if self._has_children(level, node_id):
                raise HasChildren(level, node_id)
            conn.execute(f"DELETE FROM {TABLES[level]} WHERE id=?", (node_id,))
            ancestors = self._ancestors_after_change(level, node, ts)
        log.info("Deleted %s %s", level, node_id)
        return ancestors

    def ensure_seed_data(self, year: int = 2025) -> bool:
        """Insert a demo payroll when the store is empty. Returns True if seeded."""
        if self.count(LEVEL_TIMESHEET) > 0:
            return False

        employees = [
            ("Dela Cruz, Juan", "January 1 to 15", "Diliman", SHIFT_DAY, True),
            ("Santos, Maria", "January 1 to 15", "Makati", SHIFT_NIGHT, True),
            ("Reyes, Pedro", "January 1 to 15", "Diliman", SHIFT_DAY, False),
            ("Garcia, Ana", "January 1 to 15", "Quezon City", SHIFT_MID, True),
            ("Bautista, Carlos", "January 16 to 31", "Diliman", SHIFT_DAY, True),
            ("Lopez, Elena", "January 16 to 31", "Pasig", SHIFT_NIGHT, True),
        ]
        shift_hours = {SHIFT_DAY: (6, 18), SHIFT_NIGHT: (22, 6), SHIFT_MID: (14, 22)}

        ts = now_ts()
        with self._tx() as conn:
            for name, period, detachment, shift, has_overtime in employees:
                timesheet_id = uuid.uuid4().hex
                conn.execute(
                    """
                    INSERT INTO timesheets(id, employee_name, pay_period, detachment, shift, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (timesheet_id, name, period, detachment, shift, ts, ts),
                )
                first_day = 1 if period.startswith("January 1 ") else 16
                last_day = 15 if first_day == 1 else 31
                working_day = 0
                for day in range(first_day, last_day + 1):
                    work_date = date(year, 1, day)
                    if work_date.weekday() >= 5:
                        continue
                    working_day += 1
                    overtime = 4.0 if has_overtime and working_day % 3 == 0 else 0.0
                    night = 0.8 if shift == SHIFT_NIGHT else 0.0
                    dtr_id = uuid.uuid4().hex
                    conn.execute(
                        """
                        INSERT INTO dtrs(id, timesheet_id, date, regular_hours, overtime_hours, night_differential, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (dtr_id, timesheet_id, work_date.isoformat(), 8.0, overtime, night, ts, ts),
                    )
                    start_hour, end_hour = shift_hours[shift]
                    time_in = datetime(year, 1, day, start_hour)
                    time_out = datetime(year, 1, day, end_hour)
                    if end_hour < start_hour:
                        time_out += timedelta(days=1)
                    time_out += timedelta(hours=overtime)
                    for mode, moment in ((MODE_IN, time_in), (MODE_OUT, time_out)):
                        timelog_id = uuid.uuid4().hex
                        conn.execute(
                            "INSERT INTO timelogs(id, dtr_id, mode, timestamp, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                            (timelog_id, dtr_id, mode, moment.isoformat(), ts, ts),
                        )
                        conn.execute(
                            "INSERT INTO clock_events(id, timelog_id, clock_time, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                            (uuid.uuid4().hex, timelog_id, moment.isoformat(), ts, ts),
                        )
                self._recompute_timesheet(timesheet_id, ts)
        log.info("Seeded %d demo timesheets", len(employees))
        return True
