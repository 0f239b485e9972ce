from __future__ import annotations

from dtrlog.aggregate import recompute, recompute_in_store, rollup, totals
from dtrlog.models import LEVEL_DTR, LEVEL_ROOT, LEVEL_TIMELOG, LEVEL_TIMESHEET, ROOT_ID
from dtrlog.node_store import NodeStore
from fakes import dtr, timelog, timesheet


def test_timesheet_totals_follow_dtr_changes() -> None:
    t1 = timesheet("T1")
    d1 = dtr("D1", "T1", 8.0)
    d2 = dtr("D2", "T1", 6.0)

    assert recompute(t1, [d1, d2]).regular_hours == 14.0

    d1 = dtr("D1", "T1", 10.0)
    assert recompute(t1, [d1, d2]).regular_hours == 16.0

    assert recompute(t1, [d2]).regular_hours == 6.0


def test_empty_children_yield_zero() -> None:
    t1 = timesheet("T1", regular_hours=12.0, overtime_hours=2.0, night_differential=0.8)
    out = recompute(t1, [])
    assert (out.regular_hours, out.overtime_hours, out.night_differential) == (0.0, 0.0, 0.0)


def test_all_hour_fields_are_summed() -> None:
    children = [
        dtr("D1", "T1", 8.0, overtime_hours=4.0, night_differential=0.8),
        dtr("D2", "T1", 8.0, night_differential=0.8),
    ]
    assert totals(children) == {"regular_hours": 16.0, "overtime_hours": 4.0, "night_differential": 1.6}


def test_unchanged_parent_is_returned_as_is() -> None:
    t1 = timesheet("T1", regular_hours=8.0)
    assert recompute(t1, [dtr("D1", "T1", 8.0)]) is t1


def test_non_aggregate_levels_are_untouched() -> None:
    d1 = dtr("D1", "T1", 8.0)
    assert recompute(d1, [timelog("L1", "D1")]) is d1


def test_recompute_in_store_needs_loaded_children() -> None:
    store = NodeStore()
    store.set_children(LEVEL_ROOT, ROOT_ID, LEVEL_TIMESHEET, [timesheet("T1", regular_hours=40.0)])

    assert recompute_in_store(store, LEVEL_TIMESHEET, "T1") is None
    assert store.get(LEVEL_TIMESHEET, "T1").regular_hours == 40.0

    store.set_children(LEVEL_TIMESHEET, "T1", LEVEL_DTR, [dtr("D1", "T1", 8.0)])
    assert recompute_in_store(store, LEVEL_TIMESHEET, "T1").regular_hours == 8.0
    assert store.get(LEVEL_TIMESHEET, "T1").regular_hours == 8.0


def test_rollup_walks_known_ancestors() -> None:
    store = NodeStore()
    store.set_children(LEVEL_ROOT, ROOT_ID, LEVEL_TIMESHEET, [timesheet("T1")])
    store.set_children(LEVEL_TIMESHEET, "T1", LEVEL_DTR, [dtr("D1", "T1", 7.5)])
    store.set_children(LEVEL_DTR, "D1", LEVEL_TIMELOG, [timelog("L1", "D1")])

    changed = rollup(store, LEVEL_TIMELOG, "L1")

    assert [node.id for node in changed] == ["T1"]
    assert store.get(LEVEL_TIMESHEET, "T1").regular_hours == 7.5
