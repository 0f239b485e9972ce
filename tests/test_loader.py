from __future__ import annotations

import asyncio

import pytest

from dtrlog.errors import FetchFailed, InvariantViolation
from dtrlog.loader import LazyLoader
from dtrlog.models import LEVEL_CLOCKEVENT, LEVEL_DTR, LEVEL_ROOT, LEVEL_TIMESHEET, ROOT_ID
from dtrlog.node_store import LOAD_LOADED, LOAD_LOADING, LOAD_UNKNOWN, NodeStore
from fakes import FakeGateway, dtr, timesheet


def _setup() -> tuple[NodeStore, FakeGateway, LazyLoader]:
    gateway = FakeGateway(timesheet("T1"), dtr("D1", "T1", 8.0), dtr("D2", "T1", 6.0))
    store = NodeStore()
    return store, gateway, LazyLoader(store, gateway)


def test_sequential_loads_fetch_once() -> None:
    store, gateway, loader = _setup()

    async def scenario() -> None:
        first = await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        second = await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        assert [t.id for t in first] == [t.id for t in second] == ["T1"]

    asyncio.run(scenario())
    assert gateway.count("fetch_children") == 1


def test_concurrent_loads_share_one_fetch() -> None:
    store, gateway, loader = _setup()

    async def scenario() -> None:
        await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        release = gateway.hold_fetch(LEVEL_TIMESHEET, "T1")
        a = asyncio.create_task(loader.ensure_children_loaded(LEVEL_TIMESHEET, "T1"))
        b = asyncio.create_task(loader.ensure_children_loaded(LEVEL_TIMESHEET, "T1"))
        await asyncio.sleep(0)
        assert store.load_state(LEVEL_TIMESHEET, "T1") == LOAD_LOADING
        assert loader.is_loading(LEVEL_TIMESHEET, "T1")
        release.set()
        first, second = await asyncio.gather(a, b)
        assert first == second
        assert [d.id for d in first] == ["D1", "D2"]

    asyncio.run(scenario())
    assert gateway.count("fetch_children") == 2


def test_load_recomputes_parent_aggregate() -> None:
    store, gateway, loader = _setup()

    async def scenario() -> None:
        await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        await loader.ensure_children_loaded(LEVEL_TIMESHEET, "T1")

    asyncio.run(scenario())
    assert store.get(LEVEL_TIMESHEET, "T1").regular_hours == 14.0


def test_failed_fetch_rolls_back_to_unknown_and_retries() -> None:
    store, gateway, loader = _setup()
    gateway.fail("fetch_children")

    async def scenario() -> None:
        with pytest.raises(FetchFailed) as excinfo:
            await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        assert excinfo.value.level == LEVEL_ROOT
        assert store.load_state(LEVEL_ROOT, ROOT_ID) == LOAD_UNKNOWN
        assert not loader.is_loading(LEVEL_ROOT, ROOT_ID)

        loaded = await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        assert [t.id for t in loaded] == ["T1"]

    asyncio.run(scenario())
    assert gateway.count("fetch_children") == 2
    assert store.load_state(LEVEL_ROOT, ROOT_ID) == LOAD_LOADED


def test_cancelled_caller_does_not_cancel_shared_fetch() -> None:
    store, gateway, loader = _setup()

    async def scenario() -> None:
        release = gateway.hold_fetch(LEVEL_ROOT, ROOT_ID)
        impatient = asyncio.create_task(loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID))
        patient = asyncio.create_task(loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID))
        await asyncio.sleep(0)
        impatient.cancel()
        release.set()
        loaded = await patient
        assert [t.id for t in loaded] == ["T1"]
        assert impatient.cancelled()

    asyncio.run(scenario())
    assert gateway.count("fetch_children") == 1


def test_leaf_level_has_no_children() -> None:
    store, gateway, loader = _setup()

    async def scenario() -> None:
        with pytest.raises(InvariantViolation):
            await loader.ensure_children_loaded(LEVEL_CLOCKEVENT, "C1")
        assert await loader.has_children(LEVEL_CLOCKEVENT, "C1") is False

    asyncio.run(scenario())
    assert gateway.calls == []


def test_has_children_uses_cache_then_probe() -> None:
    store, gateway, loader = _setup()

    async def scenario() -> None:
        await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        assert await loader.has_children(LEVEL_TIMESHEET, "T1") is True
        assert gateway.count("probe_has_children") == 1

        await loader.ensure_children_loaded(LEVEL_TIMESHEET, "T1")
        assert await loader.has_children(LEVEL_TIMESHEET, "T1") is True
        assert await loader.has_children(LEVEL_DTR, "D1") is False
        assert gateway.count("probe_has_children") == 2

        gateway.fail("probe_has_children")
        with pytest.raises(FetchFailed):
            await loader.has_children(LEVEL_DTR, "D2")

    asyncio.run(scenario())


def test_reload_fetches_again() -> None:
    store, gateway, loader = _setup()

    async def scenario() -> None:
        await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        gateway.add(timesheet("T2"))
        loaded = await loader.reload(LEVEL_ROOT, ROOT_ID)
        assert sorted(t.id for t in loaded) == ["T1", "T2"]

    asyncio.run(scenario())
    assert gateway.count("fetch_children") == 2


def test_parent_removed_during_load_discards_result() -> None:
    store, gateway, loader = _setup()

    async def scenario() -> None:
        await loader.ensure_children_loaded(LEVEL_ROOT, ROOT_ID)
        release = gateway.hold_fetch(LEVEL_TIMESHEET, "T1")
        task = asyncio.create_task(loader.ensure_children_loaded(LEVEL_TIMESHEET, "T1"))
        await asyncio.sleep(0)
        store.remove(LEVEL_TIMESHEET, "T1")
        release.set()
        await task

    asyncio.run(scenario())
    assert store.get(LEVEL_DTR, "D1") is None
    assert store.load_state(LEVEL_TIMESHEET, "T1") == LOAD_UNKNOWN
