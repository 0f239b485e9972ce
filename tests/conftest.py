from __future__ import annotations

import importlib

import pytest
from fastapi.testclient import TestClient

from dtrlog.db import MEMORY_PATH, TimesheetDB
from dtrlog.engine import TimesheetEngine
from dtrlog.node_store import NodeStore
from fakes import FakeGateway


def _setup_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DTRLOG_STORAGE", "memory")
    monkeypatch.setenv("DTRLOG_SEED", "0")
    monkeypatch.setenv("DTRLOG_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver")
    monkeypatch.delenv("DTRLOG_CONFIG", raising=False)


@pytest.fixture
def store() -> NodeStore:
    return NodeStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def engine(gateway: FakeGateway) -> TimesheetEngine:
    return TimesheetEngine(gateway)


@pytest.fixture
def db():
    database = TimesheetDB(MEMORY_PATH)
    yield database
    database.close()


@pytest.fixture
def web(monkeypatch: pytest.MonkeyPatch):
    """The store service on a fresh in-memory database."""
    _setup_env(monkeypatch)
    mod = importlib.import_module("dtrlog.app")
    mod = importlib.reload(mod)
    client = TestClient(mod.app)
    yield mod, client
    mod.DB.close()
