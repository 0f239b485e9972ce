from __future__ import annotations

from pathlib import Path

import pytest

from dtrlog.__main__ import _format_row, main
from dtrlog.db import TimesheetDB
from dtrlog.engine import TimesheetEngine
from dtrlog.models import LEVEL_ROOT, ROOT_ID
from fakes import FakeGateway, dtr, timelog, timesheet


def test_seed_command_is_idempotent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    # Registered so the value main() writes is undone afterwards.
    monkeypatch.setenv("DTRLOG_DATA_DIR", "unused")
    monkeypatch.setenv("DTRLOG_STORAGE", "sqlite")
    monkeypatch.delenv("DTRLOG_CONFIG", raising=False)

    assert main(["seed", "--data-dir", "store"]) == 0
    assert main(["seed", "--data-dir", "store"]) == 0

    db = TimesheetDB(tmp_path / "store" / "dtrlog.sqlite3")
    try:
        assert len(db.list_children(LEVEL_ROOT, ROOT_ID)) == 6
    finally:
        db.close()


def test_bad_config_exits_nonzero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = tmp_path / "bad.yaml"
    cfg.write_text("storage: postgres\n", encoding="utf-8")
    monkeypatch.setenv("DTRLOG_CONFIG", "unused")
    monkeypatch.chdir(tmp_path)
    assert main(["--config", str(cfg), "seed"]) == 2


def test_rows_render_hours_and_markers() -> None:
    row = {**dtr("D1", "T1", 8.0, overtime_hours=4.0).to_dict(), "level": "dtr", "expanded": True}
    assert _format_row(row) == "- 2025-01-02  reg=8.00 ot=4.00 nd=0.00  (D1)"

    row = {**timelog("L1", "D1", "out").to_dict(), "level": "timelog", "expanded": False}
    assert _format_row(row) == "+ OUT 2025-01-02T06:00:00  (L1)"


class _ClosingGateway(FakeGateway):
    def close(self) -> None:
        self.closed = True


@pytest.mark.parametrize(("env_value", "expected"), [("0", False), ("1", True)])
def test_tree_honours_optimistic_setting(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    env_value: str,
    expected: bool,
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DTRLOG_CONFIG", raising=False)
    monkeypatch.setenv("DTRLOG_OPTIMISTIC", env_value)

    gateway = _ClosingGateway(timesheet("T1"))
    built: list[TimesheetEngine] = []

    class RecordingEngine(TimesheetEngine):
        def __init__(self, gw, **kwargs) -> None:
            super().__init__(gw, **kwargs)
            built.append(self)

    monkeypatch.setattr("dtrlog.client.HttpStoreGateway", lambda url, **kwargs: gateway)
    monkeypatch.setattr("dtrlog.engine.TimesheetEngine", RecordingEngine)

    assert main(["tree", "--json"]) == 0

    assert built[0].mutations.optimistic_updates is expected
    assert gateway.closed is True
    assert '"id": "T1"' in capsys.readouterr().out
