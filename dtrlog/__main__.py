from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from dtrlog.config import Settings, load_settings, resolve_data_dir
from dtrlog.errors import DtrlogError
from dtrlog.models import LEVEL_CLOCKEVENT, LEVEL_DTR, LEVEL_TIMELOG, LEVEL_TIMESHEET, LEVELS, ROOT_ID


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dtrlog")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file (or DTRLOG_CONFIG)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the timesheet store service")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8020)
    serve.add_argument("--reload", action="store_true")
    serve.add_argument("--data-dir", type=Path, default=None)

    tree = sub.add_parser("tree", help="Print the timesheet tree from a running store")
    tree.add_argument("--store-url", default=None)
    tree.add_argument(
        "--expand",
        nargs="*",
        default=[],
        metavar="ID",
        help="Path to expand: a timesheet id, then a DTR id, then a timelog id",
    )
    tree.add_argument("--json", action="store_true")

    seed = sub.add_parser("seed", help="Insert the demo payroll into an empty store")
    seed.add_argument("--data-dir", type=Path, default=None)

    return parser


def _format_row(row: dict[str, Any]) -> str:
    level = row["level"]
    if level == LEVEL_TIMESHEET:
        text = f"{row['employee_name']} [{row['pay_period']}] {row['detachment']} / {row['shift']}"
    elif level == LEVEL_DTR:
        text = str(row["date"])
    elif level == LEVEL_TIMELOG:
        text = f"{str(row['mode']).upper()} {row['timestamp']}"
    else:
        text = str(row["clock_time"])
    if level in {LEVEL_TIMESHEET, LEVEL_DTR}:
        text += (
            f"  reg={row['regular_hours']:.2f} ot={row['overtime_hours']:.2f}"
            f" nd={row['night_differential']:.2f}"
        )
    marker = " "
    if level != LEVEL_CLOCKEVENT:
        marker = "-" if row.get("expanded") else "+"
    return f"{marker} {text}  ({row['id']})"


def _print_rows(rows: list[dict[str, Any]], depth: int = 0) -> None:
    for row in rows:
        print("    " * depth + _format_row(row))
        if row.get("expanded") and "children" in row:
            _print_rows(row["children"], depth + 1)


async def _tree(settings: Settings, store_url: str, expand: list[str]) -> dict[str, Any]:
    from dtrlog.client import HttpStoreGateway
    from dtrlog.engine import TimesheetEngine

    gateway = HttpStoreGateway(store_url, timeout_seconds=settings.timeout_seconds)
    try:
        engine = TimesheetEngine(gateway, optimistic_updates=settings.optimistic_updates)
        await engine.load_timesheets()
        parent_id = ROOT_ID
        for level, node_id in zip(LEVELS, expand):
            await engine.on_expand(level, parent_id, node_id)
            parent_id = node_id
        return engine.snapshot()
    finally:
        gateway.close()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    load_dotenv()

    if args.config is not None:
        os.environ["DTRLOG_CONFIG"] = str(args.config)
    if getattr(args, "data_dir", None) is not None:
        os.environ["DTRLOG_DATA_DIR"] = str(resolve_data_dir(args.data_dir))

    try:
        settings = load_settings()
    except DtrlogError as exc:
        logging.error("%s", exc)
        return 2

    if args.command == "serve":
        try:
            import uvicorn  # type: ignore
        except Exception:
            logging.error("uvicorn is not installed. Install dependencies: pip install -e .")
            return 1
        uvicorn.run("dtrlog.app:app", host=args.host, port=int(args.port), reload=bool(args.reload))
        return 0

    if args.command == "tree":
        if len(args.expand) > len(LEVELS) - 1:
            parser.error("--expand takes at most a timesheet, a DTR and a timelog id")
        store_url = str(args.store_url or settings.store_url).rstrip("/")
        try:
            snap = asyncio.run(_tree(settings, store_url, list(args.expand)))
        except DtrlogError as exc:
            logging.error("%s", exc)
            return 1
        if args.json:
            print(json.dumps(snap, ensure_ascii=False, indent=2))
        else:
            _print_rows(snap["timesheets"])
        return 0

    if args.command == "seed":
        from dtrlog.db import TimesheetDB

        db = TimesheetDB(settings.db_path)
        try:
            seeded = db.ensure_seed_data()
        finally:
            db.close()
        if seeded:
            logging.info("Seeded demo payroll into %s", settings.db_path)
        else:
            logging.info("Store %s already has timesheets; nothing seeded", settings.db_path)
        return 0

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
