#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
from datetime import date

import requests

DEFAULT_URL = "http://127.0.0.1:8020"


def fetch_json(method: str, url: str, body: dict | None = None) -> dict:
    response = requests.request(method, url, json=body, timeout=15)
    if response.status_code != 200:
        raise RuntimeError(f"HTTP {response.status_code}: {response.text[:200]}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise RuntimeError(f"non-JSON response: {response.text[:200]}") from exc
    if not isinstance(payload, dict):
        raise RuntimeError(f"invalid payload type: {type(payload).__name__}")
    if payload.get("ok") is False:
        raise RuntimeError(f"API error: {payload}")
    return payload


def main() -> int:
    base = (os.getenv("DTRLOG_STORE_URL") or DEFAULT_URL).strip().rstrip("/")
    api = f"{base}/api/v1"

    health = requests.get(f"{base}/health", timeout=15)
    if health.status_code != 200 or health.text != "ok":
        raise RuntimeError(f"health check failed: HTTP {health.status_code}")
    print("[ok] health")

    listed = fetch_json("GET", f"{api}/timesheets")
    print(f"[ok] timesheets: {len(listed['children'])}")

    created = fetch_json(
        "POST",
        f"{api}/timesheets",
        {"employee_name": "Smoke, Test", "pay_period": "smoke", "detachment": "smoke", "shift": "Day Shift"},
    )
    timesheet_id = created["entity"]["id"]
    print(f"[ok] create timesheet: {timesheet_id}")

    dtr = fetch_json(
        "POST",
        f"{api}/dtrs",
        {"timesheet_id": timesheet_id, "date": date.today().isoformat(), "regular_hours": 8},
    )
    dtr_id = dtr["entity"]["id"]
    total = dtr["ancestors"][0]["regular_hours"]
    if total != 8:
        raise RuntimeError(f"timesheet total not recomputed: {total}")
    print(f"[ok] create dtr: {dtr_id} (timesheet regular_hours={total})")

    probe = fetch_json("GET", f"{api}/timesheets/{timesheet_id}/has-children")
    print(f"[ok] has-children: {probe['has_children']}")

    refused = requests.delete(f"{api}/timesheets/{timesheet_id}", timeout=15)
    if refused.status_code != 409:
        raise RuntimeError(f"delete of a parent was not refused: HTTP {refused.status_code}")
    print("[ok] delete guard")

    deleted = fetch_json("DELETE", f"{api}/dtrs/{dtr_id}")
    print(f"[ok] delete dtr (timesheet regular_hours={deleted['ancestors'][0]['regular_hours']})")
    fetch_json("DELETE", f"{api}/timesheets/{timesheet_id}")
    print("[ok] cleanup")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception as exc:
        print(f"[fail] {exc}", file=sys.stderr)
        raise SystemExit(1)
