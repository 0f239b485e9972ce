from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from dtrlog.config import load_settings
from dtrlog.db import TimesheetDB
from dtrlog.errors import HasChildren, InvariantViolation, NotFound, StoreError
from dtrlog.models import (
    CHILD_LEVEL,
    COLLECTIONS,
    LEVEL_ROOT,
    ROOT_ID,
    snapshot_to_dict,
)


log = logging.getLogger("dtrlog.web")


def _api_error(message: str, code: int = 400, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=code, content={"ok": False, "error": message, **extra})


def _error_response(exc: Exception) -> JSONResponse:
    """Map a store exception to the JSON error envelope. Call from ``except``."""
    if isinstance(exc, HasChildren):
        log.warning("%s", exc)
        return _api_error(str(exc), 409, has_children=True)
    if isinstance(exc, InvariantViolation):
        log.warning("%s", exc)
        return _api_error(str(exc), 409)
    if isinstance(exc, StoreError):
        return _api_error(str(exc), exc.status_code or 500)
    if isinstance(exc, ValueError):
        return _api_error(str(exc), 400)
    log.exception("Unexpected store failure")
    return _api_error("internal error", 500)


def _level_for(collection: str) -> str:
    level = COLLECTIONS.get(collection)
    if level is None:
        raise NotFound(f"unknown collection: {collection}")
    return level


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise StoreError("request body must be JSON", status_code=400) from exc
    if not isinstance(payload, dict):
        raise StoreError("request body must be a JSON object", status_code=400)
    return payload


def _security_headers(response) -> None:
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "same-origin"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    response.headers["Cache-Control"] = "no-store"


def create_app(db: TimesheetDB, *, allowed_hosts: list[str] | None = None, seed: bool = False) -> FastAPI:
    app = FastAPI(title="dtrlog store")
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts or ["localhost", "127.0.0.1"])

    @app.on_event("startup")
    def _startup() -> None:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
        log.info("Store at %s", db.path)
        if seed and db.ensure_seed_data():
            log.info("Demo payroll seeded")

    @app.on_event("shutdown")
    def _shutdown() -> None:
        db.close()

    @app.middleware("http")
    async def _headers_middleware(request: Request, call_next):  # type: ignore
        resp = await call_next(request)
        _security_headers(resp)
        return resp

    @app.get("/health", response_class=PlainTextResponse)
    def health() -> str:
        return "ok"

    @app.get("/api/v1/timesheets")
    def api_timesheets():
        try:
            rows = db.list_children(LEVEL_ROOT, ROOT_ID)
        except Exception as exc:
            return _error_response(exc)
        return {"ok": True, "level": CHILD_LEVEL[LEVEL_ROOT], "children": [r.to_dict() for r in rows]}

    @app.get("/api/v1/{collection}/{node_id}/children")
    def api_children(collection: str, node_id: str):
        try:
            level = _level_for(collection)
            child_level = CHILD_LEVEL.get(level)
            if child_level is None:
                raise StoreError(f"{level} has no children", status_code=400)
            rows = db.list_children(level, node_id)
        except Exception as exc:
            return _error_response(exc)
        return {"ok": True, "level": child_level, "children": [r.to_dict() for r in rows]}

    @app.get("/api/v1/{collection}/{node_id}/has-children")
    def api_has_children(collection: str, node_id: str):
        try:
            found = db.has_children(_level_for(collection), node_id)
        except Exception as exc:
            return _error_response(exc)
        return {"ok": True, "has_children": found}

    @app.post("/api/v1/{collection}")
    async def api_create(request: Request, collection: str):
        try:
            level = _level_for(collection)
            payload = await _json_body(request)
            entity, ancestors = db.create(level, payload)
        except Exception as exc:
            return _error_response(exc)
        return {"ok": True, "entity": entity.to_dict(), "ancestors": [snapshot_to_dict(a) for a in ancestors]}

    @app.put("/api/v1/{collection}/{node_id}")
    async def api_update(request: Request, collection: str, node_id: str):
        try:
            level = _level_for(collection)
            patch = await _json_body(request)
            entity, ancestors = db.update(level, node_id, patch)
        except Exception as exc:
            return _error_response(exc)
        return {"ok": True, "entity": entity.to_dict(), "ancestors": [snapshot_to_dict(a) for a in ancestors]}

    @app.delete("/api/v1/{collection}/{node_id}")
    def api_delete(collection: str, node_id: str):
        try:
            ancestors = db.delete(_level_for(collection), node_id)
        except Exception as exc:
            return _error_response(exc)
        return {"ok": True, "ancestors": [snapshot_to_dict(a) for a in ancestors]}

    return app


SETTINGS = load_settings()
DB = TimesheetDB(SETTINGS.db_path)
app = create_app(DB, allowed_hosts=SETTINGS.allowed_hosts, seed=SETTINGS.seed)
