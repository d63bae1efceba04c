"""Reference HTTP API over the in-memory tech pack store."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from tpsync.errors import ServerError

from app.auth import BearerAuthMiddleware
from app.config import Settings, load_settings
from app.stores import MemoryTechPackStore


logger = logging.getLogger("tpsync.server")


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _server_error_response(exc: ServerError) -> JSONResponse:
    errors = exc.field_errors or [{"code": exc.code, "message": exc.message, "path": None, "detail": None}]
    body = {"ok": False, "message": exc.message, "errors": errors, "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=exc.status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _actor(request: Request) -> str:
    user = getattr(request.state, "user", None) or {}
    return user.get("name") or user.get("email") or user.get("id") or "anonymous"


def _int_param(request: Request, name: str, default: int) -> int:
    try:
        return int(request.query_params.get(name, default))
    except (TypeError, ValueError):
        return default


def create_app(settings: Settings | None = None, store: MemoryTechPackStore | None = None) -> FastAPI:
    settings = settings or load_settings()
    store = store or MemoryTechPackStore()
    app = FastAPI(title="techpack-sync")
    app.state.store = store

    @app.exception_handler(ServerError)
    async def server_error_handler(request: Request, exc: ServerError):
        logger.info("request_rejected path=%s status=%s code=%s", request.url.path, exc.status, exc.code)
        return _server_error_response(exc)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("request_failed path=%s", request.url.path)
        return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    @app.get("/api/techpacks")
    async def list_techpacks(request: Request):
        page = max(1, _int_param(request, "page", 1))
        limit = max(1, min(_int_param(request, "limit", settings.page_size), settings.max_page_size))
        result = store.list(page, limit, q=request.query_params.get("q"), status=request.query_params.get("status"))
        return _ok_response(
            {
                "techpacks": result["items"],
                "pagination": {
                    "page": result["page"],
                    "limit": result["limit"],
                    "total": result["total"],
                    "totalPages": result["total_pages"],
                },
            }
        )

    @app.post("/api/techpacks")
    async def create_techpack(request: Request):
        body = await _safe_json(request)
        record, revision = store.create(body, _actor(request))
        logger.info("techpack_created id=%s revision=%s", record["id"], revision["id"])
        return _ok_response({"techpack": record, "revision": revision}, status=201)

    @app.get("/api/techpacks/{record_id}")
    async def get_techpack(record_id: str):
        return _ok_response({"techpack": store.get(record_id)})

    @app.put("/api/techpacks/{record_id}")
    async def update_techpack(request: Request, record_id: str):
        body = await _safe_json(request)
        record, revision = store.update(record_id, body, _actor(request))
        logger.info("techpack_updated id=%s version=%s", record_id, record["version"])
        return _ok_response({"techpack": record, "revision": revision})

    @app.delete("/api/techpacks/{record_id}")
    async def delete_techpack(request: Request, record_id: str):
        record = store.delete(record_id, _actor(request))
        logger.info("techpack_archived id=%s", record_id)
        return _ok_response({"techpack": record})

    @app.post("/api/techpacks/{record_id}/clone")
    async def clone_techpack(request: Request, record_id: str):
        body = await _safe_json(request)
        sections = body.get("sections") if isinstance(body.get("sections"), list) else None
        record = store.clone(record_id, body, sections, _actor(request))
        logger.info("techpack_cloned source=%s clone=%s", record_id, record["id"])
        return _ok_response({"techpack": record}, status=201)

    @app.get("/api/techpacks/{record_id}/revisions")
    async def list_revisions(request: Request, record_id: str):
        page = max(1, _int_param(request, "page", 1))
        limit = max(1, min(_int_param(request, "limit", settings.page_size), settings.max_page_size))
        result = store.list_revisions(record_id, page, limit)
        pagination = result["pagination"]
        return _ok_response(
            {
                "revisions": result["revisions"],
                "pagination": {
                    "currentPage": pagination["page"],
                    "itemsPerPage": pagination["limit"],
                    "totalItems": pagination["total"],
                    "totalPages": pagination["pages"],
                },
            }
        )

    @app.get("/api/techpacks/{record_id}/revisions/compare")
    async def compare_revisions(request: Request, record_id: str):
        params = request.query_params
        result = store.compare_revisions(record_id, params.get("from"), params.get("to"))
        return _ok_response({"data": result})

    @app.post("/api/techpacks/{record_id}/revisions/{revision_id}/revert")
    async def revert_revision(request: Request, record_id: str, revision_id: str):
        body = await _safe_json(request)
        record, revision = store.revert(record_id, revision_id, _actor(request), body.get("reason"))
        logger.info("techpack_reverted id=%s target=%s new_revision=%s", record_id, revision_id, revision["id"])
        return _ok_response({"data": {"newRevision": revision, "revertedFrom": revision["revertedFrom"], "techpack": record}})

    @app.get("/api/revisions/{revision_id}")
    async def get_revision(revision_id: str):
        return _ok_response({"revision": store.get_revision(revision_id)})

    @app.post("/api/revisions/{revision_id}/approve")
    async def approve_revision(request: Request, revision_id: str):
        body = await _safe_json(request)
        return _ok_response({"revision": store.approve(revision_id, _actor(request), body.get("reason"))})

    @app.post("/api/revisions/{revision_id}/reject")
    async def reject_revision(request: Request, revision_id: str):
        body = await _safe_json(request)
        return _ok_response({"revision": store.reject(revision_id, _actor(request), body.get("reason"))})

    @app.post("/api/revisions/{revision_id}/comments")
    async def add_comment(request: Request, revision_id: str):
        body = await _safe_json(request)
        return _ok_response({"revision": store.add_comment(revision_id, _actor(request), body.get("comment"))}, status=201)

    if settings.auth_enabled:
        app.add_middleware(BearerAuthMiddleware, secret=settings.auth_secret)
    else:
        logger.info("auth_disabled env=%s", settings.app_env)
    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    uvicorn.run(create_app(settings), host="0.0.0.0", port=int(os.getenv("PORT", "4001")))


if __name__ == "__main__":
    main()
