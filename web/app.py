"""Web view: read-only monitoring of the workspace pool.

Routes:
  GET /api/overview            -> every repo with workspaces, sessions, daemon, jobs
  GET /api/repos/{slug}        -> the same summary for a single repo

All API errors return consistent JSON: {"error": "message", "code": "ERROR_CODE"}
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wspool.errors import NotFoundError, StateCorruptError
from wspool.overview import build_overview, build_repo_detail
from wspool.paths import PoolOptions
from wspool.store import StateStore
from wspool.validation import validate_repo_slug

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------


def _error_response(message: str, code: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message, "code": code}, status_code=status_code)


def create_app(options: PoolOptions | None = None) -> FastAPI:
    """Build the app against the state directory named by ``options``."""
    store = StateStore((options or PoolOptions()).resolved().state_dir)
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    app.state.store = store

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return _error_response(str(exc), "VALIDATION_ERROR", 400)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(str(exc), "NOT_FOUND", 404)

    @app.exception_handler(StateCorruptError)
    async def corrupt_state_handler(request: Request, exc: StateCorruptError):
        logger.error("Corrupt state file: %s", exc)
        return _error_response("State file is corrupt", "DATA_CORRUPT", 500)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
        return _error_response("Internal server error", "INTERNAL_ERROR", 500)

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.get("/api/overview")
    def api_overview():
        return JSONResponse(build_overview(store))

    @app.get("/api/repos/{slug}")
    def api_repo_detail(slug: str):
        validate_repo_slug(slug)
        return JSONResponse(build_repo_detail(store, slug))

    return app


app = create_app()
