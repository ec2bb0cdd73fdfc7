"""
Main entrypoint for the EcoTrace API.

This module assembles the FastAPI application: logging, CORS, request
timing, the global error handler and the versioned routers.  The
``create_app`` function builds and configures the app, which is then
instantiated at module import time as ``app``, e.g.::

    uvicorn ecotrace_api.app.main:app --reload

The application title and version are provided via ``Settings`` from
``core.config``.
"""

import logging
import time
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.v1.endpoints import realtime
from .api.v1.router import router as v1_router
from .core.config import settings
from .core.db import init_db
from .core.logging_config import setup_logging
from .core.performance import performance_monitor
from .core.timeutils import to_iso

logger = logging.getLogger(__name__)


def route_templates(routes, prefix: str = "") -> Dict[int, str]:
    """Map each route object to its full path template.

    Included routers may stay nested, in which case the route placed in
    the request scope only knows its router-relative path.  Walking the
    include tree with the accumulated prefix gives e.g.
    ``/api/dashboard/carbon/{user_id}`` for flattened and nested layouts.
    """
    templates: Dict[int, str] = {}
    for route in routes:
        included = getattr(route, "original_router", None)
        if included is not None:
            templates.update(route_templates(included.routes, prefix + route.include_context.prefix))
        elif hasattr(route, "path"):
            templates[id(route)] = prefix + route.path
    return templates


def route_template(request: Request) -> str:
    """Full path template of the route serving ``request``, or the raw path."""
    route = request.scope.get("route")
    if route is None:
        return request.url.path
    templates = getattr(request.app.state, "route_templates", None)
    if templates is None:
        templates = request.app.state.route_templates = route_templates(request.app.routes)
    return templates.get(id(route), getattr(route, "path", request.url.path))


def create_app() -> FastAPI:
    """Create and configure a FastAPI application.

    Returns
    -------
    FastAPI
        A configured FastAPI application instance.
    """
    # Initialise logging before anything else so that imports below can
    # safely log messages.
    setup_logging(settings.log_level, settings.log_file or None, settings.log_format)

    app = FastAPI(title=settings.project_name, version=settings.api_version)
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_performance(request: Request, call_next):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            # Key on the route template so path parameters share statistics.
            path = route_template(request)
            performance_monitor.record(request.method, path, status_code, duration_ms)
            if duration_ms > settings.performance_target_ms:
                logger.warning("Slow request %s %s took %.1f ms", request.method, path, duration_ms)

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(exc), "timestamp": to_iso()},
        )

    app.include_router(v1_router, prefix="/api")
    app.include_router(realtime.router, tags=["realtime"])

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {
            "status": "OK",
            "message": "EcoTrace API is running",
            "timestamp": to_iso(),
            "uptime": round(time.time() - app.state.started_at, 1),
            "version": settings.api_version,
        }

    # Apply migrations at startup.  This creates the database file if it
    # does not exist and brings the schema up to date.
    @app.on_event("startup")
    async def startup_event() -> None:
        init_db()
        logger.info("%s %s started (%s)", settings.project_name, settings.api_version, settings.environment)

    return app


# Create the application instance at import time so that tools such as
# uvicorn can discover it without calling create_app manually.
app = create_app()
