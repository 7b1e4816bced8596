"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fieldsync import __version__
from fieldsync.api.v1.api import api_router
from fieldsync.config import settings
from fieldsync.context import SyncContext
from fieldsync.logging_config import configure_logging
from fieldsync.scheduler import SyncJobScheduler

configure_logging(settings.log_level)

log = logging.getLogger(__name__)


def create_app(context: Optional[SyncContext] = None, start_jobs: bool = True) -> FastAPI:
    """Build the API around a sync context (a fresh one from settings when none is given)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sync_context = context or SyncContext.from_settings(settings)
        app.state.sync_context = sync_context
        app.state.job_scheduler = None
        if start_jobs:
            app.state.job_scheduler = SyncJobScheduler(sync_context)
            app.state.job_scheduler.start()
        log.info(f"fieldsync {__version__} started with entities: {', '.join(sync_context.sync_engine.entity_names())}")
        try:
            yield
        finally:
            if app.state.job_scheduler is not None:
                app.state.job_scheduler.shutdown()
            await sync_context.shutdown()

    app = FastAPI(
        title="fieldsync",
        description="Offline-first sync service: mutation queue, fast push and reconciling pulls",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__
        }

    @app.get("/")
    async def root():
        """Root endpoint - redirect to docs."""
        return {
            "message": "fieldsync API",
            "version": __version__,
            "docs": "/docs"
        }

    app.include_router(api_router, prefix=settings.api_v1_str)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        log.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # uvicorn has no TRACE/VERBOSE levels
    uvicorn_level = settings.log_level.lower()
    if uvicorn_level not in ("debug", "info", "warning", "error"):
        uvicorn_level = "debug"
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=uvicorn_level)
