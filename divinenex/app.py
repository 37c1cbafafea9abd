"""
FastAPI application entry point for the DivineNex backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from divinenex.config import get_settings
from divinenex.dependencies import get_lifecycle_manager, get_sweep_lock, reset_dependencies
from divinenex.errors import AttachmentError, DivineNexError, StoreError, ValidationError
from divinenex.routes import router
from divinenex.scheduler import PeriodicTask

logger = logging.getLogger(__name__)


def _status_for(exc: DivineNexError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AttachmentError):
        return 413 if exc.reason == "attachment_too_large" else 422
    if isinstance(exc, StoreError):
        return 503
    return 500


async def handle_divinenex_error(request: Request, exc: DivineNexError) -> JSONResponse:
    return JSONResponse(status_code=_status_for(exc), content={"error": exc.to_dict()})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    tasks: list[PeriodicTask] = []
    if settings.enable_background_sweep:
        manager = get_lifecycle_manager()
        lock = get_sweep_lock()
        tasks = [
            PeriodicTask(
                "sweep",
                manager.sweep,
                interval_seconds=settings.sweep_interval_ms / 1000,
                initial_delay_seconds=settings.initial_sweep_delay_ms / 1000,
                lock=lock,
            ),
            PeriodicTask(
                "reconcile",
                manager.reconcile_orphans,
                interval_seconds=settings.reconcile_interval_ms / 1000,
                initial_delay_seconds=settings.reconcile_interval_ms / 1000,
                lock=lock,
            ),
        ]
        for task in tasks:
            task.start()
    else:
        logger.warning("Background sweep disabled (ENABLE_BACKGROUND_SWEEP=false)")
    app.state.periodic_tasks = tasks

    try:
        yield
    finally:
        for task in tasks:
            await task.stop()
        reset_dependencies()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="DivineNex Backend", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(DivineNexError, handle_divinenex_error)

    @app.get("/", response_class=PlainTextResponse)
    def health() -> str:
        return "DivineNex Server Running OK"

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
