from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import APIError, envelope_error_handler, unhandled_error_handler, validation_error_handler
from src.config.load_config import load_app_config
from src.dispatch.errors import DispatchError
from src.runtime.sweeper import build_sweepers

from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.worker import router as worker_router
from .routers.workers import router as workers_router


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("VOXD_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app() -> FastAPI:
    def _env_bool(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        v = raw.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
        return default

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        cfg = load_app_config()
        app.state.app_config = cfg

        # Heartbeat demotion and lease reaping run in-process (single-instance assumption).
        app.state.sweepers = []
        if _env_bool("VOXD_ENABLE_SWEEPER", True):
            app.state.sweepers = build_sweepers(app_config=cfg)
            for sweeper in app.state.sweepers:
                sweeper.start()
        try:
            yield
        finally:
            for sweeper in app.state.sweepers:
                sweeper.stop()

    app = FastAPI(title="vox-dispatch API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, envelope_error_handler)
    app.add_exception_handler(DispatchError, envelope_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # CORS (for the console in dev / local deployments).
    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(worker_router, prefix="/api/v1", tags=["worker"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(workers_router, prefix="/api/v1", tags=["workers"])

    return app


app = create_app()
