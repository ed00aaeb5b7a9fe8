from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from src.storage.sqlite_store import SCHEMA_VERSION
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "vox-dispatch",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "pydantic": _pkg_version("pydantic"),
        },
        "ts": time.time(),
    }


@router.get("/system")
def system(request: Request) -> dict[str, Any]:
    # Sweeper and queue observability for the console.
    sweepers = getattr(request.app.state, "sweepers", None) or []
    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "sweepers": {
                "enabled": bool(sweepers),
                "loops": [s.status_snapshot() for s in sweepers],
            },
            "jobs_by_status": store.count_jobs_by_status(),
            "workers_by_state": store.count_workers_by_state(),
        }
    finally:
        store.close()
