from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from src.api.dependencies import bearer_token, get_app_config
from src.config.load_config import AppConfig
from src.dispatch.context import DispatchContext
from src.dispatch.types import Outcome, Region
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


class RegisterRequest(BaseModel):
    name: str | None = Field(default=None, description="Display name; defaults to the token name.")
    metadata: dict[str, Any] = Field(default_factory=dict)
    token: str | None = Field(default=None, description="Alternative to the Authorization header.")


class HeartbeatRequest(BaseModel):
    worker_id: str = Field(min_length=1)


class ClaimRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    region: Region


class ReportRequest(BaseModel):
    worker_id: str = Field(min_length=1)
    outcome: Outcome
    error: str | None = Field(default=None)
    results: dict[str, Any] | None = Field(default=None)


@router.post("/worker/register")
def register_worker(
    body: RegisterRequest,
    token: str = Depends(bearer_token),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        ctx = DispatchContext(store=store, config=cfg)
        identity = ctx.registry.register(token or (body.token or ""), name=body.name, metadata=body.metadata)
        return {
            "worker": {
                "worker_id": identity.worker_id,
                "name": identity.name,
                "region": identity.region.value,
                "state": identity.state.value,
                "created": identity.created,
            },
            "heartbeat_timeout_s": float(cfg.heartbeat.timeout_s),
            "poll_interval_s": float(cfg.claim.poll_interval_s),
        }
    finally:
        store.close()


@router.post("/worker/heartbeat")
def heartbeat(
    body: HeartbeatRequest,
    token: str = Depends(bearer_token),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        ctx = DispatchContext(store=store, config=cfg)
        ctx.registry.authenticate(token, worker_id=body.worker_id)
        now = time.time()
        worker = ctx.monitor.beat(body.worker_id, now=now)
        return {"ok": True, "server_time": now, "state": worker.state.value}
    finally:
        store.close()


@router.post("/worker/jobs/claim", response_model=None)
def claim_job(
    body: ClaimRequest,
    token: str = Depends(bearer_token),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any] | Response:
    store = SQLiteStore()
    try:
        ctx = DispatchContext(store=store, config=cfg)
        ctx.registry.authenticate(token, worker_id=body.worker_id)
        claimed = ctx.scheduler.claim_next(body.worker_id, body.region)
        if claimed is None:
            return Response(status_code=204)
        return claimed.to_descriptor()
    finally:
        store.close()


@router.post("/worker/jobs/{job_id}/report")
def report_job(
    job_id: str,
    body: ReportRequest,
    token: str = Depends(bearer_token),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        ctx = DispatchContext(store=store, config=cfg)
        ctx.registry.authenticate(token, worker_id=body.worker_id)
        job = ctx.reporter.report(
            body.worker_id,
            job_id,
            body.outcome,
            error=body.error,
            results=body.results,
        )
        return {"job": job.to_public()}
    finally:
        store.close()
