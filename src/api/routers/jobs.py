from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_app_config
from src.api.errors import APIError
from src.api.pagination import Cursor, CursorError, decode_cursor, finalize_page
from src.config.load_config import AppConfig
from src.dispatch.context import DispatchContext
from src.dispatch.errors import UnknownJob
from src.dispatch.types import JobStatus, Region
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


class CreateJobRequest(BaseModel):
    test_case_id: str = Field(min_length=1)


class RunWorkflowRequest(BaseModel):
    region: Region | None = Field(default=None, description="Only enqueue test cases of this region.")


@router.get("/jobs")
def list_jobs(
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    status: list[JobStatus] | None = Query(default=None),
    region: list[Region] | None = Query(default=None),
    workflow_id: str | None = Query(default=None),
    worker_id: str | None = Query(default=None),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    page_limit = int(limit) if limit is not None else cfg.limits.jobs_list_default_limit
    if page_limit > cfg.limits.jobs_list_max_limit:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"limit must be in [1..{cfg.limits.jobs_list_max_limit}].",
            details={"limit": page_limit},
        )

    store = SQLiteStore()
    try:
        cursor_obj: Cursor | None = None
        if cursor:
            try:
                cursor_obj = decode_cursor(cursor)
            except CursorError as e:
                raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

        page = store.list_jobs_page(
            limit=page_limit,
            cursor=cursor_obj.as_tuple() if cursor_obj is not None else None,
            statuses=[s.value for s in status] if status else None,
            regions=[r.value for r in region] if region else None,
            workflow_id=workflow_id or None,
            worker_id=worker_id or None,
        )
        return finalize_page(page)
    finally:
        store.close()


@router.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job = store.get_job(job_id=job_id)
        if job is None:
            raise UnknownJob("Job not found.", details={"job_id": job_id})
        return {"job": job.to_public()}
    finally:
        store.close()


@router.get("/jobs/{job_id}/events")
def list_job_events(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if store.get_job(job_id=job_id) is None:
            raise UnknownJob("Job not found.", details={"job_id": job_id})
        return {"job_id": job_id, "items": store.list_job_events(job_id=job_id)}
    finally:
        store.close()


@router.post("/jobs", status_code=201)
def create_job(body: CreateJobRequest, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        job = DispatchContext(store=store, config=cfg).enqueuer.enqueue_test_case(body.test_case_id)
        return {"job": job.to_public()}
    finally:
        store.close()


@router.post("/workflows/{workflow_id}/run", status_code=201)
def run_workflow(
    workflow_id: str,
    body: RunWorkflowRequest | None = None,
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        region = body.region if body is not None else None
        jobs = DispatchContext(store=store, config=cfg).enqueuer.enqueue_workflow(workflow_id, region=region)
        return {"workflow_id": workflow_id, "jobs": [j.to_public() for j in jobs]}
    finally:
        store.close()
