from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_app_config
from src.api.errors import APIError
from src.config.load_config import AppConfig
from src.dispatch.context import DispatchContext
from src.dispatch.heartbeat import worker_is_eligible
from src.dispatch.types import Region, WorkerState
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


class MintTokenRequest(BaseModel):
    name: str = Field(min_length=1)
    region: Region


@router.get("/workers")
def list_workers(
    region: list[Region] | None = Query(default=None),
    state: list[WorkerState] | None = Query(default=None),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        workers = store.list_workers(
            regions=[r.value for r in region] if region else None,
            states=[s.value for s in state] if state else None,
        )
        now = time.time()
        items = []
        for w in workers:
            item = w.to_public()
            item["eligible"] = worker_is_eligible(w, now=now, timeout_s=cfg.heartbeat.timeout_s)
            items.append(item)
        return {"items": items}
    finally:
        store.close()


@router.get("/worker-tokens")
def list_worker_tokens() -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"items": [t.to_public() for t in store.list_worker_tokens()]}
    finally:
        store.close()


@router.post("/worker-tokens", status_code=201)
def mint_worker_token(body: MintTokenRequest, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        try:
            record, raw = DispatchContext(store=store, config=cfg).registry.mint(name=body.name, region=body.region)
        except ValueError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
        # The raw secret is only ever returned here.
        return {"token": record.to_public(), "secret": raw}
    finally:
        store.close()


@router.post("/worker-tokens/{token_id}/revoke")
def revoke_worker_token(token_id: str, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        record = DispatchContext(store=store, config=cfg).registry.revoke(token_id)
        return {"token": record.to_public()}
    finally:
        store.close()
