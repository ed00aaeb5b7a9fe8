from __future__ import annotations

import pytest

from src.config.load_config import load_app_config
from src.dispatch.context import DispatchContext
from src.dispatch.errors import InvalidCredential, UnknownToken, UnknownWorker
from src.dispatch.registry import TOKEN_PREFIX, WorkerRegistry, hash_token
from src.dispatch.types import JobStatus, Region, WorkerState


def test_mint_stores_only_the_hash(store) -> None:
    registry = WorkerRegistry(store)
    record, raw = registry.mint(name="apac-pool", region="apac")

    assert raw.startswith(TOKEN_PREFIX)
    assert record.region == Region.APAC
    assert record.revoked is False
    row = store._conn.execute(
        "SELECT secret_hash FROM worker_tokens WHERE token_id = ?;", (record.token_id,)
    ).fetchone()
    assert row["secret_hash"] == hash_token(raw)
    assert raw not in row["secret_hash"]
    assert "secret_hash" not in record.to_public()


def test_mint_requires_a_name(store) -> None:
    with pytest.raises(ValueError):
        WorkerRegistry(store).mint(name="  ", region="na")


def test_register_takes_region_from_token(store) -> None:
    registry = WorkerRegistry(store)
    _, raw = registry.mint(name="eu-pool", region="eu")

    identity = registry.register(raw, name="eu-box-1", metadata={"hostname": "box1"}, now=50.0)
    assert identity.created is True
    assert identity.region == Region.EU
    assert identity.state == WorkerState.ONLINE
    assert identity.name == "eu-box-1"

    worker = store.get_worker(worker_id=identity.worker_id)
    assert worker is not None
    assert worker.last_heartbeat == 50.0
    assert worker.metadata == {"hostname": "box1"}


def test_register_defaults_name_to_token_name(store) -> None:
    registry = WorkerRegistry(store)
    _, raw = registry.mint(name="na-pool", region="na")
    assert registry.register(raw, now=1.0).name == "na-pool"


def test_reregistering_with_same_token_reuses_worker(store) -> None:
    registry = WorkerRegistry(store)
    _, raw = registry.mint(name="na-pool", region="na")
    first = registry.register(raw, now=1.0)
    again = registry.register(raw, now=2.0)

    assert again.worker_id == first.worker_id
    assert again.created is False
    assert len(store.list_workers()) == 1


@pytest.mark.parametrize("raw", ["", "   ", "vxw_not-a-real-token"])
def test_register_rejects_unknown_tokens(store, raw: str) -> None:
    with pytest.raises(InvalidCredential):
        WorkerRegistry(store).register(raw, now=1.0)


def test_revoked_token_is_rejected(store) -> None:
    registry = WorkerRegistry(store)
    record, raw = registry.mint(name="na-pool", region="na")
    identity = registry.register(raw, now=1.0)

    revoked = registry.revoke(record.token_id)
    assert revoked.revoked is True
    # Idempotent.
    assert registry.revoke(record.token_id).revoked is True

    with pytest.raises(InvalidCredential):
        registry.register(raw, now=2.0)
    with pytest.raises(InvalidCredential):
        registry.authenticate(raw, worker_id=identity.worker_id)


def test_revoke_unknown_token(store) -> None:
    with pytest.raises(UnknownToken):
        WorkerRegistry(store).revoke("wtk_missing")


def test_authenticate_binds_token_to_its_worker(store) -> None:
    registry = WorkerRegistry(store)
    _, raw_a = registry.mint(name="a", region="na")
    _, raw_b = registry.mint(name="b", region="na")
    a = registry.register(raw_a, now=1.0)
    b = registry.register(raw_b, now=1.0)

    assert registry.authenticate(raw_a, worker_id=a.worker_id).worker_id == a.worker_id
    with pytest.raises(InvalidCredential):
        registry.authenticate(raw_a, worker_id=b.worker_id)
    with pytest.raises(UnknownWorker):
        registry.authenticate(raw_a, worker_id="wkr_missing")


def test_revocation_leaves_claimed_job_to_the_reaper(store) -> None:
    ctx = DispatchContext(store=store, config=load_app_config())
    record, raw = ctx.registry.mint(name="na-pool", region="na")
    identity = ctx.registry.register(raw, now=1000.0)
    job = store.create_job(test_case_id="tc_na", workflow_id="wf_1", region=Region.NA, now=10.0)
    ctx.scheduler.claim_next(identity.worker_id, "na", now=1000.0)

    ctx.registry.revoke(record.token_id)
    held = store.get_job(job_id=job.job_id)
    assert held is not None and held.status == JobStatus.RUNNING

    ctx.reaper.reap(now=1000.0 + ctx.config.lease.timeout_s + 1)
    requeued = store.get_job(job_id=job.job_id)
    assert requeued is not None and requeued.status == JobStatus.PENDING
