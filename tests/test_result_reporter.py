from __future__ import annotations

import pytest

from src.config.load_config import load_app_config
from src.dispatch.context import DispatchContext
from src.dispatch.errors import LeaseMismatch, UnknownJob
from src.dispatch.reporter import DEFAULT_FAILURE_ERROR
from src.dispatch.types import JobStatus, Outcome, Region, WorkerState


def _ctx(store) -> DispatchContext:
    return DispatchContext(store=store, config=load_app_config())


def _claimed(store, register_worker, region: str = "apac"):
    ctx = _ctx(store)
    job = store.create_job(test_case_id=f"tc_{region}", workflow_id="wf_1", region=Region(region), now=10.0)
    worker_id, _ = register_worker(region, now=1000.0)
    claimed = ctx.scheduler.claim_next(worker_id, region, now=1001.0)
    assert claimed is not None and claimed.job.job_id == job.job_id
    return ctx, job.job_id, worker_id


def test_completed_report_finalizes_job_and_frees_worker(store, register_worker) -> None:
    ctx, job_id, worker_id = _claimed(store, register_worker)
    results = {"responseLatencyMedian": 812, "responseLatencySd": 40}

    done = ctx.reporter.report(worker_id, job_id, Outcome.COMPLETED, results=results, now=1500.0)
    assert done.status == JobStatus.COMPLETED
    assert done.completed_at == 1500.0
    assert done.worker_id == worker_id
    assert done.error is None
    assert done.results == results
    assert store.get_worker(worker_id=worker_id).state == WorkerState.ONLINE


def test_completed_report_drops_error_text(store, register_worker) -> None:
    ctx, job_id, worker_id = _claimed(store, register_worker)
    done = ctx.reporter.report(worker_id, job_id, "completed", error="ignored", now=1500.0)
    assert done.error is None


def test_failed_report_keeps_error(store, register_worker) -> None:
    ctx, job_id, worker_id = _claimed(store, register_worker)
    failed = ctx.reporter.report(worker_id, job_id, "failed", error="tester crashed", now=1500.0)
    assert failed.status == JobStatus.FAILED
    assert failed.error == "tester crashed"
    events = store.list_job_events(job_id=job_id)
    assert events[-1]["event_type"] == "job_failed"
    assert events[-1]["payload"]["error"] == "tester crashed"


def test_failed_report_without_error_gets_default(store, register_worker) -> None:
    ctx, job_id, worker_id = _claimed(store, register_worker)
    assert ctx.reporter.report(worker_id, job_id, "failed", now=1500.0).error == DEFAULT_FAILURE_ERROR


def test_report_from_non_owner_is_rejected_without_change(store, register_worker) -> None:
    ctx, job_id, owner = _claimed(store, register_worker)
    other, _ = register_worker("apac", name="other", now=1000.0)
    before = store.get_job(job_id=job_id)

    with pytest.raises(LeaseMismatch) as exc:
        ctx.reporter.report(other, job_id, "completed", results={"x": 1}, now=1500.0)
    assert exc.value.details == {"job_id": job_id, "status": "running"}
    assert store.get_job(job_id=job_id) == before
    assert store.get_worker(worker_id=owner).state == WorkerState.BUSY


def test_second_report_cannot_rewrite_completion(store, register_worker) -> None:
    ctx, job_id, worker_id = _claimed(store, register_worker)
    ctx.reporter.report(worker_id, job_id, "completed", results={"run": 1}, now=1500.0)

    with pytest.raises(LeaseMismatch):
        ctx.reporter.report(worker_id, job_id, "failed", error="late", now=1600.0)
    final = store.get_job(job_id=job_id)
    assert final is not None
    assert final.status == JobStatus.COMPLETED
    assert final.completed_at == 1500.0
    assert final.results == {"run": 1}


def test_stale_report_after_reap_is_discarded(store, register_worker) -> None:
    ctx, job_id, w1 = _claimed(store, register_worker)
    later = 1001.0 + ctx.config.lease.timeout_s + 1
    ctx.reaper.reap(now=later)
    w2, _ = register_worker("apac", name="w2", now=later)
    ctx.scheduler.claim_next(w2, "apac", now=later)

    with pytest.raises(LeaseMismatch):
        ctx.reporter.report(w1, job_id, "completed", now=later + 5)
    held = store.get_job(job_id=job_id)
    assert held is not None and held.status == JobStatus.RUNNING and held.worker_id == w2


def test_report_for_unknown_job(store, register_worker) -> None:
    ctx = _ctx(store)
    worker_id, _ = register_worker("na", now=1000.0)
    with pytest.raises(UnknownJob):
        ctx.reporter.report(worker_id, "job_missing", "completed", now=1001.0)


def test_report_from_demoted_worker_brings_it_back_online(store, register_worker) -> None:
    ctx, job_id, worker_id = _claimed(store, register_worker)
    ctx.monitor.sweep(now=1100.0)
    assert store.get_worker(worker_id=worker_id).state == WorkerState.OFFLINE

    done = ctx.reporter.report(worker_id, job_id, "completed", now=1101.0)
    assert done.status == JobStatus.COMPLETED
    assert store.get_worker(worker_id=worker_id).state == WorkerState.ONLINE
